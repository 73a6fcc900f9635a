# orderflow/services/effects.py
# Побочные эффекты перехода, исполняемые строго после коммита.
# Каждый эффект исполняется и логируется независимо от остальных.

import logging
from dataclasses import dataclass, field

from orderflow.services.notifications import Notifier, TemplateKind

logger = logging.getLogger(__name__)


@dataclass
class Effect:
    """Отложенное уведомление покупателя о закоммиченном переходе."""

    order_id: str
    template_kind: TemplateKind
    recipient: str | None
    data: dict = field(default_factory=dict)


@dataclass
class EffectOutcome:
    template_kind: TemplateKind
    success: bool
    id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.template_kind.value,
            "success": self.success,
            "id": self.id,
            "error": self.error,
        }


def run_effects(effects: list[Effect], notifier: Notifier) -> list[EffectOutcome]:
    """Исполняет эффекты по порядку. Исключения не выходят наружу: переход уже закоммичен."""
    outcomes = []
    for effect in effects:
        if not effect.recipient:
            logger.warning(
                f"No recipient for {effect.template_kind.value} on order {effect.order_id}, skipping"
            )
            outcomes.append(EffectOutcome(effect.template_kind, False, error="no recipient"))
            continue
        try:
            result = notifier.send(effect.order_id, effect.template_kind, effect.recipient, effect.data)
        except Exception as e:
            logger.error(
                f"Notification {effect.template_kind.value} for order {effect.order_id} raised: {e}",
                exc_info=True,
            )
            outcomes.append(EffectOutcome(effect.template_kind, False, error=str(e)))
            continue
        if not result.success:
            logger.error(
                f"Notification {effect.template_kind.value} for order {effect.order_id} failed: {result.error}"
            )
        outcomes.append(EffectOutcome(effect.template_kind, result.success, result.id, result.error))
    return outcomes

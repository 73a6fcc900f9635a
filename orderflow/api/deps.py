# orderflow/api/deps.py
# Сборка движка жизненного цикла заказа из настроек (одна на процесс).
from functools import lru_cache

from orderflow.core.config import settings
from orderflow.db.session import SessionLocal
from orderflow.services.lifecycle import OrderLifecycle
from orderflow.services.notifications import BrevoNotifier, LoggingNotifier
from orderflow.services.payments import StripeProcessor
from orderflow.services.reconciliation import RefundIssuer
from orderflow.services.transitions import TransitionAuthority


def build_notifier():
    if settings.BREVO_API_KEY:
        return BrevoNotifier(settings.BREVO_API_KEY, settings.EMAIL_SENDER, settings.EMAIL_SENDER_NAME)
    return LoggingNotifier()


@lru_cache(maxsize=1)
def get_lifecycle() -> OrderLifecycle:
    """Зависимость FastAPI; в тестах подменяется через dependency_overrides."""
    authority = TransitionAuthority(SessionLocal, RefundIssuer(StripeProcessor(settings.STRIPE_SECRET_KEY)))
    return OrderLifecycle(authority, build_notifier())

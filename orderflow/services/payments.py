# orderflow/services/payments.py
# Узкий контракт платёжного процессора и его реализация поверх Stripe.

import logging
from dataclasses import dataclass
from typing import Protocol

import stripe

logger = logging.getLogger(__name__)

# pending: банк ещё не провёл возврат, но Stripe его принял
SUCCESSFUL_REFUND_STATUSES = ("succeeded", "pending")


@dataclass
class ProcessorRefund:
    id: str | None
    status: str

    @property
    def ok(self) -> bool:
        return self.status in SUCCESSFUL_REFUND_STATUSES


class PaymentProcessor(Protocol):
    def create_refund(
        self,
        payment_reference: str,
        amount_cents: int,
        metadata: dict,
        idempotency_key: str | None = None,
    ) -> ProcessorRefund:
        ...


class PaymentProcessorError(Exception):
    """
    Процессор недоступен или вернул ошибку.

    answered=True: процессор обработал запрос и отказал (4xx, отклонённый возврат).
    Stripe хранит такой ответ под idempotency key, повтор с тем же ключом вернёт его же.
    """

    def __init__(self, message: str, answered: bool = False):
        super().__init__(message)
        self.answered = answered


class StripeProcessor:
    """Возвраты через Stripe Refunds API."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def create_refund(self, payment_reference, amount_cents, metadata, idempotency_key=None):
        if not self.api_key:
            raise PaymentProcessorError("Stripe is not configured (STRIPE_SECRET_KEY is empty)")
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment_reference,
                amount=amount_cents,
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            # Исход неизвестен или запрос не исполнялся: повтор идёт с тем же ключом
            logger.error(f"Stripe unreachable while refunding {payment_reference}: {e}")
            raise PaymentProcessorError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe refund error for {payment_reference}: {e}")
            status = getattr(e, "http_status", None)
            raise PaymentProcessorError(str(e), answered=status is not None and 400 <= status < 500) from e
        return ProcessorRefund(id=refund["id"], status=refund["status"])

# orderflow/services/notifications.py
# Уведомления покупателю: транзакционные письма через Brevo.
# Ошибка отправки никогда не откатывает уже закоммиченный переход.

import enum
import html
import logging
from dataclasses import dataclass
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

BREVO_SMTP_URL = "https://api.brevo.com/v3/smtp/email"


class TemplateKind(str, enum.Enum):
    order_confirmation = "order_confirmation"
    shipping_notification = "shipping_notification"
    order_cancelled = "order_cancelled"
    return_initiated = "return_initiated"
    return_approved = "return_approved"
    return_rejected = "return_rejected"
    refund_processed = "refund_processed"


@dataclass
class NotificationResult:
    success: bool
    id: str | None = None
    error: str | None = None


class Notifier(Protocol):
    def send(self, order_id: str, template_kind: TemplateKind, recipient: str, data: dict) -> NotificationResult:
        ...


def format_cents(cents: int, currency: str = "EUR") -> str:
    return f"{abs(cents) / 100:.2f} {currency}"


SUBJECTS = {
    TemplateKind.order_confirmation: "Order #{order_number} confirmed",
    TemplateKind.shipping_notification: "Your order #{order_number} has shipped",
    TemplateKind.order_cancelled: "Order #{order_number} cancelled",
    TemplateKind.return_initiated: "Return requested for order #{order_number}",
    TemplateKind.return_approved: "Return approved for order #{order_number}",
    TemplateKind.return_rejected: "Return update for order #{order_number}",
    TemplateKind.refund_processed: "Refund processed for order #{order_number}",
}

BODIES = {
    TemplateKind.order_confirmation: "We received your payment of {total}. We will let you know when it ships.",
    TemplateKind.shipping_notification: "Your order is on its way. Tracking number: {tracking_number}.",
    TemplateKind.order_cancelled: "Your order was cancelled.{refund_sentence}",
    TemplateKind.return_initiated: "We received your return request. Please ship the items back before {return_ship_by}.",
    TemplateKind.return_approved: "Your return was approved. The refund will follow shortly.",
    TemplateKind.return_rejected: "Your return request was not accepted. {notes}",
    TemplateKind.refund_processed: (
        "A refund of {refund_amount} was issued to your original payment method.{credit_note_sentence}"
    ),
}


def render(template_kind: TemplateKind, data: dict) -> tuple[str, str]:
    """Возвращает (subject, htmlContent). Вёрстка писем вне этого сервиса, здесь только текст."""
    values = {
        "order_number": data.get("order_number", ""),
        "total": format_cents(data.get("total_amount", 0)),
        "refund_amount": format_cents(data.get("refund_amount") or 0),
        "tracking_number": data.get("tracking_number") or "not available yet",
        "return_ship_by": data.get("return_ship_by") or "",
        "notes": data.get("notes") or "",
    }
    # Отмена неоплаченного заказа: возврата не было, строки про сумму нет
    values["refund_sentence"] = f" Refunded amount: {values['refund_amount']}." if data.get("refund_amount") else ""
    values["credit_note_sentence"] = ""
    if data.get("credit_note_number"):
        values["credit_note_sentence"] = (
            f" Credit note {data['credit_note_number']} for invoice {data.get('invoice_number') or '-'}."
        )
    safe = {k: html.escape(str(v)) for k, v in values.items()}
    subject = SUBJECTS[template_kind].format(**values)
    body = BODIES[template_kind].format(**safe)
    name = html.escape(data.get("customer_name") or "customer")
    return subject, f"<p>Hello {name},</p><p>{body}</p>"


class BrevoNotifier:
    """Отправка через Brevo transactional email API."""

    def __init__(self, api_key: str, sender_email: str, sender_name: str, timeout: float = 10.0):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout

    def send(self, order_id, template_kind, recipient, data):
        subject, html_content = render(template_kind, data)
        payload = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": [{"email": recipient}],
            "subject": subject,
            "htmlContent": html_content,
            "tags": [template_kind.value],
        }
        try:
            resp = requests.post(
                BREVO_SMTP_URL,
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Brevo send failed for order {order_id} ({template_kind.value}): {e}")
            return NotificationResult(success=False, error=str(e))
        message_id = resp.json().get("messageId")
        logger.info(f"Email {template_kind.value} for order {order_id} sent to {recipient}: {message_id}")
        return NotificationResult(success=True, id=message_id)


class LoggingNotifier:
    """Без BREVO_API_KEY (dev) письма только пишутся в лог."""

    def send(self, order_id, template_kind, recipient, data):
        subject, _ = render(template_kind, data)
        logger.info(f"[dev email] to={recipient} order={order_id} subject={subject!r}")
        return NotificationResult(success=True, id=f"log-{order_id}-{template_kind.value}")

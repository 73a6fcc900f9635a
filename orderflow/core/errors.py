# orderflow/core/errors.py
# Иерархия доменных ошибок жизненного цикла заказа.
# Каждая ошибка несёт стабильный code, HTTP-статус и понятное покупателю сообщение.


class OrderflowError(Exception):
    """Базовая ошибка сервиса заказов."""

    code = "error"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        data = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class NotFound(OrderflowError):
    code = "not_found"
    status_code = 404
    default_message = "Order not found"


class Forbidden(OrderflowError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action"


class InvalidTransition(OrderflowError):
    """Текущий статус заказа не допускает запрошенный переход."""

    code = "invalid_transition"
    status_code = 409
    default_message = "This action is not available for the order in its current state"

    def __init__(self, current=None, target=None, message: str | None = None, **details):
        self.current = current
        self.target = target
        if current is not None:
            details.setdefault("current_status", getattr(current, "value", current))
        if target is not None:
            details.setdefault("target_status", getattr(target, "value", target))
        super().__init__(message, **details)


class ReturnWindowExpired(InvalidTransition):
    code = "return_window_expired"
    default_message = "The return window for this order has expired"


class AmountMismatch(OrderflowError):
    code = "amount_mismatch"
    status_code = 422
    default_message = "Refund amount exceeds the remaining refundable total"


class RefundFailed(OrderflowError):
    """Процессор отклонил возврат денег, переход прерван целиком."""

    code = "refund_failed"
    status_code = 502
    default_message = "The refund could not be processed, the order was not changed"

    def __init__(self, message: str | None = None, processor_answered: bool = False, **details):
        # processor_answered: процессор вернул окончательный отказ, а не таймаут/обрыв
        self.processor_answered = processor_answered
        super().__init__(message, **details)


class InsufficientStock(OrderflowError):
    code = "insufficient_stock"
    status_code = 409
    default_message = "Not enough stock"

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class ConcurrencyConflict(OrderflowError):
    """Проиграли гонку на условном обновлении, можно повторить."""

    code = "concurrency_conflict"
    status_code = 409
    default_message = "The order was modified concurrently, please retry"

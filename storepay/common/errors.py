"""Error taxonomy shared by storefront services.

`StorefrontError` subclasses carry the HTTP status and the Russian message the
Mini App renders as-is. `expected` errors are ordinary user outcomes and are
logged at INFO, never as system errors.
"""


class StorefrontError(Exception):
    status_code = 400
    message = "Некорректный запрос"
    expected = True

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.message
        super().__init__(self.message)


class AuthenticationFailed(StorefrontError):
    status_code = 401
    message = "Не авторизован"


class UserBanned(StorefrontError):
    status_code = 403
    message = "Доступ заблокирован"


class ProfileNotFound(StorefrontError):
    status_code = 404
    message = "Пользователь не найден"


class OrderNotFound(StorefrontError):
    status_code = 404
    message = "Заказ не найден"


class ValidationFailed(StorefrontError):
    status_code = 400


class InsufficientBalance(StorefrontError):
    status_code = 400
    message = "Недостаточно средств на балансе"


class OutOfStock(StorefrontError):
    status_code = 409
    message = "Товара нет в наличии"


class PurchaseLimitReached(StorefrontError):
    status_code = 409
    message = "Превышен лимит покупок этого товара"


class OrderStateConflict(StorefrontError):
    status_code = 409
    message = "Заказ уже обработан"


class RateLimited(StorefrontError):
    status_code = 429
    message = "Слишком много запросов, попробуйте через минуту"


class PaymentServiceUnavailable(StorefrontError):
    status_code = 503
    message = "Платёжный сервис временно недоступен, попробуйте позже"
    expected = False


class WebhookRejected(ValueError):
    """Permanent webhook rejection (malformed payload); the gateway must not retry."""


class SignatureInvalid(ValueError):
    """Webhook signature header missing or not matching the body."""

"""Storefront facade: identity resolution plus the wiring of the payment core."""

from storepay.common.config import settings
from storepay.common.errors import AuthenticationFailed, UserBanned
from storepay.common.logging import user_id_ctx
from storepay.common.telegram_auth import TelegramIdentity, verify_init_data
from storepay.services.analytics.service import AnalyticsRecorder
from storepay.services.carts.service import CartService
from storepay.services.checkout.service import CheckoutService
from storepay.services.inventory.service import InventoryService
from storepay.services.ledger.models import Profile
from storepay.services.ledger.service import LedgerService
from storepay.services.orders.service import OrderService
from storepay.services.payments.service import InvoiceService


class StorefrontService:
    """Everything the Mini App endpoints need, built around one session factory."""

    def __init__(self, session_factory, gateways: dict | None = None, bot_token: str | None = None) -> None:
        self.session_factory = session_factory
        self.bot_token = settings.telegram_bot_token if bot_token is None else bot_token
        self.ledger = LedgerService(session_factory)
        self.orders = OrderService(session_factory, self.ledger)
        self.inventory = InventoryService(settings.price_tolerance_kopecks)
        self.carts = CartService(session_factory)
        self.analytics = AnalyticsRecorder(session_factory)
        self.invoices = InvoiceService(session_factory, self.orders, gateways)
        self.checkout = CheckoutService(
            session_factory,
            self.ledger,
            self.orders,
            self.inventory,
            self.carts,
            self.invoices,
            self.analytics,
        )

    def identify(self, init_data: str | None) -> TelegramIdentity:
        identity = None
        if init_data and self.bot_token:
            identity = verify_init_data(init_data, self.bot_token, settings.init_data_max_age_seconds)
        if identity is None:
            raise AuthenticationFailed()
        return identity

    def authenticate(self, init_data: str | None, allow_banned: bool = False) -> Profile:
        """Resolve the verified caller to an existing profile."""

        identity = self.identify(init_data)
        profile = self.ledger.get_profile_by_telegram(identity.telegram_id)
        if profile.is_banned and not allow_banned:
            raise UserBanned()
        user_id_ctx.set(profile.id)
        return profile

    def login(self, init_data: str | None) -> tuple[Profile, bool]:
        """First-launch bootstrap: create or refresh the caller's profile."""

        identity = self.identify(init_data)
        profile, created = self.ledger.upsert_profile(identity)
        user_id_ctx.set(profile.id)
        self.analytics.record(
            "auth",
            profile.id,
            {"telegram_id": identity.telegram_id, "created": created, "language_code": identity.language_code},
        )
        return profile, created

"""Shared fixtures: in-memory database, seeded rows, signed initData, stub gateways."""

import json
import os
import time
from urllib.parse import urlencode

BOT_TOKEN = "123456:TEST-BOT-TOKEN"
CRYPTOBOT_TOKEN = "cryptobot-test-token"
XROCKET_TOKEN = "xrocket-test-token"
API_KEY = "test-api-key"

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", API_KEY)
os.environ.setdefault("TELEGRAM_BOT_TOKEN", BOT_TOKEN)
os.environ.setdefault("CRYPTOBOT_API_TOKEN", CRYPTOBOT_TOKEN)
os.environ.setdefault("XROCKET_API_TOKEN", XROCKET_TOKEN)
os.environ.setdefault("OTEL_ENABLED", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from storepay.common.db import Base  # noqa: E402
from storepay.common.telegram_auth import sign_init_data  # noqa: E402
from storepay.services.analytics import models as analytics_models  # noqa: E402,F401
from storepay.services.carts import models as cart_models  # noqa: E402,F401
from storepay.services.inventory.models import Product  # noqa: E402
from storepay.services.ledger.models import BONUS, Profile  # noqa: E402
from storepay.services.ledger.service import LedgerService  # noqa: E402
from storepay.services.orders import models as order_models  # noqa: E402,F401
from storepay.services.orders.models import METHOD_CRYPTOBOT, METHOD_XROCKET  # noqa: E402
from storepay.services.payments.gateways import CryptoBotClient, XRocketClient  # noqa: E402


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def make_profile(session_factory):
    """Create a profile; a positive balance is funded through a ledger bonus entry."""

    counter = {"next": 1000}

    def _make(balance_kopecks: int = 0, telegram_id: int | None = None, first_name: str = "Иван", **fields):
        counter["next"] += 1
        with session_factory() as db:
            profile = Profile(
                telegram_id=telegram_id or counter["next"],
                first_name=first_name,
                balance_kopecks=0,
                ledger_sequence=0,
                **fields,
            )
            db.add(profile)
            db.commit()
            if balance_kopecks:
                ledger = LedgerService(session_factory)
                locked = ledger.lock_profile(db, profile.id)
                ledger.post_entry(db, locked, BONUS, balance_kopecks, "Стартовый баланс")
                db.commit()
                profile = locked
            return profile

    return _make


@pytest.fixture
def make_product(session_factory):
    def _make(name: str = "VPN ключ", price_kopecks: int = 30000, stock: int | None = None, max_per_user: int = 0):
        with session_factory() as db:
            product = Product(
                name=name, price_kopecks=price_kopecks, stock=stock, max_per_user=max_per_user, is_active=True
            )
            db.add(product)
            db.commit()
            return product

    return _make


def make_init_data(telegram_id: int, bot_token: str = BOT_TOKEN, auth_date: int | None = None, **user_fields) -> str:
    """Build a Mini App launch string signed the way Telegram signs it."""

    user = {"id": telegram_id, "first_name": "Иван", "username": "ivan", "language_code": "ru", **user_fields}
    fields = {
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps(user, ensure_ascii=False, separators=(",", ":")),
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
    }
    fields["hash"] = sign_init_data(fields, bot_token)
    return urlencode(fields)


class GatewayStub:
    """`httpx.MockTransport` handler imitating CryptoBot and xRocket."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.fail = False
        self.rate = "95.5"
        self.next_invoice = 700

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.fail:
            raise httpx.ConnectError("gateway down", request=request)
        path = request.url.path
        if path.endswith("/getExchangeRates"):
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": [
                        {"is_valid": True, "source": "TON", "target": "RUB", "rate": "500"},
                        {"is_valid": True, "source": "USDT", "target": "RUB", "rate": self.rate},
                    ],
                },
            )
        self.next_invoice += 1
        if path.endswith("/createInvoice"):
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": {
                        "invoice_id": self.next_invoice,
                        "pay_url": f"https://t.me/CryptoBot?start=IV{self.next_invoice}",
                        "mini_app_invoice_url": f"https://t.me/CryptoBot/app?startapp=invoice-IV{self.next_invoice}",
                        "expiration_date": "2026-10-16T12:00:00.000Z",
                    },
                },
            )
        if path.endswith("/tg-invoices"):
            return httpx.Response(
                201,
                json={
                    "success": True,
                    "data": {"id": self.next_invoice, "link": f"https://t.me/xrocket?start={self.next_invoice}"},
                },
            )
        return httpx.Response(404, json={"ok": False})

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [call for call in self.calls if call.url.path.endswith(suffix)]


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateways(gateway_stub):
    transport = httpx.MockTransport(gateway_stub.handler)
    return {
        METHOD_CRYPTOBOT: CryptoBotClient(CRYPTOBOT_TOKEN, "https://pay.crypt.bot/api", transport=transport),
        METHOD_XROCKET: XRocketClient(XROCKET_TOKEN, "https://pay.xrocket.tg", transport=transport),
    }

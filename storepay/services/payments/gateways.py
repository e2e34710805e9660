"""HTTP clients for the two crypto invoice gateways (CryptoBot, xRocket).

Both gateways sign webhooks the same way: hex HMAC-SHA-256 of the raw body,
keyed with SHA-256 of the API token. Invoice creation is never retried here;
every call may mint a new payable invoice.
"""

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal

import httpx

from storepay.common.config import settings
from storepay.common.errors import PaymentServiceUnavailable
from storepay.common.logging import logger
from storepay.common.metrics import gateway_failures_total
from storepay.services.orders.models import METHOD_CRYPTOBOT, METHOD_XROCKET


@dataclass(frozen=True)
class GatewayInvoice:
    invoice_id: str
    pay_url: str
    mini_app_url: str | None = None
    expires_at: str | None = None


def compute_webhook_signature(body: bytes, api_token: str) -> str:
    key = hashlib.sha256(api_token.encode()).digest()
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, api_token: str) -> bool:
    if not signature or not api_token:
        return False
    return hmac.compare_digest(compute_webhook_signature(body, api_token), signature.strip().lower())


class _GatewayClient:
    name = ""
    auth_header = ""
    signature_header = ""

    def __init__(self, api_token: str, api_url: str, timeout: float = 10.0, transport=None) -> None:
        self.api_token = api_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _call(self, operation: str, method: str, path: str, json_body: dict | None = None) -> dict:
        if not self.api_token:
            gateway_failures_total.labels(service=settings.service_name, gateway=self.name, operation=operation).inc()
            logger.error("gateway not configured gateway=%s", self.name)
            raise PaymentServiceUnavailable()
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.request(
                    method,
                    f"{self.api_url}{path}",
                    headers={self.auth_header: self.api_token},
                    json=json_body,
                )
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            gateway_failures_total.labels(service=settings.service_name, gateway=self.name, operation=operation).inc()
            logger.error("gateway call failed gateway=%s operation=%s error=%s", self.name, operation, exc)
            raise PaymentServiceUnavailable() from exc

    def _rejected(self, operation: str, data) -> PaymentServiceUnavailable:
        gateway_failures_total.labels(service=settings.service_name, gateway=self.name, operation=operation).inc()
        logger.error("gateway rejected gateway=%s operation=%s response=%s", self.name, operation, data)
        return PaymentServiceUnavailable()


class CryptoBotClient(_GatewayClient):
    """Crypto Pay API (`@CryptoBot`)."""

    name = METHOD_CRYPTOBOT
    auth_header = "Crypto-Pay-API-Token"
    signature_header = "crypto-pay-api-signature"

    def exchange_rates(self) -> list[dict]:
        data = self._call("get_exchange_rates", "GET", "/getExchangeRates")
        if not isinstance(data, dict) or not data.get("ok") or not isinstance(data.get("result"), list):
            raise self._rejected("get_exchange_rates", data)
        return data["result"]

    def create_invoice(
        self, amount: Decimal, asset: str, description: str, payload: str, expires_in: int
    ) -> GatewayInvoice:
        data = self._call(
            "create_invoice",
            "POST",
            "/createInvoice",
            {
                "asset": asset,
                "amount": str(amount),
                "description": description,
                "hidden_message": "Спасибо за оплату! Баланс обновлён.",
                "payload": payload,
                "allow_comments": False,
                "allow_anonymous": False,
                "expires_in": expires_in,
            },
        )
        if not isinstance(data, dict) or not data.get("ok") or not isinstance(data.get("result"), dict):
            raise self._rejected("create_invoice", data)
        result = data["result"]
        return GatewayInvoice(
            invoice_id=str(result["invoice_id"]),
            pay_url=result.get("pay_url") or result.get("bot_invoice_url", ""),
            mini_app_url=result.get("mini_app_invoice_url"),
            expires_at=result.get("expiration_date"),
        )


class XRocketClient(_GatewayClient):
    """xRocket Pay API (`@xRocket`)."""

    name = METHOD_XROCKET
    auth_header = "Rocket-Pay-Key"
    signature_header = "rocket-pay-signature"

    def create_invoice(
        self, amount: Decimal, asset: str, description: str, payload: str, expires_in: int
    ) -> GatewayInvoice:
        data = self._call(
            "create_invoice",
            "POST",
            "/tg-invoices",
            {
                "amount": float(amount),
                "currency": asset,
                "description": description,
                "payload": payload,
                "expiredIn": expires_in,
                "callbackUrl": f"{settings.public_base_url.rstrip('/')}/webhooks/xrocket",
            },
        )
        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("data"), dict):
            raise self._rejected("create_invoice", data)
        result = data["data"]
        return GatewayInvoice(invoice_id=str(result["id"]), pay_url=result.get("link", ""))


def build_gateways(transport=None) -> dict[str, _GatewayClient]:
    return {
        METHOD_CRYPTOBOT: CryptoBotClient(
            settings.cryptobot_api_token, settings.cryptobot_api_url, settings.gateway_timeout_seconds, transport
        ),
        METHOD_XROCKET: XRocketClient(
            settings.xrocket_api_token, settings.xrocket_api_url, settings.gateway_timeout_seconds, transport
        ),
    }

"""Gateway webhook bodies and the correlation payload we embed in invoices."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

INVOICE_PAID = "invoice_paid"
XROCKET_PAID = "paid"


class CorrelationPayload(BaseModel):
    """Opaque invoice payload echoed back by the gateway."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(alias="userId", min_length=1)
    order_id: str | None = Field(default=None, alias="orderId")
    amount_rub: Decimal = Field(alias="amountRub", gt=0)
    balance_to_use: Decimal = Field(default=Decimal("0"), alias="balanceToUse", ge=0)
    items: list[dict[str, Any]] | None = None

    @field_validator("amount_rub", "balance_to_use")
    @classmethod
    def finite(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("amount must be finite")
        return value


class CryptoBotInvoice(BaseModel):
    invoice_id: int | str
    status: str | None = None
    asset: str | None = None
    amount: str | None = None
    payload: str | None = None


class CryptoBotUpdate(BaseModel):
    """`POST /webhooks/cryptobot` body."""

    update_id: int | None = None
    update_type: str
    payload: CryptoBotInvoice | None = None


class XRocketInvoice(BaseModel):
    """xRocket invoice object; delivered bare or wrapped in `data`."""

    id: int | str
    status: str
    currency: str | None = None
    amount: Decimal | None = None
    payload: str | None = None

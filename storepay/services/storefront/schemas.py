"""Request/response schemas for the Mini App endpoints (camelCase on the wire)."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storepay.common.money import to_kopecks
from storepay.services.inventory.service import LineRequest
from storepay.services.orders.models import METHOD_BALANCE, METHOD_CRYPTOBOT


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CartItem(CamelModel):
    product_id: str = Field(alias="productId", min_length=1)
    product_name: str = Field(default="", alias="productName")
    price: Decimal | None = Field(default=None, ge=0)
    quantity: int = Field(default=1, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)

    def to_line(self) -> LineRequest:
        return LineRequest(
            product_id=self.product_id,
            product_name=self.product_name,
            quantity=self.quantity,
            price_kopecks=to_kopecks(self.price) if self.price is not None else None,
            options=dict(self.options),
        )


class AuthRequest(CamelModel):
    init_data: str = Field(alias="initData")


class CheckoutRequest(CamelModel):
    """Payload accepted by `POST /checkout`."""

    init_data: str = Field(alias="initData")
    items: list[CartItem] = Field(min_length=1)
    total: Decimal = Field(gt=0)
    balance_to_use: Decimal = Field(default=Decimal("0"), alias="balanceToUse", ge=0)
    payment_method: str = Field(default=METHOD_BALANCE, alias="paymentMethod")


class InvoiceRequest(CamelModel):
    """Payload accepted by `POST /payments/invoice`."""

    init_data: str = Field(alias="initData")
    amount: Decimal = Field(gt=0)
    description: str | None = Field(default=None, max_length=1024)
    order_id: str | None = Field(default=None, alias="orderId")
    balance_to_use: Decimal = Field(default=Decimal("0"), alias="balanceToUse", ge=0)
    payment_method: str = Field(default=METHOD_CRYPTOBOT, alias="paymentMethod")


class CartSyncRequest(CamelModel):
    init_data: str = Field(alias="initData")
    items: list[CartItem] = Field(default_factory=list)
    total: Decimal = Field(default=Decimal("0"), ge=0)


class CancelRequest(CamelModel):
    init_data: str = Field(alias="initData")

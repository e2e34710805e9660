"""Live-catalog validation and stock decrements for checkout units."""

from collections import OrderedDict
from dataclasses import dataclass, field

from sqlalchemy import func, select, update

from storepay.common.errors import OutOfStock, PurchaseLimitReached, ValidationFailed
from storepay.common.state_machine import COMPLETED, PAID
from storepay.services.inventory.models import Product
from storepay.services.orders.models import Order, OrderItem


@dataclass(frozen=True)
class LineRequest:
    """One requested cart line as the client described it."""

    product_id: str
    product_name: str
    quantity: int
    price_kopecks: int | None = None
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PricedLine:
    """A line priced from the live catalog; becomes an `OrderItem` snapshot."""

    product_id: str
    product_name: str
    unit_price_kopecks: int
    quantity: int
    options: dict

    @property
    def line_total_kopecks(self) -> int:
        return self.unit_price_kopecks * self.quantity


class InventoryService:
    """Prices lines, enforces stock and per-user limits, decrements stock."""

    def __init__(self, price_tolerance_kopecks: int = 100) -> None:
        self.price_tolerance_kopecks = price_tolerance_kopecks

    def load_products(self, db, product_ids, lock: bool = False) -> dict[str, Product]:
        """Fetch products by id; with `lock`, rows are locked in id order."""

        ids = sorted(set(product_ids))
        if not ids:
            return {}
        stmt = select(Product).where(Product.id.in_(ids)).order_by(Product.id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return {product.id: product for product in db.execute(stmt).scalars().all()}

    def price_lines(
        self, db, lines: list[LineRequest], claimed_total_kopecks: int, lock: bool = False
    ) -> tuple[list[PricedLine], dict[str, Product]]:
        """Snapshot live prices and reject lines or totals that drifted from the catalog.

        A line without a client price is checked only through the total.
        """

        if not lines:
            raise ValidationFailed("Корзина пуста")
        products = self.load_products(db, [line.product_id for line in lines], lock=lock)
        priced = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationFailed(f'Некорректное количество товара "{line.product_name}"')
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ValidationFailed(f'Товар "{line.product_name}" не найден')
            if (
                line.price_kopecks is not None
                and abs(product.price_kopecks - line.price_kopecks) > self.price_tolerance_kopecks
            ):
                raise ValidationFailed("Сумма не совпадает с реальными ценами товаров")
            priced.append(
                PricedLine(
                    product_id=product.id,
                    product_name=line.product_name or product.name,
                    unit_price_kopecks=product.price_kopecks,
                    quantity=line.quantity,
                    options=dict(line.options or {}),
                )
            )
        calculated = sum(line.line_total_kopecks for line in priced)
        if abs(calculated - claimed_total_kopecks) > self.price_tolerance_kopecks:
            raise ValidationFailed("Сумма не совпадает с реальными ценами товаров")
        return priced, products

    def check_availability(self, db, user_id: str, lines: list[PricedLine], products: dict[str, Product]) -> None:
        """Raise `OutOfStock` / `PurchaseLimitReached` for the first failing product."""

        for product_id, quantity, name in self._per_product(lines):
            product = products[product_id]
            if product.stock is not None and product.stock < quantity:
                raise OutOfStock(f'Товар "{name}" — в наличии только {product.stock} шт')
            if product.max_per_user > 0:
                bought = self.purchased_quantity(db, user_id, product_id)
                if bought + quantity > product.max_per_user:
                    raise PurchaseLimitReached(f'Товар "{name}" можно купить только {product.max_per_user} раз(а)')

    def purchased_quantity(self, db, user_id: str, product_id: str) -> int:
        return int(
            db.execute(
                select(func.coalesce(func.sum(OrderItem.quantity), 0))
                .join(Order, Order.id == OrderItem.order_id)
                .where(
                    Order.user_id == user_id,
                    Order.status.in_((PAID, COMPLETED)),
                    OrderItem.product_id == product_id,
                )
            ).scalar_one()
        )

    def decrement(self, db, lines: list[PricedLine], products: dict[str, Product]) -> None:
        """Guarded `stock = stock - qty WHERE stock >= qty`; zero rows means a lost race."""

        for product_id, quantity, name in self._per_product(lines):
            if products[product_id].stock is None:
                continue
            result = db.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock.is_not(None), Product.stock >= quantity)
                .values(stock=Product.stock - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise OutOfStock(f'Товар "{name}" закончился')

    def reserve(self, db, user_id: str, lines: list[PricedLine], products: dict[str, Product]) -> None:
        self.check_availability(db, user_id, lines, products)
        self.decrement(db, lines, products)

    @staticmethod
    def _per_product(lines: list[PricedLine]):
        totals: OrderedDict[str, list] = OrderedDict()
        for line in lines:
            entry = totals.setdefault(line.product_id, [0, line.product_name])
            entry[0] += line.quantity
        return [(product_id, quantity, name) for product_id, (quantity, name) in totals.items()]

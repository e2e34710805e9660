"""Catalog rows the payment core reads and decrements.

The catalog itself is managed elsewhere; only price, stock and purchase limits
matter here.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, utcnow


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock IS NULL OR stock >= 0", name="ck_products_stock_non_negative"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    price_kopecks: Mapped[int] = mapped_column(BigInteger)
    # NULL stock means unlimited (digital goods delivered from a file).
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_per_user: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

"""Cart session persistence (one row per user)."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, JSONType, utcnow


class CartSession(Base):
    """Last synced cart snapshot; `content_version` bumps when the items change."""

    __tablename__ = "cart_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), unique=True, index=True)
    items: Mapped[list] = mapped_column(JSONType, default=list)
    total_kopecks: Mapped[int] = mapped_column(BigInteger, default=0)
    content_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

"""Server side of cart synchronization (one session row per user)."""

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from storepay.common.db import utcnow
from storepay.common.logging import logger
from storepay.common.metrics import cart_syncs_total
from storepay.services.carts.models import CartSession

CREATED = "created"
UPDATED = "updated"
CLEARED = "cleared"


class CartService:
    """Upserts cart snapshots and tracks `content_version` for the reminder sweep."""

    def __init__(self, session_factory, service_name: str = "carts") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def sync(self, user_id: str, items: list[dict], total_kopecks: int) -> str:
        """Store the latest cart; returns `created`, `updated` or `cleared`.

        A changed item list bumps `content_version` and re-arms the reminder.
        Re-sending the same list only refreshes `updated_at`.
        """

        with self.session_factory() as db:
            if not items:
                self.clear(db, user_id)
                db.commit()
                action = CLEARED
            else:
                action = self._upsert(db, user_id, items, total_kopecks)
        cart_syncs_total.labels(service=self.service_name, action=action).inc()
        return action

    def _upsert(self, db, user_id: str, items: list[dict], total_kopecks: int) -> str:
        session = self._lock(db, user_id)
        if session is None:
            db.add(
                CartSession(
                    user_id=user_id,
                    items=items,
                    total_kopecks=total_kopecks,
                    content_version=1,
                    reminder_sent=False,
                )
            )
            try:
                db.commit()
                return CREATED
            except IntegrityError:
                # Concurrent first sync for this user; fall through to update.
                db.rollback()
                session = self._lock(db, user_id)

        if session.items != items:
            session.items = items
            session.content_version += 1
            session.reminder_sent = False
            session.reminder_sent_at = None
        session.total_kopecks = total_kopecks
        session.updated_at = utcnow()
        db.commit()
        return UPDATED

    def clear(self, db, user_id: str) -> bool:
        """Delete the user's session inside the caller's transaction."""

        result = db.execute(
            delete(CartSession).where(CartSession.user_id == user_id).execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("cart cleared user_id=%s", user_id)
        return bool(result.rowcount)

    def get(self, user_id: str) -> CartSession | None:
        with self.session_factory() as db:
            return db.execute(select(CartSession).where(CartSession.user_id == user_id)).scalar_one_or_none()

    def _lock(self, db, user_id: str) -> CartSession | None:
        return db.execute(
            select(CartSession)
            .where(CartSession.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

"""Best-effort analytics recorder."""

from sqlalchemy.exc import SQLAlchemyError

from storepay.common.logging import logger
from storepay.services.analytics.models import AnalyticsEvent


class AnalyticsRecorder:
    """Writes analytics rows in their own session; failures are logged, never raised."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record(self, event_type: str, user_id: str | None, data: dict) -> bool:
        try:
            with self.session_factory() as db:
                db.add(AnalyticsEvent(user_id=user_id, event_type=event_type, event_data=data))
                db.commit()
            return True
        except SQLAlchemyError as exc:
            logger.warning("analytics_write_failed event_type=%s user_id=%s error=%s", event_type, user_id, exc)
            return False

"""
Audit trail of application activity, stored in the database.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from directory_sync.models import ActivityLog

logger = logging.getLogger(__name__)

MAX_DETAILS_LENGTH = 2000

CATEGORY_AUTH = 'Auth'
CATEGORY_AD_SYNC = 'ADSync'
CATEGORY_USER_MANAGEMENT = 'UserManagement'
CATEGORY_SYSTEM = 'System'


class ActivityLogService:
    """Writes activity log entries; a failed write is logged and never raised."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def log(
        self,
        action: str,
        details: str,
        performed_by: str,
        category: str,
        ip_address: Optional[str] = None,
        status: str = 'Success'
    ) -> bool:
        """
        Record one activity.

        Returns:
            True if the entry was written
        """
        details = details or ''
        if len(details) > MAX_DETAILS_LENGTH:
            details = details[:MAX_DETAILS_LENGTH]

        entry = ActivityLog(
            action=action[:100],
            details=details,
            performed_by=performed_by,
            category=category,
            ip_address=ip_address,
            status=status
        )

        session = None
        try:
            session = self.session_factory()
            session.add(entry)
            session.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to write activity log: {action} by {performed_by}: {e}")
            if session is not None:
                try:
                    session.rollback()
                except SQLAlchemyError as rollback_error:
                    logger.debug(f"Rollback after failed activity log write failed: {rollback_error}")
            return False
        finally:
            if session is not None:
                session.close()

    def clear_all(self) -> int:
        """Delete every activity log entry and return how many were removed."""
        with self.session_factory() as session:
            try:
                count = session.execute(delete(ActivityLog)).rowcount
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to clear activity logs: {e}")
                raise
        logger.info(f"All activity logs cleared ({count} records).")
        return count

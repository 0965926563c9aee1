"""Portal audit log - best-effort record of actions taken through the portals"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import PortalActionLog

logger = logging.getLogger(__name__)


class PortalAuditLog:
    def __init__(self, db: Session):
        self.db = db

    def log_portal_action(
        self,
        portal_type: str,
        portal_id: Optional[str],
        action: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        details: Optional[dict] = None,
    ) -> None:
        """Insert an audit row; failures are logged and never raised"""
        try:
            self.db.add(
                PortalActionLog(
                    portal_type=portal_type,
                    portal_id=portal_id,
                    action=action,
                    ip_address=ip_address or "unknown",
                    user_agent=(user_agent or "unknown")[:500],
                    details=details,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Failed to write portal audit log ({portal_type}/{action}): {e}")

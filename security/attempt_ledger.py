import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.login_attempt import LoginAttempt, OUTCOME_FAILURE, OUTCOME_SUCCESS
from security.errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


class AttemptLedger:
    """Append-only log of login attempts."""

    def record(self, address: str, username: str, outcome: str, timestamp: datetime) -> int:
        if outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILURE):
            raise ValueError(f"Unknown login outcome: {outcome!r}")

        row = LoginAttempt(
            timestamp=timestamp,
            address=address,
            username=(username or "")[:150],
            outcome=outcome,
        )
        try:
            db.session.add(row)
            db.session.commit()
            return row.id
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Could not record login attempt for %s: %s", address, exc)
            raise StorageUnavailable("Attempt ledger unavailable") from exc

    def recent_failure_streak(self, address: str, since: Optional[datetime] = None) -> int:
        """
        Consecutive failures from ``address`` after its last success and
        after ``since`` (the last lockout clearance). Audit views only;
        lockout decisions use the counter in the lockout store.
        """
        try:
            last_success_id = db.session.execute(
                select(func.max(LoginAttempt.id))
                .where(LoginAttempt.address == address, LoginAttempt.outcome == OUTCOME_SUCCESS)
            ).scalar()

            stmt = (
                select(func.count(LoginAttempt.id))
                .where(LoginAttempt.address == address, LoginAttempt.outcome == OUTCOME_FAILURE)
            )
            if last_success_id is not None:
                stmt = stmt.where(LoginAttempt.id > last_success_id)
            if since is not None:
                stmt = stmt.where(LoginAttempt.timestamp > since)
            return int(db.session.execute(stmt).scalar() or 0)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Attempt ledger unavailable") from exc

    def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[LoginAttempt]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        try:
            return list(
                db.session.execute(
                    select(LoginAttempt)
                    .order_by(LoginAttempt.timestamp.desc(), LoginAttempt.id.desc())
                    .limit(limit)
                ).scalars()
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Attempt ledger unavailable") from exc

    def prune(self, older_than: datetime) -> int:
        try:
            result = db.session.execute(
                delete(LoginAttempt).where(LoginAttempt.timestamp < older_than)
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Attempt ledger unavailable") from exc

        logger.info("Pruned %d login attempts older than %s", result.rowcount, older_than.isoformat())
        return result.rowcount

"""Per-address lockout state.

Every mutation goes through ``LockoutStore._mutate``: the address's
stripe lock serializes writers inside this process, and the write itself
is ``UPDATE ... WHERE address = :a AND version = :v`` so a writer in
another process holding a stale read loses and retries instead of
overwriting. Losing more than ``max_retries`` times raises
ConcurrencyConflict, which the engine treats as storage failure.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.lockout import LockoutRecord
from security.errors import ConcurrencyConflict, StorageUnavailable

logger = logging.getLogger(__name__)

# 2**16 lockout periods is already years; beyond that datetime overflows
MAX_ESCALATION_EXPONENT = 16

_CONFLICT = object()


@dataclass(frozen=True)
class LockoutState:
    address: str
    failure_count: int = 0
    lockout_until: Optional[datetime] = None
    escalation_level: int = 0
    last_failure_at: Optional[datetime] = None
    cleared_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: LockoutRecord) -> "LockoutState":
        return cls(
            address=row.address,
            failure_count=row.failure_count,
            lockout_until=row.lockout_until,
            escalation_level=row.escalation_level,
            last_failure_at=row.last_failure_at,
            cleared_at=row.cleared_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_until is not None and self.lockout_until > now

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "address": self.address,
            "failure_count": self.failure_count,
            "lockout_until": iso(self.lockout_until),
            "escalation_level": self.escalation_level,
            "last_failure_at": iso(self.last_failure_at),
            "cleared_at": iso(self.cleared_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass(frozen=True)
class FailureResult:
    state: LockoutState
    lockout_triggered: bool


class _StripedLocks:
    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_address(self, address: str) -> threading.Lock:
        return self._locks[hash(address) % len(self._locks)]


# shared by every store instance; stores are rebuilt when settings change
_ADDRESS_LOCKS = _StripedLocks()


class LockoutStore:
    def __init__(self, config, max_retries: int = 5, backoff_seconds: float = 0.01):
        self._config = config
        self._max_retries = max(0, int(max_retries))
        self._backoff = max(0.0, float(backoff_seconds))

    def duration_minutes(self, level: int) -> int:
        base = self._config.lockout_duration_minutes
        if not self._config.progressive_lockout:
            return base
        return base * 2 ** min(max(level, 0), MAX_ESCALATION_EXPONENT)

    def get(self, address: str) -> Optional[LockoutState]:
        try:
            row = db.session.execute(
                select(LockoutRecord)
                .where(LockoutRecord.address == address)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Lockout store unavailable") from exc
        return LockoutState.from_row(row) if row else None

    def list_active(self, now: datetime) -> List[LockoutState]:
        try:
            rows = db.session.execute(
                select(LockoutRecord)
                .where(LockoutRecord.lockout_until > now)
                .order_by(LockoutRecord.lockout_until.desc())
            ).scalars()
            return [LockoutState.from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Lockout store unavailable") from exc

    def try_record_failure(self, address: str, now: datetime) -> FailureResult:
        cfg = self._config

        def change(state: LockoutState):
            # admitted before the lock tripped; counting it would escalate twice
            if state.is_locked(now):
                return None, False

            failure_count = state.failure_count
            lockout_until = state.lockout_until

            # natural expiry: the address starts over
            if lockout_until is not None:
                failure_count = 0
                lockout_until = None

            if (
                cfg.failure_window_minutes
                and state.last_failure_at is not None
                and now - state.last_failure_at > timedelta(minutes=cfg.failure_window_minutes)
            ):
                failure_count = 0

            failure_count += 1
            level = state.escalation_level
            triggered = False
            if failure_count >= cfg.max_attempts:
                lockout_until = now + timedelta(minutes=self.duration_minutes(level))
                level += 1
                failure_count = 0
                triggered = True

            new_state = replace(
                state,
                failure_count=failure_count,
                lockout_until=lockout_until,
                escalation_level=level,
                last_failure_at=now,
                updated_at=now,
            )
            return new_state, triggered

        state, triggered = self._mutate(address, now, change, create=True)
        return FailureResult(state=state, lockout_triggered=bool(triggered))

    def record_success(self, address: str, now: datetime) -> Optional[LockoutState]:
        def change(state: LockoutState):
            lockout_until = state.lockout_until
            if lockout_until is not None and lockout_until <= now:
                lockout_until = None
            if state.failure_count == 0 and lockout_until == state.lockout_until:
                return None, None
            return replace(state, failure_count=0, lockout_until=lockout_until, updated_at=now), None

        state, _ = self._mutate(address, now, change, create=False)
        return state

    def clear(self, address: str, now: datetime) -> Optional[LockoutState]:
        def change(state: LockoutState):
            return replace(
                state,
                failure_count=0,
                lockout_until=None,
                escalation_level=0,
                cleared_at=now,
                updated_at=now,
            ), None

        state, _ = self._mutate(address, now, change, create=False)
        return state

    def _mutate(
        self,
        address: str,
        now: datetime,
        change: Callable[[LockoutState], Tuple[Optional[LockoutState], object]],
        create: bool,
    ):
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            with _ADDRESS_LOCKS.for_address(address):
                try:
                    outcome = self._apply(address, now, change, create)
                except IntegrityError:
                    # another writer inserted the row first
                    db.session.rollback()
                    outcome = _CONFLICT
                except SQLAlchemyError as exc:
                    db.session.rollback()
                    logger.error("Lockout store write failed for %s: %s", address, exc)
                    raise StorageUnavailable("Lockout store unavailable") from exc

            if outcome is not _CONFLICT:
                return outcome
            if attempt < attempts - 1:
                time.sleep(self._backoff * (2 ** attempt))

        logger.error(
            "Lockout update for %s lost %d guarded-update races; failing closed",
            address, attempts,
        )
        raise ConcurrencyConflict(address, attempts)

    def _apply(self, address, now, change, create):
        row = db.session.execute(
            select(LockoutRecord)
            .where(LockoutRecord.address == address)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if row is None:
            if not create:
                return None, None
            new_state, extra = change(LockoutState(address=address, created_at=now, updated_at=now))
            if new_state is None:
                return None, extra
            db.session.add(LockoutRecord(version=1, **_columns(new_state)))
            db.session.commit()
            return new_state, extra

        current = LockoutState.from_row(row)
        new_state, extra = change(current)
        if new_state is None:
            return current, extra

        values = _columns(new_state)
        values.pop("address")
        values.pop("created_at")
        result = db.session.execute(
            update(LockoutRecord)
            .where(LockoutRecord.address == address, LockoutRecord.version == row.version)
            .values(version=row.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            return _CONFLICT
        db.session.commit()
        return new_state, extra


def _columns(state: LockoutState) -> dict:
    return {
        "address": state.address,
        "failure_count": state.failure_count,
        "lockout_until": state.lockout_until,
        "escalation_level": state.escalation_level,
        "last_failure_at": state.last_failure_at,
        "cleared_at": state.cleared_at,
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }

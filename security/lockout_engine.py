"""Admission decisions and outcome accounting for login attempts.

Per address::

    Clear --failure--> Accumulating(n) --failure, n+1 == max--> Locked(level+1)
    Locked --lockout_until passes--> Clear
    any --success while admitted--> Clear

Expiry is lazy: nothing sweeps the store, ``check_admission`` simply
compares ``lockout_until`` with ``now``.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from models.login_attempt import LoginAttempt, OUTCOME_FAILURE, OUTCOME_SUCCESS
from security.attempt_ledger import AttemptLedger
from security.errors import StorageUnavailable
from security.ip_policy import IPPolicy, PolicyVerdict
from security.lockout_store import LockoutState, LockoutStore
from security.notifications import NotificationBridge, NotificationEvent, NotificationPayload

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    SUCCESS = OUTCOME_SUCCESS
    FAILURE = OUTCOME_FAILURE


class DenyReason(str, enum.Enum):
    BLACKLISTED = "blacklisted"
    LOCKED = "locked"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    retry_after: Optional[datetime] = None
    verdict: PolicyVerdict = PolicyVerdict.UNLISTED

    @classmethod
    def allow(cls, verdict: PolicyVerdict = PolicyVerdict.UNLISTED) -> "Decision":
        return cls(allowed=True, verdict=verdict)

    @classmethod
    def deny(cls, reason: DenyReason, retry_after: Optional[datetime] = None,
             verdict: PolicyVerdict = PolicyVerdict.UNLISTED) -> "Decision":
        return cls(allowed=False, reason=reason, retry_after=retry_after, verdict=verdict)


@dataclass(frozen=True)
class OutcomeReport:
    attempt_id: int
    exempt: bool = False
    state: Optional[LockoutState] = None
    lockout_triggered: bool = False


class LockoutEngine:
    def __init__(
        self,
        config,
        policy: IPPolicy,
        ledger: AttemptLedger,
        store: LockoutStore,
        notifications: NotificationBridge,
    ):
        self._config = config
        self._policy = policy
        self._ledger = ledger
        self._store = store
        self._notifications = notifications

    @property
    def config(self):
        return self._config

    def check_admission(self, address: str, now: datetime) -> Decision:
        verdict = self._policy.evaluate(address)
        if verdict is PolicyVerdict.WHITELISTED:
            return Decision.allow(verdict)
        if verdict is PolicyVerdict.BLACKLISTED:
            logger.info("Denied login from blacklisted address %s", address)
            return Decision.deny(DenyReason.BLACKLISTED, verdict=verdict)

        if not self._config.limit_login_enabled:
            return Decision.allow(verdict)

        try:
            state = self._store.get(address)
        except StorageUnavailable:
            logger.error("Lockout store unavailable; denying login from %s", address)
            return Decision.deny(DenyReason.UNAVAILABLE, verdict=verdict)

        if state is not None and state.is_locked(now):
            logger.info("Denied login from locked address %s until %s", address, state.lockout_until.isoformat())
            return Decision.deny(DenyReason.LOCKED, retry_after=state.lockout_until, verdict=verdict)

        return Decision.allow(verdict)

    def report_outcome(
        self,
        address: str,
        username: str,
        outcome: Outcome,
        now: datetime,
        elevated: bool = False,
        admission_verdict: Optional[PolicyVerdict] = None,
    ) -> OutcomeReport:
        """
        Records an attempt after the credential check. Raises
        StorageUnavailable when the ledger or store cannot be written; the
        caller must then refuse to complete the login.

        ``admission_verdict`` is the verdict from ``check_admission`` for
        this attempt; a whitelist edit in between does not change how the
        attempt is counted. Without it the address is evaluated now.
        """
        outcome = Outcome(outcome)
        attempt_id = self._ledger.record(address, username, outcome.value, now)

        verdict = admission_verdict if admission_verdict is not None else self._policy.evaluate(address)
        if verdict is PolicyVerdict.WHITELISTED:
            return OutcomeReport(attempt_id=attempt_id, exempt=True)

        if outcome is Outcome.FAILURE:
            return self._report_failure(attempt_id, address, username, now)

        state = None
        if self._config.limit_login_enabled:
            state = self._store.record_success(address, now)

        if self._config.notify_on.success and elevated:
            self._notify(NotificationEvent.LOGIN_SUCCESS, address, username, now)
        return OutcomeReport(attempt_id=attempt_id, state=state)

    def _report_failure(self, attempt_id, address, username, now) -> OutcomeReport:
        cfg = self._config

        if not cfg.limit_login_enabled:
            if cfg.notify_on.failure:
                streak = self._ledger.recent_failure_streak(address)
                if streak >= cfg.failure_alert_threshold:
                    self._notify(NotificationEvent.LOGIN_FAILED, address, username, now, failure_count=streak)
            return OutcomeReport(attempt_id=attempt_id)

        result = self._store.try_record_failure(address, now)
        state = result.state

        if result.lockout_triggered:
            duration = self._store.duration_minutes(state.escalation_level - 1)
            logger.warning(
                "Address %s locked out for %d minutes (escalation level %d)",
                address, duration, state.escalation_level,
            )
            if cfg.notify_on.lockout:
                self._notify(
                    NotificationEvent.LOCKOUT, address, username, now,
                    escalation_level=state.escalation_level,
                    lockout_until=state.lockout_until.isoformat(),
                    duration_minutes=duration,
                )
        elif cfg.notify_on.failure and state.failure_count >= cfg.failure_alert_threshold:
            self._notify(
                NotificationEvent.LOGIN_FAILED, address, username, now,
                failure_count=state.failure_count,
            )

        return OutcomeReport(attempt_id=attempt_id, state=state, lockout_triggered=result.lockout_triggered)

    def _notify(self, event, address, username, now, **data):
        self._notifications.notify(
            event,
            NotificationPayload(address=address, username=username, timestamp=now, data=data),
        )

    # Administrative operations

    def list_active_lockouts(self, now: datetime) -> List[LockoutState]:
        return self._store.list_active(now)

    def unlock(self, address: str, now: datetime) -> Optional[LockoutState]:
        state = self._store.clear(address, now)
        logger.info("Address %s unlocked manually", address)
        return state

    def list_recent_attempts(self, limit: int = 100) -> List[LoginAttempt]:
        return self._ledger.list_recent(limit)

    def inspect(self, address: str, now: datetime) -> dict:
        """Full detail for admin views; never shown to the login caller."""
        state = self._store.get(address)
        since = None
        if state is not None:
            marks = [m for m in (state.cleared_at, state.lockout_until) if m is not None and m <= now]
            since = max(marks) if marks else None
        return {
            "address": address,
            "verdict": self._policy.evaluate(address).value,
            "locked": bool(state and state.is_locked(now)),
            "state": state.to_dict() if state else None,
            "failure_streak": self._ledger.recent_failure_streak(address, since=since),
        }

from datetime import timedelta

import pytest
from sqlalchemy import update

from models import db
from models.lockout import LockoutRecord
from security import lockout_store
from security.errors import ConcurrencyConflict
from security.lockout_store import LockoutStore
from security.settings import SecurityConfig

from conftest import T0

ADDRESS = "198.51.100.7"


def _store(**overrides):
    base = {"max_attempts": 3, "lockout_duration_minutes": 15, "progressive_lockout": False, "failure_window_minutes": 0}
    base.update(overrides)
    return LockoutStore(SecurityConfig.from_dict(base), max_retries=2, backoff_seconds=0)


def test_get_unknown_address(flask_app):
    assert _store().get(ADDRESS) is None


def test_failures_accumulate_then_lock(flask_app):
    store = _store()
    first = store.try_record_failure(ADDRESS, T0)
    second = store.try_record_failure(ADDRESS, T0)
    assert (first.state.failure_count, second.state.failure_count) == (1, 2)
    assert not second.lockout_triggered

    third = store.try_record_failure(ADDRESS, T0)
    assert third.lockout_triggered
    assert third.state.failure_count == 0
    assert third.state.escalation_level == 1
    assert third.state.lockout_until == T0 + timedelta(minutes=15)
    assert third.state.lockout_until > third.state.updated_at


def test_failures_while_locked_do_not_escalate_again(flask_app):
    store = _store()
    for _ in range(3):
        store.try_record_failure(ADDRESS, T0)

    late = store.try_record_failure(ADDRESS, T0 + timedelta(minutes=1))
    assert not late.lockout_triggered
    assert late.state.escalation_level == 1
    assert late.state.failure_count == 0


def test_expired_lockout_starts_a_fresh_cycle(flask_app):
    store = _store()
    for _ in range(3):
        store.try_record_failure(ADDRESS, T0)

    after = T0 + timedelta(minutes=16)
    result = store.try_record_failure(ADDRESS, after)
    assert result.state.failure_count == 1
    assert result.state.lockout_until is None
    assert result.state.escalation_level == 1


def test_progressive_durations_double(flask_app):
    store = _store(progressive_lockout=True)
    assert [store.duration_minutes(level) for level in range(4)] == [15, 30, 60, 120]
    assert _store().duration_minutes(5) == 15


def test_escalation_exponent_is_capped(flask_app):
    store = _store(progressive_lockout=True)
    assert store.duration_minutes(500) == 15 * 2 ** lockout_store.MAX_ESCALATION_EXPONENT


def test_stale_failures_outside_window_are_forgotten(flask_app):
    store = _store(failure_window_minutes=60)
    store.try_record_failure(ADDRESS, T0)
    store.try_record_failure(ADDRESS, T0 + timedelta(minutes=1))

    result = store.try_record_failure(ADDRESS, T0 + timedelta(minutes=90))
    assert result.state.failure_count == 1
    assert not result.lockout_triggered


def test_success_resets_count_but_keeps_escalation(flask_app):
    store = _store()
    for _ in range(3):
        store.try_record_failure(ADDRESS, T0)
    later = T0 + timedelta(hours=1)
    store.try_record_failure(ADDRESS, later)

    state = store.record_success(ADDRESS, later)
    assert state.failure_count == 0
    assert state.escalation_level == 1
    assert state.lockout_until is None


def test_success_for_unknown_address_creates_nothing(flask_app):
    assert _store().record_success(ADDRESS, T0) is None
    assert LockoutRecord.query.count() == 0


def test_clear_resets_everything(flask_app):
    store = _store()
    for _ in range(3):
        store.try_record_failure(ADDRESS, T0)

    state = store.clear(ADDRESS, T0 + timedelta(minutes=1))
    assert state.failure_count == 0
    assert state.lockout_until is None
    assert state.escalation_level == 0
    assert state.cleared_at == T0 + timedelta(minutes=1)
    assert not store.get(ADDRESS).is_locked(T0 + timedelta(minutes=1))


def test_list_active_only_returns_live_lockouts(flask_app):
    store = _store()
    for _ in range(3):
        store.try_record_failure("10.0.0.1", T0)
    for _ in range(3):
        store.try_record_failure("10.0.0.2", T0 - timedelta(hours=1))
    store.try_record_failure("10.0.0.3", T0)

    assert [s.address for s in store.list_active(T0 + timedelta(minutes=1))] == ["10.0.0.1"]


def test_every_write_bumps_version(flask_app):
    store = _store()
    store.try_record_failure(ADDRESS, T0)
    store.try_record_failure(ADDRESS, T0)
    assert LockoutRecord.query.filter_by(address=ADDRESS).one().version == 2


def test_lost_race_is_retried(flask_app, monkeypatch):
    calls = []
    real_apply = LockoutStore._apply

    def flaky_apply(self, *args):
        calls.append(1)
        if len(calls) == 1:
            return lockout_store._CONFLICT
        return real_apply(self, *args)

    monkeypatch.setattr(LockoutStore, "_apply", flaky_apply)
    result = _store().try_record_failure(ADDRESS, T0)
    assert len(calls) == 2
    assert result.state.failure_count == 1


def test_persistent_conflict_raises(flask_app, monkeypatch):
    calls = []

    def always_conflict(self, *args):
        calls.append(1)
        return lockout_store._CONFLICT

    monkeypatch.setattr(LockoutStore, "_apply", always_conflict)
    with pytest.raises(ConcurrencyConflict) as excinfo:
        _store().try_record_failure(ADDRESS, T0)
    assert len(calls) == 3
    assert excinfo.value.address == ADDRESS


def test_stale_version_update_loses(flask_app):
    """A writer holding an old version must not overwrite a newer row."""
    store = _store()
    store.try_record_failure(ADDRESS, T0)
    row = LockoutRecord.query.filter_by(address=ADDRESS).one()
    stale_version = row.version

    store.try_record_failure(ADDRESS, T0)

    result = db.session.execute(
        update(LockoutRecord)
        .where(LockoutRecord.address == ADDRESS, LockoutRecord.version == stale_version)
        .values(failure_count=0)
    )
    db.session.commit()
    assert result.rowcount == 0
    assert store.get(ADDRESS).failure_count == 2

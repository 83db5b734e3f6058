import threading
from datetime import timedelta

from models.login_attempt import LoginAttempt
from security.lockout_engine import Outcome
from security.two_factor import VerifyResult

from conftest import T0

ADDRESS = "10.0.0.5"


def _run_parallel(flask_app, count, target):
    """Runs ``target(i)`` on ``count`` threads released together; returns results in order."""
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(i):
        with flask_app.app_context():
            barrier.wait()
            try:
                results[i] = target(i)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert not errors, errors
    return results


def test_parallel_failures_trigger_exactly_one_lockout(flask_app, services):
    engine = services.engine

    reports = _run_parallel(
        flask_app,
        services.config.max_attempts,
        lambda i: engine.report_outcome(ADDRESS, f"user{i}", Outcome.FAILURE, T0),
    )

    assert sum(1 for r in reports if r.lockout_triggered) == 1
    state = services.store.get(ADDRESS)
    assert state.escalation_level == 1
    assert state.lockout_until == T0 + timedelta(minutes=30)
    assert LoginAttempt.query.filter_by(address=ADDRESS).count() == services.config.max_attempts


def test_burst_beyond_the_limit_escalates_once(flask_app, services):
    engine = services.engine

    reports = _run_parallel(
        flask_app,
        20,
        lambda i: engine.report_outcome(ADDRESS, "alice", Outcome.FAILURE, T0),
    )

    assert sum(1 for r in reports if r.lockout_triggered) == 1
    assert services.store.get(ADDRESS).escalation_level == 1
    assert not engine.check_admission(ADDRESS, T0).allowed


def test_parallel_failures_on_different_addresses_stay_separate(flask_app, services):
    engine = services.engine

    _run_parallel(
        flask_app,
        8,
        lambda i: engine.report_outcome(f"10.0.1.{i % 2}", "alice", Outcome.FAILURE, T0),
    )

    assert services.store.get("10.0.1.0").failure_count == 4
    assert services.store.get("10.0.1.1").failure_count == 4


def test_correct_code_submitted_twice_succeeds_once(flask_app, configure, make_user, mailer):
    gate = configure(two_factor_enabled=True, two_factor_method="email").two_factor
    admin = make_user("admin", roles=("administrator",))
    issued = gate.issue(admin, ADDRESS, T0)
    code = mailer.last_code

    results = _run_parallel(flask_app, 6, lambda i: gate.verify(issued.token, code, T0))

    assert results.count(VerifyResult.SUCCESS) == 1
    assert results.count(VerifyResult.ALREADY_USED) == 5

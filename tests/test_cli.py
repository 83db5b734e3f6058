from datetime import datetime, timedelta

import pytest

from models.login_attempt import LoginAttempt, OUTCOME_FAILURE
from models.user import User
from security.lockout_engine import Outcome
from security.two_factor import totp_code


@pytest.fixture
def runner(flask_app):
    return flask_app.test_cli_runner()


def test_create_user_with_roles(runner):
    result = runner.invoke(args=[
        "create-user", "Carol", "Carol@Example.com",
        "--role", "editor", "--role", "author", "--password", "s3cret-pass",
    ])
    assert result.exit_code == 0, result.output
    assert "Created carol with roles: author, editor" in result.output

    user = User.query.filter_by(username="carol").one()
    assert user.email == "carol@example.com"
    assert user.role_names == {"author", "editor"}


def test_create_user_rejects_duplicates(runner, make_user):
    make_user("carol")
    result = runner.invoke(args=["create-user", "carol", "c2@example.com", "--password", "pw"])
    assert result.exit_code != 0
    assert "Username already exists" in result.output


def test_make_admin(runner, make_user):
    make_user("dave")
    result = runner.invoke(args=["make-admin", "dave"])
    assert result.exit_code == 0, result.output
    assert "administrator" in User.query.filter_by(username="dave").one().role_names

    assert runner.invoke(args=["make-admin", "nobody"]).exit_code != 0


def test_provision_totp(runner, make_user):
    make_user("erin")
    result = runner.invoke(args=["provision-totp", "erin"])
    assert result.exit_code == 0, result.output
    assert "otpauth://totp/" in result.output

    secret = User.query.filter_by(username="erin").one().totp_secret
    assert secret and f"Secret: {secret}" in result.output
    assert len(totp_code(secret, datetime.utcnow())) == 6


def test_list_and_unlock_lockouts(runner, services):
    assert "No active lockouts" in runner.invoke(args=["list-lockouts"]).output

    now = datetime.utcnow()
    for _ in range(5):
        services.engine.report_outcome("192.0.2.10", "x", Outcome.FAILURE, now)

    listed = runner.invoke(args=["list-lockouts"])
    assert "192.0.2.10" in listed.output
    assert "level 1" in listed.output

    result = runner.invoke(args=["unlock", "192.0.2.10"])
    assert result.exit_code == 0, result.output
    assert "No active lockouts" in runner.invoke(args=["list-lockouts"]).output

    assert runner.invoke(args=["unlock", "192.0.2.99"]).exit_code != 0


def test_prune_attempts(runner, services):
    now = datetime.utcnow()
    services.ledger.record("10.0.0.5", "alice", OUTCOME_FAILURE, now - timedelta(days=45))
    services.ledger.record("10.0.0.5", "alice", OUTCOME_FAILURE, now)

    result = runner.invoke(args=["prune-attempts", "--days", "30"])
    assert result.exit_code == 0, result.output
    assert "Removed 1 login attempts" in result.output
    assert LoginAttempt.query.count() == 1

import json

import pytest

from models import db
from models.security_setting import SecuritySetting
from security.errors import ConfigurationError
from security.services import get_security_services
from security.settings import (
    RedirectTarget,
    SecurityConfig,
    TwoFactorMethod,
    load_security_config,
    save_security_config,
)


def test_defaults():
    config = SecurityConfig.defaults()
    assert config.max_attempts == 5
    assert config.lockout_duration_minutes == 30
    assert config.progressive_lockout is True
    assert config.limit_login_enabled is True
    assert config.hide_login_enabled is False
    assert config.redirect_target is RedirectTarget.NOT_FOUND
    assert config.two_factor_method is TwoFactorMethod.EMAIL
    assert config.two_factor_roles == frozenset({"administrator"})
    assert config.notify_on.failure and config.notify_on.lockout and not config.notify_on.success


@pytest.mark.parametrize("overrides, message", [
    ({"max_attempts": 0}, "max_attempts"),
    ({"lockout_duration_minutes": 0}, "lockout_duration_minutes"),
    ({"lockout_duration_minutes": -5}, "lockout_duration_minutes"),
    ({"ip_blacklist": ["300.1.1.1"]}, "ip_blacklist"),
    ({"two_factor_method": "sms"}, "two_factor_method"),
    ({"redirect_target": "elsewhere"}, "redirect_target"),
    ({"login_slug": "Not A Slug!"}, "login_slug"),
    ({"max_attempts": "many"}, "max_attempts"),
])
def test_invalid_values_are_rejected(overrides, message):
    with pytest.raises(ConfigurationError) as excinfo:
        SecurityConfig.from_dict(overrides)
    assert any(message in problem for problem in excinfo.value.problems)


def test_every_problem_is_reported_at_once():
    with pytest.raises(ConfigurationError) as excinfo:
        SecurityConfig.from_dict({"max_attempts": 0, "lockout_duration_minutes": 0})
    assert len(excinfo.value.problems) == 2


def test_coerces_admin_form_values():
    config = SecurityConfig.from_dict({
        "max_attempts": "7",
        "progressive_lockout": "false",
        "ip_whitelist": "10.0.0.1, 10.0.0.2",
        "notify_on": {"success": "yes"},
    })
    assert config.max_attempts == 7
    assert config.progressive_lockout is False
    assert config.ip_whitelist == ("10.0.0.1", "10.0.0.2")
    assert config.notify_on.success is True
    # untouched keys keep their defaults
    assert config.notify_on.lockout is True


def test_validate_catches_directly_built_config():
    with pytest.raises(ConfigurationError):
        SecurityConfig(max_attempts=0).validate()


def test_save_and_load_round_trip(flask_app):
    saved = save_security_config(SecurityConfig.from_dict({"max_attempts": 3, "ip_blacklist": ["10.9.0.0/16"]}))
    loaded = load_security_config()
    assert loaded == saved


def test_save_rejects_invalid_config_and_keeps_previous(flask_app):
    save_security_config(SecurityConfig.from_dict({"max_attempts": 3}))
    with pytest.raises(ConfigurationError):
        save_security_config(SecurityConfig(max_attempts=0))
    assert load_security_config().max_attempts == 3


def test_save_rebuilds_cached_services(flask_app):
    before = get_security_services()
    assert before.config.max_attempts == 5

    save_security_config(SecurityConfig.from_dict({"max_attempts": 2}))
    after = get_security_services()
    assert after is not before
    assert after.config.max_attempts == 2


def test_corrupt_stored_record_falls_back_to_defaults(flask_app):
    db.session.add(SecuritySetting(key="security", value_json=json.dumps({"max_attempts": -1})))
    db.session.commit()
    assert load_security_config() == SecurityConfig.defaults()

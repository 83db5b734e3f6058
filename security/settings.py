"""Security policy configuration.

``SecurityConfig`` is an immutable value handed to the lockout engine,
the two-factor gate and the hide-login hook. It is persisted as a single
JSON record in the ``security_settings`` table and validated on save,
never on each evaluation.
"""
import enum
import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import FrozenSet, List, Tuple

from sqlalchemy.exc import SQLAlchemyError

from config import SECURITY_DEFAULTS
from models import db
from models.security_setting import SecuritySetting
from security.errors import ConfigurationError, StorageUnavailable

logger = logging.getLogger(__name__)

SETTINGS_KEY = "security"

_SLUG = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
# first path segments already taken by the app's own routes
RESERVED_SLUGS = frozenset({"auth", "admin", "health", "static"})


class RedirectTarget(str, enum.Enum):
    NOT_FOUND = "not_found"
    HOME = "home"


class TwoFactorMethod(str, enum.Enum):
    EMAIL = "email"
    TOTP = "totp"


@dataclass(frozen=True)
class NotifyOn:
    success: bool = False
    failure: bool = True
    lockout: bool = True


@dataclass(frozen=True)
class SecurityConfig:
    hide_login_enabled: bool = False
    login_slug: str = "secure-login"
    redirect_target: RedirectTarget = RedirectTarget.NOT_FOUND

    limit_login_enabled: bool = True
    max_attempts: int = 5
    lockout_duration_minutes: int = 30
    progressive_lockout: bool = True
    failure_window_minutes: int = 60

    ip_whitelist: Tuple[str, ...] = ()
    ip_blacklist: Tuple[str, ...] = ()

    notify_on: NotifyOn = field(default_factory=NotifyOn)
    notify_email: str = ""
    failure_alert_threshold: int = 3
    notify_success_roles: FrozenSet[str] = frozenset({"administrator", "editor"})

    two_factor_enabled: bool = False
    two_factor_method: TwoFactorMethod = TwoFactorMethod.EMAIL
    two_factor_roles: FrozenSet[str] = frozenset({"administrator"})

    @classmethod
    def defaults(cls) -> "SecurityConfig":
        return cls.from_dict(SECURITY_DEFAULTS)

    @classmethod
    def from_dict(cls, data: dict, base: dict = None) -> "SecurityConfig":
        """
        Build a config from stored or admin-submitted values merged over
        ``base`` (the defaults when omitted). Raises ConfigurationError
        listing every field that cannot be coerced or fails validation.
        """
        merged = dict(SECURITY_DEFAULTS if base is None else base)
        merged.update({k: v for k, v in (data or {}).items() if k in SECURITY_DEFAULTS})
        if isinstance((data or {}).get("notify_on"), dict):
            base_notify = dict(SECURITY_DEFAULTS if base is None else base).get("notify_on")
            if isinstance(base_notify, dict):
                merged["notify_on"] = {**base_notify, **data["notify_on"]}

        problems: List[str] = []

        def as_bool(name, value):
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)):
                return bool(value)
            if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on", "0", "false", "no", "off", ""):
                return value.strip().lower() in ("1", "true", "yes", "on")
            problems.append(f"{name} must be a boolean")
            return False

        def as_int(name, value):
            if isinstance(value, bool):
                problems.append(f"{name} must be an integer")
                return 0
            try:
                return int(value)
            except (TypeError, ValueError):
                problems.append(f"{name} must be an integer")
                return 0

        def as_str_list(name, value):
            if isinstance(value, str):
                value = [v for v in re.split(r"[\s,]+", value) if v]
            if not isinstance(value, (list, tuple, set, frozenset)):
                problems.append(f"{name} must be a list")
                return ()
            items = []
            for item in value:
                if not isinstance(item, str):
                    problems.append(f"{name} entries must be strings")
                    continue
                item = item.strip()
                if item and item not in items:
                    items.append(item)
            return tuple(items)

        def as_enum(name, enum_cls, value):
            try:
                return enum_cls(value)
            except ValueError:
                allowed = ", ".join(e.value for e in enum_cls)
                problems.append(f"{name} must be one of: {allowed}")
                return list(enum_cls)[0]

        notify_raw = merged.get("notify_on") or {}
        if not isinstance(notify_raw, dict):
            problems.append("notify_on must be an object")
            notify_raw = {}
        notify_defaults = SECURITY_DEFAULTS["notify_on"]

        config = cls(
            hide_login_enabled=as_bool("hide_login_enabled", merged["hide_login_enabled"]),
            login_slug=str(merged["login_slug"] or "").strip().lower(),
            redirect_target=as_enum("redirect_target", RedirectTarget, merged["redirect_target"]),
            limit_login_enabled=as_bool("limit_login_enabled", merged["limit_login_enabled"]),
            max_attempts=as_int("max_attempts", merged["max_attempts"]),
            lockout_duration_minutes=as_int("lockout_duration_minutes", merged["lockout_duration_minutes"]),
            progressive_lockout=as_bool("progressive_lockout", merged["progressive_lockout"]),
            failure_window_minutes=as_int("failure_window_minutes", merged["failure_window_minutes"]),
            ip_whitelist=as_str_list("ip_whitelist", merged["ip_whitelist"]),
            ip_blacklist=as_str_list("ip_blacklist", merged["ip_blacklist"]),
            notify_on=NotifyOn(
                success=as_bool("notify_on.success", notify_raw.get("success", notify_defaults["success"])),
                failure=as_bool("notify_on.failure", notify_raw.get("failure", notify_defaults["failure"])),
                lockout=as_bool("notify_on.lockout", notify_raw.get("lockout", notify_defaults["lockout"])),
            ),
            notify_email=str(merged["notify_email"] or "").strip(),
            failure_alert_threshold=as_int("failure_alert_threshold", merged["failure_alert_threshold"]),
            notify_success_roles=frozenset(as_str_list("notify_success_roles", merged["notify_success_roles"])),
            two_factor_enabled=as_bool("two_factor_enabled", merged["two_factor_enabled"]),
            two_factor_method=as_enum("two_factor_method", TwoFactorMethod, merged["two_factor_method"]),
            two_factor_roles=frozenset(as_str_list("two_factor_roles", merged["two_factor_roles"])),
        )

        problems.extend(config.problems())
        if problems:
            raise ConfigurationError(problems)
        return config

    def problems(self) -> List[str]:
        errors: List[str] = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.lockout_duration_minutes <= 0:
            errors.append("lockout_duration_minutes must be greater than 0")
        if self.failure_window_minutes < 0:
            errors.append("failure_window_minutes must not be negative")
        if self.failure_alert_threshold < 1:
            errors.append("failure_alert_threshold must be at least 1")
        if not _SLUG.match(self.login_slug or ""):
            errors.append("login_slug must be a lowercase slug (letters, digits, '-' or '_')")
        elif self.login_slug in RESERVED_SLUGS:
            errors.append(f"login_slug '{self.login_slug}' is reserved")
        if self.notify_email and "@" not in self.notify_email:
            errors.append("notify_email must be an email address")
        for list_name in ("ip_whitelist", "ip_blacklist"):
            for entry in getattr(self, list_name):
                try:
                    ipaddress.ip_network(entry, strict=False)
                except ValueError:
                    errors.append(f"{list_name} entry '{entry}' is not an IP address or CIDR range")
        return errors

    def validate(self) -> "SecurityConfig":
        errors = self.problems()
        if errors:
            raise ConfigurationError(errors)
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        data["redirect_target"] = self.redirect_target.value
        data["two_factor_method"] = self.two_factor_method.value
        data["ip_whitelist"] = list(self.ip_whitelist)
        data["ip_blacklist"] = list(self.ip_blacklist)
        data["notify_success_roles"] = sorted(self.notify_success_roles)
        data["two_factor_roles"] = sorted(self.two_factor_roles)
        return data


def load_security_config() -> SecurityConfig:
    """
    Reads the saved record merged over defaults. A record that no longer
    validates (e.g. edited by hand) is logged and replaced by defaults.
    """
    try:
        row = db.session.get(SecuritySetting, SETTINGS_KEY)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageUnavailable("Could not load security settings") from exc

    if row is None:
        return SecurityConfig.defaults()

    try:
        stored = json.loads(row.value_json)
    except ValueError:
        logger.error("Stored security settings are not valid JSON; using defaults")
        return SecurityConfig.defaults()

    try:
        return SecurityConfig.from_dict(stored)
    except ConfigurationError as exc:
        logger.error("Stored security settings are invalid (%s); using defaults", exc)
        return SecurityConfig.defaults()


def save_security_config(config: SecurityConfig) -> SecurityConfig:
    config.validate()
    payload = json.dumps(config.to_dict(), sort_keys=True)

    try:
        row = db.session.get(SecuritySetting, SETTINGS_KEY)
        if row is None:
            row = SecuritySetting(key=SETTINGS_KEY, value_json=payload)
            db.session.add(row)
        else:
            row.value_json = payload
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageUnavailable("Could not save security settings") from exc

    logger.info(
        "Security settings saved: limit_login=%s max_attempts=%d lockout=%dmin progressive=%s 2fa=%s",
        config.limit_login_enabled, config.max_attempts, config.lockout_duration_minutes,
        config.progressive_lockout, config.two_factor_enabled,
    )

    # imported here: services imports this module
    from security.services import invalidate_security_services
    invalidate_security_services()
    return config

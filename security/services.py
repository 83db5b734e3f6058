"""Wires the login protection services for the current Flask app.

Everything is built from one ``SecurityConfig`` snapshot and cached in
``app.extensions``; saving new settings drops the cache so the next
request rebuilds with the new policy (including the cached IPPolicy).
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from flask import current_app

from security.attempt_ledger import AttemptLedger
from security.ip_policy import IPPolicy
from security.lockout_engine import LockoutEngine
from security.lockout_store import LockoutStore
from security.notifications import EmailNotifier, NotificationBridge
from security.settings import SecurityConfig, load_security_config
from security.two_factor import TwoFactorGate
from utils.emailer import MailSettings, send_email

logger = logging.getLogger(__name__)

EXTENSION_KEY = "loginguard"


@dataclass(frozen=True)
class SecurityServices:
    config: SecurityConfig
    policy: IPPolicy
    ledger: AttemptLedger
    store: LockoutStore
    notifications: NotificationBridge
    engine: LockoutEngine
    two_factor: TwoFactorGate


def init_security(app, notifier=None, code_mailer=None):
    """
    ``notifier`` and ``code_mailer`` replace the SMTP collaborators
    (tests, or another delivery channel).
    """
    executor = ThreadPoolExecutor(
        max_workers=app.config.get("SECURITY_NOTIFY_WORKERS", 2),
        thread_name_prefix="security-notify",
    )
    app.extensions[EXTENSION_KEY] = {
        "lock": threading.Lock(),
        "services": None,
        "executor": executor,
        "notifier": notifier,
        "code_mailer": code_mailer,
    }


def _email_code_mailer(mail: MailSettings, site_name: str):
    def send_code(user, code, ttl_minutes):
        return send_email(
            mail,
            user.email,
            f"[{site_name}] Your Login Code",
            f"Your verification code is: {code}\n\n"
            f"This code will expire in {ttl_minutes} minutes.\n\n"
            "If you didn't request this code, please ignore this email.",
        )
    return send_code


def build_security_services(app, config: SecurityConfig) -> SecurityServices:
    state = app.extensions[EXTENSION_KEY]
    mail = MailSettings.from_app_config(app.config)
    site_name = app.config.get("SITE_NAME", "LoginGuard")

    notifier = state["notifier"]
    if notifier is None:
        recipient = config.notify_email or app.config.get("ADMIN_EMAIL")
        if mail.configured and recipient:
            notifier = EmailNotifier(mail, recipient, site_name)
        else:
            logger.info("Email not configured; security notifications are disabled")

    code_mailer = state["code_mailer"] or _email_code_mailer(mail, site_name)

    policy = IPPolicy.from_config(config)
    ledger = AttemptLedger()
    store = LockoutStore(
        config,
        max_retries=app.config.get("SECURITY_CONCURRENCY_RETRIES", 5),
        backoff_seconds=app.config.get("SECURITY_RETRY_BACKOFF_SECONDS", 0.01),
    )
    notifications = NotificationBridge(
        notifier,
        executor=state["executor"],
        timeout_seconds=app.config.get("SECURITY_NOTIFY_TIMEOUT_SECONDS", 5.0),
        max_pending=app.config.get("SECURITY_NOTIFY_MAX_PENDING", 100),
    )
    engine = LockoutEngine(config, policy, ledger, store, notifications)
    two_factor = TwoFactorGate(
        config,
        secret_key=app.config["SECRET_KEY"],
        mailer=code_mailer,
        code_length=app.config.get("TWO_FACTOR_CODE_LENGTH", 6),
        ttl_seconds=app.config.get("TWO_FACTOR_TTL_SECONDS", 600),
    )
    return SecurityServices(
        config=config,
        policy=policy,
        ledger=ledger,
        store=store,
        notifications=notifications,
        engine=engine,
        two_factor=two_factor,
    )


def get_security_services() -> SecurityServices:
    app = current_app._get_current_object()
    state = app.extensions[EXTENSION_KEY]
    services = state["services"]
    if services is not None:
        return services

    with state["lock"]:
        if state["services"] is None:
            state["services"] = build_security_services(app, load_security_config())
        return state["services"]


def invalidate_security_services():
    state = current_app.extensions.get(EXTENSION_KEY)
    if state is None:
        return
    with state["lock"]:
        state["services"] = None


def shutdown_security(app, wait=True):
    state = app.extensions.get(EXTENSION_KEY)
    if state is not None:
        state["executor"].shutdown(wait=wait)

"""Typed login events handed to an outbound notifier.

Delivery is fire-and-forget: ``NotificationBridge.notify`` queues the
event on a small thread pool and returns immediately. The notifier gets
a timeout, and whatever it raises is logged here and goes no further.
"""
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from security.errors import NotificationDeliveryError
from utils.emailer import MailSettings, send_email

logger = logging.getLogger(__name__)


class NotificationEvent(str, enum.Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOCKOUT = "lockout"


@dataclass(frozen=True)
class NotificationPayload:
    address: str
    username: str
    timestamp: datetime
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "username": self.username,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }


class EmailNotifier:
    """Sends one plain-text email per event to the configured recipient."""

    def __init__(self, mail_settings: MailSettings, recipient: str, site_name: str = "LoginGuard"):
        self._mail = mail_settings
        self._recipient = recipient
        self._site = site_name

    def render(self, event: NotificationEvent, payload: NotificationPayload):
        when = payload.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
        data = payload.data

        if event is NotificationEvent.LOGIN_SUCCESS:
            subject = f"[{self._site}] New Admin Login"
            body = (
                "A user with an elevated role has logged in.\n\n"
                f"Username: {payload.username}\n"
                f"IP Address: {payload.address}\n"
                f"Time: {when}\n"
            )
        elif event is NotificationEvent.LOGIN_FAILED:
            subject = f"[{self._site}] Failed Login Attempts"
            body = (
                "Multiple failed login attempts detected.\n\n"
                f"Username tried: {payload.username}\n"
                f"IP Address: {payload.address}\n"
                f"Attempts: {data.get('failure_count')}\n"
                f"Time: {when}\n"
            )
        else:
            subject = f"[{self._site}] IP Lockout"
            body = (
                "An IP address has been locked out due to too many failed attempts.\n\n"
                f"IP Address: {payload.address}\n"
                f"Last username tried: {payload.username}\n"
                f"Lockout Duration: {data.get('duration_minutes')} minutes\n"
                f"Locked Until: {data.get('lockout_until')}\n"
                f"Escalation Level: {data.get('escalation_level')}\n"
            )
        return subject, body

    def deliver(self, event: NotificationEvent, payload: NotificationPayload, timeout: float):
        subject, body = self.render(event, payload)
        sent, error = send_email(self._mail, self._recipient, subject, body, timeout=timeout)
        if not sent:
            raise NotificationDeliveryError(f"{event.value} notification not sent: {error}")


class NotificationBridge:
    """
    At most ``max_pending`` deliveries are queued or running at once;
    events beyond that are dropped with a warning so a flood of failed
    logins cannot grow the queue without limit.
    """

    def __init__(
        self,
        notifier,
        executor: Optional[ThreadPoolExecutor] = None,
        timeout_seconds: float = 5.0,
        max_pending: int = 100,
    ):
        self._notifier = notifier
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="security-notify")
        self._timeout = timeout_seconds
        self._max_pending = max(1, int(max_pending))
        self._pending = set()
        self._pending_lock = threading.Lock()
        self.dropped = 0

    def notify(self, event: NotificationEvent, payload: NotificationPayload) -> None:
        if self._notifier is None:
            return

        with self._pending_lock:
            if len(self._pending) >= self._max_pending:
                self.dropped += 1
                future = None
            else:
                try:
                    future = self._executor.submit(self._deliver, event, payload)
                except RuntimeError as exc:
                    # executor already shut down (app teardown)
                    logger.warning("Dropped %s notification for %s: %s", event.value, payload.address, exc)
                    return
                self._pending.add(future)

        if future is None:
            logger.warning(
                "Notification backlog full (%d pending); dropped %s for %s",
                self._max_pending, event.value, payload.address,
            )
            return
        # outside the lock: runs inline if the delivery already finished
        future.add_done_callback(self._forget)

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Waits for queued deliveries. Returns False if some are still running."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        done, not_done = wait(pending, timeout=timeout)
        # done callbacks may not have run yet
        with self._pending_lock:
            self._pending.difference_update(done)
        return not not_done

    def _forget(self, future):
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, event: NotificationEvent, payload: NotificationPayload) -> None:
        try:
            self._notifier.deliver(event, payload, timeout=self._timeout)
        except NotificationDeliveryError as exc:
            logger.warning("%s", exc)
        except Exception:
            logger.exception("Notifier failed while delivering %s for %s", event.value, payload.address)
        else:
            logger.info("Delivered %s notification for %s", event.value, payload.address)

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional


@dataclass(frozen=True)
class MailSettings:
    host: Optional[str]
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: Optional[str] = None
    use_tls: bool = True

    @classmethod
    def from_app_config(cls, config) -> "MailSettings":
        return cls(
            host=config.get("SMTP_HOST"),
            port=config.get("SMTP_PORT", 587),
            username=config.get("SMTP_USERNAME"),
            password=config.get("SMTP_PASSWORD"),
            from_email=config.get("SMTP_FROM_EMAIL") or config.get("SMTP_USERNAME"),
            use_tls=config.get("SMTP_USE_TLS", True),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)


def send_email(settings: MailSettings, to_email: str, subject: str, body: str, timeout: float = 10):
    """
    Returns (sent, error). Takes explicit settings so it can run on
    notification worker threads outside an app context.
    """
    if not settings.configured:
        return False, "Email not configured"
    if not to_email:
        return False, "No recipient"

    msg = EmailMessage()
    msg["From"] = settings.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.host, settings.port, timeout=timeout) as server:
            if settings.use_tls:
                server.starttls()
            if settings.username and settings.password:
                server.login(settings.username, settings.password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)

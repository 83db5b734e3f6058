import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# Defaults for the runtime security policy. The saved settings record is
# merged over these (see security/settings.py).
SECURITY_DEFAULTS = {
    # Hide login
    "hide_login_enabled": False,
    "login_slug": "secure-login",
    "redirect_target": "not_found",

    # Login limiting
    "limit_login_enabled": True,
    "max_attempts": 5,
    "lockout_duration_minutes": 30,
    "progressive_lockout": True,
    "failure_window_minutes": 60,

    # Address lists
    "ip_whitelist": [],
    "ip_blacklist": [],

    # Notifications
    "notify_on": {"success": False, "failure": True, "lockout": True},
    "notify_email": "",
    "failure_alert_threshold": 3,
    "notify_success_roles": ["administrator", "editor"],

    # Two-factor
    "two_factor_enabled": False,
    "two_factor_method": "email",
    "two_factor_roles": ["administrator"],
}


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as loginguard.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "loginguard.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"
    PERMANENT_SESSION_LIFETIME = 8 * 60 * 60

    # Trust X-Forwarded-For only behind a known proxy
    TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() == "true"

    # Guarded-update retries for lockout counters
    SECURITY_CONCURRENCY_RETRIES = int(os.getenv("SECURITY_CONCURRENCY_RETRIES", "5"))
    SECURITY_RETRY_BACKOFF_SECONDS = float(os.getenv("SECURITY_RETRY_BACKOFF_SECONDS", "0.01"))

    # Outbound notifications
    SECURITY_NOTIFY_TIMEOUT_SECONDS = float(os.getenv("SECURITY_NOTIFY_TIMEOUT_SECONDS", "5"))
    SECURITY_NOTIFY_WORKERS = int(os.getenv("SECURITY_NOTIFY_WORKERS", "2"))
    SECURITY_NOTIFY_MAX_PENDING = int(os.getenv("SECURITY_NOTIFY_MAX_PENDING", "100"))
    SITE_NAME = os.getenv("SITE_NAME", "LoginGuard")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

    # Two-factor
    TWO_FACTOR_CODE_LENGTH = int(os.getenv("TWO_FACTOR_CODE_LENGTH", "6"))
    TWO_FACTOR_TTL_SECONDS = int(os.getenv("TWO_FACTOR_TTL_SECONDS", "600"))  # 10 minutes
    TOTP_ISSUER = os.getenv("TOTP_ISSUER", "LoginGuard")

    # Hide login access cookie
    LOGIN_ACCESS_COOKIE_NAME = "loginguard_login_access"
    LOGIN_ACCESS_COOKIE_SECONDS = 300

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False

    @staticmethod
    def get_logging_config(level="INFO"):
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "[%(asctime)s] %(levelname)s in %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "level": level,
                "handlers": ["console"],
            },
        }

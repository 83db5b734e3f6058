import threading
from datetime import datetime

import pytest

from app import create_app
from config import Config
from models import db
from models.user import Role, User
from security.password import hash_password
from security.services import get_security_services, shutdown_security
from security.settings import SecurityConfig, save_security_config
from utils.seed import seed_roles

T0 = datetime(2026, 3, 1, 12, 0, 0)
TEST_PASSWORD = "correct horse battery"


class RecordingNotifier:
    """Stands in for the email notifier; keeps every delivered event."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def deliver(self, event, payload, timeout):
        with self._lock:
            self.events.append((event, payload))

    def of(self, event):
        return [p for e, p in self.events if e is event]


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def __call__(self, user, code, ttl_minutes):
        self.sent.append((user.username, code))
        return True, None

    @property
    def last_code(self):
        return self.sent[-1][1]


def _test_config(db_path):
    class TestConfig(Config):
        TESTING = True
        SECRET_KEY = "test-secret-key"
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}
        SEED_ROLES_ON_STARTUP = False
        SECURITY_RETRY_BACKOFF_SECONDS = 0
        SMTP_HOST = None
        ADMIN_EMAIL = None
        LOG_LEVEL = "WARNING"
    return TestConfig


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def flask_app(tmp_path, notifier, mailer):
    app = create_app(_test_config(tmp_path / "loginguard_test.db"), notifier=notifier, code_mailer=mailer)

    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()

    shutdown_security(app)


@pytest.fixture
def client(flask_app):
    with flask_app.test_client() as client:
        yield client


@pytest.fixture
def configure(flask_app):
    """Saves a policy (overrides merged over defaults) and returns fresh services."""
    def _configure(**overrides):
        save_security_config(SecurityConfig.from_dict(overrides))
        return get_security_services()
    return _configure


@pytest.fixture
def services(configure):
    return configure(
        max_attempts=5,
        lockout_duration_minutes=30,
        progressive_lockout=False,
        failure_window_minutes=0,
    )


@pytest.fixture
def make_user(flask_app):
    def _make(username, roles=("subscriber",), password=TEST_PASSWORD, totp_secret=None):
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password(password),
            totp_secret=totp_secret,
        )
        for name in roles:
            role = Role.query.filter_by(name=name).first() or Role(name=name)
            user.roles.append(role)
        db.session.add(user)
        db.session.commit()
        return user
    return _make

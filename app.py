import logging
from datetime import datetime, timedelta
from logging.config import dictConfig

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from models import db
from models.user import User, Role
from routes import health_bp, auth_bp, admin_bp
from security.errors import StorageUnavailable
from security.hide_login import hide_login_guard
from security.password import hash_password
from security.rbac import ADMIN_ROLE
from security.services import get_security_services, init_security
from security.two_factor import generate_totp_secret, provisioning_uri
from utils.auth_context import load_current_user
from utils.seed import seed_roles

logger = logging.getLogger(__name__)


def create_app(config_object=Config, notifier=None, code_mailer=None):
    dictConfig(Config.get_logging_config(getattr(config_object, "LOG_LEVEL", "INFO")))

    app = Flask(__name__)
    app.config.from_object(config_object)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    init_security(app, notifier=notifier, code_mailer=code_mailer)

    # Seed default roles at startup (safe & idempotent)
    if app.config.get("SEED_ROLES_ON_STARTUP", True):
        with app.app_context():
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    # must run after _load_user: signed-in users always reach the login endpoint
    app.before_request(hide_login_guard)

    @app.errorhandler(StorageUnavailable)
    def _storage_unavailable(exc):
        logger.error("Failing closed: %s", exc)
        return jsonify(error="Login is temporarily unavailable. Try again later."), 503

    @app.errorhandler(404)
    def _not_found(exc):
        return jsonify(error="Not found"), 404

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("create-user")
    @click.argument("username")
    @click.argument("email")
    @click.option("--role", "roles", multiple=True, default=["subscriber"], show_default=True)
    @click.password_option()
    def create_user(username, email, roles, password):
        """Create a user with the given roles."""
        username = username.strip().lower()
        if User.query.filter_by(username=username).first():
            raise click.ClickException("Username already exists")

        user = User(username=username, email=email.strip().lower(), password_hash=hash_password(password))
        for name in roles:
            role = Role.query.filter_by(name=name).first()
            if role is None:
                role = Role(name=name)
                db.session.add(role)
            user.roles.append(role)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created {username} with roles: {', '.join(sorted(user.role_names))}")

    @app.cli.command("make-admin")
    @click.argument("username")
    def make_admin(username):
        """Grant the administrator role to a user (bootstrap)."""
        user = User.query.filter_by(username=username.strip().lower()).first()
        if not user:
            raise click.ClickException("User not found")

        admin_role = Role.query.filter_by(name=ADMIN_ROLE).first()
        if not admin_role:
            admin_role = Role(name=ADMIN_ROLE)
            db.session.add(admin_role)

        if admin_role not in user.roles:
            user.roles.append(admin_role)
        db.session.commit()

        click.echo(f"{user.username} promoted to {ADMIN_ROLE}")

    @app.cli.command("provision-totp")
    @click.argument("username")
    def provision_totp(username):
        """Generate a TOTP secret for a user and print the otpauth URI."""
        user = User.query.filter_by(username=username.strip().lower()).first()
        if not user:
            raise click.ClickException("User not found")

        user.totp_secret = generate_totp_secret()
        user.totp_last_step = None
        db.session.commit()
        click.echo(f"Secret: {user.totp_secret}")
        click.echo(provisioning_uri(user.totp_secret, user.username, app.config.get("TOTP_ISSUER", "LoginGuard")))

    @app.cli.command("list-lockouts")
    def list_lockouts():
        """Show addresses that are currently locked out."""
        lockouts = get_security_services().engine.list_active_lockouts(datetime.utcnow())
        if not lockouts:
            click.echo("No active lockouts")
            return
        for state in lockouts:
            click.echo(f"{state.address}\tuntil {state.lockout_until.isoformat()}\tlevel {state.escalation_level}")

    @app.cli.command("unlock")
    @click.argument("address")
    def unlock(address):
        """Clear the lockout, failure count and escalation of an address."""
        state = get_security_services().engine.unlock(address, datetime.utcnow())
        if state is None:
            raise click.ClickException(f"No lockout record for {address}")
        click.echo(f"{address} unlocked")

    @app.cli.command("prune-attempts")
    @click.option("--days", default=30, show_default=True, type=click.IntRange(min=1))
    def prune_attempts(days):
        """Delete login attempts older than the given number of days."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        removed = get_security_services().ledger.prune(cutoff)
        click.echo(f"Removed {removed} login attempts older than {days} days")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)

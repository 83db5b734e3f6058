import logging
from datetime import datetime

from flask import Blueprint, request, jsonify, g

from models.user import User
from security.errors import TwoFactorNotProvisioned
from security.lockout_engine import Outcome
from security.password import verify_password
from security.services import get_security_services
from security.two_factor import VerifyResult
from utils.auth_context import login_required, login_user, logout_user
from utils.network import client_address

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

# One message for every admission denial: blacklist, lockout and storage
# trouble all look the same to the caller.
TOO_MANY_ATTEMPTS = "Too many login attempts. Try again later."


def _normalize_username(value) -> str:
    return (value or "").strip().lower() if isinstance(value, str) else ""


def _denied():
    return jsonify(error=TOO_MANY_ATTEMPTS), 429


def _is_elevated(user, services) -> bool:
    return bool(user.role_names & services.config.notify_success_roles)


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    username = _normalize_username(data.get("username"))
    password = data.get("password") or ""

    if not username or not isinstance(password, str) or not password:
        return jsonify(error="Username and password are required"), 400

    address = client_address()
    now = datetime.utcnow()
    services = get_security_services()

    decision = services.engine.check_admission(address, now)
    if not decision.allowed:
        return _denied()

    user = User.query.filter_by(username=username).first()
    valid = verify_password(password, user.password_hash if user else None)

    if valid and services.two_factor.requires_challenge(user):
        # the login only counts as a success once the second factor passes,
        # so a known password cannot reset the counter between code guesses
        try:
            issued = services.two_factor.issue(user, address, now)
        except TwoFactorNotProvisioned:
            return jsonify(error="Two-factor authentication is not set up for this account"), 403
        return jsonify(
            two_factor_required=True,
            token=issued.token,
            method=issued.method.value,
            expires_at=issued.expires_at.isoformat(),
        ), 202

    outcome = Outcome.SUCCESS if valid else Outcome.FAILURE
    # StorageUnavailable propagates: the app answers 503 and no session is issued
    services.engine.report_outcome(
        address, username, outcome, now,
        elevated=_is_elevated(user, services) if valid else False,
        admission_verdict=decision.verdict,
    )

    if not valid:
        return jsonify(error="Invalid credentials"), 401

    login_user(user)
    logger.info("User %s logged in from %s", user.username, address)
    return jsonify(message="Login OK"), 200


@auth_bp.post("/2fa/verify")
def verify_two_factor():
    data = request.get_json(silent=True) or {}
    token = data.get("token") or ""
    code = data.get("code") or ""
    if not isinstance(token, str) or not isinstance(code, str):
        return jsonify(error="Invalid request"), 400

    address = client_address()
    now = datetime.utcnow()
    services = get_security_services()

    decision = services.engine.check_admission(address, now)
    if not decision.allowed:
        return _denied()

    challenge = services.two_factor.lookup(token)
    result = services.two_factor.verify(token, code, now)

    if result is VerifyResult.SUCCESS:
        user = challenge.user
        services.engine.report_outcome(
            address, challenge.username, Outcome.SUCCESS, now,
            elevated=_is_elevated(user, services),
            admission_verdict=decision.verdict,
        )
        login_user(user)
        logger.info("User %s completed two-factor login from %s", challenge.username, address)
        return jsonify(message="Login OK"), 200

    if result is VerifyResult.INVALID_CODE:
        # code guessing counts against the address like a bad password
        username = challenge.username if challenge is not None else ""
        services.engine.report_outcome(
            address, username, Outcome.FAILURE, now, admission_verdict=decision.verdict,
        )
        return jsonify(error="Invalid verification code", result=result.value), 400

    if result is VerifyResult.EXPIRED:
        return jsonify(error="Verification code expired. Log in again.", result=result.value), 410

    return jsonify(error="Verification code already used", result=result.value), 409


@auth_bp.post("/2fa/resend")
def resend_two_factor():
    data = request.get_json(silent=True) or {}
    token = data.get("token") or ""
    if not isinstance(token, str):
        return jsonify(error="Invalid request"), 400

    address = client_address()
    now = datetime.utcnow()
    services = get_security_services()

    if not services.engine.check_admission(address, now).allowed:
        return _denied()

    issued = services.two_factor.resend(token, now)
    if issued is None:
        return jsonify(error="Code cannot be resent. Log in again."), 400
    return jsonify(message="A new code has been sent", expires_at=issued.expires_at.isoformat()), 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        id=g.user.id,
        username=g.user.username,
        email=g.user.email,
        roles=sorted(g.user.role_names),
        totp_enabled=bool(g.user.totp_secret),
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    logger.info("User %s logged out", g.user.username)
    logout_user()
    return jsonify(message="Logged out"), 200

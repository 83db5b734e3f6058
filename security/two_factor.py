import base64
import enum
import hashlib
import hmac
import logging
import secrets
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.two_factor_challenge import TwoFactorChallenge
from models.user import User
from security.errors import StorageUnavailable, TwoFactorNotProvisioned
from security.settings import TwoFactorMethod

logger = logging.getLogger(__name__)

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
TOTP_SKEW_STEPS = 1

_EPOCH = datetime(1970, 1, 1)


class VerifyResult(str, enum.Enum):
    SUCCESS = "success"
    EXPIRED = "expired"
    INVALID_CODE = "invalid_code"
    ALREADY_USED = "already_used"


@dataclass(frozen=True)
class IssuedChallenge:
    challenge_id: int
    token: str
    method: TwoFactorMethod
    expires_at: datetime
    # email method only; handed to the mailer, never returned over HTTP
    code: Optional[str] = None


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random challenge tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer, "digits": TOTP_DIGITS, "period": TOTP_STEP_SECONDS})
    return f"otpauth://totp/{label}?{query}"


def totp_step(at: datetime) -> int:
    return int((at - _EPOCH).total_seconds() // TOTP_STEP_SECONDS)


def totp_code(secret: str, at: datetime, step_offset: int = 0) -> str:
    """RFC 6238 code (HMAC-SHA1, 30 s step, 6 digits) for the step containing ``at``."""
    padded = secret.strip().replace(" ", "").upper()
    padded += "=" * ((8 - len(padded) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)

    counter = totp_step(at) + step_offset
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = (struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF) % (10 ** TOTP_DIGITS)
    return str(value).zfill(TOTP_DIGITS)


class TwoFactorGate:
    def __init__(
        self,
        config,
        secret_key: str,
        mailer: Optional[Callable] = None,
        code_length: int = 6,
        ttl_seconds: int = 600,
    ):
        self._config = config
        self._key = (secret_key or "").encode("utf-8")
        self._mailer = mailer
        self._code_length = max(4, int(code_length))
        self._ttl = timedelta(seconds=ttl_seconds)

    def requires_challenge(self, user) -> bool:
        if not self._config.two_factor_enabled:
            return False
        return bool(set(user.role_names) & self._config.two_factor_roles)

    def issue(self, user, address: str, now: datetime) -> IssuedChallenge:
        method = self._config.two_factor_method
        if method is TwoFactorMethod.TOTP and not user.totp_secret:
            logger.warning("User %s requires TOTP but has no provisioned secret", user.username)
            raise TwoFactorNotProvisioned(f"User {user.username} has no TOTP secret")

        token = secrets.token_urlsafe(32)
        code = self._new_code() if method is TwoFactorMethod.EMAIL else None

        row = TwoFactorChallenge(
            user_id=user.id,
            username=user.username,
            address=address,
            method=method.value,
            token_hash=_hash_token(token),
            code_hash=self._hash_code(code) if code else None,
            created_at=now,
            expires_at=now + self._ttl,
        )
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Two-factor store unavailable") from exc

        if code:
            self._send_code(user, code)

        logger.info("Issued %s two-factor challenge for %s", method.value, user.username)
        return IssuedChallenge(
            challenge_id=row.id,
            token=token,
            method=method,
            expires_at=row.expires_at,
            code=code,
        )

    def lookup(self, token: str) -> Optional[TwoFactorChallenge]:
        if not token:
            return None
        try:
            return db.session.execute(
                select(TwoFactorChallenge)
                .where(TwoFactorChallenge.token_hash == _hash_token(token))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Two-factor store unavailable") from exc

    def verify(self, token: str, submitted_code: str, now: datetime) -> VerifyResult:
        """
        Used-ness is checked before expiry, and expiry before the code,
        so a late correct code still reports EXPIRED. The final mark is a
        guarded update: of two concurrent correct submissions only one
        gets SUCCESS. A TOTP code whose time step was already accepted
        for the user, on this or any other challenge, is ALREADY_USED.
        """
        challenge = self.lookup(token)
        if challenge is None:
            return VerifyResult.INVALID_CODE
        if challenge.verified:
            return VerifyResult.ALREADY_USED
        if now > challenge.expires_at:
            return VerifyResult.EXPIRED
        code = (submitted_code or "").strip()
        matched_step = None
        if challenge.method == TwoFactorMethod.TOTP.value:
            matched_step = self._matching_totp_step(challenge, code, now)
            if matched_step is None:
                return VerifyResult.INVALID_CODE
        elif not self._email_code_matches(challenge, code):
            return VerifyResult.INVALID_CODE

        try:
            if matched_step is not None and not self._consume_totp_step(challenge, matched_step):
                db.session.rollback()
                logger.warning("Replayed TOTP code for %s rejected", challenge.username)
                return VerifyResult.ALREADY_USED

            result = db.session.execute(
                update(TwoFactorChallenge)
                .where(
                    TwoFactorChallenge.id == challenge.id,
                    TwoFactorChallenge.verified.is_(False),
                    TwoFactorChallenge.expires_at >= now,
                )
                .values(verified=True, verified_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # lost to a concurrent verify; give back the TOTP step too
                db.session.rollback()
                return VerifyResult.ALREADY_USED
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Two-factor store unavailable") from exc

        logger.info("Two-factor challenge verified for %s", challenge.username)
        return VerifyResult.SUCCESS

    def resend(self, token: str, now: datetime) -> Optional[IssuedChallenge]:
        """Fresh email code for a live challenge; None when nothing can be resent."""
        challenge = self.lookup(token)
        if (
            challenge is None
            or challenge.method != TwoFactorMethod.EMAIL.value
            or challenge.verified
            or now > challenge.expires_at
        ):
            return None

        code = self._new_code()
        expires_at = now + self._ttl
        try:
            result = db.session.execute(
                update(TwoFactorChallenge)
                .where(TwoFactorChallenge.id == challenge.id, TwoFactorChallenge.verified.is_(False))
                .values(code_hash=self._hash_code(code), expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("Two-factor store unavailable") from exc

        if result.rowcount != 1:
            return None

        self._send_code(challenge.user, code)
        return IssuedChallenge(
            challenge_id=challenge.id,
            token=token,
            method=TwoFactorMethod.EMAIL,
            expires_at=expires_at,
            code=code,
        )

    def _email_code_matches(self, challenge: TwoFactorChallenge, code: str) -> bool:
        if not code.isdigit() or not challenge.code_hash:
            return False
        return hmac.compare_digest(self._hash_code(code), challenge.code_hash)

    def _matching_totp_step(self, challenge: TwoFactorChallenge, code: str, now: datetime) -> Optional[int]:
        """Time step the code belongs to within the skew window, or None."""
        if not code.isdigit():
            return None
        secret = challenge.user.totp_secret if challenge.user else None
        if not secret:
            return None

        current = totp_step(now)
        matched = None
        try:
            # every candidate is compared so timing does not reveal the match; the latest step wins
            for offset in range(-TOTP_SKEW_STEPS, TOTP_SKEW_STEPS + 1):
                if hmac.compare_digest(totp_code(secret, now, offset), code):
                    matched = current + offset
        except (ValueError, TypeError):
            logger.warning("TOTP secret for %s is not valid base32", challenge.username)
            return None
        return matched

    def _consume_totp_step(self, challenge: TwoFactorChallenge, step: int) -> bool:
        """
        Moves the user's last accepted step forward to ``step``. Fails when
        that step or a later one was already used, so a code is accepted
        at most once even across challenges. Not committed here.
        """
        result = db.session.execute(
            update(User)
            .where(
                User.id == challenge.user_id,
                or_(User.totp_last_step.is_(None), User.totp_last_step < step),
            )
            .values(totp_last_step=step)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _new_code(self) -> str:
        return str(secrets.randbelow(10 ** self._code_length)).zfill(self._code_length)

    def _hash_code(self, code: str) -> str:
        return hmac.new(self._key, code.encode("utf-8"), hashlib.sha256).hexdigest()

    def _send_code(self, user, code: str) -> None:
        if self._mailer is None:
            logger.warning("No mailer configured; two-factor code for %s was not sent", user.username)
            return
        sent, error = self._mailer(user, code, int(self._ttl.total_seconds() // 60))
        if not sent:
            logger.error("Two-factor code email to %s failed: %s", user.username, error)

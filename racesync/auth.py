from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Optional, get_args

from fastapi import Depends, Header
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .db import get_session
from .errors import AuthError, ConfigurationError, ForbiddenError, ValidationError
from .schemas import Role
from .settings import settings
from .utils import now_ms
from .validation import is_valid_pin

logger = logging.getLogger(__name__)

CLIENT_PIN = "client_pin"
CHIEF_JUDGE_PIN = "chief_judge_pin"

ROLES = get_args(Role)

pin_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_LEGACY_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.RACESYNC_SECRET_KEY, salt="racesync-auth")


# ---------------------------
# PIN hashes
# ---------------------------


def hash_pin(pin: str) -> str:
    return pin_context.hash(pin)


def is_legacy_hash(stored: str) -> bool:
    """Unsalted sha256 hex digests written by older deployments."""
    return bool(_LEGACY_HASH_RE.match(stored or ""))


def verify_pin(pin: str, stored: str) -> bool:
    if not stored:
        return False
    if is_legacy_hash(stored):
        digest = hashlib.sha256(pin.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, stored)
    try:
        return pin_context.verify(pin, stored)
    except ValueError:
        return False


def get_secret(session: Session, name: str) -> Optional[str]:
    row = session.get(models.StoredSecret, name)
    return row.value if row else None


def set_secret(session: Session, name: str, value: str) -> None:
    row = session.get(models.StoredSecret, name)
    if row:
        row.value = value
    else:
        session.add(models.StoredSecret(name=name, value=value))
    session.commit()


def set_secret_if_absent(session: Session, name: str, value: str) -> bool:
    """Insert-only write; False when another request stored the secret first."""
    try:
        session.execute(insert(models.StoredSecret).values(name=name, value=value))
        session.commit()
        return True
    except IntegrityError:
        session.rollback()
        return False


# ---------------------------
# Tokens
# ---------------------------


def generate_token(role: str) -> str:
    return _serializer().dumps({"role": role, "authenticatedAt": now_ms()})


def decode_token(token: str) -> dict:
    """Payload of a signed token. Raises AuthError with `expired` set for stale tokens."""
    try:
        return _serializer().loads(token, max_age=settings.RACESYNC_TOKEN_MAX_AGE_SECONDS)
    except SignatureExpired:
        raise AuthError("Token expired. Please re-authenticate.", expired=True)
    except BadSignature:
        raise AuthError("Invalid token")


def issue_token(session: Session, pin: Optional[str], role: Optional[str]) -> dict:
    if not pin or not isinstance(pin, str):
        raise ValidationError("PIN is required")
    if not is_valid_pin(pin):
        raise ValidationError("PIN must be exactly 4 digits")

    user_role = role if role in ROLES else "timer"
    secret_name = CHIEF_JUDGE_PIN if user_role == "chiefJudge" else CLIENT_PIN
    invalid_msg = "Invalid Chief Judge PIN" if user_role == "chiefJudge" else "Invalid PIN"

    stored = get_secret(session, secret_name)
    if stored is None:
        # first PIN submitted becomes the PIN
        was_set = set_secret_if_absent(session, secret_name, hash_pin(pin))
        if not was_set and not verify_pin(pin, get_secret(session, secret_name) or ""):
            raise AuthError(invalid_msg)
        logger.info("PIN for %s set by first login", user_role)
        return {"success": True, "token": generate_token(user_role), "isNewPin": was_set, "role": user_role}

    if not verify_pin(pin, stored):
        logger.warning("Rejected %s login with wrong PIN", user_role)
        raise AuthError(invalid_msg)

    if is_legacy_hash(stored):
        set_secret(session, secret_name, hash_pin(pin))
        logger.info("Upgraded legacy PIN hash for %s", user_role)

    return {"success": True, "token": generate_token(user_role), "role": user_role}


def pin_status(session: Session) -> dict:
    # flags only, never the hashes
    return {
        "hasPin": get_secret(session, CLIENT_PIN) is not None,
        "hasChiefPin": get_secret(session, CHIEF_JUDGE_PIN) is not None,
    }


def change_pin(session: Session, current_pin: Optional[str], new_pin: Optional[str]) -> dict:
    if not current_pin or not new_pin:
        raise ValidationError("currentPin and newPin are required")
    if not is_valid_pin(current_pin) or not is_valid_pin(new_pin):
        raise ValidationError("PINs must be exactly 4 digits")

    stored = get_secret(session, CLIENT_PIN)
    if not stored:
        raise ValidationError("No PIN is set. Use authentication to set initial PIN.")
    if not verify_pin(current_pin, stored):
        raise AuthError("Current PIN is incorrect")

    set_secret(session, CLIENT_PIN, hash_pin(new_pin))
    logger.info("Client PIN changed")
    return {"success": True}


def reset_pins(session: Session, server_pin: Optional[str]) -> dict:
    """Forget both PINs so the next logins set new ones. Guarded by RACESYNC_SERVER_API_PIN."""
    expected = settings.RACESYNC_SERVER_API_PIN
    if not expected:
        logger.error("RACESYNC_SERVER_API_PIN not configured")
        raise ConfigurationError("Service configuration error")
    if not server_pin:
        raise AuthError("Authorization required")

    # compare fixed-length digests
    provided = hashlib.sha256(server_pin.encode("utf-8")).digest()
    if not hmac.compare_digest(provided, hashlib.sha256(expected.encode("utf-8")).digest()):
        logger.warning("Rejected PIN reset with wrong server PIN")
        raise AuthError("Authorization required")

    session.execute(delete(models.StoredSecret).where(models.StoredSecret.name.in_([CLIENT_PIN, CHIEF_JUDGE_PIN])))
    session.commit()
    logger.info("Client PIN and Chief Judge PIN have been reset")
    return {"success": True, "message": "PINs have been reset. The next PINs entered will become the new PINs."}


# ---------------------------
# Request auth
# ---------------------------


@dataclass
class AuthResult:
    valid: bool
    method: Optional[str] = None  # "none" | "token" | "pin_hash"
    payload: Optional[dict] = None
    error: Optional[str] = None
    expired: bool = False

    @property
    def role(self) -> Optional[str]:
        return (self.payload or {}).get("role")


def validate_auth(session: Session, authorization: Optional[str]) -> AuthResult:
    stored = get_secret(session, CLIENT_PIN)
    if not authorization:
        if not stored:
            # no PIN configured yet: open access, but no role either
            return AuthResult(valid=True, method="none")
        return AuthResult(valid=False, error="Authorization required")

    if not authorization.startswith("Bearer "):
        return AuthResult(valid=False, error="Invalid authorization format. Use: Bearer <token>")
    token = authorization[len("Bearer "):].strip()

    # a presented token is always checked, PIN or not
    try:
        payload = decode_token(token)
        return AuthResult(valid=True, method="token", payload=payload)
    except AuthError as e:
        if e.expired:
            return AuthResult(valid=False, error=e.message, expired=True)

    if stored and hmac.compare_digest(token.encode("utf-8"), stored.encode("utf-8")):
        return AuthResult(valid=True, method="pin_hash")
    return AuthResult(valid=False, error="Invalid token")


def require_auth(
    authorization: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
) -> AuthResult:
    result = validate_auth(session, authorization)
    if not result.valid:
        raise AuthError(result.error or "Unauthorized", expired=result.expired)
    return result


def require_write_auth(auth: AuthResult = Depends(require_auth)) -> AuthResult:
    if auth.method == "none":
        raise AuthError("Authentication required to write data")
    return auth


def chief_judge_required(action: str):
    """Dependency that only lets chief-judge tokens through, e.g. chief_judge_required("Fault deletion")."""

    def dependency(auth: AuthResult = Depends(require_auth)) -> AuthResult:
        if auth.role != "chiefJudge":
            logger.warning("%s refused for role %s", action, auth.role)
            raise ForbiddenError(f"{action} requires Chief Judge role")
        return auth

    return dependency

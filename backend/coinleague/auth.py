from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import utcnow
from .errors import AuthError, ValidationError
from .models import User, UserSession

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_PBKDF2_ITERATIONS = int(os.environ.get("PASSWORD_PBKDF2_ITERATIONS", "390000"))
PASSWORD_SALT_BYTES = 16
PASSWORD_MIN_LENGTH = 8

SESSION_TOKEN_BYTES = 32
SESSION_TOKEN_PREFIX = "clg"
SESSION_TTL_HOURS = max(1, int(os.environ.get("SESSION_TTL_HOURS", "24")))
SESSION_TOKEN_PEPPER = os.environ.get("SESSION_TOKEN_PEPPER", "").encode("utf-8")

VALID_USERNAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def hash_password(password: str, *, iterations: int = PASSWORD_PBKDF2_ITERATIONS) -> str:
    salt = os.urandom(PASSWORD_SALT_BYTES)
    digest = _pbkdf2(password, salt, iterations)
    return f"{PASSWORD_HASH_ALGO}${iterations}${_b64(salt)}${_b64(digest)}"


def verify_password(password: str, encoded_hash: str | None) -> bool:
    try:
        algo, iterations_raw, salt_raw, digest_raw = (encoded_hash or "").split("$")
        if algo != PASSWORD_HASH_ALGO:
            return False
        candidate = _pbkdf2(password, _unb64(salt_raw), int(iterations_raw))
        return hmac.compare_digest(candidate, _unb64(digest_raw))
    except (ValueError, binascii.Error):
        return False


def normalize_username(raw_username: str | None) -> str:
    username = (raw_username or "").strip().lower()
    if not username:
        raise ValidationError("username is required")
    if not VALID_USERNAME.match(username):
        raise ValidationError("username may contain lowercase letters, digits, '_' and '-' only")
    return username


def hash_session_token(token: str) -> str:
    return hashlib.sha256(SESSION_TOKEN_PEPPER + token.encode("utf-8")).hexdigest()


def register_user(db: Session, username: str, password: str, *, iterations: int = PASSWORD_PBKDF2_ITERATIONS) -> User:
    username = normalize_username(username)
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")

    user = User(username=username, password_hash=hash_password(password, iterations=iterations))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"User '{username}' already exists.") from None
    return user


def authenticate(db: Session, username: str, password: str) -> User:
    user = db.execute(
        select(User).where(User.username == (username or "").strip().lower())
    ).scalar_one_or_none()
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError("Invalid username or password.")
    return user


def create_session(db: Session, user: User, *, now: datetime | None = None) -> tuple[str, UserSession]:
    current = now or utcnow()
    token = f"{SESSION_TOKEN_PREFIX}_{secrets.token_urlsafe(SESSION_TOKEN_BYTES)}"
    session = UserSession(
        user_id=user.id,
        token_hash=hash_session_token(token),
        expires_at=current + timedelta(hours=SESSION_TTL_HOURS),
        created_at=current,
    )
    db.add(session)
    db.commit()
    return token, session


def resolve_session(db: Session, token: str | None, *, now: datetime | None = None) -> UserSession:
    if not token:
        raise AuthError("Authentication required.")
    session = db.execute(
        select(UserSession).where(UserSession.token_hash == hash_session_token(token))
    ).scalar_one_or_none()
    if session is None or session.revoked_at is not None or session.expires_at <= (now or utcnow()):
        raise AuthError("Session expired or invalid.")
    return session


def revoke_session(db: Session, session: UserSession, *, now: datetime | None = None) -> None:
    session.revoked_at = now or utcnow()
    db.commit()

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def password_problem(password: Optional[str]) -> Optional[str]:
    """Reason a password is refused for a new account, or None when acceptable."""
    pw = password or ""
    if len(pw) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    # bcrypt only looks at the first 72 bytes.
    if len(pw.encode("utf-8")) > 72:
        return "password must be at most 72 bytes"
    return None


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_session_token() -> Tuple[str, str]:
    """(token handed to the client, hash stored in auth_sessions)."""
    token = secrets.token_urlsafe(32)
    return token, hash_session_token(token)


def session_expiry(days: int, *, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(days=max(1, int(days)))

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_DAYS = 7


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


def hash_session_token(token: str) -> str:
    # auth_sessions.token holds this digest, never the bearer value.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_session(now: Optional[datetime] = None) -> tuple[str, str, datetime]:
    """Mint a bearer token; returns (token, stored hash, expires_at)."""
    token = secrets.token_urlsafe(32)
    issued = now or datetime.now(timezone.utc)
    return token, hash_session_token(token), issued + timedelta(days=SESSION_DAYS)

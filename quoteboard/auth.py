"""
User accounts and JWT bearer authentication
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteboard.config import AuthConfig, get_config
from quoteboard.db.connection import get_session
from quoteboard.db.models import User
from quoteboard.errors import AuthError, ConflictError, ValidationError

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,50}$")

# Missing credentials are reported as 401 by get_current_user, not 403
security = HTTPBearer(auto_error=False)


def _secret(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    rounds = rounds or get_config().auth.bcrypt_rounds
    return bcrypt.hashpw(_secret(password), bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_secret(password), password_hash.encode("ascii"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


def validate_username(username: Optional[str]) -> str:
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username must be 3-50 characters and contain only letters, numbers, and underscores"
        )
    return username.lower()


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        raise ValidationError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise ValidationError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        raise ValidationError("Password must contain at least one number")
    return password


def create_access_token(user: User, config: Optional[AuthConfig] = None) -> str:
    """Create a signed JWT whose subject is the user id."""
    config = config or get_config().auth
    expire = datetime.now(timezone.utc) + timedelta(minutes=config.token_expire_minutes)
    claims = {"sub": user.id, "username": user.username, "exp": expire}
    return jwt.encode(claims, config.jwt_secret, algorithm=config.algorithm)


def decode_token(token: str, config: Optional[AuthConfig] = None) -> dict:
    """Verify a JWT and return its claims. Raises AuthError."""
    config = config or get_config().auth
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.algorithm])
    except ExpiredSignatureError:
        raise AuthError("Token expired")
    except JWTError:
        raise AuthError("Invalid token")
    if not payload.get("sub"):
        raise AuthError("Invalid token")
    return payload


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    return await session.scalar(
        select(User).where(User.username == username.strip().lower())
    )


async def register_user(session: AsyncSession, username: str, password: str) -> User:
    username = validate_username(username)
    validate_password(password)
    if await get_user_by_username(session, username) is not None:
        raise ConflictError("Username already in use")

    password_hash = await asyncio.to_thread(hash_password, password)
    user = User(username=username, password_hash=password_hash)
    session.add(user)
    await session.flush()
    logger.info(f"Registered user {user.id} ({username})")
    return user


async def authenticate(session: AsyncSession, username: Optional[str], password: Optional[str]) -> User:
    if not username or not password:
        raise ValidationError("Username and password are required")
    user = await get_user_by_username(session, username)
    if user is None or not await asyncio.to_thread(verify_password, password, user.password_hash):
        logger.info(f"Failed login for '{username.strip().lower()}'")
        raise AuthError("Invalid credentials")
    return user


async def ensure_admin_user(session: AsyncSession, config: Optional[AuthConfig] = None) -> Optional[User]:
    """Create the bootstrap admin when a password is configured and the user is missing.

    An existing account is never touched, so its password is not reset on boot.
    """
    config = config or get_config().auth
    if not config.admin_password:
        return None
    username = validate_username(config.admin_username)
    existing = await get_user_by_username(session, username)
    if existing is not None:
        return existing

    password_hash = await asyncio.to_thread(hash_password, config.admin_password, config.bcrypt_rounds)
    user = User(username=username, password_hash=password_hash)
    session.add(user)
    await session.flush()
    logger.info(f"Bootstrap admin user '{username}' created")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    """Resolve the bearer token to a stored user."""
    if credentials is None or not credentials.credentials:
        raise AuthError("Unauthorized")
    payload = decode_token(credentials.credentials)

    async with get_session() as session:
        user = await session.get(User, payload["sub"])
    if user is None:
        raise AuthError("User not found")
    return user

"""Credentials and access tokens for tenants, landlords and admins."""

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.config import get_settings
from rental_platform.domain.models import User, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_TYPE = "access"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    # Seeded and imported accounts may have no password at all
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, role: str, expires_in: timedelta | None = None) -> str:
    """Signed JWT carrying the user id as ``sub`` plus the role."""
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_in or timedelta(minutes=settings.jwt_expiration_minutes)
    claims = {
        "sub": user_id,
        "role": role,
        "type": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Claims of a valid access token, or None when verification fails."""
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if claims.get("type") != TOKEN_TYPE or not claims.get("sub"):
        return None
    return claims


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    email: str,
    password: str,
    name: str,
    role: str,
    phone: str | None = None,
) -> User:
    user = User(
        email=normalize_email(email),
        password_hash=hash_password(password),
        name=name.strip(),
        role=role,
        phone=phone,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("User %s registered as %s", user.id, role)
    return user


async def authenticate(db: AsyncSession, email: str, password: str) -> User | None:
    """Return the active user matching the credentials and stamp ``last_login_at``."""
    user = await get_user_by_email(db, email)
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        logger.info("Failed login for %s", normalize_email(email))
        return None
    user.last_login_at = utcnow()
    await db.commit()
    return user

"""
Security utilities: password hashing (seeding) and JWT access tokens.

Tokens identify the user and, optionally, the company the token was issued
for ("cid"). Billing endpoints only need that attribution; sign-in itself is
handled by the accounts service that issues the tokens.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    company_id: Optional[uuid.UUID] = None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(
    user_id: uuid.UUID,
    company_id: uuid.UUID | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = {"sub": str(user_id), "exp": expire}
    if company_id is not None:
        payload["cid"] = str(company_id)
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> TokenClaims | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = uuid.UUID(payload["sub"])
        company_id = uuid.UUID(payload["cid"]) if payload.get("cid") else None
    except (JWTError, KeyError, ValueError):
        return None
    return TokenClaims(user_id=user_id, company_id=company_id)

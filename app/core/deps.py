"""
FastAPI dependency functions for authentication, tenancy and billing collaborators.
"""
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import WebhookMisconfigured
from app.core.security import TokenClaims, decode_access_token
from app.models.models import Member, User
from app.repositories.repositories import MemberRepository, UserRepository
from app.services.billing_notifier import BillingNotifier
from app.services.stripe_service import StripeService
from app.services.webhook_verifier import WebhookVerifier

bearer_scheme = HTTPBearer(auto_error=False)


async def get_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenClaims:
    claims = decode_access_token(credentials.credentials) if credentials else None
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


async def get_current_user(
    claims: TokenClaims = Depends(get_token_claims),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await UserRepository(db).get_by_id(claims.user_id)
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_member(
    claims: TokenClaims = Depends(get_token_claims),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Member:
    """
    Resolve the member the request acts as: the token's company if it
    carries one, else the user's selected company.
    """
    company_id = claims.company_id or current_user.selected_company_id
    if not company_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User has not selected a company. Create or join a company first.",
        )
    member = await MemberRepository(db).get_for_user(current_user.id, company_id)
    if not member:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a member of this company.",
        )
    return member


# ---------------------------------------------------------------------------
# Billing collaborators — built per request, overridable in tests
# ---------------------------------------------------------------------------

def get_webhook_verifier() -> WebhookVerifier:
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise WebhookMisconfigured()
    return WebhookVerifier(
        secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )


def get_stripe_service() -> StripeService:
    return StripeService(
        secret_key=settings.STRIPE_SECRET_KEY,
        api_version=settings.STRIPE_API_VERSION,
        app_url=settings.APP_BASE_URL,
        currency=settings.STRIPE_CURRENCY,
    )


def get_billing_notifier() -> BillingNotifier:
    return BillingNotifier(grace_failures=settings.GRACE_PERIOD_FAILURE_COUNT)


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user

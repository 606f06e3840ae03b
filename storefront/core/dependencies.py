from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import AsyncGenerator

from ..core.config import Config
from ..core.token_bearer import AccessTokenBearer
from ..db.database import AsyncSessionLocal
from ..services import AuthService, CartService
from ..services.variant_lookup import DatabaseVariantLookup, HttpVariantLookup, VariantPriceLookup


auth_service = AuthService()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Asynchronous dependency that provides a database session for FastAPI routes.

    Yields:
        AsyncSession: An instance of the asynchronous database session.

    The session is closed after the request is processed.
    """

    async with AsyncSessionLocal() as db:
        yield db


async def get_current_user_id(token: str = Depends(AccessTokenBearer())) -> int:
    """
    Resolve the customer id carried by the request's access token.

    Raises:
        InvalidTokenException: If the token is invalid, expired or carries no usable user id.
    """
    return auth_service.resolve_user_id(token)


def get_variant_lookup(db: AsyncSession = Depends(get_db)) -> VariantPriceLookup:
    if Config.VARIANT_SERVICE_URL:
        return HttpVariantLookup(Config.VARIANT_SERVICE_URL, timeout=Config.VARIANT_SERVICE_TIMEOUT)

    return DatabaseVariantLookup(db)


def get_cart_service(
    db: AsyncSession = Depends(get_db),
    variant_lookup: VariantPriceLookup = Depends(get_variant_lookup),
) -> CartService:
    return CartService(db, variant_lookup)

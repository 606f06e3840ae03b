import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..models import ProductVariant
from ..schemas.variant import VariantInfo


logger = logging.getLogger(__name__)


def http_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(httpx.TransportError),
    )


class VariantPriceLookup(ABC):
    """
    Catalog collaborator that reports the current price, tax rate and quantity
    bounds of a product variant. Returns None when the variant does not exist
    or is no longer sellable.
    """

    @abstractmethod
    async def get_variant(self, product_id: int, variant_id: int) -> Optional[VariantInfo]:
        ...


class DatabaseVariantLookup(VariantPriceLookup):
    """Reads variants straight from the catalog's product_variants table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_variant(self, product_id: int, variant_id: int) -> Optional[VariantInfo]:
        query = select(ProductVariant).where(
            and_(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product_id,
                ProductVariant.is_active == True,
                ProductVariant.deleted_at.is_(None),
            )
        )
        result = await self.db.execute(query)
        variant = result.scalars().first()

        if not variant:
            return None

        return VariantInfo(
            product_id=variant.product_id,
            variant_id=variant.id,
            price=variant.price,
            sale_price=variant.sale_price,
            tax_rate=variant.tax_rate,
            min_quantity=variant.min_quantity or 1,
            max_quantity=variant.max_quantity,
        )


class HttpVariantLookup(VariantPriceLookup):
    """Asks the catalog service over HTTP; transport failures are retried with backoff."""

    def __init__(self, base_url: str, timeout: float = 2.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @http_retry()
    async def get_variant(self, product_id: int, variant_id: int) -> Optional[VariantInfo]:
        url = f"{self.base_url}/products/{product_id}/variants/{variant_id}"
        logger.info(f"VariantLookup GET {url}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(url)

        if response.status_code == 404:
            return None

        response.raise_for_status()
        payload = response.json()

        return VariantInfo(
            product_id=product_id,
            variant_id=variant_id,
            price=payload["price"],
            sale_price=payload.get("sale_price"),
            tax_rate=payload.get("tax_rate"),
            min_quantity=payload.get("min_quantity") or 1,
            max_quantity=payload.get("max_quantity"),
        )

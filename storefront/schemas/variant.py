from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional


class VariantInfo(BaseModel):
    """Pricing and quantity bounds of a purchasable variant, as reported by the catalog."""
    product_id: int
    variant_id: int
    price: Decimal
    sale_price: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    min_quantity: int = Field(default=1, ge=1)
    max_quantity: Optional[int] = Field(default=None, ge=1)

    @property
    def effective_price(self) -> Decimal:
        """Sale price when one is set, otherwise the list price."""
        if self.sale_price is not None and self.sale_price > 0:
            return self.sale_price
        return self.price

from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime

from ..db.base import Base
from ..models.base import TimeStampMixin


class ProductVariant(Base, TimeStampMixin):
    """Read-only view of the catalog's variant table, used for price lookups."""

    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    sale_price = Column(Numeric(12, 2), nullable=True)
    tax_rate = Column(Numeric(5, 2), nullable=True)
    min_quantity = Column(Integer, nullable=False, default=1)
    max_quantity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime, nullable=True)


    def __repr__(self):
        return f"<ProductVariant(id={self.id}, product_id={self.product_id}, price={self.price}, sale_price={self.sale_price})>"

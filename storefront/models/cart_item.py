from sqlalchemy import Column, Integer, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship

from ..db.base import Base
from ..models.base import TimeStampMixin


class CartItem(Base, TimeStampMixin):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "variant_id", name="uq_cart_items_cart_product_variant"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=False)
    quantity = Column(Integer, default=1, nullable=False)

    # price snapshot taken when the line was last written
    price_with_tax = Column(Numeric(12, 2), nullable=False)
    tax_rate = Column(Numeric(5, 2), nullable=False)
    base_price = Column(Numeric(12, 2), nullable=False, default=0)    # per unit, excluding tax
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)    # per unit
    line_total = Column(Numeric(12, 2), nullable=False, default=0)

    # Relationships
    cart = relationship("Cart", back_populates="cart_items")


    def __repr__(self):
        return f'<CartItem(cart_id={self.cart_id}, product_id={self.product_id}, variant_id={self.variant_id}, quantity={self.quantity})>'

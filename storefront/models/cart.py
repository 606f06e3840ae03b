from sqlalchemy import Column, Integer, ForeignKey, String, Numeric, DateTime, Enum, Index, text
from sqlalchemy.orm import relationship

from ..db.base import Base
from ..enums import CartStatus
from ..models.base import TimeStampMixin


class Cart(Base, TimeStampMixin):
    __tablename__ = "carts"
    __table_args__ = (
        # one active cart per user; checked out and expired carts are kept as history
        Index(
            "uq_carts_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(Enum(CartStatus), nullable=False, default=CartStatus.ACTIVE)

    # applied coupon, all null when none is applied
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    coupon_code = Column(String, nullable=True)
    discount_type = Column(String, nullable=True)
    discount_value = Column(Numeric(12, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)

    # derived totals, rewritten after every line or coupon change
    base_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    roundoff = Column(Numeric(12, 2), nullable=False, default=0)
    final_total = Column(Numeric(12, 2), nullable=False, default=0)

    expires_at = Column(DateTime, nullable=False)

    # Relationships
    cart_items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CartItem.id",
    )
    coupon = relationship("Coupon")


    def __repr__(self):
        return f"<Cart(id={self.id}, user_id={self.user_id}, status={self.status}, final_total={self.final_total})>"

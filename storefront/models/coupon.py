from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship

from ..db.base import Base
from ..models.base import TimeStampMixin, utcnow


class Coupon(Base, TimeStampMixin):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    discount_type = Column(String, nullable=False)  # percentage, fixed_amount or free_shipping
    discount_value = Column(Numeric(12, 2), nullable=False)  # Either percentage or fixed amount
    minimum_order_value = Column(Numeric(12, 2), nullable=True)
    maximum_discount_amount = Column(Numeric(12, 2), nullable=True)  # Only applies to percentage coupons
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)  # null means the coupon never expires
    is_active = Column(Boolean, nullable=False, default=True)
    usage_limit = Column(Integer, nullable=True)  # Maximum number of times coupon can be used
    per_user_limit = Column(Integer, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    usages = relationship("CouponUsage", back_populates="coupon")


    def __repr__(self):
        return f"<Coupon(code={self.code}, discount_type={self.discount_type}, discount_value={self.discount_value})>"


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    __table_args__ = (
        Index("ix_coupon_usage_coupon_user", "coupon_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False)
    user_id = Column(Integer, nullable=True)
    order_id = Column(String, nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    used_at = Column(DateTime, nullable=False, default=utcnow)

    coupon = relationship("Coupon", back_populates="usages")

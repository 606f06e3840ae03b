from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime


class CouponResponse(BaseModel):
    """Schema for coupons offered to a customer"""
    id: int
    code: str
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    minimum_order_value: Optional[float] = None
    maximum_discount_amount: Optional[float] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    per_user_limit: Optional[int] = None
    user_usage_count: int = 0
    remaining_uses: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class CouponValidationResponse(BaseModel):
    """Result of a dry-run coupon check against the current cart"""
    valid: bool
    code: str
    discount_type: Optional[str] = None
    discount_amount: float = 0.0
    message: str

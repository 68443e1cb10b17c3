from pydantic import BaseModel, Field, field_validator
from typing import ClassVar, Dict, Optional, Type
from datetime import datetime
from decimal import Decimal

from ..models.order import OrderType, PaymentMode


class OrderCreateBase(BaseModel):
    """Fields shared by every order kind. Each subclass adds its target id."""
    target_field: ClassVar[str] = ""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Amount in rupees")
    package_id: Optional[str] = Field(None, max_length=36)
    razorpay_payment_id: Optional[str] = Field(None, alias="razorpay_paymentId", max_length=64)
    payment_mode: Optional[PaymentMode] = None
    # Accepted for client compatibility; new orders always start Pending
    status: Optional[str] = None

    base_amount: Optional[Decimal] = Field(None, ge=0)
    processing_fee: Optional[Decimal] = Field(None, ge=0)
    convenience_fee: Optional[Decimal] = Field(None, ge=0)
    gst_amount: Optional[Decimal] = Field(None, ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    amount_without_coupon: Optional[Decimal] = Field(None, ge=0)
    coupon: Optional[str] = Field(None, max_length=50)

    class Config:
        populate_by_name = True

    @field_validator("payment_mode", mode="before")
    @classmethod
    def normalize_payment_mode(cls, v):
        if isinstance(v, str):
            for mode in PaymentMode:
                if v.strip().lower() == mode.value.lower():
                    return mode
        return v

    def target_id(self) -> str:
        return getattr(self, self.target_field)


class TournamentOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "tournament_id"
    tournament_id: str = Field(..., min_length=1, max_length=36)


class BannerOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "banner_id"
    banner_id: str = Field(..., min_length=1, max_length=36)


class SponsorOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "tournament_id"
    tournament_id: str = Field(..., min_length=1, max_length=36)
    package_id: str = Field(..., min_length=1, max_length=36)


class ShopOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "shop_id"
    shop_id: str = Field(..., min_length=1, max_length=36)
    package_id: str = Field(..., min_length=1, max_length=36)


class VenueOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "venue_id"
    venue_id: str = Field(..., min_length=1, max_length=36)
    package_id: str = Field(..., min_length=1, max_length=36)


class IndividualOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "individual_id"
    individual_id: str = Field(..., min_length=1, max_length=36)
    package_id: str = Field(..., min_length=1, max_length=36)


class BookingOrderCreate(OrderCreateBase):
    target_field: ClassVar[str] = "booking_id"
    booking_id: str = Field(..., min_length=1, max_length=36)


ORDER_REQUEST_SCHEMAS: Dict[OrderType, Type[OrderCreateBase]] = {
    OrderType.TOURNAMENT: TournamentOrderCreate,
    OrderType.BANNER: BannerOrderCreate,
    OrderType.SPONSOR: SponsorOrderCreate,
    OrderType.SHOP: ShopOrderCreate,
    OrderType.VENUE: VenueOrderCreate,
    OrderType.INDIVIDUAL: IndividualOrderCreate,
    OrderType.BOOKING: BookingOrderCreate,
}


class OrderHistoryResponse(BaseModel):
    id: str
    order_id: str
    user_id: str
    order_type: str
    target_id: str
    package_id: Optional[str] = None
    amount: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    base_amount: Optional[Decimal] = None
    processing_fee: Optional[Decimal] = None
    convenience_fee: Optional[Decimal] = None
    gst_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    coupon: Optional[str] = None
    currency: str
    receipt: Optional[str] = None
    status: str
    payment_mode: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

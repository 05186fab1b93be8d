from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from order_engine.db.models import (
    CancelReason, Channel, LineCancelReason, Order, OrderStatus, PaymentStatus, Region,
    ShipClass, ShippingMethod, ShippingStatus,
)
from order_engine.services import orders
from order_engine.services.orders import LineRequest


class SubmitOrderReq(BaseModel):
    lines: List[LineRequest]
    shipping_method: str
    shipping_region: Optional[str] = None
    shipping_details: dict[str, Any] = {}
    payment_method: Optional[str] = None
    priority_requested: bool = False
    insurance_selected: bool = False
    insurance_fee_cents: Optional[int] = Field(default=None, ge=0)
    lbc_package: Optional[str] = None


class QuoteReq(BaseModel):
    lines: List[LineRequest]
    shipping_method: str
    shipping_region: Optional[str] = None
    cop: bool = False
    lbc_package: Optional[str] = None
    priority_requested: bool = False
    insurance_selected: bool = False
    insurance_fee_cents: Optional[int] = Field(default=None, ge=0)


class ReviewPaymentReq(BaseModel):
    approve: bool
    note: Optional[str] = None


class VoidReq(BaseModel):
    note: Optional[str] = None


class ReceiptReq(BaseModel):
    receipt_url: str


class ShipReq(BaseModel):
    courier: Optional[str] = None
    tracking_number: str


class RushFeeReq(BaseModel):
    amount_cents: int = 5000


class PaymentHoldReq(BaseModel):
    hold: bool


class PriorityApprovalReq(BaseModel):
    approved: bool


class PosCheckoutReq(BaseModel):
    lines: List[LineRequest]
    payment_method: str = "CASH"


class SimilarReq(BaseModel):
    variant_ids: List[int]
    limit: int = Field(default=6, ge=1, le=24)


class RestockItem(BaseModel):
    variant_id: int
    qty: int = Field(ge=1)


class RestockReq(BaseModel):
    items: List[RestockItem]


class CartItemAdd(BaseModel):
    variant_id: int
    qty: int = Field(ge=1)


class CartItemRead(BaseModel):
    variant_id: int
    qty: int
    unit_price_cents: int
    title: str


class CartRead(BaseModel):
    items: List[CartItemRead] = []


class OrderLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    variant_id: int
    title_snapshot: str
    qty_requested: int
    unit_price_cents: int
    condition_snapshot: Optional[str] = None
    ship_class_snapshot: Optional[ShipClass] = None
    is_cancelled: bool
    cancel_reason: Optional[LineCancelReason] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: Optional[str] = None
    channel: Channel
    status: OrderStatus
    payment_status: PaymentStatus
    shipping_status: ShippingStatus
    stage: str
    payment_method: Optional[str] = None
    shipping_method: Optional[ShippingMethod] = None
    shipping_region: Optional[Region] = None
    shipping_details: dict = {}
    package: Optional[str] = None
    shipping_warning: Optional[str] = None
    subtotal_cents: int
    shipping_fee_cents: int
    cop_fee_cents: int
    lalamove_fee_cents: int
    priority_fee_cents: int
    insurance_fee_cents: int
    rush_fee_cents: int
    total_cents: int
    currency: str
    payment_deadline: Optional[datetime] = None
    payment_hold: bool
    priority_requested: bool
    priority_approved: bool
    remaining_seconds: Optional[int] = None
    receipt_url: Optional[str] = None
    review_note: Optional[str] = None
    cancelled_reason: Optional[CancelReason] = None
    void_note: Optional[str] = None
    courier: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    lines: List[OrderLineRead] = []


class ApprovalRead(BaseModel):
    ok: bool
    sold_out_variant_ids: List[int] = []
    order: OrderRead


class OrderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    payload: dict = {}
    created_at: datetime


def order_read(order: Order, now: Optional[datetime] = None) -> OrderRead:
    fields = {c.key: getattr(order, c.key) for c in Order.__table__.columns}
    return OrderRead.model_validate({
        **fields,
        "stage": orders.stage(order),
        "remaining_seconds": orders.remaining_seconds(order, now),
        "lines": [OrderLineRead.model_validate(l) for l in order.lines],
    })

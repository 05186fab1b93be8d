
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Boolean, DateTime, ForeignKey, BigInteger, JSON, CheckConstraint, Index, Enum as SAEnum
from datetime import datetime, timezone
from enum import Enum
from order_engine.db.session import Base

def now_utc() -> datetime:
    # naive UTC everywhere; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _enum(cls):
    return SAEnum(cls, native_enum=False, length=32, validate_strings=True)

class Channel(str, Enum):
    WEB = "WEB"
    POS = "POS"

class OrderStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_SUBMITTED = "PAYMENT_SUBMITTED"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    VOIDED = "VOIDED"

TERMINAL_STATUSES = {OrderStatus.CANCELLED, OrderStatus.VOIDED, OrderStatus.COMPLETED}

class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"
    REJECTED = "REJECTED"

class ShippingStatus(str, Enum):
    NONE = "NONE"
    PREPARING_TO_SHIP = "PREPARING_TO_SHIP"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"

class CancelReason(str, Enum):
    SOLD_OUT = "SOLD_OUT"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    CUSTOMER = "CUSTOMER"
    STAFF_VOID = "STAFF_VOID"

class LineCancelReason(str, Enum):
    SOLD_OUT = "SOLD_OUT"
    RETURNED_TO_CART = "RETURNED_TO_CART"
    ORDER_CANCELLED = "ORDER_CANCELLED"

class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"

class ShippingMethod(str, Enum):
    JNT = "JNT"
    LBC = "LBC"
    LALAMOVE = "LALAMOVE"
    PICKUP = "PICKUP"

class Region(str, Enum):
    METRO_MANILA = "METRO_MANILA"
    LUZON = "LUZON"
    VISAYAS = "VISAYAS"
    MINDANAO = "MINDANAO"

class ShipClass(str, Enum):
    MINI_GT = "MINI_GT"
    KAIDO = "KAIDO"
    POPRACE = "POPRACE"
    ACRYLIC_TRUE_SCALE = "ACRYLIC_TRUE_SCALE"
    BLISTER = "BLISTER"
    TOMICA = "TOMICA"
    HOT_WHEELS_MAINLINE = "HOT_WHEELS_MAINLINE"
    HOT_WHEELS_PREMIUM = "HOT_WHEELS_PREMIUM"
    LOOSE_NO_BOX = "LOOSE_NO_BOX"
    LALAMOVE = "LALAMOVE"
    DIORAMA = "DIORAMA"

class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(240), nullable=False)
    brand: Mapped[str | None] = mapped_column(String(120), nullable=True)
    model: Mapped[str | None] = mapped_column(String(120), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    variants = relationship("Variant", back_populates="product", cascade="all, delete-orphan")

class Variant(Base):
    __tablename__ = "variants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), index=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    condition: Mapped[str] = mapped_column(String(64), default="Sealed")
    issue_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ship_class: Mapped[ShipClass | None] = mapped_column(_enum(ShipClass), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    product = relationship("Product", back_populates="variants")
    stock = relationship("VariantStock", back_populates="variant", uselist=False, cascade="all, delete-orphan")

class VariantStock(Base):
    __tablename__ = "variant_stock"
    __table_args__ = (
        CheckConstraint("qty_reserved >= 0", name="ck_variant_stock_reserved_nonneg"),
        CheckConstraint("qty_reserved <= qty_on_hand", name="ck_variant_stock_reserved_le_on_hand"),
    )
    variant_id: Mapped[int] = mapped_column(ForeignKey("variants.id", ondelete="CASCADE"), primary_key=True)
    qty_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    variant = relationship("Variant", back_populates="stock")

class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_deadline", "status", "payment_deadline"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    channel: Mapped[Channel] = mapped_column(_enum(Channel), default=Channel.WEB)
    status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), default=OrderStatus.PENDING_APPROVAL)
    payment_status: Mapped[PaymentStatus] = mapped_column(_enum(PaymentStatus), default=PaymentStatus.UNPAID)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shipping_method: Mapped[ShippingMethod | None] = mapped_column(_enum(ShippingMethod), nullable=True)
    shipping_region: Mapped[Region | None] = mapped_column(_enum(Region), nullable=True)
    shipping_details: Mapped[dict] = mapped_column(JSON, default=dict)
    package: Mapped[str | None] = mapped_column(String(32), nullable=True)
    shipping_warning: Mapped[str | None] = mapped_column(String(255), nullable=True)

    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    shipping_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    cop_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    lalamove_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    priority_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    insurance_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    rush_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="PHP")
    priority_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    priority_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    insurance_selected: Mapped[bool] = mapped_column(Boolean, default=False)

    payment_deadline: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    payment_hold: Mapped[bool] = mapped_column(Boolean, default=False)
    receipt_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_reason: Mapped[CancelReason | None] = mapped_column(_enum(CancelReason), nullable=True)
    void_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    shipping_status: Mapped[ShippingStatus] = mapped_column(_enum(ShippingStatus), default=ShippingStatus.NONE)
    courier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc, onupdate=now_utc)

    lines = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan", order_by="OrderLine.id")
    reservations = relationship("Reservation", back_populates="order", cascade="all, delete-orphan")

class OrderLine(Base):
    __tablename__ = "order_lines"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey("variants.id"), index=True)
    title_snapshot: Mapped[str] = mapped_column(String(255))
    qty_requested: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    condition_snapshot: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ship_class_snapshot: Mapped[ShipClass | None] = mapped_column(_enum(ShipClass), nullable=True)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_reason: Mapped[LineCancelReason | None] = mapped_column(_enum(LineCancelReason), nullable=True)

    order = relationship("Order", back_populates="lines")

class Reservation(Base):
    __tablename__ = "reservations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    status: Mapped[ReservationStatus] = mapped_column(_enum(ReservationStatus), default=ReservationStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    order = relationship("Order", back_populates="reservations")
    lines = relationship("ReservationLine", back_populates="reservation", cascade="all, delete-orphan",
                         order_by="ReservationLine.variant_id")

class ReservationLine(Base):
    __tablename__ = "reservation_lines"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey("reservations.id", ondelete="CASCADE"), index=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey("variants.id"))
    qty: Mapped[int] = mapped_column(Integer)

    reservation = relationship("Reservation", back_populates="lines")

class OrderEvent(Base):
    __tablename__ = "order_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

"""Order state machine.

    PENDING_APPROVAL -> AWAITING_PAYMENT -> PAYMENT_SUBMITTED -> PAID -> SHIPPED -> COMPLETED
                 \\______________ any non-final state ______________/
                                  |                |
                              CANCELLED          VOIDED

Every public function runs as one transaction: it locks the order row,
checks the source state, applies the change together with its ledger side
effects, and commits. On any error the session is rolled back and the
order is left untouched.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from order_engine.core.config import settings
from order_engine.core.errors import InvalidState, NotFound, ValidationFailed
from order_engine.db.models import (
    CancelReason, Channel, LineCancelReason, Order, OrderEvent, OrderLine, OrderStatus,
    PaymentStatus, Region, ShippingMethod, ShippingStatus, TERMINAL_STATUSES, Variant, now_utc,
)
from order_engine.db.uow import UnitOfWork, unit_of_work
from order_engine.services import fees as fee_calc
from order_engine.services import ledger, reconciliation
from order_engine.services import shipping_details as sd
from order_engine.store import cart_store

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = {OrderStatus.PENDING_APPROVAL, OrderStatus.AWAITING_PAYMENT, OrderStatus.PAYMENT_SUBMITTED}


class LineRequest(BaseModel):
    variant_id: int
    qty: int = Field(ge=1)


@dataclass
class ApprovalResult:
    ok: bool
    order: Order
    sold_out_variant_ids: list[int] = field(default_factory=list)


# --- helpers ----------------------------------------------------------------

def _lock(db: Session, order_id: int, customer_id: Optional[str] = None) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    # someone else's order is reported as missing
    if order is None or (customer_id is not None and order.customer_id != customer_id):
        raise NotFound("order", order_id)
    return order


def _require(order: Order, ok: bool, action: str) -> None:
    if not ok:
        raise InvalidState(
            f"cannot {action} order {order.id} in status {order.status.value}"
            f" (payment {order.payment_status.value}, shipping {order.shipping_status.value})"
        )


def _set_payment_status(order: Order, status: PaymentStatus) -> None:
    if order.payment_status == PaymentStatus.PAID and status != PaymentStatus.PAID:
        raise InvalidState(f"order {order.id} is already paid")
    order.payment_status = status


def _merge(lines: list[LineRequest]) -> dict[int, int]:
    merged: dict[int, int] = {}
    for line in lines:
        line = LineRequest.model_validate(line)
        merged[line.variant_id] = merged.get(line.variant_id, 0) + line.qty
    return merged


def _load_variants(db: Session, variant_ids) -> dict[int, Variant]:
    rows = db.execute(
        select(Variant).options(joinedload(Variant.product)).where(Variant.id.in_(list(variant_ids)))
    ).scalars().all()
    found = {v.id: v for v in rows if v.active and v.product.active}
    missing = sorted(set(variant_ids) - set(found))
    if missing:
        raise ValidationFailed("UNKNOWN_VARIANT", f"Variant {missing[0]} is not available")
    return found


def _check_stock(db: Session, wanted: dict[int, int]) -> None:
    avail = ledger.sellable_many(db, wanted)
    short = sorted(v for v, q in wanted.items() if q > avail[v])
    if short:
        raise ValidationFailed(
            "INSUFFICIENT_STOCK",
            f"Variant {short[0]} has only {avail[short[0]]} left",
        )


def _priced(wanted: dict[int, int], variants: dict[int, Variant]) -> list[fee_calc.PricedLine]:
    return [
        fee_calc.PricedLine(
            variant_id=vid, qty=qty,
            unit_price_cents=variants[vid].price_cents,
            ship_class=variants[vid].ship_class,
        )
        for vid, qty in sorted(wanted.items())
    ]


def _order_lines(wanted: dict[int, int], variants: dict[int, Variant]) -> list[OrderLine]:
    return [
        OrderLine(
            variant_id=vid,
            title_snapshot=variants[vid].product.title,
            qty_requested=qty,
            unit_price_cents=variants[vid].price_cents,
            condition_snapshot=variants[vid].condition,
            ship_class_snapshot=variants[vid].ship_class,
            is_cancelled=False,
        )
        for vid, qty in sorted(wanted.items())
    ]


def _region(raw) -> Optional[Region]:
    if raw in (None, ""):
        return None
    try:
        return Region(raw)
    except ValueError:
        raise ValidationFailed("INVALID_REGION", f"Unknown shipping region {raw!r}") from None


def _method(raw) -> ShippingMethod:
    try:
        return ShippingMethod(raw)
    except ValueError:
        raise ValidationFailed("INVALID_SHIPPING_METHOD", f"Unknown shipping method {raw!r}") from None


def _release_active(db: Session, order: Order) -> bool:
    res = ledger.active_reservation(db, order.id)
    return ledger.release_reservation(db, res) if res else False


def _cancel(uow: UnitOfWork, order: Order, status: OrderStatus, reason: CancelReason,
            event: str, now: datetime, note: Optional[str] = None) -> None:
    released = _release_active(uow.db, order)
    for line in order.lines:
        if not line.is_cancelled:
            line.is_cancelled = True
            line.cancel_reason = LineCancelReason.ORDER_CANCELLED
    order.status = status
    order.cancelled_reason = reason
    order.cancelled_at = now
    if note:
        order.void_note = note
    uow.record(order, event, reason=reason.value, released=released, note=note)
    logger.info("order %s -> %s (%s), reservation released=%s", order.id, status.value, reason.value, released)


# --- projections ------------------------------------------------------------

def stage(order: Order) -> str:
    """Bucket the order lists are grouped by."""
    if order.status in (OrderStatus.CANCELLED, OrderStatus.VOIDED):
        return "cancelled"
    if order.status == OrderStatus.PENDING_APPROVAL:
        return "to_approve"
    if order.status == OrderStatus.AWAITING_PAYMENT:
        return "to_pay"
    if order.status == OrderStatus.PAYMENT_SUBMITTED:
        return "payment_review"
    if order.shipping_status == ShippingStatus.COMPLETED:
        return "completed"
    if order.shipping_status == ShippingStatus.SHIPPED:
        return "shipped"
    return "to_ship"


def remaining_seconds(order: Order, now: Optional[datetime] = None) -> Optional[int]:
    """Payment countdown; None when no clock is running."""
    if order.status != OrderStatus.AWAITING_PAYMENT or order.payment_hold or order.payment_deadline is None:
        return None
    now = now or now_utc()
    return max(0, int((order.payment_deadline - now).total_seconds()))


def get_order(db: Session, order_id: int, customer_id: Optional[str] = None) -> Order:
    order = db.get(Order, order_id)
    if order is None or (customer_id is not None and order.customer_id != customer_id):
        raise NotFound("order", order_id)
    return order


def list_orders(db: Session, customer_id: Optional[str] = None, status: Optional[OrderStatus] = None,
                limit: int = 50, offset: int = 0) -> list[Order]:
    stmt = select(Order).order_by(Order.id.desc())
    if customer_id is not None:
        stmt = stmt.where(Order.customer_id == customer_id)
    if status is not None:
        stmt = stmt.where(Order.status == status)
    return list(db.execute(stmt.offset(offset).limit(limit)).scalars())


def order_events(db: Session, order_id: int) -> list[OrderEvent]:
    return list(db.execute(
        select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.id)
    ).scalars())


# --- checkout ---------------------------------------------------------------

def quote(db: Session, lines: list[LineRequest], shipping_method, shipping_region=None, *,
          cop: bool = False, lbc_package: Optional[str] = None, priority_requested: bool = False,
          insurance_selected: bool = False, insurance_fee_cents: Optional[int] = None) -> fee_calc.FeeBreakdown:
    """Price a cart without creating anything."""
    wanted = _merge(lines)
    if not wanted:
        raise ValidationFailed("EMPTY_CART", "Select at least one item")
    variants = _load_variants(db, wanted)
    return fee_calc.compute_fees(
        _priced(wanted, variants), _method(shipping_method), _region(shipping_region),
        fee_calc.FeeOptions(
            cop=cop, lbc_package=lbc_package,
            priority_requested=priority_requested,
            priority_available=settings.PRIORITY_SHIPPING_AVAILABLE,
            insurance_selected=insurance_selected,
            insurance_fee_cents=insurance_fee_cents,
        ),
    )


def submit(db: Session, customer_id: str, lines: list[LineRequest], shipping_method, shipping_region,
           shipping_details: dict, *, payment_method: Optional[str] = None, priority_requested: bool = False,
           insurance_selected: bool = False, insurance_fee_cents: Optional[int] = None,
           lbc_package: Optional[str] = None, now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    wanted = _merge(lines)
    if not wanted:
        raise ValidationFailed("EMPTY_CART", "Select at least one item")

    method = _method(shipping_method)
    region = _region(shipping_region)
    details = sd.parse(
        method, shipping_details,
        pickup_schedule=settings.PICKUP_SCHEDULE,
        pickup_unavailable=settings.PICKUP_UNAVAILABLE,
    )
    ordered = sorted(wanted)

    with unit_of_work(db) as uow:
        variants = _load_variants(db, wanted)
        breakdown = fee_calc.compute_fees(
            _priced(wanted, variants), method, region,
            fee_calc.FeeOptions(
                cop=isinstance(details, sd.LbcDetails) and details.cop,
                lbc_package=lbc_package,
                priority_requested=priority_requested,
                priority_available=settings.PRIORITY_SHIPPING_AVAILABLE,
                insurance_selected=insurance_selected,
                insurance_fee_cents=insurance_fee_cents,
            ),
        )
        # advisory only: approval is where stock is actually claimed
        _check_stock(db, wanted)

        order = Order(
            customer_id=customer_id,
            channel=Channel.WEB,
            status=OrderStatus.PENDING_APPROVAL,
            payment_status=PaymentStatus.UNPAID,
            shipping_status=ShippingStatus.NONE,
            payment_method=payment_method,
            shipping_method=method,
            shipping_region=region,
            shipping_details=details.model_dump(mode="json"),
            package=breakdown.package,
            shipping_warning=breakdown.warning,
            subtotal_cents=breakdown.subtotal_cents,
            shipping_fee_cents=breakdown.shipping_fee_cents,
            cop_fee_cents=breakdown.cop_fee_cents,
            lalamove_fee_cents=breakdown.lalamove_fee_cents,
            priority_fee_cents=breakdown.priority_fee_cents,
            insurance_fee_cents=breakdown.insurance_fee_cents,
            rush_fee_cents=0,
            total_cents=breakdown.total_cents,
            priority_requested=priority_requested,
            priority_approved=False,
            insurance_selected=insurance_selected and breakdown.insurance_fee_cents > 0,
            payment_hold=False,
            created_at=now,
        )
        order.lines = _order_lines(wanted, variants)
        db.add(order)
        db.flush()
        uow.record(order, "order.submitted", total_cents=order.total_cents, variant_ids=ordered)
        uow.after_commit.append(lambda: cart_store.delete_items(customer_id, ordered))

    logger.info("order %s submitted by %s: %s via %s, total %s", order.id, customer_id, ordered, method.value, order.total_cents)
    return order


def pos_checkout(db: Session, lines: list[LineRequest], *, payment_method: str, staff_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> Order:
    """Walk-in sale: stock is claimed and sold in the same transaction."""
    now = now or now_utc()
    wanted = _merge(lines)
    if not wanted:
        raise ValidationFailed("EMPTY_CART", "Scan at least one item")

    with unit_of_work(db) as uow:
        variants = _load_variants(db, wanted)
        subtotal = sum(variants[v].price_cents * q for v, q in wanted.items())
        order = Order(
            customer_id=None,
            channel=Channel.POS,
            status=OrderStatus.COMPLETED,
            payment_status=PaymentStatus.PAID,
            shipping_status=ShippingStatus.COMPLETED,
            payment_method=payment_method,
            subtotal_cents=subtotal,
            total_cents=subtotal,
            rush_fee_cents=0,
            payment_hold=False,
            created_at=now, approved_at=now, paid_at=now, completed_at=now,
        )
        order.lines = _order_lines(wanted, variants)
        db.add(order)
        db.flush()
        res, short = ledger.reserve_all(db, order.id, wanted)
        if res is None:
            raise ValidationFailed("INSUFFICIENT_STOCK", f"Variant {short[0]} is sold out")
        ledger.commit_reservation(db, res)
        uow.record(order, "order.pos_completed", staff_id=staff_id, total_cents=subtotal)

    logger.info("POS order %s completed by %s, total %s", order.id, staff_id, subtotal)
    return order


# --- staff approval & payment -----------------------------------------------

def approve(db: Session, order_id: int, now: Optional[datetime] = None) -> ApprovalResult:
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(order, order.status == OrderStatus.PENDING_APPROVAL, "approve")

        wanted: dict[int, int] = {}
        for line in order.lines:
            if not line.is_cancelled:
                wanted[line.variant_id] = wanted.get(line.variant_id, 0) + line.qty_requested

        res, short = ledger.reserve_all(db, order.id, wanted)
        if res is None:
            sold_out = reconciliation.reconcile_sold_out(uow, order, short, now=now)
            result = ApprovalResult(ok=False, order=order, sold_out_variant_ids=sold_out)
        else:
            order.status = OrderStatus.AWAITING_PAYMENT
            order.approved_at = now
            order.payment_deadline = now + timedelta(hours=settings.PAYMENT_WINDOW_HOURS)
            uow.record(order, "order.approved", reservation_id=res.id,
                       payment_deadline=order.payment_deadline.isoformat())
            logger.info("order %s approved, reservation %s, pay by %s", order.id, res.id, order.payment_deadline)
            result = ApprovalResult(ok=True, order=order)
    return result


def submit_receipt(db: Session, order_id: int, receipt_url: str, customer_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> Order:
    receipt_url = (receipt_url or "").strip()
    if not receipt_url:
        raise ValidationFailed("MISSING_RECEIPT", "Upload a payment receipt first")
    with unit_of_work(db) as uow:
        order = _lock(db, order_id, customer_id)
        # no deadline check: a receipt that beats the expiry sweep to the row lock wins
        _require(order, order.status == OrderStatus.AWAITING_PAYMENT, "submit a receipt for")
        order.status = OrderStatus.PAYMENT_SUBMITTED
        _set_payment_status(order, PaymentStatus.SUBMITTED)
        order.receipt_url = receipt_url
        uow.record(order, "order.receipt_submitted", receipt_url=receipt_url)
    logger.info("order %s receipt submitted", order_id)
    return order


def review_payment(db: Session, order_id: int, approve: bool, note: Optional[str] = None,
                   now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(order, order.status == OrderStatus.PAYMENT_SUBMITTED, "review payment of")
        order.review_note = note
        if approve:
            res = ledger.active_reservation(db, order.id)
            _require(order, res is not None, "confirm payment without a reservation for")
            ledger.commit_reservation(db, res)
            order.status = OrderStatus.PAID
            _set_payment_status(order, PaymentStatus.PAID)
            order.shipping_status = ShippingStatus.PREPARING_TO_SHIP
            order.paid_at = now
            uow.record(order, "order.payment_approved", note=note)
        else:
            order.status = OrderStatus.AWAITING_PAYMENT
            _set_payment_status(order, PaymentStatus.REJECTED)
            order.receipt_url = None
            extended = now + timedelta(hours=settings.PAYMENT_REJECT_EXTENSION_HOURS)
            if order.payment_deadline is None or order.payment_deadline < extended:
                order.payment_deadline = extended
            uow.record(order, "order.payment_rejected", note=note,
                       payment_deadline=order.payment_deadline.isoformat())
    logger.info("order %s payment %s", order_id, "approved" if approve else "rejected")
    return order


def set_payment_hold(db: Session, order_id: int, hold: bool) -> Order:
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(order, order.status not in TERMINAL_STATUSES, "change the payment hold of")
        if order.payment_hold != hold:
            order.payment_hold = hold
            uow.record(order, "order.payment_hold_changed", payment_hold=hold)
    return order


def set_priority_approved(db: Session, order_id: int, approved: bool) -> Order:
    """Staff sign-off on a priority-shipping request."""
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(order, order.priority_requested and order.status not in TERMINAL_STATUSES,
                 "change the priority approval of")
        if order.priority_approved != approved:
            order.priority_approved = approved
            uow.record(order, "order.priority_changed", priority_approved=approved)
    return order


# --- cancellation -----------------------------------------------------------

def void_order(db: Session, order_id: int, note: Optional[str] = None, now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(order, order.status not in TERMINAL_STATUSES, "void")
        _cancel(uow, order, OrderStatus.VOIDED, CancelReason.STAFF_VOID, "order.voided", now, note)
    return order


def cancel_pending_order(db: Session, order_id: int, customer_id: Optional[str] = None,
                         now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id, customer_id)
        _require(
            order,
            order.payment_status != PaymentStatus.PAID and order.status in CUSTOMER_CANCELLABLE,
            "cancel",
        )
        _cancel(uow, order, OrderStatus.CANCELLED, CancelReason.CUSTOMER, "order.cancelled", now)
    return order


def expire_order(db: Session, order_id: int, now: Optional[datetime] = None) -> bool:
    """Timeout cancel. Re-checks everything under the row lock; False if the order moved on."""
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        due = (
            order.status == OrderStatus.AWAITING_PAYMENT
            and not order.payment_hold
            and order.payment_deadline is not None
            and order.payment_deadline < now
        )
        if due:
            _cancel(uow, order, OrderStatus.CANCELLED, CancelReason.PAYMENT_TIMEOUT, "order.expired", now)
    return due


# --- fulfilment -------------------------------------------------------------

def set_shipping_preparing(db: Session, order_id: int) -> Order:
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(
            order,
            order.status == OrderStatus.PAID and order.payment_status == PaymentStatus.PAID
            and order.shipping_status == ShippingStatus.NONE,
            "set preparing on",
        )
        order.shipping_status = ShippingStatus.PREPARING_TO_SHIP
        uow.record(order, "order.preparing")
    return order


def add_rush_fee(db: Session, order_id: int, amount_cents: int) -> Order:
    if amount_cents <= 0:
        raise ValidationFailed("INVALID_AMOUNT", "Rush fee must be positive")
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        if order.rush_fee_cents > 0:
            return order
        _require(
            order,
            order.status == OrderStatus.PAID and order.shipping_status == ShippingStatus.PREPARING_TO_SHIP,
            "add a rush fee to",
        )
        order.rush_fee_cents = amount_cents
        order.total_cents += amount_cents
        uow.record(order, "order.rush_fee_added", amount_cents=amount_cents, total_cents=order.total_cents)
    return order


def mark_shipped(db: Session, order_id: int, courier: Optional[str], tracking_number: str,
                 now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    tracking_number = (tracking_number or "").strip()
    if not tracking_number:
        raise ValidationFailed("MISSING_TRACKING_NUMBER", "Tracking number is required")
    with unit_of_work(db) as uow:
        order = _lock(db, order_id)
        _require(
            order,
            order.status == OrderStatus.PAID and order.payment_status == PaymentStatus.PAID
            and order.shipping_status == ShippingStatus.PREPARING_TO_SHIP,
            "ship",
        )
        order.status = OrderStatus.SHIPPED
        order.shipping_status = ShippingStatus.SHIPPED
        order.courier = (courier or "").strip() or (order.shipping_method.value if order.shipping_method else None)
        order.tracking_number = tracking_number
        order.shipped_at = now
        uow.record(order, "order.shipped", courier=order.courier, tracking_number=tracking_number)
    logger.info("order %s shipped via %s (%s)", order_id, order.courier, tracking_number)
    return order


def _complete(db: Session, order_id: int, customer_id: Optional[str], by: str, now: Optional[datetime]) -> Order:
    now = now or now_utc()
    with unit_of_work(db) as uow:
        order = _lock(db, order_id, customer_id)
        _require(
            order,
            order.status == OrderStatus.SHIPPED and order.shipping_status == ShippingStatus.SHIPPED,
            "complete",
        )
        order.status = OrderStatus.COMPLETED
        order.shipping_status = ShippingStatus.COMPLETED
        order.completed_at = now
        uow.record(order, "order.completed", by=by)
    return order


def mark_completed(db: Session, order_id: int, now: Optional[datetime] = None) -> Order:
    return _complete(db, order_id, None, "staff", now)


def confirm_received(db: Session, order_id: int, customer_id: str, now: Optional[datetime] = None) -> Order:
    return _complete(db, order_id, customer_id, "customer", now)


# --- sold-out follow-up -----------------------------------------------------

def reorder_remaining(db: Session, order_id: int, customer_id: str) -> list[dict]:
    """Put a sold-out order's salvageable lines back in the cart (again)."""
    order = get_order(db, order_id, customer_id)
    if order.cancelled_reason != CancelReason.SOLD_OUT:
        raise InvalidState(f"order {order_id} was not cancelled as sold out")
    lines = [l for l in order.lines if l.cancel_reason == LineCancelReason.RETURNED_TO_CART]
    items = reconciliation.cart_items_for(db, lines)
    if items:
        cart_store.restore_items(customer_id, items)
    return items

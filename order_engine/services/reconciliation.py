"""Sold-out reconciliation.

Runs when approval could not reserve every line. Nothing is reserved; the
order is cancelled as SOLD_OUT, lines that can no longer be filled are
flagged, and lines that still could be are handed back to the customer's
cart so the next checkout prices them afresh.
"""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_engine.db.models import (
    CancelReason, LineCancelReason, Order, OrderStatus, Variant, now_utc,
)
from order_engine.db.uow import UnitOfWork
from order_engine.services import ledger
from order_engine.store import cart_store

logger = logging.getLogger(__name__)


def partition(db: Session, order: Order) -> tuple[list, list]:
    """(fulfillable, unfulfillable) live lines by current sellable quantity."""
    live = [l for l in order.lines if not l.is_cancelled]
    needed: dict[int, int] = {}
    for line in live:
        needed[line.variant_id] = needed.get(line.variant_id, 0) + line.qty_requested
    avail = ledger.sellable_many(db, needed)
    short = {vid for vid, qty in needed.items() if avail[vid] < qty}
    return (
        [l for l in live if l.variant_id not in short],
        [l for l in live if l.variant_id in short],
    )


def cart_items_for(db: Session, lines) -> list[dict]:
    ids = [l.variant_id for l in lines]
    variants = {
        v.id: v for v in db.execute(select(Variant).where(Variant.id.in_(ids))).scalars()
    }
    items = []
    for line in lines:
        v = variants.get(line.variant_id)
        items.append({
            "variant_id": line.variant_id,
            "qty": line.qty_requested,
            "unit_price_cents": v.price_cents if v else line.unit_price_cents,
            "title": line.title_snapshot,
        })
    return items


def reconcile_sold_out(uow: UnitOfWork, order: Order, short_variant_ids=(), now=None) -> list[int]:
    db = uow.db
    now = now or now_utc()
    fulfillable, unfulfillable = partition(db, order)

    # a variant that lost the race at reserve time counts as sold out even if
    # stock reappeared since
    forced = set(short_variant_ids)
    if forced:
        unfulfillable += [l for l in fulfillable if l.variant_id in forced]
        fulfillable = [l for l in fulfillable if l.variant_id not in forced]

    for line in unfulfillable:
        line.is_cancelled = True
        line.cancel_reason = LineCancelReason.SOLD_OUT
    for line in fulfillable:
        line.is_cancelled = True
        line.cancel_reason = LineCancelReason.RETURNED_TO_CART

    order.status = OrderStatus.CANCELLED
    order.cancelled_reason = CancelReason.SOLD_OUT
    order.cancelled_at = now

    sold_out_ids = sorted({l.variant_id for l in unfulfillable})
    restored_ids = sorted({l.variant_id for l in fulfillable})
    uow.record(order, "order.sold_out", sold_out_variant_ids=sold_out_ids, restored_variant_ids=restored_ids)
    logger.info("order %s cancelled as sold out: sold_out=%s restored=%s", order.id, sold_out_ids, restored_ids)

    if fulfillable and order.customer_id:
        items = cart_items_for(db, fulfillable)
        customer_id = order.customer_id
        uow.after_commit.append(lambda: cart_store.restore_items(customer_id, items))
    return sold_out_ids

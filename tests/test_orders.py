import json
import threading
from datetime import datetime, timedelta

import pytest

from order_engine.core.errors import InvalidState, NotFound, ValidationFailed
from order_engine.db.models import (
    CancelReason, LineCancelReason, Order, OrderStatus, PaymentStatus, ShipClass, ShippingStatus,
)
from order_engine.db.session import SessionLocal
from order_engine.services import ledger, orders
from order_engine.store import cart_store

from conftest import JNT_DETAILS

T0 = datetime(2026, 10, 1, 9, 0, 0)


def _paid_order(db, make_variant, place_order, qty=1):
    v = make_variant(qty=qty)
    order = place_order("alice", {v.id: qty})
    orders.approve(db, order.id, now=T0)
    orders.submit_receipt(db, order.id, "https://files.example/receipt.jpg", "alice")
    orders.review_payment(db, order.id, approve=True, now=T0 + timedelta(hours=1))
    return v, order


def test_submit_prices_order_and_clears_cart(db, make_variant, place_order, redis_client, events):
    v = make_variant(price=500, qty=1)
    other = make_variant(title="Tomica Premium Supra", price=450, qty=1, ship_class=ShipClass.TOMICA)
    cart_store.put_item("alice", {"variant_id": v.id, "qty": 1, "unit_price_cents": 50000, "title": "x"})
    cart_store.put_item("alice", {"variant_id": other.id, "qty": 1, "unit_price_cents": 45000, "title": "y"})

    order = place_order("alice", {v.id: 1})

    assert order.status == OrderStatus.PENDING_APPROVAL
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.shipping_fee_cents == 6500
    assert order.total_cents == 56500
    assert order.shipping_details["receiver_phone"] == "09171234567"
    assert [l.title_snapshot for l in order.lines] == ["Mini GT Nissan Skyline GT-R R34"]
    # submit does not touch stock
    assert ledger.snapshot(db, v.id) == (1, 0)
    assert [i["variant_id"] for i in cart_store.get_cart("alice")["items"]] == [other.id]
    assert [e["type"] for e in events] == ["order.submitted"]


def test_submit_merges_duplicate_lines(db, make_variant):
    v = make_variant(qty=3)
    lines = [orders.LineRequest(variant_id=v.id, qty=1), orders.LineRequest(variant_id=v.id, qty=2)]
    order = orders.submit(db, "alice", lines, "JNT", "LUZON", JNT_DETAILS)
    assert [(l.variant_id, l.qty_requested) for l in order.lines] == [(v.id, 3)]


@pytest.mark.parametrize("wanted, details, code", [
    ({}, JNT_DETAILS, "EMPTY_CART"),
    ({"v": 2}, JNT_DETAILS, "INSUFFICIENT_STOCK"),
    ({999: 1}, JNT_DETAILS, "UNKNOWN_VARIANT"),
    ({"v": 1}, {**JNT_DETAILS, "receiver_phone": "12345"}, "INVALID_PHONE"),
    ({"v": 1}, {**JNT_DETAILS, "city": "  "}, "MISSING_SHIPPING_FIELD"),
])
def test_submit_rejects_bad_checkout(db, make_variant, place_order, wanted, details, code):
    v = make_variant(qty=1)
    wanted = {(v.id if k == "v" else k): q for k, q in wanted.items()}

    with pytest.raises(ValidationFailed) as exc:
        place_order("alice", wanted, shipping_details=details)

    assert exc.value.code == code
    assert db.query(Order).count() == 0


def test_submit_rejects_lalamove_only_item_by_courier(db, make_variant, place_order):
    v = make_variant(title="Garage Diorama", price=2500, ship_class=ShipClass.DIORAMA)
    with pytest.raises(ValidationFailed) as exc:
        place_order("alice", {v.id: 1})
    assert exc.value.code == "UNSUPPORTED_METHOD_FOR_ITEM"


def test_lbc_cop_order_total(db, make_variant, place_order):
    v = make_variant(price=500)
    details = {"first_name": "Juan", "last_name": "Cruz", "branch_name": "LBC Ortigas",
               "branch_city": "Pasig", "receiver_phone": "+63 917 123 4567", "cop": True}
    order = place_order("alice", {v.id: 1}, shipping_method="LBC", shipping_details=details)
    assert order.shipping_fee_cents == 0
    assert order.cop_fee_cents == 2000
    assert order.total_cents == 52000


def test_full_lifecycle(db, make_variant, place_order, events):
    v = make_variant(qty=2)
    order = place_order("alice", {v.id: 1})

    result = orders.approve(db, order.id, now=T0)
    assert result.ok
    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.payment_deadline == T0 + timedelta(hours=12)
    assert orders.remaining_seconds(order, T0 + timedelta(hours=11)) == 3600
    assert orders.stage(order) == "to_pay"
    assert ledger.snapshot(db, v.id) == (2, 1)

    orders.submit_receipt(db, order.id, "https://files.example/r.jpg", "alice")
    assert order.status == OrderStatus.PAYMENT_SUBMITTED
    assert order.payment_status == PaymentStatus.SUBMITTED
    assert orders.remaining_seconds(order, T0) is None
    assert ledger.snapshot(db, v.id) == (2, 1)

    orders.review_payment(db, order.id, approve=True, now=T0 + timedelta(hours=2))
    assert order.status == OrderStatus.PAID
    assert order.payment_status == PaymentStatus.PAID
    assert order.shipping_status == ShippingStatus.PREPARING_TO_SHIP
    assert ledger.snapshot(db, v.id) == (1, 0)
    assert orders.stage(order) == "to_ship"

    orders.mark_shipped(db, order.id, None, " JT123 ")
    assert order.status == OrderStatus.SHIPPED
    assert order.courier == "JNT"
    assert order.tracking_number == "JT123"

    orders.confirm_received(db, order.id, "alice")
    assert order.status == OrderStatus.COMPLETED
    assert order.shipping_status == ShippingStatus.COMPLETED
    assert orders.stage(order) == "completed"

    assert [e["type"] for e in events] == [
        "order.submitted", "order.approved", "order.receipt_submitted",
        "order.payment_approved", "order.shipped", "order.completed",
    ]
    assert [e.type for e in orders.order_events(db, order.id)] == [e["type"] for e in events]


def test_approve_sold_out_returns_remaining_lines_to_cart(db, make_variant, place_order, events):
    scarce = make_variant(qty=1)
    plenty = make_variant(title="Pop Race Toyota AE86", brand="Pop Race", price=650, qty=5,
                          ship_class=ShipClass.POPRACE)
    first = place_order("alice", {scarce.id: 1})
    second = place_order("bob", {scarce.id: 1, plenty.id: 2})

    assert orders.approve(db, first.id).ok
    result = orders.approve(db, second.id)

    assert not result.ok
    assert result.sold_out_variant_ids == [scarce.id]
    assert second.status == OrderStatus.CANCELLED
    assert second.cancelled_reason == CancelReason.SOLD_OUT
    reasons = {l.variant_id: l.cancel_reason for l in second.lines}
    assert reasons == {scarce.id: LineCancelReason.SOLD_OUT, plenty.id: LineCancelReason.RETURNED_TO_CART}
    assert ledger.snapshot(db, plenty.id) == (5, 0)
    assert ledger.active_reservation(db, second.id) is None

    cart = cart_store.get_cart("bob")["items"]
    assert [(i["variant_id"], i["qty"], i["unit_price_cents"]) for i in cart] == [(plenty.id, 2, 65000)]
    sold_out = [e for e in events if e["type"] == "order.sold_out"]
    assert sold_out[0]["sold_out_variant_ids"] == [scarce.id]


def test_reorder_remaining_restores_cart_again(db, make_variant, place_order, redis_client):
    scarce = make_variant(qty=1)
    plenty = make_variant(title="Tomica Supra", qty=3, ship_class=ShipClass.TOMICA)
    first = place_order("alice", {scarce.id: 1})
    second = place_order("bob", {scarce.id: 1, plenty.id: 1})
    orders.approve(db, first.id)
    orders.approve(db, second.id)
    redis_client.flushall()

    items = orders.reorder_remaining(db, second.id, "bob")
    assert [i["variant_id"] for i in items] == [plenty.id]
    assert [i["variant_id"] for i in cart_store.get_cart("bob")["items"]] == [plenty.id]

    with pytest.raises(InvalidState):
        orders.reorder_remaining(db, first.id, "alice")
    with pytest.raises(NotFound):
        orders.reorder_remaining(db, second.id, "alice")


def test_concurrent_approvals_never_oversell(db, make_variant, place_order):
    v = make_variant(qty=1)
    ids = [place_order(f"c{i}", {v.id: 1}).id for i in range(5)]
    results = {}

    def worker(order_id):
        s = SessionLocal()
        try:
            results[order_id] = orders.approve(s, order_id).ok
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results.values()) == [False] * 4 + [True]
    s = SessionLocal()
    try:
        assert ledger.snapshot(s, v.id) == (1, 1)
        statuses = sorted(s.get(Order, i).status.value for i in ids)
        assert statuses == ["AWAITING_PAYMENT"] + ["CANCELLED"] * 4
    finally:
        s.close()


def test_approve_twice_is_invalid(db, make_variant, place_order):
    v = make_variant(qty=2)
    order = place_order("alice", {v.id: 1})
    orders.approve(db, order.id)
    with pytest.raises(InvalidState):
        orders.approve(db, order.id)
    assert ledger.snapshot(db, v.id) == (2, 1)


def test_reject_payment_extends_deadline_and_keeps_hold(db, make_variant, place_order):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    orders.approve(db, order.id, now=T0)
    orders.submit_receipt(db, order.id, "https://files.example/blurry.jpg", "alice")

    later = T0 + timedelta(hours=11)
    orders.review_payment(db, order.id, approve=False, note="blurry", now=later)

    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.payment_status == PaymentStatus.REJECTED
    assert order.receipt_url is None
    assert order.review_note == "blurry"
    assert order.payment_deadline == later + timedelta(hours=12)
    assert ledger.snapshot(db, v.id) == (1, 1)

    orders.submit_receipt(db, order.id, "https://files.example/clear.jpg", "alice")
    assert order.payment_status == PaymentStatus.SUBMITTED


def test_submit_receipt_requires_url_and_owner(db, make_variant, place_order):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    with pytest.raises(InvalidState):
        orders.submit_receipt(db, order.id, "https://files.example/r.jpg", "alice")
    orders.approve(db, order.id)
    with pytest.raises(ValidationFailed) as exc:
        orders.submit_receipt(db, order.id, "  ", "alice")
    assert exc.value.code == "MISSING_RECEIPT"
    with pytest.raises(NotFound):
        orders.submit_receipt(db, order.id, "https://files.example/r.jpg", "mallory")


def test_customer_cannot_cancel_paid_order(db, make_variant, place_order):
    v, order = _paid_order(db, make_variant, place_order, qty=1)
    before = ledger.snapshot(db, v.id)

    with pytest.raises(InvalidState):
        orders.cancel_pending_order(db, order.id, "alice")

    assert ledger.snapshot(db, v.id) == before
    assert order.status == OrderStatus.PAID


def test_customer_cancel_releases_reservation(db, make_variant, place_order, events):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    orders.approve(db, order.id)

    orders.cancel_pending_order(db, order.id, "alice", now=T0)

    assert order.status == OrderStatus.CANCELLED
    assert order.cancelled_reason == CancelReason.CUSTOMER
    assert order.cancelled_at == T0
    assert all(l.cancel_reason == LineCancelReason.ORDER_CANCELLED for l in order.lines)
    assert ledger.snapshot(db, v.id) == (1, 0)
    assert events[-1]["type"] == "order.cancelled"
    assert events[-1]["released"] is True


def test_paid_is_monotonic(db, make_variant, place_order):
    v, order = _paid_order(db, make_variant, place_order)

    with pytest.raises(InvalidState):
        orders.review_payment(db, order.id, approve=False)
    with pytest.raises(InvalidState):
        orders.submit_receipt(db, order.id, "https://files.example/again.jpg", "alice")

    orders.void_order(db, order.id, note="customer asked")
    assert order.status == OrderStatus.VOIDED
    assert order.payment_status == PaymentStatus.PAID
    assert order.void_note == "customer asked"
    # sold stock is not put back by a void
    assert ledger.snapshot(db, v.id) == (0, 0)


def test_void_pending_payment_releases_stock(db, make_variant, place_order):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    orders.approve(db, order.id)
    orders.void_order(db, order.id)
    assert order.cancelled_reason == CancelReason.STAFF_VOID
    assert ledger.snapshot(db, v.id) == (1, 0)
    with pytest.raises(InvalidState):
        orders.void_order(db, order.id)


def test_rush_fee_is_added_once(db, make_variant, place_order, events):
    v, order = _paid_order(db, make_variant, place_order)
    total = order.total_cents

    orders.add_rush_fee(db, order.id, 5000)
    orders.add_rush_fee(db, order.id, 5000)

    assert order.rush_fee_cents == 5000
    assert order.total_cents == total + 5000
    assert [e["type"] for e in events].count("order.rush_fee_added") == 1

    with pytest.raises(ValidationFailed):
        orders.add_rush_fee(db, order.id, 0)


def test_rush_fee_needs_paid_order(db, make_variant, place_order):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    with pytest.raises(InvalidState):
        orders.add_rush_fee(db, order.id, 5000)


def test_ship_requires_tracking_and_preparing(db, make_variant, place_order):
    v, order = _paid_order(db, make_variant, place_order)
    with pytest.raises(ValidationFailed) as exc:
        orders.mark_shipped(db, order.id, "J&T", "")
    assert exc.value.code == "MISSING_TRACKING_NUMBER"

    orders.mark_shipped(db, order.id, "J&T Express", "JT999")
    assert order.courier == "J&T Express"
    with pytest.raises(InvalidState):
        orders.mark_shipped(db, order.id, "J&T Express", "JT999")
    with pytest.raises(InvalidState):
        orders.add_rush_fee(db, order.id, 5000)

    orders.mark_completed(db, order.id)
    assert order.status == OrderStatus.COMPLETED


def test_set_shipping_preparing_repairs_paid_order(db, make_variant, place_order):
    v, order = _paid_order(db, make_variant, place_order)
    with pytest.raises(InvalidState):
        orders.set_shipping_preparing(db, order.id)

    order.shipping_status = ShippingStatus.NONE
    db.commit()
    orders.set_shipping_preparing(db, order.id)
    assert order.shipping_status == ShippingStatus.PREPARING_TO_SHIP


def test_payment_hold_stops_countdown(db, make_variant, place_order):
    v = make_variant(qty=1)
    order = place_order("alice", {v.id: 1})
    orders.approve(db, order.id, now=T0)

    orders.set_payment_hold(db, order.id, True)
    assert order.payment_hold
    assert orders.remaining_seconds(order, T0) is None
    orders.set_payment_hold(db, order.id, False)
    assert orders.remaining_seconds(order, T0 + timedelta(hours=13)) == 0


def test_staff_approves_priority_request(db, make_variant, place_order, events):
    v = make_variant(qty=2)
    plain = place_order("alice", {v.id: 1})
    with pytest.raises(InvalidState):
        orders.set_priority_approved(db, plain.id, True)

    order = place_order("bob", {v.id: 1}, priority_requested=True)
    assert order.priority_requested and not order.priority_approved

    orders.set_priority_approved(db, order.id, True)
    assert order.priority_approved
    assert events[-1]["type"] == "order.priority_changed"

    orders.set_priority_approved(db, order.id, True)
    assert sum(e["type"] == "order.priority_changed" for e in events) == 1


def test_pos_checkout_sells_immediately(db, make_variant, events):
    v = make_variant(qty=2)
    order = orders.pos_checkout(db, [orders.LineRequest(variant_id=v.id, qty=2)],
                                payment_method="CASH", staff_id="cashier-1")
    assert order.channel.value == "POS"
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_status == PaymentStatus.PAID
    assert order.total_cents == 100000
    assert ledger.snapshot(db, v.id) == (0, 0)
    assert events[-1]["type"] == "order.pos_completed"

    with pytest.raises(ValidationFailed) as exc:
        orders.pos_checkout(db, [orders.LineRequest(variant_id=v.id, qty=1)], payment_method="CASH")
    assert exc.value.code == "INSUFFICIENT_STOCK"
    assert db.query(Order).count() == 1


def test_customers_only_see_their_orders(db, make_variant, place_order):
    v = make_variant(qty=2)
    mine = place_order("alice", {v.id: 1})
    place_order("bob", {v.id: 1})

    assert [o.id for o in orders.list_orders(db, customer_id="alice")] == [mine.id]
    assert len(orders.list_orders(db)) == 2
    assert len(orders.list_orders(db, status=OrderStatus.PENDING_APPROVAL)) == 2
    with pytest.raises(NotFound):
        orders.get_order(db, mine.id, "bob")
    with pytest.raises(NotFound):
        orders.cancel_pending_order(db, mine.id, "bob")


def test_events_are_json_serializable(db, make_variant, place_order, events):
    _paid_order(db, make_variant, place_order)
    for ev in events:
        json.dumps(ev, default=str)
        assert ev["order_id"]

from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional
from sqlalchemy.orm import Session, joinedload
from order_engine.api.deps import (
    STAFF_ROLES, get_current_identity, get_db, require_customer, require_staff, staff_or_internal,
)
from order_engine.api import schemas
from order_engine.db.models import OrderStatus, Variant
from order_engine.jobs import expiry
from order_engine.services import ledger, orders, recommendations
from order_engine.services.fees import FeeBreakdown
from order_engine.store import cart_store

router = APIRouter()

def _scope(identity: dict) -> Optional[str]:
    # staff see every order, customers only their own
    return None if identity.get("role") in STAFF_ROLES else str(identity.get("sub"))

# --- customer ---------------------------------------------------------------

@router.post("/v1/orders", response_model=schemas.OrderRead, status_code=201)
def submit_order(payload: schemas.SubmitOrderReq, customer_id: str = Depends(require_customer),
                 db: Session = Depends(get_db)):
    order = orders.submit(
        db, customer_id, payload.lines, payload.shipping_method, payload.shipping_region,
        payload.shipping_details,
        payment_method=payload.payment_method,
        priority_requested=payload.priority_requested,
        insurance_selected=payload.insurance_selected,
        insurance_fee_cents=payload.insurance_fee_cents,
        lbc_package=payload.lbc_package,
    )
    return schemas.order_read(order)

@router.post("/v1/quote", response_model=FeeBreakdown)
def quote(payload: schemas.QuoteReq, _: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    return orders.quote(
        db, payload.lines, payload.shipping_method, payload.shipping_region,
        cop=payload.cop, lbc_package=payload.lbc_package,
        priority_requested=payload.priority_requested,
        insurance_selected=payload.insurance_selected,
        insurance_fee_cents=payload.insurance_fee_cents,
    )

@router.get("/v1/orders", response_model=List[schemas.OrderRead])
def list_orders(status: Optional[OrderStatus] = None, limit: int = 50, offset: int = 0,
                identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    rows = orders.list_orders(db, customer_id=_scope(identity), status=status,
                              limit=min(max(limit, 1), 200), offset=max(offset, 0))
    return [schemas.order_read(o) for o in rows]

@router.get("/v1/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    return schemas.order_read(orders.get_order(db, order_id, _scope(identity)))

@router.get("/v1/orders/{order_id}/events", response_model=List[schemas.OrderEventRead])
def get_order_events(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    orders.get_order(db, order_id, _scope(identity))
    return orders.order_events(db, order_id)

@router.post("/v1/orders/{order_id}/receipt", response_model=schemas.OrderRead)
def submit_receipt(order_id: int, payload: schemas.ReceiptReq, customer_id: str = Depends(require_customer),
                   db: Session = Depends(get_db)):
    return schemas.order_read(orders.submit_receipt(db, order_id, payload.receipt_url, customer_id))

@router.post("/v1/orders/{order_id}/cancel", response_model=schemas.OrderRead)
def cancel_order(order_id: int, customer_id: str = Depends(require_customer), db: Session = Depends(get_db)):
    return schemas.order_read(orders.cancel_pending_order(db, order_id, customer_id))

@router.post("/v1/orders/{order_id}/confirm-received", response_model=schemas.OrderRead)
def confirm_received(order_id: int, customer_id: str = Depends(require_customer), db: Session = Depends(get_db)):
    return schemas.order_read(orders.confirm_received(db, order_id, customer_id))

@router.post("/v1/orders/{order_id}/reorder-remaining", response_model=schemas.CartRead)
def reorder_remaining(order_id: int, customer_id: str = Depends(require_customer), db: Session = Depends(get_db)):
    orders.reorder_remaining(db, order_id, customer_id)
    return cart_store.get_cart(customer_id)

@router.post("/v1/suggestions/similar")
def suggest_similar(payload: schemas.SimilarReq, _: dict = Depends(get_current_identity),
                    db: Session = Depends(get_db)):
    return recommendations.suggest_similar(db, payload.variant_ids, payload.limit)

# --- cart -------------------------------------------------------------------

@router.get("/v1/cart", response_model=schemas.CartRead)
def get_my_cart(customer_id: str = Depends(require_customer)):
    return cart_store.get_cart(customer_id)

@router.post("/v1/cart/items", response_model=schemas.CartRead, status_code=201)
def add_cart_item(payload: schemas.CartItemAdd, customer_id: str = Depends(require_customer),
                  db: Session = Depends(get_db)):
    v = db.get(Variant, payload.variant_id, options=[joinedload(Variant.product)])
    if not v or not v.active or not v.product.active:
        raise HTTPException(status_code=404, detail="Variant not found")
    cart_store.put_item(customer_id, {
        "variant_id": v.id,
        "qty": payload.qty,
        "unit_price_cents": v.price_cents,
        "title": v.product.title,
    })
    return cart_store.get_cart(customer_id)

@router.delete("/v1/cart/items/{variant_id}", response_model=schemas.CartRead)
def remove_cart_item(variant_id: int, customer_id: str = Depends(require_customer)):
    cart_store.delete_items(customer_id, [variant_id])
    return cart_store.get_cart(customer_id)

@router.post("/v1/cart/clear", response_model=schemas.CartRead)
def clear_cart(customer_id: str = Depends(require_customer)):
    cart_store.clear_cart(customer_id)
    return cart_store.get_cart(customer_id)

# --- staff ------------------------------------------------------------------

@router.post("/v1/orders/{order_id}/approve", response_model=schemas.ApprovalRead)
def approve_order(order_id: int, _: dict = Depends(require_staff), db: Session = Depends(get_db)):
    result = orders.approve(db, order_id)
    return schemas.ApprovalRead(
        ok=result.ok,
        sold_out_variant_ids=result.sold_out_variant_ids,
        order=schemas.order_read(result.order),
    )

@router.post("/v1/orders/{order_id}/review-payment", response_model=schemas.OrderRead)
def review_payment(order_id: int, payload: schemas.ReviewPaymentReq, _: dict = Depends(require_staff),
                   db: Session = Depends(get_db)):
    return schemas.order_read(orders.review_payment(db, order_id, payload.approve, payload.note))

@router.post("/v1/orders/{order_id}/void", response_model=schemas.OrderRead)
def void_order(order_id: int, payload: schemas.VoidReq, _: dict = Depends(require_staff),
               db: Session = Depends(get_db)):
    return schemas.order_read(orders.void_order(db, order_id, payload.note))

@router.post("/v1/orders/{order_id}/ship", response_model=schemas.OrderRead)
def mark_shipped(order_id: int, payload: schemas.ShipReq, _: dict = Depends(require_staff),
                 db: Session = Depends(get_db)):
    return schemas.order_read(orders.mark_shipped(db, order_id, payload.courier, payload.tracking_number))

@router.post("/v1/orders/{order_id}/complete", response_model=schemas.OrderRead)
def mark_completed(order_id: int, _: dict = Depends(require_staff), db: Session = Depends(get_db)):
    return schemas.order_read(orders.mark_completed(db, order_id))

@router.post("/v1/orders/{order_id}/preparing", response_model=schemas.OrderRead)
def set_preparing(order_id: int, _: dict = Depends(require_staff), db: Session = Depends(get_db)):
    return schemas.order_read(orders.set_shipping_preparing(db, order_id))

@router.post("/v1/orders/{order_id}/rush-fee", response_model=schemas.OrderRead)
def add_rush_fee(order_id: int, payload: schemas.RushFeeReq, _: dict = Depends(require_staff),
                 db: Session = Depends(get_db)):
    return schemas.order_read(orders.add_rush_fee(db, order_id, payload.amount_cents))

@router.post("/v1/orders/{order_id}/payment-hold", response_model=schemas.OrderRead)
def payment_hold(order_id: int, payload: schemas.PaymentHoldReq, _: dict = Depends(require_staff),
                 db: Session = Depends(get_db)):
    return schemas.order_read(orders.set_payment_hold(db, order_id, payload.hold))

@router.post("/v1/orders/{order_id}/priority", response_model=schemas.OrderRead)
def priority_approval(order_id: int, payload: schemas.PriorityApprovalReq, _: dict = Depends(require_staff),
                      db: Session = Depends(get_db)):
    return schemas.order_read(orders.set_priority_approved(db, order_id, payload.approved))

@router.post("/v1/pos/checkout", response_model=schemas.OrderRead, status_code=201)
def pos_checkout(payload: schemas.PosCheckoutReq, staff: dict = Depends(require_staff),
                 db: Session = Depends(get_db)):
    order = orders.pos_checkout(db, payload.lines, payment_method=payload.payment_method,
                                staff_id=staff.get("sub"))
    return schemas.order_read(order)

@router.get("/v1/inventory/{variant_id}")
def get_inventory(variant_id: int, _: dict = Depends(require_staff), db: Session = Depends(get_db)):
    on_hand, reserved = ledger.snapshot(db, variant_id)
    return {"variant_id": variant_id, "qty_on_hand": on_hand, "qty_reserved": reserved,
            "sellable": on_hand - reserved}

@router.post("/v1/inventory/restock")
def restock(payload: schemas.RestockReq, _: dict = Depends(staff_or_internal), db: Session = Depends(get_db)):
    for it in payload.items:
        if db.get(Variant, it.variant_id) is None:
            raise HTTPException(status_code=404, detail=f"Variant {it.variant_id} not found")
        ledger.restock(db, it.variant_id, it.qty)
    db.commit()
    return {"status": "restocked"}

@router.post("/v1/jobs/expire-unpaid")
def expire_unpaid(_: dict = Depends(staff_or_internal)):
    expired = expiry.sweep_expired()
    return {"expired_order_ids": expired}

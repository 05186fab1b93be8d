"""Payment timeout sweep.

Cancels AWAITING_PAYMENT orders whose deadline has passed and that are not
on hold, releasing their reservations. Each order is expired in its own
transaction and re-checked under the row lock, so a receipt that lands
first always wins and a second sweeper finds nothing to do.

Runs inside the API process as a daemon thread (``start``/``stop``), or once
from the command line::

    python -m order_engine.jobs.expiry
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_engine.core.config import settings
from order_engine.core.logging import setup_logging
from order_engine.db.models import Order, OrderStatus, now_utc
from order_engine.db.session import SessionLocal
from order_engine.services import orders

logger = logging.getLogger(__name__)

_stop_event = threading.Event()
_thread = None


def due_order_ids(db: Session, now: datetime, batch_size: int) -> list[int]:
    return list(db.execute(
        select(Order.id)
        .where(
            Order.status == OrderStatus.AWAITING_PAYMENT,
            Order.payment_hold.is_(False),
            Order.payment_deadline.is_not(None),
            Order.payment_deadline < now,
        )
        .order_by(Order.payment_deadline, Order.id)
        .limit(batch_size)
    ).scalars())


def sweep_expired(session_factory: Callable[[], Session] = SessionLocal, now: Optional[datetime] = None,
                  batch_size: Optional[int] = None) -> list[int]:
    """One pass. Returns the ids actually cancelled."""
    now = now or now_utc()
    batch_size = batch_size or settings.EXPIRY_BATCH_SIZE

    db = session_factory()
    try:
        candidates = due_order_ids(db, now, batch_size)
        db.rollback()

        expired = []
        for order_id in candidates:
            try:
                if orders.expire_order(db, order_id, now=now):
                    expired.append(order_id)
            except Exception:
                # one bad row must not stall the rest of the batch
                logger.exception("failed to expire order %s", order_id)
    finally:
        db.close()

    if candidates:
        logger.info("expiry sweep: %s due, %s cancelled", len(candidates), len(expired))
    return expired


def run_loop():
    while not _stop_event.is_set():
        try:
            sweep_expired()
        except Exception:
            logger.exception("expiry sweep failed")
        _stop_event.wait(settings.EXPIRY_SWEEP_SECONDS)


def start():
    global _thread
    if _thread and _thread.is_alive(): return
    _stop_event.clear()
    _thread = threading.Thread(target=run_loop, name="order-expiry", daemon=True)
    _thread.start()


def stop(timeout: float = 5.0):
    global _thread
    _stop_event.set()
    if _thread is not None:
        _thread.join(timeout)
        if _thread.is_alive():
            logger.warning("expiry worker did not stop within %ss", timeout)
        _thread = None


def main() -> None:
    setup_logging(settings.LOG_LEVEL)
    expired = sweep_expired()
    logger.info("expired %s orders (batch_size=%s)", len(expired), settings.EXPIRY_BATCH_SIZE)


if __name__ == "__main__":
    main()

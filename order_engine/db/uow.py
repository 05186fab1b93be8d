import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from order_engine.db.models import Order, OrderEvent, now_utc
from order_engine.kafka import producer

logger = logging.getLogger(__name__)


@dataclass
class UnitOfWork:
    """Transaction boundary for one state-machine operation.

    Events are written to ``order_events`` inside the transaction and only
    published to Kafka once it has committed. ``after_commit`` hooks run
    side effects outside the database (cart restore) after the commit too.
    """

    db: Session
    events: list[dict] = field(default_factory=list)
    after_commit: list[Callable[[], None]] = field(default_factory=list)

    def record(self, order: Order, type_: str, **payload) -> None:
        self.db.add(OrderEvent(order_id=order.id, type=type_, payload=payload))
        self.events.append({
            "type": type_,
            "order_id": order.id,
            "customer_id": order.customer_id,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "shipping_status": order.shipping_status.value,
            "at": now_utc().isoformat(),
            **payload,
        })


@contextmanager
def unit_of_work(db: Session):
    uow = UnitOfWork(db)
    try:
        yield uow
        db.commit()
    except Exception:
        db.rollback()
        raise

    for ev in uow.events:
        producer.emit(ev)
    for hook in uow.after_commit:
        try:
            hook()
        except Exception:
            logger.exception("post-commit hook failed")

"""Stock ledger: the only writer of ``qty_on_hand`` / ``qty_reserved``.

Every mutation is a single conditional UPDATE, so concurrent callers racing
for the last unit of a variant see exactly one winner. Callers own the
transaction; nothing here commits.
"""
import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from order_engine.db.models import Reservation, ReservationLine, ReservationStatus, VariantStock, now_utc

logger = logging.getLogger(__name__)


def _stock_update(db: Session, variant_id: int, *conditions, **values) -> bool:
    stmt = (
        update(VariantStock)
        .where(VariantStock.variant_id == variant_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def reserve(db: Session, variant_id: int, qty: int) -> bool:
    """Claim ``qty`` units. Returns False (Insufficient) without touching the row."""
    if qty <= 0:
        raise ValueError("qty must be positive")
    return _stock_update(
        db, variant_id,
        VariantStock.qty_on_hand - VariantStock.qty_reserved >= qty,
        qty_reserved=VariantStock.qty_reserved + qty,
    )


def release(db: Session, variant_id: int, qty: int) -> None:
    if not _stock_update(
        db, variant_id,
        VariantStock.qty_reserved >= qty,
        qty_reserved=VariantStock.qty_reserved - qty,
    ):
        # only reachable if a reservation row and the stock row disagree
        logger.error("release of %s x%s would drive qty_reserved negative", variant_id, qty)
        raise RuntimeError(f"cannot release {qty} of variant {variant_id}")


def commit(db: Session, variant_id: int, qty: int) -> None:
    """Turn a hold into a sale: on_hand and reserved both drop by ``qty``."""
    if not _stock_update(
        db, variant_id,
        VariantStock.qty_reserved >= qty,
        qty_on_hand=VariantStock.qty_on_hand - qty,
        qty_reserved=VariantStock.qty_reserved - qty,
    ):
        logger.error("commit of %s x%s exceeds reserved quantity", variant_id, qty)
        raise RuntimeError(f"cannot commit {qty} of variant {variant_id}")


def restock(db: Session, variant_id: int, qty: int) -> None:
    if qty <= 0:
        raise ValueError("qty must be positive")
    if not _stock_update(db, variant_id, qty_on_hand=VariantStock.qty_on_hand + qty):
        db.add(VariantStock(variant_id=variant_id, qty_on_hand=qty, qty_reserved=0))
        db.flush()


def sellable(db: Session, variant_id: int) -> int:
    row = db.execute(
        select(VariantStock.qty_on_hand, VariantStock.qty_reserved).where(VariantStock.variant_id == variant_id)
    ).one_or_none()
    if row is None:
        return 0
    return row.qty_on_hand - row.qty_reserved


def sellable_many(db: Session, variant_ids: Iterable[int]) -> dict[int, int]:
    ids = list(set(variant_ids))
    out = {vid: 0 for vid in ids}
    if not ids:
        return out
    rows = db.execute(
        select(VariantStock.variant_id, VariantStock.qty_on_hand, VariantStock.qty_reserved)
        .where(VariantStock.variant_id.in_(ids))
    )
    for r in rows:
        out[r.variant_id] = r.qty_on_hand - r.qty_reserved
    return out


def snapshot(db: Session, variant_id: int) -> tuple[int, int]:
    """(qty_on_hand, qty_reserved) for one variant."""
    row = db.execute(
        select(VariantStock.qty_on_hand, VariantStock.qty_reserved).where(VariantStock.variant_id == variant_id)
    ).one_or_none()
    return (row.qty_on_hand, row.qty_reserved) if row else (0, 0)


# --- reservation level ------------------------------------------------------

def reserve_all(db: Session, order_id: int, wanted: dict[int, int]) -> tuple[Reservation | None, list[int]]:
    """Reserve every (variant_id -> qty) or nothing.

    Returns ``(reservation, [])`` on success. On shortage returns
    ``(None, short_variant_ids)``; the partial claims made so far are rolled
    back through a savepoint so the caller's transaction stays usable.
    """
    short: list[int] = []
    sp = db.begin_nested()
    for variant_id in sorted(wanted):
        if not reserve(db, variant_id, wanted[variant_id]):
            short.append(variant_id)
    if short:
        sp.rollback()
        return None, short
    sp.commit()

    res = Reservation(order_id=order_id, status=ReservationStatus.ACTIVE)
    res.lines = [ReservationLine(variant_id=v, qty=q) for v, q in sorted(wanted.items())]
    db.add(res)
    db.flush()
    return res, []


def _close(db: Session, reservation: Reservation, status: ReservationStatus) -> bool:
    # ACTIVE -> closed flips once; a second caller loses and must not touch stock
    stmt = (
        update(Reservation)
        .where(Reservation.id == reservation.id, Reservation.status == ReservationStatus.ACTIVE)
        .values(status=status, closed_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    won = db.execute(stmt).rowcount == 1
    db.refresh(reservation)
    return won


def release_reservation(db: Session, reservation: Reservation) -> bool:
    if not _close(db, reservation, ReservationStatus.RELEASED):
        logger.info("reservation %s already closed (%s); release skipped", reservation.id, reservation.status)
        return False
    for line in reservation.lines:
        release(db, line.variant_id, line.qty)
    return True


def commit_reservation(db: Session, reservation: Reservation) -> bool:
    if not _close(db, reservation, ReservationStatus.COMMITTED):
        logger.info("reservation %s already closed (%s); commit skipped", reservation.id, reservation.status)
        return False
    for line in reservation.lines:
        commit(db, line.variant_id, line.qty)
    return True


def active_reservation(db: Session, order_id: int) -> Reservation | None:
    return db.execute(
        select(Reservation).where(Reservation.order_id == order_id, Reservation.status == ReservationStatus.ACTIVE)
    ).scalars().first()

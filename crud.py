# crud.py
import time
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import models
import schemas


class DuplicatePaymentError(ValueError):
    """Raised when a payment id is already stored."""


def _now() -> int:
    return int(time.time())

# --- PAYMENTS ---

def create_payment(db: Session, payment: schemas.TrackedPayment) -> schemas.TrackedPayment:
    """
    Stores a tracked payment. Ids are generated by the caller and must be unique.
    """
    data = payment.model_dump()
    data["address"] = payment.address.lower()
    db_payment = models.Payment(**data)
    db.add(db_payment)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicatePaymentError(f"Payment {payment.id} already exists") from e
    db.refresh(db_payment)
    return schemas.TrackedPayment.model_validate(db_payment)

def get_payment(db: Session, payment_id: str) -> Optional[schemas.TrackedPayment]:
    db_payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if db_payment is None:
        return None
    return schemas.TrackedPayment.model_validate(db_payment)

def get_payments_by_address(db: Session, address: str) -> List[schemas.TrackedPayment]:
    """All payments for an address, most recent first."""
    rows = (
        db.query(models.Payment)
        .filter(models.Payment.address == address.lower())
        .order_by(models.Payment.timestamp.desc(), models.Payment.block_number.desc())
        .all()
    )
    return [schemas.TrackedPayment.model_validate(row) for row in rows]

def get_tracked_addresses(db: Session) -> List[str]:
    # Same tuple-flattening as a plain column query returns [(addr,), ...]
    return [address for address, in db.query(models.Payment.address).distinct().all()]

# --- YIELD HISTORY ---

def add_yield_snapshot(db: Session, point: schemas.YieldHistoryPoint) -> schemas.YieldHistoryPoint:
    data = point.model_dump()
    data["address"] = point.address.lower()
    db_point = models.YieldSnapshot(**data)
    db.add(db_point)
    db.commit()
    db.refresh(db_point)
    return schemas.YieldHistoryPoint.model_validate(db_point)

def get_yield_history(db: Session, address: str, limit: int = 100) -> List[schemas.YieldHistoryPoint]:
    """Most recent snapshots first, at most `limit` of them."""
    rows = (
        db.query(models.YieldSnapshot)
        .filter(models.YieldSnapshot.address == address.lower())
        .order_by(models.YieldSnapshot.timestamp.desc(), models.YieldSnapshot.id.desc())
        .limit(limit)
        .all()
    )
    return [schemas.YieldHistoryPoint.model_validate(row) for row in rows]

def get_snapshot_at_or_before(db: Session, address: str, timestamp: int) -> Optional[schemas.YieldHistoryPoint]:
    row = (
        db.query(models.YieldSnapshot)
        .filter(models.YieldSnapshot.address == address.lower())
        .filter(models.YieldSnapshot.timestamp <= timestamp)
        .order_by(models.YieldSnapshot.timestamp.desc(), models.YieldSnapshot.id.desc())
        .first()
    )
    if row is None:
        return None
    return schemas.YieldHistoryPoint.model_validate(row)

# --- REBASE EVENTS ---

def add_rebase_event(db: Session, event: schemas.RebaseEvent) -> bool:
    """
    Inserts a rebase event keyed on block_number.
    Returns True if stored, False if that block was already recorded.
    An existing row is never modified.
    """
    db.add(models.RebaseEvent(**event.model_dump()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True

def get_rebase_event_by_block(db: Session, block_number: int) -> Optional[schemas.RebaseEvent]:
    row = db.query(models.RebaseEvent).filter(models.RebaseEvent.block_number == block_number).first()
    if row is None:
        return None
    return schemas.RebaseEvent.model_validate(row)

def get_latest_rebase_event(db: Session) -> Optional[schemas.RebaseEvent]:
    row = db.query(models.RebaseEvent).order_by(models.RebaseEvent.block_number.desc()).first()
    if row is None:
        return None
    return schemas.RebaseEvent.model_validate(row)

def get_rebase_event_before(db: Session, block_number: int) -> Optional[schemas.RebaseEvent]:
    """The closest stored event strictly below a block, used to chain backfilled events."""
    row = (
        db.query(models.RebaseEvent)
        .filter(models.RebaseEvent.block_number < block_number)
        .order_by(models.RebaseEvent.block_number.desc())
        .first()
    )
    if row is None:
        return None
    return schemas.RebaseEvent.model_validate(row)

def get_rebase_event_at_or_after(db: Session, block_number: int) -> Optional[schemas.RebaseEvent]:
    row = (
        db.query(models.RebaseEvent)
        .filter(models.RebaseEvent.block_number >= block_number)
        .order_by(models.RebaseEvent.block_number.asc())
        .first()
    )
    if row is None:
        return None
    return schemas.RebaseEvent.model_validate(row)

def get_rebase_events(
    db: Session, from_timestamp: int, to_timestamp: Optional[int] = None, limit: int = 100
) -> List[schemas.RebaseEvent]:
    """Events with from_timestamp <= timestamp < to_timestamp, most recent first."""
    to = to_timestamp if to_timestamp is not None else _now() + 1
    rows = (
        db.query(models.RebaseEvent)
        .filter(models.RebaseEvent.timestamp >= from_timestamp)
        .filter(models.RebaseEvent.timestamp < to)
        .order_by(models.RebaseEvent.timestamp.desc(), models.RebaseEvent.block_number.desc())
        .limit(limit)
        .all()
    )
    return [schemas.RebaseEvent.model_validate(row) for row in rows]

def get_rebase_count(db: Session) -> int:
    return db.query(func.count(models.RebaseEvent.id)).scalar() or 0

# --- GLOBAL STATE ---

def get_global_state(db: Session, key: str) -> Optional[str]:
    row = db.query(models.GlobalState).filter(models.GlobalState.key == key).first()
    return row.value if row else None

def set_global_state(db: Session, key: str, value: str) -> None:
    db.merge(models.GlobalState(key=key, value=value, updated_at=_now()))
    db.commit()

"""
Credit wallet operations.

The ledger is the source of truth; ``wallets.balance`` is a materialized
counter written in the same transaction as each ledger insert. Every write
goes through ``_apply``, which is idempotent on ``correlation_id``.

These functions commit (or roll back) the session they are given, so callers
must commit their own pending work first.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..logging_config import wallet_logger as logger
from ..models.wallet import CreditLedgerEntry, Wallet
from ..responses import InsufficientCredits, PersistenceError, ValidationError


def get_balance(db: Session, user_id: int) -> int:
    balance = db.query(Wallet.balance).filter(Wallet.user_id == user_id).scalar()
    return balance or 0


def ledger_balance(db: Session, user_id: int) -> int:
    """Sum of all ledger deltas; should always equal the materialized balance."""
    total = db.query(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).filter(
        CreditLedgerEntry.user_id == user_id
    ).scalar()
    return int(total or 0)


def ensure_wallet(db: Session, user_id: int) -> None:
    if db.query(Wallet.user_id).filter(Wallet.user_id == user_id).first():
        return
    db.add(Wallet(user_id=user_id, balance=0))
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently
        db.rollback()


def _entry_exists(db: Session, correlation_id: str) -> bool:
    return db.query(CreditLedgerEntry.id).filter(
        CreditLedgerEntry.correlation_id == correlation_id
    ).first() is not None


def _apply(
    db: Session,
    user_id: int,
    delta: int,
    kind: str,
    correlation_id: str,
    note: Optional[str],
    metadata: Optional[Dict[str, Any]],
) -> int:
    if _entry_exists(db, correlation_id):
        logger.info("Ledger replay ignored", user_id=user_id, correlation_id=correlation_id, kind=kind)
        return get_balance(db, user_id)

    ensure_wallet(db, user_id)

    query = db.query(Wallet).filter(Wallet.user_id == user_id)
    if delta < 0:
        query = query.filter(Wallet.balance >= -delta)
    updated = query.update(
        {Wallet.balance: Wallet.balance + delta, Wallet.updated_at: datetime.now(timezone.utc)},
        synchronize_session=False,
    )
    if updated != 1:
        db.rollback()
        balance = get_balance(db, user_id)
        logger.warning("Debit refused", user_id=user_id, required=-delta, balance=balance)
        raise InsufficientCredits(required=-delta, balance=balance)

    db.add(CreditLedgerEntry(
        user_id=user_id,
        delta=delta,
        kind=kind,
        correlation_id=correlation_id,
        note=note,
        metadata_=metadata or {},
    ))
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if _entry_exists(db, correlation_id):
            # A concurrent request with the same correlation id won the insert
            logger.info("Ledger replay ignored", user_id=user_id, correlation_id=correlation_id, kind=kind)
            return get_balance(db, user_id)
        logger.error("Ledger insert failed", error=e, user_id=user_id, correlation_id=correlation_id)
        raise PersistenceError("Ledger insert failed")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Ledger insert failed", error=e, user_id=user_id, correlation_id=correlation_id)
        raise PersistenceError("Ledger insert failed")

    balance = get_balance(db, user_id)
    logger.info(
        "Ledger entry recorded",
        user_id=user_id,
        delta=delta,
        kind=kind,
        correlation_id=correlation_id,
        balance=balance,
    )
    return balance


def debit(
    db: Session,
    user_id: int,
    amount: int,
    correlation_id: str,
    note: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Take ``amount`` credits from the wallet and return the new balance.

    The decrement is conditional on ``balance >= amount`` and raises
    InsufficientCredits otherwise. Replaying a correlation id returns the
    current balance without charging again.
    """
    if amount <= 0:
        raise ValidationError("Debit amount must be positive", {"amount": amount})
    return _apply(db, user_id, -amount, "debit", correlation_id, note, metadata)


def credit(
    db: Session,
    user_id: int,
    amount: int,
    correlation_id: str,
    note: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    kind: str = "purchase",
) -> int:
    """Add credits (purchase or refund) and return the new balance."""
    if amount <= 0:
        raise ValidationError("Credit amount must be positive", {"amount": amount})
    if kind not in ("purchase", "refund"):
        raise ValidationError(f"Invalid ledger kind: {kind}")
    return _apply(db, user_id, amount, kind, correlation_id, note, metadata)


def require_balance(db: Session, user_id: int, cost: int) -> int:
    """Optimistic precheck before paid work; the conditional debit is the real guard."""
    balance = get_balance(db, user_id)
    if balance < cost:
        raise InsufficientCredits(required=cost, balance=balance)
    return balance

"""
Credit wallet balance and ledger history.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_required_user
from ..database import get_db
from ..models.user import User
from ..models.wallet import CreditLedgerEntry
from ..responses import paginated
from ..services import wallet

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("")
def get_wallet(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    return {"ok": True, "balance": wallet.get_balance(db, current_user.id)}


@router.get("/ledger")
def get_ledger(
    page: int = 1,
    per_page: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Ledger entries, newest first."""
    page = max(page, 1)
    per_page = min(max(per_page, 1), 200)
    query = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.user_id == current_user.id)
    total = query.count()
    entries = (
        query.order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return paginated([e.to_dict() for e in entries], total, page, per_page)

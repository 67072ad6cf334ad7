"""
Credit purchase routes (Razorpay).
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth import get_required_user
from ..config import get_settings
from ..database import get_db
from ..models.user import User
from ..providers.razorpay import RazorpayClient, get_razorpay_client
from ..schemas.payments import OrderCreate
from ..services import payments
from .email_webhooks import raw_body

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    client: RazorpayClient = Depends(get_razorpay_client),
):
    return {"ok": True, **payments.create_order(db, current_user.id, payload.credits, client, get_settings())}


@router.post("/webhooks/razorpay")
def razorpay_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
):
    return payments.handle_webhook(db, request.headers, body, get_settings())

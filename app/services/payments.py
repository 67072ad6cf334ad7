"""
Credit purchases through Razorpay orders.
"""
import json
import uuid
from typing import Dict, Mapping

from sqlalchemy.orm import Session

from ..config import Settings
from ..logging_config import payments_logger as logger
from ..models.payment import Payment
from ..providers.razorpay import RazorpayClient, verify_webhook_signature
from ..responses import ApiException, ValidationError
from . import wallet

PAID_EVENTS = ("payment.captured", "order.paid")


def create_order(db: Session, user_id: int, credits: int, client: RazorpayClient, settings: Settings) -> Dict:
    if credits <= 0:
        raise ValidationError("credits must be positive", {"field": "credits"})
    if not client.is_configured():
        raise ApiException(503, "Payments are not configured", "NOT_CONFIGURED")

    amount = credits * settings.credit_price_minor
    order = client.create_order(
        amount=amount,
        currency=settings.currency,
        receipt=f"u{user_id}-{uuid.uuid4().hex[:12]}",
        notes={"user_id": str(user_id), "credits": str(credits)},
    )

    payment = Payment(
        user_id=user_id,
        razorpay_order_id=order["id"],
        credits=credits,
        amount=amount,
        currency=settings.currency,
        status="created",
        meta={"receipt": order.get("receipt")},
    )
    db.add(payment)
    db.commit()

    logger.info("Order created", user_id=user_id, order_id=order["id"], credits=credits, amount=amount)
    return {
        "order_id": order["id"],
        "amount": amount,
        "currency": settings.currency,
        "credits": credits,
        "key_id": client.key_id,
    }


def handle_webhook(db: Session, headers: Mapping[str, str], body: bytes, settings: Settings) -> Dict:
    """
    Credit the wallet for a captured payment.

    The ledger entry is keyed ``rzp_{payment_id}``, so redelivered webhooks
    never credit twice.
    """
    if not settings.razorpay_webhook_secret:
        raise ApiException(503, "Payments are not configured", "NOT_CONFIGURED")
    if not verify_webhook_signature(body, headers.get("x-razorpay-signature"), settings.razorpay_webhook_secret):
        logger.warning("Razorpay signature rejected")
        raise ValidationError("Invalid signature")

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Malformed webhook payload")
    if not isinstance(payload, dict):
        raise ValidationError("Malformed webhook payload")

    event = payload.get("event")
    if event not in PAID_EVENTS:
        return {"ok": True, "credited": False}

    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    order_id = entity.get("order_id")
    payment_id = entity.get("id")
    if not order_id or not payment_id:
        raise ValidationError("Payment entity missing order_id or id")

    payment = db.query(Payment).filter(Payment.razorpay_order_id == order_id).first()
    if payment is None:
        logger.warning("Webhook for unknown order", order_id=order_id, payment_id=payment_id)
        return {"ok": True, "credited": False}

    balance = wallet.credit(
        db,
        payment.user_id,
        payment.credits,
        f"rzp_{payment_id}",
        note="razorpay purchase",
        metadata={"order_id": order_id, "payment_id": payment_id, "amount": payment.amount},
        kind="purchase",
    )

    payment.status = "paid"
    payment.razorpay_payment_id = payment_id
    db.commit()

    logger.info("Payment credited", user_id=payment.user_id, order_id=order_id, credits=payment.credits, balance=balance)
    return {"ok": True, "credited": True}

"""
Inbound delivery webhooks from email providers (Resend, SES via SNS).
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_db
from ..logging_config import delivery_logger as logger
from ..services.delivery import apply_delivery_event, build_parser

router = APIRouter(prefix="/api/email/webhooks", tags=["email-webhooks"])


async def raw_body(request: Request) -> bytes:
    """Signature checks need the body exactly as sent."""
    return await request.body()


def get_webhook_parser(provider: str):
    return build_parser(provider, get_settings())


@router.post("/{provider}")
def receive_delivery_webhook(
    provider: str,
    request: Request,
    body: bytes = Depends(raw_body),
    parser=Depends(get_webhook_parser),
    db: Session = Depends(get_db),
):
    """Acknowledge any structurally valid notification; apply it when it is a delivery event."""
    result = parser.parse(request.headers, body)

    matched = False
    if result.event is not None:
        matched = apply_delivery_event(db, result.event)

    logger.info("Webhook received", provider=provider, action=result.action, matched=matched)
    return {"ok": True, "action": result.action, "matched": matched}

"""
Credit-metered publishing to connected social accounts.
"""
import uuid
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..logging_config import social_logger as logger
from ..models.social import SocialAccount, SocialPost
from ..providers.base import ProviderClient
from ..responses import ApiException, NotFound, ProviderError, ValidationError
from . import wallet
from .idempotency import derive_correlation_id


def publish_cost(provider: str, settings: Settings) -> int:
    return getattr(settings, f"publish_cost_{provider}", 0)


def _resolve_target(provider: str, account: SocialAccount, target: Optional[str]) -> str:
    if provider == "facebook":
        page_ids = account.page_ids or []
        page_id = target or account.selected_page_id or (page_ids[0] if page_ids else None)
        if not page_id:
            raise ValidationError("No Facebook page selected")
        if page_ids and page_id not in page_ids:
            raise ValidationError("Page is not managed by this account", {"page_id": page_id})
        return page_id
    if not account.external_id:
        raise ValidationError(f"{provider} account has no author id")
    return account.external_id


def publish(
    db: Session,
    user_id: int,
    client: ProviderClient,
    text: Optional[str],
    image_url: Optional[str] = None,
    target: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Dict:
    """
    Publish one post and charge for it.

    Credits are reserved before the provider call and refunded if it fails.
    A retry with the same ``Idempotency-Key`` returns the first result
    without posting or charging again.
    """
    settings = settings or get_settings()
    provider = client.name

    account = db.query(SocialAccount).filter(
        SocialAccount.user_id == user_id,
        SocialAccount.provider == provider,
    ).first()
    if account is None:
        raise NotFound("Connection", provider)

    text = (text or "").strip()
    image_url = (image_url or "").strip() or None
    if provider == "facebook":
        if not text and not image_url:
            raise ValidationError("text or image_url is required")
    elif not text:
        raise ValidationError("text is required", {"field": "text"})

    target = _resolve_target(provider, account, target)

    correlation_id = derive_correlation_id(user_id, f"{provider}.publish", {
        "text": text,
        "image_url": image_url,
        "target": target,
        "key": idempotency_key or uuid.uuid4().hex,
    })

    previous = db.query(SocialPost).filter(SocialPost.correlation_id == correlation_id).first()
    if previous is not None:
        if previous.status != "sent":
            raise ApiException(409, "This idempotency key already failed; retry with a new key", "IDEMPOTENCY_CONFLICT")
        logger.info("Publish replay", provider=provider, user_id=user_id, correlation_id=correlation_id)
        return {
            "ok": True,
            "id": previous.external_id,
            "permalink": previous.permalink,
            "balance": wallet.get_balance(db, user_id),
        }

    cost = publish_cost(provider, settings)
    if cost > 0:
        wallet.require_balance(db, user_id, cost)
        wallet.debit(
            db, user_id, cost, correlation_id,
            note=f"{provider}.publish",
            metadata={"provider": provider, "target": target},
        )

    try:
        result = client.publish(account.access_token, target, text, image_url)
    except ProviderError as e:
        if cost > 0:
            wallet.credit(
                db, user_id, cost, f"{correlation_id}:refund",
                note=f"{provider}.publish refund",
                metadata={"provider": provider, "error": e.detail},
                kind="refund",
            )
        db.add(SocialPost(
            user_id=user_id,
            provider=provider,
            target=target,
            text=text,
            image_url=image_url,
            status="failed",
            correlation_id=correlation_id,
            metadata_={"error": e.detail},
        ))
        db.commit()
        logger.warning("Publish failed", provider=provider, user_id=user_id, error_message=e.detail)
        raise

    db.add(SocialPost(
        user_id=user_id,
        provider=provider,
        target=target,
        external_id=result.id,
        permalink=result.permalink,
        text=text,
        image_url=image_url,
        status="sent",
        correlation_id=correlation_id,
        metadata_={"cost": cost},
    ))
    db.commit()

    balance = wallet.get_balance(db, user_id)
    logger.info("Published", provider=provider, user_id=user_id, post_id=result.id, balance=balance)
    return {"ok": True, "id": result.id, "permalink": result.permalink, "balance": balance}

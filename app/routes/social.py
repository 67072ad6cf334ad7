"""
Credit-metered social publishing.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..auth import get_required_user
from ..database import get_db
from ..models.social import SocialPost
from ..models.user import User
from ..providers import Provider, ProviderClient, get_social_clients
from ..responses import paginated
from ..schemas.social import PublishRequest
from ..services import social_publish

router = APIRouter(prefix="/api/social", tags=["social"])


@router.post("/{provider}/publish")
def publish_post(
    provider: Provider,
    payload: PublishRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    """Publish and charge; send an Idempotency-Key header to make retries safe."""
    return social_publish.publish(
        db,
        current_user.id,
        clients[provider.value],
        text=payload.text,
        image_url=payload.image_url,
        target=payload.target,
        idempotency_key=idempotency_key,
    )


@router.get("/{provider}/posts")
def list_posts(
    provider: Provider,
    page: int = 1,
    per_page: int = 20,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    query = db.query(SocialPost).filter(
        SocialPost.user_id == current_user.id,
        SocialPost.provider == provider.value,
    )
    total = query.count()
    posts = query.order_by(SocialPost.created_at.desc(), SocialPost.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    items = [
        {
            "id": p.id,
            "external_id": p.external_id,
            "permalink": p.permalink,
            "target": p.target,
            "text": p.text,
            "image_url": p.image_url,
            "status": p.status,
            "created_at": p.created_at.isoformat() if p.created_at else None,
        }
        for p in posts
    ]
    return paginated(items, total, page, per_page)

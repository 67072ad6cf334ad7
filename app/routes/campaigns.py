"""
Campaign routes: CRUD on draft campaigns, recipient enqueueing and batch sends.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional
from email_validator import EmailNotValidError, validate_email

from ..database import get_db
from ..models.campaign import Campaign, CampaignRecipient
from ..models.user import User
from ..auth import get_required_user
from ..config import get_settings
from ..logging_config import campaign_logger as logger
from ..providers.email import EmailSender, get_email_sender
from ..responses import ApiException, NotFound, ValidationError
from ..schemas.campaigns import CampaignCreate, CampaignUpdate, RecipientsAdd, SendRequest
from ..services.campaign_sender import CampaignSender, SendOverrides

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


def campaign_to_dict(campaign: Campaign, stats: Optional[dict] = None) -> dict:
    """Convert a Campaign model to a dictionary response."""
    data = {
        "id": campaign.id,
        "name": campaign.name,
        "subject": campaign.subject,
        "html": campaign.html,
        "from_email": campaign.from_email,
        "from_name": campaign.from_name,
        "status": campaign.status,
        "price_per_email": campaign.price_per_email,
        "recipients": campaign.recipients_count,
        "credits_charged": campaign.credits_charged,
        "sent_at": campaign.sent_at.isoformat() if campaign.sent_at else None,
        "created_at": campaign.created_at.isoformat() if campaign.created_at else None,
    }
    if stats is not None:
        data["stats"] = stats
    return data


def recipient_stats(db: Session, campaign_id: int) -> dict:
    rows = db.query(CampaignRecipient.status, func.count(CampaignRecipient.id)).filter(
        CampaignRecipient.campaign_id == campaign_id
    ).group_by(CampaignRecipient.status).all()
    by_status = {status: count for status, count in rows}

    opened = db.query(func.count(CampaignRecipient.id)).filter(
        CampaignRecipient.campaign_id == campaign_id,
        CampaignRecipient.opened_at.isnot(None),
    ).scalar() or 0
    clicked = db.query(func.count(CampaignRecipient.id)).filter(
        CampaignRecipient.campaign_id == campaign_id,
        CampaignRecipient.clicked_at.isnot(None),
    ).scalar() or 0

    return {"by_status": by_status, "opened": opened, "clicked": clicked}


def get_owned_campaign(db: Session, campaign_id: int, user: User) -> Campaign:
    campaign = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.user_id == user.id
    ).first()
    if not campaign:
        raise NotFound("Campaign", campaign_id)
    return campaign


def require_draft(campaign: Campaign):
    if campaign.status != "draft":
        raise ApiException(409, "Campaign is no longer a draft", "CAMPAIGN_LOCKED", {"status": campaign.status})


@router.get("", response_model=List[dict])
def get_campaigns(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Get all campaigns for the current user with optional status filter."""
    query = db.query(Campaign).filter(Campaign.user_id == current_user.id)

    if status:
        query = query.filter(Campaign.status == status)

    campaigns = query.order_by(Campaign.created_at.desc()).all()
    return [campaign_to_dict(c) for c in campaigns]


@router.get("/{campaign_id}", response_model=dict)
def get_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Get a single campaign with recipient stats."""
    campaign = get_owned_campaign(db, campaign_id, current_user)
    return campaign_to_dict(campaign, recipient_stats(db, campaign.id))


@router.post("", response_model=dict, status_code=201)
def create_campaign(
    campaign_data: CampaignCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Create a new draft campaign for the current user."""
    campaign = Campaign(
        user_id=current_user.id,
        name=campaign_data.name,
        subject=campaign_data.subject,
        html=campaign_data.html,
        from_email=campaign_data.from_email,
        from_name=campaign_data.from_name,
        status="draft",
        price_per_email=get_settings().price_per_email,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)

    logger.info("Campaign created", campaign_id=campaign.id, user_id=current_user.id)
    return campaign_to_dict(campaign)


@router.patch("/{campaign_id}", response_model=dict)
def update_campaign(
    campaign_id: int,
    campaign_update: CampaignUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Update a draft campaign's content."""
    campaign = get_owned_campaign(db, campaign_id, current_user)
    require_draft(campaign)

    update_data = campaign_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        if value is not None:
            setattr(campaign, key, value)

    db.commit()
    db.refresh(campaign)

    return campaign_to_dict(campaign)


@router.delete("/{campaign_id}")
def delete_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Delete a campaign that has not started sending."""
    campaign = get_owned_campaign(db, campaign_id, current_user)
    require_draft(campaign)

    db.delete(campaign)
    db.commit()
    return {"ok": True, "message": "Campaign deleted"}


@router.post("/{campaign_id}/recipients")
def add_recipients(
    campaign_id: int,
    payload: RecipientsAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
):
    """Queue recipients; duplicates and addresses already on the campaign are skipped."""
    campaign = get_owned_campaign(db, campaign_id, current_user)
    if campaign.is_closed:
        raise ApiException(409, "Campaign is closed", "CAMPAIGN_LOCKED", {"status": campaign.status})

    existing = {
        row.email for row in
        db.query(CampaignRecipient.email).filter(CampaignRecipient.campaign_id == campaign.id).all()
    }

    added, invalid = 0, []
    for raw in payload.emails:
        try:
            email = validate_email((raw or "").strip(), check_deliverability=False).normalized.lower()
        except EmailNotValidError:
            invalid.append(raw)
            continue
        if email in existing:
            continue
        existing.add(email)
        db.add(CampaignRecipient(campaign_id=campaign.id, email=email))
        added += 1

    if not added and invalid:
        raise ValidationError("No valid email addresses", {"invalid": invalid})

    campaign.recipients_count = (campaign.recipients_count or 0) + added
    db.commit()

    logger.info("Recipients queued", campaign_id=campaign.id, added=added, invalid=len(invalid))
    return {"ok": True, "added": added, "invalid": invalid, "recipients": campaign.recipients_count}


@router.post("/{campaign_id}/send")
def send_campaign(
    campaign_id: int,
    payload: Optional[SendRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    email_sender: EmailSender = Depends(get_email_sender),
):
    """Send one batch of queued recipients (or count them with dryRun)."""
    payload = payload or SendRequest()
    campaign = get_owned_campaign(db, campaign_id, current_user)

    summary = CampaignSender(db, email_sender).send(
        campaign,
        overrides=SendOverrides(
            subject=payload.subject,
            html=payload.html,
            from_email=payload.from_email,
            from_name=payload.from_name,
        ),
        limit=payload.limit,
        dry_run=payload.dry_run,
    )
    return summary.to_dict()

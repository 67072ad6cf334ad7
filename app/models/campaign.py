"""
Campaign and per-recipient delivery models for bulk email sends.
"""
import secrets

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


def new_tracking_token() -> str:
    return secrets.token_urlsafe(18)


class Campaign(Base):
    __tablename__ = "campaigns"

    STATUSES = ("draft", "sending", "sent", "failed")

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    subject = Column(String(500), nullable=False, default="")
    html = Column(Text, nullable=False, default="")
    from_email = Column(String(255), nullable=True)
    from_name = Column(String(200), nullable=True)
    status = Column(String(20), default="draft", nullable=False, index=True)  # draft, sending, sent, failed
    price_per_email = Column(Integer, nullable=False, default=1)  # credits
    recipients_count = Column(Integer, nullable=False, default=0)
    credits_charged = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    user = relationship("User", back_populates="campaigns")
    recipients = relationship("CampaignRecipient", back_populates="campaign", cascade="all, delete-orphan")

    @property
    def is_closed(self) -> bool:
        return self.status in ("sent", "failed")


class CampaignRecipient(Base):
    __tablename__ = "campaign_recipients"
    __table_args__ = (UniqueConstraint("campaign_id", "email", name="uq_campaign_recipient_email"),)

    # queued -> claimed -> sent -> delivered/bounced/complained, failed is terminal
    STATUSES = ("queued", "claimed", "sent", "delivered", "bounced", "complained", "failed")

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(320), nullable=False, index=True)
    tracking_token = Column(String(64), unique=True, nullable=False, default=new_tracking_token)
    status = Column(String(20), default="queued", nullable=False, index=True)
    claim_id = Column(String(32), nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    message_id = Column(String(255), nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    bounced_at = Column(DateTime, nullable=True)
    complained_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    opens_count = Column(Integer, nullable=False, default=0)
    clicked_at = Column(DateTime, nullable=True)
    clicks_count = Column(Integer, nullable=False, default=0)
    last_event_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    campaign = relationship("Campaign", back_populates="recipients")

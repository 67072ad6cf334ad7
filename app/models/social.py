"""
Social connection models: linked accounts, pending OAuth states, change quota
and the publish log.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_social_account_user_provider"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # facebook, linkedin
    access_token = Column(Text, nullable=False)  # never serialized
    expires_at = Column(DateTime, nullable=True)
    external_id = Column(String(255), nullable=True, index=True)  # fb user id or linkedin member urn
    display_name = Column(String(255), nullable=True)
    scopes = Column(JSON, default=list)
    page_ids = Column(JSON, default=list)
    selected_page_id = Column(String(64), nullable=True)
    selected_page_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="social_accounts")


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)


class ConnectionUsage(Base):
    __tablename__ = "social_connection_usage"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_connection_usage_user_provider"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    changes_used = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))


class SocialPost(Base):
    __tablename__ = "social_posts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, index=True)
    target = Column(String(255), nullable=False)  # page id or author urn
    external_id = Column(String(255), nullable=True)
    permalink = Column(String(1000), nullable=True)
    text = Column(Text, nullable=False, default="")
    image_url = Column(String(2000), nullable=True)
    status = Column(String(20), default="sent")
    correlation_id = Column(String(128), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

"""
Payment model for credit purchases.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey
from datetime import datetime, timezone
from ..database import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    razorpay_order_id = Column(String(64), unique=True, nullable=False)
    razorpay_payment_id = Column(String(64), nullable=True)
    credits = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), default="created", index=True)  # created, paid
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

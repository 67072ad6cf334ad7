"""
Credit wallet and its append-only ledger.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ..database import Base


class Wallet(Base):
    """Materialized balance. Only written alongside a ledger insert."""

    __tablename__ = "wallets"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="wallet")


class CreditLedgerEntry(Base):
    __tablename__ = "credits_ledger"

    KINDS = ("purchase", "debit", "refund")

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)
    correlation_id = Column(String(128), unique=True, nullable=False)
    note = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "delta": self.delta,
            "kind": self.kind,
            "correlation_id": self.correlation_id,
            "note": self.note,
            "metadata": self.metadata_,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

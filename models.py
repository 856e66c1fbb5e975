# models.py
from sqlalchemy import Column, BigInteger, Boolean, DateTime, Integer, String, Text
from sqlalchemy.sql import func
from database import Base

# Credit and balance quantities are stored as strings; they overflow 64-bit integers.

class Payment(Base):
    """
    Baseline taken when an inbound payment is registered for yield tracking.
    Rows are written once and never updated.
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True)
    address = Column(String, nullable=False, index=True)
    initial_amount = Column(String, nullable=False)
    initial_credits = Column(String, nullable=False)
    initial_credits_per_token = Column(String, nullable=False)
    tx_hash = Column(String, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_rebasing = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class RebaseEvent(Base):
    """
    One observed change of rebasingCreditsPerToken.
    block_number is the dedup key shared by every detector.
    """
    __tablename__ = "rebase_events"

    id = Column(Integer, primary_key=True, index=True)
    block_number = Column(BigInteger, unique=True, index=True, nullable=False)
    tx_hash = Column(String, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)
    previous_credits_per_token = Column(String, nullable=False)
    new_credits_per_token = Column(String, nullable=False)
    rebase_percentage = Column(String, nullable=False)
    estimated_apy = Column(String, nullable=False)
    source = Column(String, nullable=False, default="live")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class YieldSnapshot(Base):
    __tablename__ = "yield_history"

    id = Column(Integer, primary_key=True, index=True)
    address = Column(String, nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    balance = Column(String, nullable=False)
    credits_per_token = Column(String, nullable=False)
    cumulative_yield = Column(String, nullable=False)
    block_number = Column(BigInteger, nullable=False)

class GlobalState(Base):
    """Monitor bookkeeping, the only table updated in place."""
    __tablename__ = "global_state"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

"""
RippleBids Settlement Core - Database Schema
============================================

Escrow and order records for the multi-chain settlement flow:
- Escrow rows track custody of a buyer's XRPB payment on XRPL, XRPL-EVM or Solana
- Order rows link a marketplace listing purchase to exactly one escrow
- Notifications, status history and outbox events support delivery and reconciliation

Listings belong to the marketplace and are only read here.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class Chain(Enum):
    """Supported settlement chains"""
    XRPL = "xrpl"
    XRPL_EVM = "xrpl_evm"
    SOLANA = "solana"


class EscrowStatus(Enum):
    """Escrow lifecycle: pending -> funded -> conditions_met -> released, or auto_released/disputed/cancelled"""
    PENDING = "pending"
    FUNDED = "funded"
    CONDITIONS_MET = "conditions_met"
    RELEASED = "released"
    AUTO_RELEASED = "auto_released"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class OrderStatus(Enum):
    """Order lifecycle"""
    PENDING = "pending"
    ESCROW_FUNDED = "escrow_funded"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    AUTO_COMPLETED = "auto_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationType(Enum):
    """Notification types written for buyers and sellers"""
    ORDER_RECEIVED = "order_received"
    WALLET_SETUP = "wallet_setup"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_DISPUTED = "escrow_disputed"
    AUTO_RELEASE = "auto_release"


class OutboxEventType(Enum):
    """Record writes still owed after an on-chain transfer succeeded"""
    ESCROW_FUNDING_RECORD = "escrow_funding_record"
    ESCROW_RELEASE_RECORD = "escrow_release_record"


# ============================================================================
# MODELS
# ============================================================================

class Escrow(Base):
    """Application-level escrow holding a buyer's platform token payment"""
    __tablename__ = 'escrows'

    id = Column(String(36), primary_key=True, default=new_uuid)

    # Participants (chain addresses)
    buyer = Column(String(128), nullable=False, index=True)
    seller = Column(String(128), nullable=False, index=True)
    listing_id = Column(String(36), nullable=True, index=True)

    # Platform token amount, never fiat
    amount = Column(Numeric(38, 18), nullable=False)
    chain = Column(String(16), nullable=True)

    status = Column(String(20), default=EscrowStatus.PENDING.value, nullable=False)
    conditions = Column(JSONType, nullable=True)

    # On-chain references
    transaction_hash = Column(String(128), nullable=True, unique=True)
    release_hash = Column(String(128), nullable=True)
    withdrawal_address = Column(String(128), nullable=True)

    dispute_reason = Column(Text, nullable=True)

    # Payout claim: set by the single caller allowed to transfer funds out
    release_claim = Column(String(36), nullable=True)
    release_claimed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=True)
    funded_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="escrow", uselist=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrows_amount_positive'),
        CheckConstraint(
            "chain IS NULL OR chain IN ('xrpl', 'xrpl_evm', 'solana')",
            name='ck_escrows_chain_supported'
        ),
        CheckConstraint(
            "status IN ('pending', 'funded', 'conditions_met', 'released', "
            "'auto_released', 'disputed', 'cancelled')",
            name='ck_escrows_status_valid'
        ),
        Index('ix_escrows_status', 'status'),
        Index('ix_escrows_status_created', 'status', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer": self.buyer,
            "seller": self.seller,
            "listing_id": self.listing_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "chain": self.chain,
            "status": self.status,
            "conditions": self.conditions,
            "transaction_hash": self.transaction_hash,
            "release_hash": self.release_hash,
            "withdrawal_address": self.withdrawal_address,
            "dispute_reason": self.dispute_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Escrow(id={self.id}, chain={self.chain}, status={self.status}, amount={self.amount})>"


class Order(Base):
    """Marketplace purchase linked 1:1 to an escrow"""
    __tablename__ = 'orders'

    id = Column(String(36), primary_key=True, default=new_uuid)
    listing_id = Column(String(36), nullable=True, index=True)
    buyer_id = Column(String(64), nullable=True, index=True)
    seller_id = Column(String(64), nullable=True, index=True)

    amount = Column(Numeric(38, 18), nullable=False)
    escrow_id = Column(String(36), ForeignKey('escrows.id'), nullable=False, unique=True)
    transaction_hash = Column(String(128), nullable=True)
    payment_chain = Column(String(16), nullable=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)

    # Physical listings only
    shipping_address = Column(JSONType, nullable=True)
    tracking_number = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=True)

    escrow = relationship("Escrow", back_populates="order")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_orders_amount_positive'),
        Index('ix_orders_status_created', 'status', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "escrow_id": self.escrow_id,
            "transaction_hash": self.transaction_hash,
            "payment_chain": self.payment_chain,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Order(id={self.id}, escrow_id={self.escrow_id}, status={self.status})>"


class Listing(Base):
    """Marketplace listing (owned by the marketplace, read-only here)"""
    __tablename__ = 'listings'

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    price = Column(Numeric(18, 2), nullable=False)  # USD
    is_physical = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default="active", nullable=False)

    seller_xrpl_address = Column(String(128), nullable=True)
    seller_evm_address = Column(String(128), nullable=True)
    seller_solana_address = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)

    def seller_address_for(self, chain: str):
        return {
            Chain.XRPL.value: self.seller_xrpl_address,
            Chain.XRPL_EVM.value: self.seller_evm_address,
            Chain.SOLANA.value: self.seller_solana_address,
        }.get(chain)


class Notification(Base):
    """In-app notification sink"""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)


class EscrowStatusHistory(Base):
    """Audit trail of escrow status transitions"""
    __tablename__ = 'escrow_status_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(36), ForeignKey('escrows.id'), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor = Column(String(128), nullable=True)  # user id, admin id, or "system"
    reason = Column(Text, nullable=True)
    tx_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<EscrowStatusHistory(escrow_id={self.escrow_id}, {self.from_status}->{self.to_status})>"


class OutboxEvent(Base):
    """Outbox pattern for record writes owed after on-chain transfers"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=False)
    event_data = Column(JSONType, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Error handling
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_processed', 'processed'),
        Index('ix_outbox_events_event_type', 'event_type'),
        Index('ix_outbox_events_aggregate_id', 'aggregate_id'),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_type={self.event_type}, aggregate_id={self.aggregate_id}, processed={self.processed})>"

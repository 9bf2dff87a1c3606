"""
Escrow State Machine with Atomic Operations
Forward-only lifecycle validation plus compare-and-swap status updates at the storage layer
"""

import logging
from typing import Dict, Iterable, Optional, Set

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models import Escrow, EscrowStatus, EscrowStatusHistory, Order, OrderStatus, utc_now
from utils.payment_errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """Validates escrow and order state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {EscrowStatus.PENDING.value},
        EscrowStatus.PENDING.value: {
            EscrowStatus.FUNDED.value,
            EscrowStatus.CANCELLED.value,  # nothing moved on-chain yet
        },
        EscrowStatus.FUNDED.value: {
            EscrowStatus.CONDITIONS_MET.value,
            EscrowStatus.RELEASED.value,
            EscrowStatus.AUTO_RELEASED.value,
            EscrowStatus.DISPUTED.value,
        },
        EscrowStatus.CONDITIONS_MET.value: {
            EscrowStatus.RELEASED.value,
            EscrowStatus.DISPUTED.value,
        },
        # Admin resolution only
        EscrowStatus.DISPUTED.value: {
            EscrowStatus.RELEASED.value,
            EscrowStatus.CANCELLED.value,
        },
        # Terminal states
        EscrowStatus.RELEASED.value: set(),
        EscrowStatus.AUTO_RELEASED.value: set(),
        EscrowStatus.CANCELLED.value: set(),
    }

    ORDER_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {OrderStatus.PENDING.value},
        OrderStatus.PENDING.value: {
            OrderStatus.ESCROW_FUNDED.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.ESCROW_FUNDED.value: {
            OrderStatus.SHIPPED.value,
            OrderStatus.DELIVERED.value,
            OrderStatus.COMPLETED.value,
            OrderStatus.AUTO_COMPLETED.value,
        },
        OrderStatus.SHIPPED.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.COMPLETED.value,
        },
        OrderStatus.DELIVERED.value: {
            OrderStatus.COMPLETED.value,
        },
        OrderStatus.AUTO_COMPLETED.value: set(),
        OrderStatus.COMPLETED.value: set(),
        OrderStatus.CANCELLED.value: set(),
    }

    # Statuses a seller release may start from; admins may also resolve disputes
    RELEASABLE_STATUSES = (EscrowStatus.FUNDED.value, EscrowStatus.CONDITIONS_MET.value)
    ADMIN_RELEASABLE_STATUSES = RELEASABLE_STATUSES + (EscrowStatus.DISPUTED.value,)

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_valid_order_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.ORDER_TRANSITIONS.get(current_status, set())

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str) -> None:
        """Raise InvalidTransitionError if the escrow may not move to new_status"""
        if not cls.is_valid_transition(current_status, new_status):
            raise InvalidTransitionError(
                f"Invalid escrow transition: {current_status} -> {new_status}"
            )

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def can_release(cls, status: str, is_admin: bool = False) -> bool:
        allowed = cls.ADMIN_RELEASABLE_STATUSES if is_admin else cls.RELEASABLE_STATUSES
        return status in allowed


async def transition_escrow_status(
    session: AsyncSession,
    escrow_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    require_claim: Optional[str] = None,
    **values,
) -> bool:
    """
    Conditionally move an escrow to to_status.

    Issues UPDATE ... WHERE id = :id AND status IN (:from_statuses) so that only one
    concurrent caller can win; returns True when exactly one row changed.
    """
    from_statuses = list(from_statuses)
    for from_status in from_statuses:
        EscrowStateValidator.validate_transition(from_status, to_status)

    stmt = (
        update(Escrow)
        .where(Escrow.id == escrow_id)
        .where(Escrow.status.in_(from_statuses))
    )
    if require_claim is not None:
        stmt = stmt.where(Escrow.release_claim == require_claim)
    stmt = stmt.values(status=to_status, updated_at=utc_now(), **values)

    result = await session.execute(stmt)
    return result.rowcount == 1


async def transition_order_status(
    session: AsyncSession,
    escrow_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    **values,
) -> bool:
    """Conditionally move the order linked to an escrow"""
    from_statuses = list(from_statuses)
    for from_status in from_statuses:
        if not EscrowStateValidator.is_valid_order_transition(from_status, to_status):
            raise InvalidTransitionError(f"Invalid order transition: {from_status} -> {to_status}")

    result = await session.execute(
        update(Order)
        .where(Order.escrow_id == escrow_id)
        .where(Order.status.in_(from_statuses))
        .values(status=to_status, updated_at=utc_now(), **values)
    )
    return result.rowcount == 1


async def claim_release(session: AsyncSession, escrow_id: str, claim_token: str,
                        allowed_statuses: Iterable[str]) -> bool:
    """
    Acquire the payout claim for an escrow.

    Only one caller can set release_claim while the escrow is releasable; everyone
    else observes rowcount 0 and must not transfer funds.
    """
    result = await session.execute(
        update(Escrow)
        .where(Escrow.id == escrow_id)
        .where(Escrow.status.in_(list(allowed_statuses)))
        .where(Escrow.release_claim.is_(None))
        .values(release_claim=claim_token, release_claimed_at=utc_now())
    )
    return result.rowcount == 1


async def clear_release_claim(session: AsyncSession, escrow_id: str, claim_token: str) -> bool:
    """Drop a payout claim after a failed transfer so the escrow can be retried"""
    result = await session.execute(
        update(Escrow)
        .where(Escrow.id == escrow_id)
        .where(Escrow.release_claim == claim_token)
        .where(Escrow.release_hash.is_(None))
        .values(release_claim=None, release_claimed_at=None)
    )
    return result.rowcount == 1


def record_status_change(session: AsyncSession, escrow_id: str, from_status: Optional[str],
                         to_status: str, actor: Optional[str] = None, reason: Optional[str] = None,
                         tx_hash: Optional[str] = None) -> EscrowStatusHistory:
    """Add an audit row for an escrow transition to the current session"""
    entry = EscrowStatusHistory(
        escrow_id=escrow_id,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        reason=reason,
        tx_hash=tx_hash,
    )
    session.add(entry)
    logger.info(f"📋 ESCROW_STATE: {escrow_id} {from_status} -> {to_status} (actor={actor})")
    return entry

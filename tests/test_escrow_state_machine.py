"""
Escrow State Machine Tests
Forward-only transitions and compare-and-swap updates at the storage layer
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from database import async_managed_session
from models import Escrow, EscrowStatus, EscrowStatusHistory, OrderStatus
from utils.escrow_state_machine import (
    EscrowStateValidator,
    claim_release,
    clear_release_claim,
    record_status_change,
    transition_escrow_status,
)
from utils.payment_errors import InvalidTransitionError

from conftest import BUYER_ADDRESS, SELLER_ADDRESS


class TestEscrowStateValidator:

    def test_creation_starts_pending(self):
        assert EscrowStateValidator.is_valid_transition(None, EscrowStatus.PENDING.value) is True
        assert EscrowStateValidator.is_valid_transition(None, EscrowStatus.FUNDED.value) is False

    def test_forward_transitions(self):
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING.value, EscrowStatus.FUNDED.value)
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED.value, EscrowStatus.RELEASED.value)
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED.value, EscrowStatus.AUTO_RELEASED.value)
        assert EscrowStateValidator.is_valid_transition(
            EscrowStatus.CONDITIONS_MET.value, EscrowStatus.RELEASED.value
        )

    def test_no_backward_transitions(self):
        assert not EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED.value, EscrowStatus.PENDING.value)
        assert not EscrowStateValidator.is_valid_transition(EscrowStatus.RELEASED.value, EscrowStatus.FUNDED.value)
        assert not EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING.value, EscrowStatus.RELEASED.value)

    def test_funded_escrow_cannot_be_cancelled(self):
        assert not EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED.value, EscrowStatus.CANCELLED.value)

    @pytest.mark.parametrize("status", [
        EscrowStatus.RELEASED.value, EscrowStatus.AUTO_RELEASED.value, EscrowStatus.CANCELLED.value,
    ])
    def test_terminal_states(self, status):
        assert EscrowStateValidator.is_terminal_state(status) is True
        assert EscrowStateValidator.get_valid_transitions(status) == set()

    def test_release_permissions(self):
        assert EscrowStateValidator.can_release(EscrowStatus.FUNDED.value)
        assert EscrowStateValidator.can_release(EscrowStatus.CONDITIONS_MET.value)
        assert not EscrowStateValidator.can_release(EscrowStatus.DISPUTED.value)
        assert EscrowStateValidator.can_release(EscrowStatus.DISPUTED.value, is_admin=True)
        assert not EscrowStateValidator.can_release(EscrowStatus.PENDING.value, is_admin=True)

    def test_order_transitions(self):
        assert EscrowStateValidator.is_valid_order_transition(
            OrderStatus.ESCROW_FUNDED.value, OrderStatus.AUTO_COMPLETED.value
        )
        assert not EscrowStateValidator.is_valid_order_transition(
            OrderStatus.COMPLETED.value, OrderStatus.ESCROW_FUNDED.value
        )

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            EscrowStateValidator.validate_transition(EscrowStatus.CANCELLED.value, EscrowStatus.FUNDED.value)


async def insert_escrow(status: str = EscrowStatus.FUNDED.value) -> str:
    escrow_id = str(uuid.uuid4())
    async with async_managed_session() as session:
        session.add(Escrow(
            id=escrow_id, buyer=BUYER_ADDRESS, seller=SELLER_ADDRESS,
            amount=Decimal("50"), chain="xrpl", status=status,
        ))
    return escrow_id


async def load(escrow_id: str) -> Escrow:
    async with async_managed_session() as session:
        result = await session.execute(select(Escrow).where(Escrow.id == escrow_id))
        return result.scalar_one()


class TestAtomicTransitions:

    @pytest.mark.asyncio
    async def test_compare_and_swap_moves_once(self, test_db):
        escrow_id = await insert_escrow(EscrowStatus.PENDING.value)

        async with async_managed_session() as session:
            first = await transition_escrow_status(
                session, escrow_id, [EscrowStatus.PENDING.value], EscrowStatus.FUNDED.value,
            )
        async with async_managed_session() as session:
            second = await transition_escrow_status(
                session, escrow_id, [EscrowStatus.PENDING.value], EscrowStatus.FUNDED.value,
            )

        assert first is True
        assert second is False
        assert (await load(escrow_id)).status == EscrowStatus.FUNDED.value

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected_before_update(self, test_db):
        escrow_id = await insert_escrow(EscrowStatus.RELEASED.value)

        with pytest.raises(InvalidTransitionError):
            async with async_managed_session() as session:
                await transition_escrow_status(
                    session, escrow_id, [EscrowStatus.RELEASED.value], EscrowStatus.FUNDED.value,
                )
        assert (await load(escrow_id)).status == EscrowStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_single_release_claim(self, test_db):
        escrow_id = await insert_escrow()
        allowed = EscrowStateValidator.RELEASABLE_STATUSES

        async with async_managed_session() as session:
            assert await claim_release(session, escrow_id, "claim-a", allowed) is True
        async with async_managed_session() as session:
            assert await claim_release(session, escrow_id, "claim-b", allowed) is False

        async with async_managed_session() as session:
            assert await clear_release_claim(session, escrow_id, "claim-b") is False
        async with async_managed_session() as session:
            assert await clear_release_claim(session, escrow_id, "claim-a") is True

        assert (await load(escrow_id)).release_claim is None

    @pytest.mark.asyncio
    async def test_transition_requires_matching_claim(self, test_db):
        escrow_id = await insert_escrow()
        async with async_managed_session() as session:
            await claim_release(session, escrow_id, "claim-a", EscrowStateValidator.RELEASABLE_STATUSES)

        async with async_managed_session() as session:
            moved = await transition_escrow_status(
                session, escrow_id, [EscrowStatus.FUNDED.value], EscrowStatus.RELEASED.value,
                require_claim="claim-other", release_hash="F" * 64,
            )
        assert moved is False

        async with async_managed_session() as session:
            moved = await transition_escrow_status(
                session, escrow_id, [EscrowStatus.FUNDED.value], EscrowStatus.RELEASED.value,
                require_claim="claim-a", release_hash="F" * 64,
            )
        assert moved is True
        escrow = await load(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.release_hash == "F" * 64

    @pytest.mark.asyncio
    async def test_history_row(self, test_db):
        escrow_id = await insert_escrow()
        async with async_managed_session() as session:
            record_status_change(session, escrow_id, EscrowStatus.FUNDED.value, EscrowStatus.DISPUTED.value,
                                 actor="buyer-user", reason="item not received")

        async with async_managed_session() as session:
            result = await session.execute(
                select(EscrowStatusHistory).where(EscrowStatusHistory.escrow_id == escrow_id)
            )
            rows = result.scalars().all()
        assert len(rows) == 1
        assert rows[0].to_status == EscrowStatus.DISPUTED.value
        assert rows[0].actor == "buyer-user"

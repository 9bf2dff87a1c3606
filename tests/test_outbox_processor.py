"""
Outbox Processor Tests
Record writes that fail after a successful transfer are queued and replayed
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from database import async_managed_session
from models import Chain, Escrow, EscrowStatus, OutboxEvent, OutboxEventType, utc_now
from services.outbox_processor import OutboxProcessor
from utils.payment_errors import PaymentErrorCode

from conftest import WITHDRAWAL_ADDRESS, fake_tx_hash


async def outbox_events():
    async with async_managed_session() as session:
        result = await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))
        return result.scalars().all()


class TestFundingReconciliation:

    @pytest.mark.asyncio
    async def test_failed_funding_write_is_replayed(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_pending_escrow()
        tx_hash = fake_tx_hash("xrpl")

        with patch.object(orchestrator, "apply_funding_record",
                          AsyncMock(side_effect=RuntimeError("connection to server was lost"))):
            result = await orchestrator.confirm_external_payment(escrow_id, tx_hash, chain="xrpl")

        assert result.success is False
        assert result.error_code == PaymentErrorCode.RECONCILIATION_PENDING
        assert result.tx_hash == tx_hash
        events = await outbox_events()
        assert len(events) == 1
        assert events[0].event_type == OutboxEventType.ESCROW_FUNDING_RECORD.value
        assert events[0].event_data["transaction_hash"] == tx_hash

        stats = await OutboxProcessor(orchestrator=orchestrator).process_pending()

        assert stats == {"processed": 1, "failed": 0}
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.transaction_hash == tx_hash
        assert (await outbox_events())[0].processed is True

    @pytest.mark.asyncio
    async def test_already_applied_event_is_only_marked(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()
        escrow = await data_factory.get_escrow(escrow_id)
        async with async_managed_session() as session:
            session.add(OutboxEvent(
                event_type=OutboxEventType.ESCROW_FUNDING_RECORD.value,
                aggregate_id=escrow_id,
                event_data={"escrow_id": escrow_id, "transaction_hash": escrow.transaction_hash, "chain": "xrpl"},
            ))

        with patch.object(orchestrator, "apply_funding_record", AsyncMock()) as apply:
            stats = await OutboxProcessor(orchestrator=orchestrator).process_pending()

        assert stats["processed"] == 1
        apply.assert_not_called()


class TestReleaseReconciliation:

    @pytest.mark.asyncio
    async def test_failed_release_write_is_replayed(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()

        with patch.object(orchestrator, "apply_release_record",
                          AsyncMock(side_effect=RuntimeError("deadlock detected"))):
            result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)

        assert result.error_code == PaymentErrorCode.RECONCILIATION_PENDING
        assert len(fake_adapters[Chain.XRPL].transfers) == 1
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.release_claim is not None

        # A second release attempt must not pay again while the record is owed
        retry = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)
        assert retry.error_code == PaymentErrorCode.ALREADY_RELEASED

        stats = await OutboxProcessor(orchestrator=orchestrator).process_pending()

        assert stats["processed"] == 1
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.release_hash == result.tx_hash
        assert len(fake_adapters[Chain.XRPL].transfers) == 1


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_stop_at_limit(self, test_db, orchestrator):
        async with async_managed_session() as session:
            session.add(OutboxEvent(
                event_type=OutboxEventType.ESCROW_FUNDING_RECORD.value,
                aggregate_id="missing-escrow",
                event_data={"escrow_id": "missing-escrow", "transaction_hash": "A" * 64, "chain": "xrpl"},
            ))
        processor = OutboxProcessor(orchestrator=orchestrator, max_retries=2)

        assert await processor.process_pending() == {"processed": 0, "failed": 1}
        assert await processor.process_pending() == {"processed": 0, "failed": 1}
        assert await processor.process_pending() == {"processed": 0, "failed": 0}

        event = (await outbox_events())[0]
        assert event.retry_count == 2
        assert event.processed is False
        assert "not found" in event.last_error


class TestStaleClaims:

    @pytest.mark.asyncio
    async def test_old_claim_without_hash_is_reported(self, test_db, orchestrator, data_factory):
        stale_id = await data_factory.create_funded_escrow()
        fresh_id = await data_factory.create_funded_escrow()
        async with async_managed_session() as session:
            await session.execute(
                update(Escrow).where(Escrow.id == stale_id)
                .values(release_claim="claim-stale", release_claimed_at=utc_now() - timedelta(minutes=30))
            )
            await session.execute(
                update(Escrow).where(Escrow.id == fresh_id)
                .values(release_claim="claim-fresh", release_claimed_at=utc_now())
            )

        stale = await OutboxProcessor(orchestrator=orchestrator, stale_claim_minutes=15).report_stale_claims()

        assert [entry["escrow_id"] for entry in stale] == [stale_id]
        # Reported only; the claim stays in place
        assert (await data_factory.get_escrow(stale_id)).release_claim == "claim-stale"

"""
Outbox Processor
Replays escrow record writes owed after an on-chain transfer already succeeded,
and reports payout claims that never produced a release hash.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from config import Config
from database import async_managed_session
from models import Escrow, OutboxEvent, OutboxEventType, utc_now
from services.escrow_orchestrator import EscrowOrchestrator, get_escrow_orchestrator
from utils.centralized_logger import centralized_logger
from utils.payment_errors import EscrowNotFoundError

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """Retries queued escrow records until they apply or exhaust OUTBOX_MAX_RETRIES"""

    def __init__(self, orchestrator: Optional[EscrowOrchestrator] = None,
                 max_retries: Optional[int] = None,
                 stale_claim_minutes: Optional[int] = None):
        self._orchestrator = orchestrator
        self.max_retries = max_retries if max_retries is not None else Config.OUTBOX_MAX_RETRIES
        self.stale_claim_minutes = (stale_claim_minutes if stale_claim_minutes is not None
                                    else Config.RELEASE_CLAIM_STALE_MINUTES)

    @property
    def orchestrator(self) -> EscrowOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = get_escrow_orchestrator()
        return self._orchestrator

    async def process_pending(self, batch_size: int = 50) -> Dict[str, int]:
        """Apply unprocessed outbox events; returns processing statistics"""
        processed = failed = 0
        async with async_managed_session() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.processed.is_(False))
                .where(OutboxEvent.retry_count < self.max_retries)
                .order_by(OutboxEvent.id)
                .limit(batch_size)
            )
            events = result.scalars().all()

        for event in events:
            try:
                if not await self._already_applied(event):
                    await self._apply(event)
                await self._mark_processed(event.id)
                processed += 1
                logger.info(f"✅ OUTBOX: applied {event.event_type} for escrow {event.aggregate_id}")
            except Exception as e:
                failed += 1
                await self._mark_failed(event, e)

        if events:
            logger.info(f"📤 OUTBOX_PROCESSED: {processed} applied, {failed} failed")
        return {"processed": processed, "failed": failed}

    async def _already_applied(self, event: OutboxEvent) -> bool:
        data = event.event_data or {}
        async with async_managed_session() as session:
            result = await session.execute(select(Escrow).where(Escrow.id == event.aggregate_id))
            escrow = result.scalar_one_or_none()
        if escrow is None:
            raise EscrowNotFoundError(f"Escrow {event.aggregate_id} not found")
        if event.event_type == OutboxEventType.ESCROW_FUNDING_RECORD.value:
            return escrow.transaction_hash == data.get("transaction_hash")
        if event.event_type == OutboxEventType.ESCROW_RELEASE_RECORD.value:
            return escrow.release_hash == data.get("release_hash")
        return False

    async def _apply(self, event: OutboxEvent) -> None:
        if event.event_type == OutboxEventType.ESCROW_FUNDING_RECORD.value:
            await self.orchestrator.apply_funding_record(event.event_data)
        elif event.event_type == OutboxEventType.ESCROW_RELEASE_RECORD.value:
            await self.orchestrator.apply_release_record(event.event_data)
        else:
            raise ValueError(f"Unknown outbox event type: {event.event_type}")

    async def _mark_processed(self, event_id: int) -> None:
        async with async_managed_session() as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(processed=True, processed_at=utc_now(), last_error=None)
            )

    async def _mark_failed(self, event: OutboxEvent, error: BaseException) -> None:
        retry_count = event.retry_count + 1
        logger.error(f"❌ OUTBOX: {event.event_type} for {event.aggregate_id} failed "
                     f"(attempt {retry_count}/{self.max_retries}): {error}")
        try:
            async with async_managed_session() as session:
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event.id)
                    .values(retry_count=retry_count, last_error=str(error)[:1000])
                )
        except Exception as e:
            logger.error(f"❌ OUTBOX: could not update retry count for event {event.id}: {e}")

        if retry_count >= self.max_retries:
            centralized_logger.log_critical_error(
                f"Outbox event {event.id} exhausted retries; manual reconciliation required",
                {
                    "event_type": event.event_type,
                    "escrow_id": event.aggregate_id,
                    "event_data": event.event_data,
                    "last_error": str(error),
                },
            )

    async def report_stale_claims(self) -> List[Dict[str, Any]]:
        """
        Escrows whose payout claim is older than RELEASE_CLAIM_STALE_MINUTES with no
        release hash. The transfer may or may not have happened, so claims are only
        reported, never cleared here.
        """
        cutoff = utc_now() - timedelta(minutes=self.stale_claim_minutes)
        async with async_managed_session() as session:
            result = await session.execute(
                select(Escrow)
                .where(Escrow.release_claim.is_not(None))
                .where(Escrow.release_hash.is_(None))
                .where(Escrow.release_claimed_at <= cutoff)
            )
            escrows = result.scalars().all()

        stale = []
        for escrow in escrows:
            entry = {
                "escrow_id": escrow.id,
                "status": escrow.status,
                "chain": escrow.chain,
                "amount": str(escrow.amount),
                "claimed_at": escrow.release_claimed_at.isoformat() if escrow.release_claimed_at else None,
            }
            stale.append(entry)
            centralized_logger.log_reconciliation_alert(
                "Release claim held without a release hash", escrow.id, None, entry,
            )
        if stale:
            logger.warning(f"⚠️ OUTBOX: {len(stale)} stale release claims need manual review")
        return stale


_outbox_processor: Optional[OutboxProcessor] = None


def get_outbox_processor() -> OutboxProcessor:
    global _outbox_processor
    if _outbox_processor is None:
        _outbox_processor = OutboxProcessor()
    return _outbox_processor

"""
Auto-Release Service
Refunds buyers whose funded escrows were never completed within the release window.

Selection: orders in escrow_funded older than AUTO_RELEASE_DAYS whose escrow is still
funded. Each item is claimed, paid back to the buyer from the platform wallet, then
recorded in one transaction; a failing item never stops the sweep.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import SettlementConfig, get_settlement_config
from database import async_managed_session
from models import Escrow, EscrowStatus, Order, OrderStatus, OutboxEventType, utc_now
from services.chain_adapters.base import PaymentResult
from services.chain_adapters.registry import ChainAdapterRegistry, get_adapter_registry
from services.escrow_orchestrator import EscrowOrchestrator
from services.notification_service import NotificationService, get_notification_service
from utils.chain_detection import resolve_chain
from utils.escrow_state_machine import claim_release, clear_release_claim
from utils.payment_errors import format_error_message

logger = logging.getLogger(__name__)


class AutoReleaseService:
    """Periodic sweep returning stale escrowed funds to buyers"""

    def __init__(self, settlement_config: Optional[SettlementConfig] = None,
                 adapters: Optional[ChainAdapterRegistry] = None,
                 notifications: Optional[NotificationService] = None):
        self.settlement_config = settlement_config or get_settlement_config()
        if adapters is None:
            adapters = (ChainAdapterRegistry(settlement_config) if settlement_config
                        else get_adapter_registry())
        self.adapters = adapters
        self.notifications = notifications or get_notification_service()
        # Outbox writes share the orchestrator's reconciliation path
        self._orchestrator = EscrowOrchestrator(
            self.settlement_config, adapters=self.adapters, notifications=self.notifications,
        )

    async def find_eligible(self) -> List[tuple]:
        """(order, escrow) pairs past the release window"""
        cutoff = utc_now() - timedelta(days=self.settlement_config.auto_release_days)
        stmt = (
            select(Order, Escrow)
            .join(Escrow, Escrow.id == Order.escrow_id)
            .where(Order.status == OrderStatus.ESCROW_FUNDED.value)
            .where(Order.created_at <= cutoff)
            .where(Escrow.status == EscrowStatus.FUNDED.value)
            .where(Escrow.release_claim.is_(None))
            .order_by(Order.created_at)
        )
        async with async_managed_session() as session:
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    async def process_auto_release(self) -> Dict[str, Any]:
        """Run one sweep and return a per-order summary"""
        logger.info("⏰ AUTO_RELEASE: starting sweep")
        try:
            eligible = await self.find_eligible()
        except Exception as e:
            logger.error(f"❌ AUTO_RELEASE: selecting eligible orders failed: {e}", exc_info=True)
            return {
                "success": False,
                "message": "Auto-release selection failed",
                "released_count": 0,
                "results": [],
                "error": format_error_message(str(e)),
            }

        results = []
        for order, escrow in eligible:
            try:
                item = await self._release_one(order, escrow)
            except Exception as e:
                logger.error(f"❌ AUTO_RELEASE: order {order.id} failed unexpectedly: {e}", exc_info=True)
                item = self._item(order, escrow, None, success=False, error=format_error_message(str(e)))
            results.append(item)

        released_count = sum(1 for item in results if item["success"])
        message = f"Auto-released {released_count} of {len(results)} eligible orders"
        logger.info(f"✅ AUTO_RELEASE: {message}")
        return {
            "success": True,
            "message": message,
            "released_count": released_count,
            "results": results,
        }

    @staticmethod
    def _item(order: Order, escrow: Escrow, chain, success: bool, release_hash: Optional[str] = None,
              error: Optional[str] = None) -> Dict[str, Any]:
        item = {
            "order_id": order.id,
            "escrow_id": escrow.id,
            "success": success,
            "amount": str(escrow.amount),
            "blockchain": chain.value if chain else None,
        }
        if success:
            item["release_hash"] = release_hash
        else:
            item["error"] = error
        return item

    async def _release_one(self, order: Order, escrow: Escrow) -> Dict[str, Any]:
        chain = resolve_chain(escrow.chain, escrow.transaction_hash)
        if chain is None:
            logger.warning(f"⚠️ AUTO_RELEASE: cannot determine chain for escrow {escrow.id}")
            return self._item(order, escrow, None, success=False,
                              error="Unable to determine blockchain from transaction hash")

        claim_token = str(uuid.uuid4())
        async with async_managed_session() as session:
            claimed = await claim_release(session, escrow.id, claim_token, [EscrowStatus.FUNDED.value])
        if not claimed:
            return self._item(order, escrow, chain, success=False,
                              error="Escrow release already in progress or completed")

        amount = Decimal(str(escrow.amount))
        adapter = self.adapters.get(chain)
        try:
            signer = adapter.load_platform_signer()
            payment = await adapter.send_token_payment(signer, escrow.buyer, amount)
        except Exception as e:
            payment = PaymentResult.failure(chain.value, e, amount=amount)

        if not payment.success:
            async with async_managed_session() as session:
                await clear_release_claim(session, escrow.id, claim_token)
            logger.warning(f"🚫 AUTO_RELEASE: refund for escrow {escrow.id} failed: {payment.error}")
            return self._item(order, escrow, chain, success=False, error=payment.error)

        release_hash = payment.tx_ref
        record = {
            "escrow_id": escrow.id,
            "release_hash": release_hash,
            "withdrawal_address": escrow.buyer,
            "to_status": EscrowStatus.AUTO_RELEASED.value,
            "from_statuses": [EscrowStatus.FUNDED.value],
            "claim": claim_token,
            "actor": "auto_release",
            "amount": str(amount),
            "chain": chain.value,
        }
        try:
            await self._orchestrator.apply_release_record(record, escrow=escrow, order=order)
        except Exception as e:
            logger.error(f"❌ AUTO_RELEASE: refund record for {escrow.id} failed: {e}", exc_info=True)
            await self._orchestrator.queue_reconciliation(
                OutboxEventType.ESCROW_RELEASE_RECORD, escrow.id, record, release_hash, e,
            )
            return self._item(order, escrow, chain, success=False,
                              error="Funds returned; record pending reconciliation")

        logger.info(f"✅ AUTO_RELEASE: escrow {escrow.id} refunded to buyer tx={release_hash}")
        return self._item(order, escrow, chain, success=True, release_hash=release_hash)


_auto_release_service: Optional[AutoReleaseService] = None


def get_auto_release_service() -> AutoReleaseService:
    global _auto_release_service
    if _auto_release_service is None:
        _auto_release_service = AutoReleaseService()
    return _auto_release_service

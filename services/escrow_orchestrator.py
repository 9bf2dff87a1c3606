"""
Escrow Orchestrator Service
Single entry point for the escrow lifecycle: create, fund, release, dispute, cancel.

Every operation returns an OperationResult; chain and verifier failures are classified
into the payment error taxonomy and never leave an escrow in a half-updated state.
A payment always happens before the record that describes it, so a failed record
write after a successful transfer is handed to the outbox for reconciliation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import or_, select

from config import SettlementConfig, get_settlement_config
from database import async_managed_session
from models import (
    Chain, Escrow, EscrowStatus, Listing, Order, OrderStatus,
    OutboxEvent, OutboxEventType, utc_now,
)
from services.chain_adapters.base import PaymentResult
from services.chain_adapters.registry import ChainAdapterRegistry, get_adapter_registry
from services.notification_service import NotificationService, get_notification_service
from services.price_oracle import TokenPriceOracle, get_price_oracle
from services.xrpl_payment_verifier import XRPLPaymentVerifier
from utils.centralized_logger import centralized_logger
from utils.chain_detection import is_valid_address, parse_chain, resolve_chain
from utils.escrow_state_machine import (
    EscrowStateValidator,
    claim_release,
    clear_release_claim,
    record_status_change,
    transition_escrow_status,
    transition_order_status,
)
from utils.payment_errors import (
    AlreadyReleasedError,
    DuplicateTransactionError,
    EscrowNotFoundError,
    InvalidTransitionError,
    PaymentErrorClassifier,
    PaymentErrorCode,
    SettlementError,
    UnauthorizedError,
    ValidationError,
    format_error_message,
)

logger = logging.getLogger(__name__)

PENDING_WALLET_SETUP = "pending_wallet_setup"

# Order statuses that still wait on the seller
OPEN_ORDER_STATUSES = (
    OrderStatus.ESCROW_FUNDED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)

_RELEASE_BLOCKED_MESSAGES = {
    EscrowStatus.PENDING.value: "Cannot release escrow. Escrow is not yet funded.",
    EscrowStatus.DISPUTED.value: "Cannot release escrow. Escrow is under dispute.",
    EscrowStatus.CANCELLED.value: "Cannot release escrow. Escrow has been cancelled.",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class OperationResult:
    """Structured outcome of an orchestrator operation"""
    success: bool
    escrow_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, escrow_id: Optional[str] = None, tx_hash: Optional[str] = None, **data) -> "OperationResult":
        return cls(success=True, escrow_id=escrow_id, tx_hash=tx_hash, data=data)

    @classmethod
    def fail(cls, error: str, error_code: PaymentErrorCode, escrow_id: Optional[str] = None,
             tx_hash: Optional[str] = None, **data) -> "OperationResult":
        return cls(success=False, escrow_id=escrow_id, tx_hash=tx_hash, error=error,
                   error_code=error_code, data=data)

    @classmethod
    def from_exception(cls, exc: BaseException, escrow_id: Optional[str] = None) -> "OperationResult":
        code = PaymentErrorClassifier.classify(exc)
        if isinstance(exc, SettlementError):
            message = exc.message
            # Domain errors already carry user-facing text
            if code in (PaymentErrorCode.UNKNOWN, PaymentErrorCode.NETWORK_ERROR):
                message = format_error_message(message)
        else:
            message = format_error_message(str(exc))
        return cls.fail(message, code, escrow_id=escrow_id)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.escrow_id:
            payload["escrowId"] = self.escrow_id
        if self.tx_hash:
            payload["txHash"] = self.tx_hash
        if not self.success:
            payload["error"] = self.error
            payload["errorCode"] = self.error_code.value if self.error_code else None
        payload.update(self.data)
        return payload


class EscrowOrchestrator:
    """
    Escrow lifecycle coordinator

    Chain adapters, the price oracle, the XRPL verifier and the notification sink are
    injected so tests and alternate networks can substitute them.
    """

    def __init__(self,
                 settlement_config: Optional[SettlementConfig] = None,
                 adapters: Optional[ChainAdapterRegistry] = None,
                 price_oracle: Optional[TokenPriceOracle] = None,
                 xrpl_verifier: Optional[XRPLPaymentVerifier] = None,
                 notifications: Optional[NotificationService] = None):
        self.settlement_config = settlement_config or get_settlement_config()
        if adapters is None:
            adapters = (ChainAdapterRegistry(settlement_config) if settlement_config
                        else get_adapter_registry())
        self.adapters = adapters
        self._price_oracle = price_oracle
        self._xrpl_verifier = xrpl_verifier
        self.notifications = notifications or get_notification_service()

    @property
    def price_oracle(self) -> TokenPriceOracle:
        if self._price_oracle is None:
            self._price_oracle = get_price_oracle()
        return self._price_oracle

    @property
    def xrpl_verifier(self) -> XRPLPaymentVerifier:
        if self._xrpl_verifier is None:
            self._xrpl_verifier = XRPLPaymentVerifier(self.settlement_config)
        return self._xrpl_verifier

    def escrow_wallet(self, chain) -> str:
        return self.settlement_config.for_chain(chain).recipient

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load_escrow(self, escrow_id: str) -> Escrow:
        if not escrow_id:
            raise ValidationError("Escrow ID is required")
        async with async_managed_session() as session:
            result = await session.execute(select(Escrow).where(Escrow.id == escrow_id))
            escrow = result.scalar_one_or_none()
        if escrow is None:
            raise EscrowNotFoundError("Escrow not found")
        return escrow

    async def _load_order(self, escrow_id: str) -> Optional[Order]:
        async with async_managed_session() as session:
            result = await session.execute(select(Order).where(Order.escrow_id == escrow_id))
            return result.scalar_one_or_none()

    async def _load_listing(self, listing_id: str) -> Optional[Listing]:
        async with async_managed_session() as session:
            result = await session.execute(select(Listing).where(Listing.id == listing_id))
            return result.scalar_one_or_none()

    async def is_hash_used(self, tx_hash: str, exclude_escrow_id: Optional[str] = None) -> bool:
        """True when tx_hash already funds a different escrow"""
        stmt = select(Escrow.id).where(Escrow.transaction_hash == tx_hash)
        if exclude_escrow_id:
            stmt = stmt.where(Escrow.id != exclude_escrow_id)
        async with async_managed_session() as session:
            result = await session.execute(stmt.limit(1))
            return result.scalar_one_or_none() is not None

    def _escrow_chain(self, escrow: Escrow) -> Chain:
        chain = resolve_chain(escrow.chain, escrow.transaction_hash)
        if chain is None:
            raise ValidationError("Unable to determine blockchain for this escrow")
        return chain

    @staticmethod
    def _check_party(escrow: Escrow, order: Optional[Order], requested_by: Optional[Iterable[str]],
                     buyer: bool = True, seller: bool = True) -> None:
        """requested_by holds the caller's identities (user id, wallet address); None skips the check"""
        if requested_by is None:
            return
        identities = {str(i) for i in requested_by if i}
        allowed = set()
        if buyer:
            allowed.update({escrow.buyer, order.buyer_id if order else None})
        if seller:
            allowed.update({escrow.seller, order.seller_id if order else None})
        allowed.discard(None)
        if not identities & allowed:
            raise UnauthorizedError("Unauthorized or escrow not found")

    @staticmethod
    def _user_ids(escrow: Escrow, order: Optional[Order]):
        """(buyer, seller) notification recipients"""
        buyer = (order.buyer_id if order and order.buyer_id else None) or escrow.buyer
        seller = (order.seller_id if order and order.seller_id else None) or escrow.seller
        return buyer, seller

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_escrow(self, seller: Optional[str], buyer: str, amount, chain,
                            conditions: Optional[Dict[str, Any]] = None,
                            listing_id: Optional[str] = None,
                            buyer_user_id: Optional[str] = None,
                            shipping_address: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Persist a pending escrow (and its order when bought from a listing)"""
        try:
            try:
                amount = Decimal(str(amount))
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Invalid escrow amount: {amount}")
            if not amount.is_finite() or amount <= 0:
                raise ValidationError("Escrow amount must be greater than zero")
            if not buyer:
                raise ValidationError("Buyer address is required")
            chain = parse_chain(chain)

            listing = await self._load_listing(listing_id) if listing_id else None
            if listing_id and listing is None:
                raise ValidationError("Listing not found")

            seller_wallet_missing = False
            if not seller and listing is not None:
                seller = listing.seller_address_for(chain.value)
            if not seller:
                if listing is None:
                    raise ValidationError("Seller address is required")
                seller = PENDING_WALLET_SETUP
                seller_wallet_missing = True

            merged_conditions = {
                "delivery_required": bool(listing.is_physical) if listing is not None else True,
                "satisfactory_condition": True,
                "auto_release_days": self.settlement_config.auto_release_days,
            }
            merged_conditions.update(conditions or {})

            escrow_id = str(uuid.uuid4())
            order_id = None
            async with async_managed_session() as session:
                session.add(Escrow(
                    id=escrow_id,
                    buyer=buyer,
                    seller=seller,
                    listing_id=listing_id,
                    amount=amount,
                    chain=chain.value,
                    status=EscrowStatus.PENDING.value,
                    conditions=merged_conditions,
                ))
                # Escrow row must exist before the order and history rows reference it
                await session.flush()
                record_status_change(session, escrow_id, None, EscrowStatus.PENDING.value,
                                     actor=buyer_user_id or buyer, reason="escrow created")

                if listing is not None:
                    order = Order(
                        listing_id=listing.id,
                        buyer_id=buyer_user_id or buyer,
                        seller_id=listing.user_id,
                        amount=amount,
                        escrow_id=escrow_id,
                        payment_chain=chain.value,
                        status=OrderStatus.PENDING.value,
                        shipping_address=shipping_address if listing.is_physical else None,
                    )
                    session.add(order)
                    await session.flush()
                    order_id = order.id

                    self.notifications.order_received(session, listing.user_id, listing.title, amount, chain.value)
                    if seller_wallet_missing:
                        self.notifications.wallet_setup_required(session, listing.user_id, chain.value)

            logger.info(f"✅ ESCROW_ORCHESTRATOR: created escrow {escrow_id} for {amount} XRPB on {chain.value}")
            return OperationResult.ok(
                escrow_id=escrow_id,
                escrowWallet=self.escrow_wallet(chain),
                amount=str(amount),
                chain=chain.value,
                orderId=order_id,
            )

        except SettlementError as e:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: create rejected: {e.message}")
            return OperationResult.from_exception(e)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: create failed: {e}", exc_info=True)
            return OperationResult.from_exception(e)

    # ------------------------------------------------------------------
    # Fund
    # ------------------------------------------------------------------

    async def fund_escrow(self, escrow_id: str, payment_result: PaymentResult,
                          actor: Optional[str] = None) -> OperationResult:
        """
        Record a successful buyer payment: escrow pending -> funded, order -> escrow_funded.

        Only called with a confirmed adapter/verifier result; an unsuccessful or pending
        result never changes state.
        """
        if payment_result is None or not payment_result.success:
            error = payment_result.error if payment_result else "Payment failed"
            code = payment_result.error_code if payment_result else PaymentErrorCode.UNKNOWN
            return OperationResult.fail(error, code or PaymentErrorCode.UNKNOWN, escrow_id=escrow_id)
        if payment_result.pending or not payment_result.tx_ref:
            return OperationResult.fail("Payment has no confirmed transaction", PaymentErrorCode.VALIDATION_ERROR,
                                        escrow_id=escrow_id)

        tx_hash = payment_result.tx_ref
        record = {
            "escrow_id": escrow_id,
            "transaction_hash": tx_hash,
            "chain": payment_result.chain,
            "amount": str(payment_result.amount) if payment_result.amount is not None else None,
            "actor": actor or "system",
        }
        try:
            escrow = await self._load_escrow(escrow_id)
            chain = parse_chain(payment_result.chain)
            if escrow.chain and escrow.chain != chain.value:
                raise ValidationError(f"Payment chain {chain.value} does not match escrow chain {escrow.chain}")

            if escrow.status == EscrowStatus.FUNDED.value and escrow.transaction_hash == tx_hash:
                return OperationResult.ok(escrow_id=escrow_id, tx_hash=tx_hash, status=escrow.status)
            if escrow.status != EscrowStatus.PENDING.value:
                raise InvalidTransitionError(f"Escrow is {escrow.status}, expected pending")
            if await self.is_hash_used(tx_hash, exclude_escrow_id=escrow_id):
                raise DuplicateTransactionError("Transaction already used for another escrow")
            order = await self._load_order(escrow_id)
        except SettlementError as e:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: funding of {escrow_id} rejected: {e.message}")
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: funding lookup for {escrow_id} failed: {e}", exc_info=True)
            return await self._pending_funding(record, e)

        try:
            await self.apply_funding_record(record, escrow=escrow, order=order)
        except InvalidTransitionError as e:
            # Money arrived for an escrow that moved on concurrently
            centralized_logger.log_reconciliation_alert(
                f"Payment received for escrow no longer pending: {e.message}", escrow_id, tx_hash, record,
            )
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: funding record for {escrow_id} failed: {e}", exc_info=True)
            return await self._pending_funding(record, e)

        logger.info(f"✅ ESCROW_ORCHESTRATOR: escrow {escrow_id} funded tx={tx_hash}")
        return OperationResult.ok(escrow_id=escrow_id, tx_hash=tx_hash, status=EscrowStatus.FUNDED.value)

    async def apply_funding_record(self, record: Dict[str, Any], escrow: Optional[Escrow] = None,
                                   order: Optional[Order] = None) -> None:
        """Escrow pending -> funded and order pending -> escrow_funded in one transaction"""
        escrow_id = record["escrow_id"]
        tx_hash = record["transaction_hash"]
        chain = record["chain"]
        if escrow is None:
            escrow = await self._load_escrow(escrow_id)
        if order is None:
            order = await self._load_order(escrow_id)

        async with async_managed_session() as session:
            moved = await transition_escrow_status(
                session, escrow_id, [EscrowStatus.PENDING.value], EscrowStatus.FUNDED.value,
                transaction_hash=tx_hash, chain=chain, funded_at=utc_now(),
            )
            if not moved:
                raise InvalidTransitionError("Escrow is no longer pending")
            await transition_order_status(
                session, escrow_id, [OrderStatus.PENDING.value], OrderStatus.ESCROW_FUNDED.value,
                transaction_hash=tx_hash, payment_chain=chain,
            )
            record_status_change(session, escrow_id, EscrowStatus.PENDING.value, EscrowStatus.FUNDED.value,
                                 actor=record.get("actor") or "system", reason="payment verified", tx_hash=tx_hash)
            buyer_id, seller_id = self._user_ids(escrow, order)
            self.notifications.escrow_funded(session, buyer_id, escrow_id, escrow.amount, chain)
            self.notifications.escrow_funded(session, seller_id, escrow_id, escrow.amount, chain)

    async def _pending_funding(self, record: Dict[str, Any], error: BaseException) -> OperationResult:
        await self.queue_reconciliation(OutboxEventType.ESCROW_FUNDING_RECORD, record["escrow_id"], record,
                                        record["transaction_hash"], error)
        return OperationResult.fail(
            "Payment received; escrow record is pending reconciliation",
            PaymentErrorCode.RECONCILIATION_PENDING,
            escrow_id=record["escrow_id"], tx_hash=record["transaction_hash"],
        )

    async def queue_reconciliation(self, event_type: OutboxEventType, escrow_id: str, event_data: Dict[str, Any],
                                   tx_hash: Optional[str], error: BaseException) -> None:
        centralized_logger.log_reconciliation_alert(
            f"{event_type.value} write failed after on-chain transfer: {error}", escrow_id, tx_hash, event_data,
        )
        try:
            async with async_managed_session() as session:
                session.add(OutboxEvent(
                    event_type=event_type.value,
                    aggregate_id=escrow_id,
                    event_data=event_data,
                    last_error=str(error)[:1000],
                ))
            logger.warning(f"⚠️ ESCROW_ORCHESTRATOR: queued {event_type.value} for {escrow_id} in outbox")
        except Exception as outbox_error:
            centralized_logger.log_critical_error(
                f"Outbox write failed for {escrow_id}; manual reconciliation required",
                {"event_type": event_type.value, "event_data": event_data, "error": str(outbox_error)},
            )

    async def confirm_external_payment(self, escrow_id: str, tx_hash: str, chain=None,
                                       actor: Optional[str] = None) -> OperationResult:
        """Verify a transaction the buyer submitted from their own wallet, then fund"""
        try:
            if not tx_hash:
                raise ValidationError("Transaction hash is required")
            tx_hash = tx_hash.strip()
            escrow = await self._load_escrow(escrow_id)
            chain = parse_chain(chain) if chain else resolve_chain(escrow.chain, tx_hash)
            if chain is None:
                raise ValidationError("Unable to determine blockchain from transaction hash")
            if escrow.chain and escrow.chain != chain.value:
                raise ValidationError(f"Transaction chain {chain.value} does not match escrow chain {escrow.chain}")

            if escrow.status == EscrowStatus.FUNDED.value and escrow.transaction_hash == tx_hash:
                return OperationResult.ok(escrow_id=escrow_id, tx_hash=tx_hash, status=escrow.status)
            if escrow.status != EscrowStatus.PENDING.value:
                raise InvalidTransitionError(f"Escrow is {escrow.status}, expected pending")
            if await self.is_hash_used(tx_hash, exclude_escrow_id=escrow_id):
                raise DuplicateTransactionError("Transaction already used for another escrow")

            adapter = self.adapters.get(chain)
            verification = await adapter.verify_payment(
                tx_hash, self.escrow_wallet(chain), escrow.amount, not_before=as_utc(escrow.created_at),
            )
        except SettlementError as e:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: external payment for {escrow_id} rejected: {e.message}")
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: verifying {tx_hash} failed: {e}")
            return OperationResult.from_exception(e, escrow_id=escrow_id)

        if not verification.verified:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: {tx_hash} not verified for {escrow_id}: {verification.error}")
            return OperationResult.fail(
                verification.error or "Payment could not be verified",
                PaymentErrorCode.PAYMENT_NOT_VERIFIED, escrow_id=escrow_id, tx_hash=tx_hash,
            )

        return await self.fund_escrow(
            escrow_id,
            PaymentResult(success=True, chain=chain.value, tx_ref=tx_hash, amount=verification.actual_amount),
            actor=actor,
        )

    async def await_xrpl_payment(self, escrow_id: str, timeout_seconds: Optional[float] = None,
                                 cancel_event: Optional[asyncio.Event] = None,
                                 actor: Optional[str] = None) -> OperationResult:
        """Wait for the buyer's wallet-app payment on XRPL and fund the escrow when it lands"""
        try:
            escrow = await self._load_escrow(escrow_id)
            chain = resolve_chain(escrow.chain, escrow.transaction_hash)
            if chain != Chain.XRPL:
                raise ValidationError("Payment monitoring is only available for XRPL escrows")
            if escrow.status != EscrowStatus.PENDING.value:
                raise InvalidTransitionError(f"Escrow is {escrow.status}, expected pending")

            async def hash_used(tx_hash: str) -> bool:
                return await self.is_hash_used(tx_hash, exclude_escrow_id=escrow_id)

            result = await self.xrpl_verifier.wait_for_token_payment(
                destination=self.escrow_wallet(Chain.XRPL),
                expected_amount=escrow.amount,
                timeout_seconds=timeout_seconds,
                cancel_event=cancel_event,
                is_hash_used=hash_used,
                monitoring_start=as_utc(escrow.created_at),
            )
        except SettlementError as e:
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: XRPL monitoring for {escrow_id} failed: {e}")
            return OperationResult.from_exception(e, escrow_id=escrow_id)

        if not result.success:
            return OperationResult.fail(result.error, result.error_code or PaymentErrorCode.UNKNOWN,
                                        escrow_id=escrow_id)

        return await self.fund_escrow(
            escrow_id,
            PaymentResult(success=True, chain=Chain.XRPL.value, tx_ref=result.tx_hash, amount=result.actual_amount),
            actor=actor,
        )

    async def create_escrow_payment(self, usd_amount, chain, buyer: str, seller: Optional[str] = None,
                                    sender=None, listing_id: Optional[str] = None,
                                    conditions: Optional[Dict[str, Any]] = None,
                                    buyer_user_id: Optional[str] = None,
                                    shipping_address: Optional[Dict[str, Any]] = None) -> OperationResult:
        """
        Purchase flow: quote -> create escrow -> buyer payment -> fund.

        XRPL payments come back pending with a wallet-app link; the escrow stays pending
        until await_xrpl_payment or confirm_external_payment sees the transaction.
        """
        try:
            chain = parse_chain(chain)
            quote = await self.price_oracle.quote(chain, usd_amount)
        except SettlementError as e:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: quote failed for {chain}: {e.message}")
            return OperationResult.from_exception(e)

        created = await self.create_escrow(
            seller, buyer, quote.token_amount, chain, conditions=conditions,
            listing_id=listing_id, buyer_user_id=buyer_user_id, shipping_address=shipping_address,
        )
        if not created.success:
            return created
        escrow_id = created.escrow_id

        adapter = self.adapters.get(chain)
        payment = await adapter.send_token_payment(sender if sender is not None else buyer,
                                                   self.escrow_wallet(chain), quote.token_amount)
        if not payment.success:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: buyer payment for {escrow_id} failed: {payment.error}")
            return OperationResult.fail(payment.error, payment.error_code or PaymentErrorCode.UNKNOWN,
                                        escrow_id=escrow_id, quote=quote.to_dict(),
                                        escrowWallet=created.data.get("escrowWallet"))
        if payment.pending:
            return OperationResult.ok(
                escrow_id=escrow_id, status=EscrowStatus.PENDING.value, pending=True,
                paymentUrl=payment.payment_url, quote=quote.to_dict(),
                escrowWallet=created.data.get("escrowWallet"),
            )

        funded = await self.fund_escrow(escrow_id, payment, actor=buyer_user_id or buyer)
        funded.data["quote"] = quote.to_dict()
        return funded

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_escrow(self, escrow_id: str, withdrawal_address: str,
                             requested_by: Optional[Iterable[str]] = None,
                             actor: Optional[str] = None) -> OperationResult:
        """Pay the seller (less the platform fee) and mark the escrow released"""
        return await self._release(escrow_id, withdrawal_address, requested_by=requested_by,
                                   actor=actor, is_admin=False)

    async def admin_release_escrow(self, escrow_id: str, withdrawal_address: str,
                                   admin_id: str) -> OperationResult:
        """Admin resolution; also allowed while disputed"""
        return await self._release(escrow_id, withdrawal_address, requested_by=None,
                                   actor=f"admin:{admin_id}", is_admin=True)

    async def _release(self, escrow_id: str, withdrawal_address: str,
                       requested_by: Optional[Iterable[str]], actor: Optional[str],
                       is_admin: bool) -> OperationResult:
        claim_token = str(uuid.uuid4())
        allowed = (EscrowStateValidator.ADMIN_RELEASABLE_STATUSES if is_admin
                   else EscrowStateValidator.RELEASABLE_STATUSES)
        try:
            if not withdrawal_address:
                raise ValidationError("Missing escrow ID or withdrawal address")
            withdrawal_address = withdrawal_address.strip()
            escrow = await self._load_escrow(escrow_id)
            order = await self._load_order(escrow_id)
            self._check_party(escrow, order, requested_by, buyer=False, seller=True)

            if escrow.release_hash or escrow.status in (EscrowStatus.RELEASED.value,
                                                        EscrowStatus.AUTO_RELEASED.value):
                raise AlreadyReleasedError("Escrow has already been released")
            if not EscrowStateValidator.can_release(escrow.status, is_admin=is_admin):
                raise InvalidTransitionError(_RELEASE_BLOCKED_MESSAGES.get(
                    escrow.status, "Cannot release escrow. Current status does not allow release."
                ))

            chain = self._escrow_chain(escrow)
            if not is_valid_address(chain, withdrawal_address):
                raise ValidationError(f"Invalid {chain.value} withdrawal address")
            adapter = self.adapters.get(chain)

            async with async_managed_session() as session:
                claimed = await claim_release(session, escrow_id, claim_token, allowed)
            if not claimed:
                latest = await self._load_escrow(escrow_id)
                if latest.release_claim or latest.release_hash or latest.status in (
                        EscrowStatus.RELEASED.value, EscrowStatus.AUTO_RELEASED.value):
                    raise AlreadyReleasedError("Escrow release already in progress or completed")
                raise InvalidTransitionError(f"Cannot release escrow in status {latest.status}")
        except SettlementError as e:
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: release of {escrow_id} rejected: {e.message}")
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: release of {escrow_id} failed before transfer: {e}",
                         exc_info=True)
            return OperationResult.from_exception(e, escrow_id=escrow_id)

        amount = Decimal(str(escrow.amount))
        fee = amount * self.settlement_config.platform_fee_rate
        payout = amount - fee

        logger.info(f"🔒 ESCROW_ORCHESTRATOR: claimed {escrow_id}, paying {payout} XRPB to {withdrawal_address}")
        try:
            signer = adapter.load_platform_signer()
            payment = await adapter.send_token_payment(signer, withdrawal_address, payout)
        except Exception as e:
            payment = PaymentResult.failure(chain.value, e, amount=payout)

        if not payment.success:
            await self._drop_claim(escrow_id, claim_token)
            logger.warning(f"🚫 ESCROW_ORCHESTRATOR: payout for {escrow_id} failed: {payment.error}")
            return OperationResult.fail(payment.error, payment.error_code or PaymentErrorCode.UNKNOWN,
                                        escrow_id=escrow_id)

        release_hash = payment.tx_ref
        release_record = {
            "escrow_id": escrow_id,
            "release_hash": release_hash,
            "withdrawal_address": withdrawal_address,
            "to_status": EscrowStatus.RELEASED.value,
            "from_statuses": list(allowed),
            "claim": claim_token,
            "actor": actor or "seller",
            "amount": str(payout),
            "chain": chain.value,
        }
        try:
            await self.apply_release_record(release_record, escrow=escrow, order=order)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: release record for {escrow_id} failed: {e}", exc_info=True)
            await self.queue_reconciliation(OutboxEventType.ESCROW_RELEASE_RECORD, escrow_id, release_record,
                                            release_hash, e)
            return OperationResult.fail(
                "Funds released; escrow record is pending reconciliation",
                PaymentErrorCode.RECONCILIATION_PENDING, escrow_id=escrow_id, tx_hash=release_hash,
            )

        logger.info(f"✅ ESCROW_ORCHESTRATOR: escrow {escrow_id} released tx={release_hash}")
        return OperationResult.ok(
            escrow_id=escrow_id, tx_hash=release_hash,
            releaseHash=release_hash, amount=str(payout), fee=str(fee),
            withdrawalAddress=withdrawal_address, chain=chain.value,
        )

    async def apply_release_record(self, record: Dict[str, Any], escrow: Optional[Escrow] = None,
                                   order: Optional[Order] = None) -> None:
        """
        Write the released state for a payout that already happened on-chain.

        record carries escrow_id, release_hash, withdrawal_address, to_status
        (released or auto_released), from_statuses, claim, actor, amount and chain;
        the same shape is queued in the outbox when this write fails.
        """
        escrow_id = record["escrow_id"]
        if escrow is None:
            escrow = await self._load_escrow(escrow_id)
        if order is None:
            order = await self._load_order(escrow_id)
        from_status = escrow.status
        refund = record["to_status"] == EscrowStatus.AUTO_RELEASED.value

        async with async_managed_session() as session:
            moved = await transition_escrow_status(
                session, escrow_id, record["from_statuses"], record["to_status"],
                require_claim=record["claim"],
                release_hash=record["release_hash"],
                withdrawal_address=record["withdrawal_address"],
                released_at=utc_now(),
            )
            if not moved:
                raise InvalidTransitionError(f"Escrow {escrow_id} no longer holds release claim")

            buyer_id, seller_id = self._user_ids(escrow, order)
            if refund:
                await transition_order_status(session, escrow_id, [OrderStatus.ESCROW_FUNDED.value],
                                              OrderStatus.AUTO_COMPLETED.value)
                reason = f"not completed within {self.settlement_config.auto_release_days} days"
                self.notifications.auto_released(session, buyer_id, escrow_id, record.get("amount"),
                                                 record.get("chain"), refunded=True)
                self.notifications.auto_released(session, seller_id, escrow_id, record.get("amount"),
                                                 record.get("chain"), refunded=False)
            else:
                await transition_order_status(session, escrow_id, OPEN_ORDER_STATUSES,
                                              OrderStatus.COMPLETED.value)
                reason = "escrow released"
                self.notifications.escrow_released(session, seller_id, escrow_id, record.get("amount"),
                                                   record.get("chain"))
            record_status_change(session, escrow_id, from_status, record["to_status"],
                                 actor=record.get("actor"), reason=reason, tx_hash=record["release_hash"])

    async def _drop_claim(self, escrow_id: str, claim_token: str) -> None:
        try:
            async with async_managed_session() as session:
                await clear_release_claim(session, escrow_id, claim_token)
        except Exception as e:
            # The claim stays set and is surfaced by the stale-claim report
            logger.error(f"❌ ESCROW_ORCHESTRATOR: could not clear release claim on {escrow_id}: {e}")

    # ------------------------------------------------------------------
    # Dispute / cancel / delivery
    # ------------------------------------------------------------------

    async def dispute_escrow(self, escrow_id: str, reason: str,
                             requested_by: Optional[Iterable[str]] = None,
                             actor: Optional[str] = None,
                             evidence: Optional[Any] = None) -> OperationResult:
        try:
            if not reason or not str(reason).strip():
                raise ValidationError("Missing required fields")
            escrow = await self._load_escrow(escrow_id)
            order = await self._load_order(escrow_id)
            self._check_party(escrow, order, requested_by)
            if escrow.status != EscrowStatus.FUNDED.value:
                raise InvalidTransitionError("Can only dispute funded escrows")

            conditions = dict(escrow.conditions or {})
            conditions["dispute"] = {
                "escrowId": escrow_id,
                "initiator": actor,
                "reason": reason,
                "evidence": evidence,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }

            async with async_managed_session() as session:
                moved = await transition_escrow_status(
                    session, escrow_id, [EscrowStatus.FUNDED.value], EscrowStatus.DISPUTED.value,
                    dispute_reason=reason, conditions=conditions,
                )
                if not moved:
                    raise InvalidTransitionError("Can only dispute funded escrows")
                record_status_change(session, escrow_id, EscrowStatus.FUNDED.value, EscrowStatus.DISPUTED.value,
                                     actor=actor, reason=reason)
                buyer_id, seller_id = self._user_ids(escrow, order)
                for user_id in {buyer_id, seller_id}:
                    self.notifications.escrow_disputed(session, user_id, escrow_id, reason)

            logger.info(f"⚠️ ESCROW_ORCHESTRATOR: escrow {escrow_id} disputed by {actor}")
            return OperationResult.ok(escrow_id=escrow_id, status=EscrowStatus.DISPUTED.value,
                                      message="Dispute initiated successfully")
        except SettlementError as e:
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: dispute of {escrow_id} failed: {e}", exc_info=True)
            return OperationResult.from_exception(e, escrow_id=escrow_id)

    async def cancel_escrow(self, escrow_id: str, requested_by: Optional[Iterable[str]] = None,
                            actor: Optional[str] = None) -> OperationResult:
        """Cancel an escrow nobody has paid into yet"""
        try:
            escrow = await self._load_escrow(escrow_id)
            order = await self._load_order(escrow_id)
            self._check_party(escrow, order, requested_by)
            if escrow.status != EscrowStatus.PENDING.value:
                raise InvalidTransitionError("Only pending escrows can be cancelled")

            async with async_managed_session() as session:
                moved = await transition_escrow_status(
                    session, escrow_id, [EscrowStatus.PENDING.value], EscrowStatus.CANCELLED.value,
                )
                if not moved:
                    raise InvalidTransitionError("Only pending escrows can be cancelled")
                await transition_order_status(session, escrow_id, [OrderStatus.PENDING.value],
                                              OrderStatus.CANCELLED.value)
                record_status_change(session, escrow_id, EscrowStatus.PENDING.value,
                                     EscrowStatus.CANCELLED.value, actor=actor, reason="cancelled before funding")

            return OperationResult.ok(escrow_id=escrow_id, status=EscrowStatus.CANCELLED.value)
        except SettlementError as e:
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: cancel of {escrow_id} failed: {e}", exc_info=True)
            return OperationResult.from_exception(e, escrow_id=escrow_id)

    async def confirm_delivery(self, escrow_id: str, requested_by: Optional[Iterable[str]] = None,
                               actor: Optional[str] = None) -> OperationResult:
        """Buyer confirms receipt: escrow funded -> conditions_met, order -> completed"""
        try:
            escrow = await self._load_escrow(escrow_id)
            order = await self._load_order(escrow_id)
            self._check_party(escrow, order, requested_by, buyer=True, seller=False)
            if escrow.status != EscrowStatus.FUNDED.value:
                raise InvalidTransitionError("Only funded escrows can be confirmed as received")

            conditions = dict(escrow.conditions or {})
            conditions["delivery_confirmed"] = True
            conditions["delivery_confirmed_at"] = datetime.now(timezone.utc).isoformat()

            async with async_managed_session() as session:
                moved = await transition_escrow_status(
                    session, escrow_id, [EscrowStatus.FUNDED.value], EscrowStatus.CONDITIONS_MET.value,
                    conditions=conditions,
                )
                if not moved:
                    raise InvalidTransitionError("Only funded escrows can be confirmed as received")
                await transition_order_status(session, escrow_id, OPEN_ORDER_STATUSES,
                                              OrderStatus.COMPLETED.value)
                record_status_change(session, escrow_id, EscrowStatus.FUNDED.value,
                                     EscrowStatus.CONDITIONS_MET.value, actor=actor, reason="delivery confirmed")

            return OperationResult.ok(escrow_id=escrow_id, status=EscrowStatus.CONDITIONS_MET.value)
        except SettlementError as e:
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: delivery confirmation for {escrow_id} failed: {e}",
                         exc_info=True)
            return OperationResult.from_exception(e, escrow_id=escrow_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, escrow_id: str) -> OperationResult:
        try:
            escrow = await self._load_escrow(escrow_id)
            order = await self._load_order(escrow_id)
        except SettlementError as e:
            return OperationResult.from_exception(e, escrow_id=escrow_id)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: status lookup for {escrow_id} failed: {e}", exc_info=True)
            return OperationResult.from_exception(e, escrow_id=escrow_id)

        return OperationResult.ok(
            escrow_id=escrow_id,
            escrow=escrow.to_dict(),
            order=order.to_dict() if order else None,
            terminal=EscrowStateValidator.is_terminal_state(escrow.status),
        )

    async def list_escrows(self, address: str, status: Optional[str] = None) -> OperationResult:
        """Escrows where address is buyer or seller, newest first"""
        try:
            if not address:
                raise ValidationError("Address is required")
            stmt = select(Escrow).where(or_(Escrow.seller == address, Escrow.buyer == address))
            if status:
                stmt = stmt.where(Escrow.status == status)
            stmt = stmt.order_by(Escrow.created_at.desc())
            async with async_managed_session() as session:
                result = await session.execute(stmt)
                escrows = result.scalars().all()
        except SettlementError as e:
            return OperationResult.from_exception(e)
        except Exception as e:
            logger.error(f"❌ ESCROW_ORCHESTRATOR: listing escrows for {address} failed: {e}", exc_info=True)
            return OperationResult.from_exception(e)

        return OperationResult.ok(escrows=[escrow.to_dict() for escrow in escrows])


_escrow_orchestrator: Optional[EscrowOrchestrator] = None


def get_escrow_orchestrator() -> EscrowOrchestrator:
    global _escrow_orchestrator
    if _escrow_orchestrator is None:
        _escrow_orchestrator = EscrowOrchestrator()
    return _escrow_orchestrator

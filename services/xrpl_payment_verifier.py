"""
XRPL Payment Verifier
Confirms that an externally signed XRPB payment (Xaman deep link) actually landed on the ledger.

Raw account_tx / tx responses are decoded at the boundary into CandidatePayment objects
whose amounts are a tagged union (NativeAmount | IssuedAmount), so matching works on a
normalized shape regardless of which on-chain encoding the ledger used.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, List, Optional, Union

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models.requests import AccountTx, Tx

from config import SettlementConfig, get_settlement_config
from models import Chain
from utils.payment_errors import ChainNetworkError, PaymentErrorCode

logger = logging.getLogger(__name__)

RIPPLE_EPOCH_OFFSET = 946684800  # seconds between 1970-01-01 and 2000-01-01
DROPS_PER_XRP = Decimal(1_000_000)


@dataclass(frozen=True)
class NativeAmount:
    """XRP expressed in drops (string amount on the ledger)"""
    drops: int

    @property
    def value(self) -> Decimal:
        return Decimal(self.drops) / DROPS_PER_XRP


@dataclass(frozen=True)
class IssuedAmount:
    """Issued currency amount ({currency, issuer, value} object on the ledger)"""
    currency: str
    issuer: str
    value: Decimal


Amount = Union[NativeAmount, IssuedAmount]


@dataclass(frozen=True)
class TrustlineChange:
    """Balance change on a RippleState ledger entry"""
    currency: str
    low_account: Optional[str]
    high_account: Optional[str]
    delta: Optional[Decimal]

    def involves(self, account: str) -> bool:
        return account in (self.low_account, self.high_account)


@dataclass
class CandidatePayment:
    tx_hash: str
    transaction_type: Optional[str]
    destination: Optional[str]
    result_code: Optional[str]
    executed_at: Optional[datetime]
    delivered_amount: Optional[Amount] = None
    amount: Optional[Amount] = None
    trustline_changes: List[TrustlineChange] = field(default_factory=list)
    validated: bool = True


@dataclass
class VerificationResult:
    success: bool
    tx_hash: Optional[str] = None
    actual_amount: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None


def normalize_currency(code: Optional[str]) -> str:
    """Compare currencies as 40-char hex; three-letter standard codes stay as-is"""
    if not code:
        return ""
    code = code.strip()
    if len(code) == 40:
        try:
            bytes.fromhex(code)
            return code.upper()
        except ValueError:
            pass
    if len(code) == 3:
        return code.upper()
    return code.encode("ascii", errors="replace").hex().upper().ljust(40, "0")


def decode_amount(raw) -> Optional[Amount]:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            return NativeAmount(drops=int(raw))
        except ValueError:
            return None
    if isinstance(raw, dict) and raw.get("currency") and raw.get("issuer"):
        try:
            return IssuedAmount(
                currency=raw["currency"],
                issuer=raw["issuer"],
                value=Decimal(str(raw.get("value", "0"))),
            )
        except (InvalidOperation, ValueError):
            return None
    return None


def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def decode_trustline_changes(meta: dict) -> List[TrustlineChange]:
    changes = []
    for node in (meta or {}).get("AffectedNodes", []):
        entry = node.get("ModifiedNode") or node.get("CreatedNode") or node.get("DeletedNode")
        if not entry or entry.get("LedgerEntryType") != "RippleState":
            continue

        fields = entry.get("FinalFields") or entry.get("NewFields") or {}
        previous = entry.get("PreviousFields") or {}
        low = fields.get("LowLimit") or {}
        high = fields.get("HighLimit") or {}
        balance = fields.get("Balance") or {}
        currency = balance.get("currency") or low.get("currency") or high.get("currency")

        final_value = _decimal_or_none(balance.get("value"))
        if "CreatedNode" in node:
            delta = final_value
        elif previous.get("Balance") is not None and final_value is not None:
            prev_value = _decimal_or_none(previous["Balance"].get("value"))
            delta = final_value - prev_value if prev_value is not None else None
        else:
            delta = None

        changes.append(TrustlineChange(
            currency=currency or "",
            low_account=low.get("issuer"),
            high_account=high.get("issuer"),
            delta=delta,
        ))
    return changes


def _ripple_time(value) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def decode_transaction(tx: dict, meta: dict, tx_hash: Optional[str] = None,
                       validated: bool = True) -> CandidatePayment:
    meta = meta if isinstance(meta, dict) else {}
    return CandidatePayment(
        tx_hash=tx_hash or tx.get("hash") or "",
        transaction_type=tx.get("TransactionType"),
        destination=tx.get("Destination"),
        result_code=meta.get("TransactionResult"),
        executed_at=_ripple_time(tx.get("date")),
        delivered_amount=decode_amount(meta.get("delivered_amount", meta.get("DeliveredAmount"))),
        amount=decode_amount(tx.get("Amount", tx.get("DeliverMax"))),
        trustline_changes=decode_trustline_changes(meta),
        validated=validated,
    )


def decode_account_tx_entry(entry: dict) -> CandidatePayment:
    """Decode one account_tx entry (API v1 'tx' or v2 'tx_json' shape)"""
    tx = entry.get("tx") or entry.get("tx_json") or {}
    return decode_transaction(
        tx,
        entry.get("meta"),
        tx_hash=tx.get("hash") or entry.get("hash"),
        validated=entry.get("validated", True),
    )


def decode_tx_result(result: dict) -> CandidatePayment:
    """Decode a tx command result"""
    tx = result.get("tx_json") or result
    if "date" not in tx and "date" in result:
        tx = dict(tx, date=result["date"])
    return decode_transaction(
        tx,
        result.get("meta"),
        tx_hash=result.get("hash") or tx.get("hash"),
        validated=result.get("validated", False),
    )


class XRPLPaymentVerifier:
    """Polls account_tx for a destination until a matching XRPB payment appears"""

    def __init__(self, settlement_config: Optional[SettlementConfig] = None,
                 client: Optional[AsyncJsonRpcClient] = None):
        self.settlement_config = settlement_config or get_settlement_config()
        self.token_config = self.settlement_config.for_chain(Chain.XRPL)
        self.client = client or AsyncJsonRpcClient(self.token_config.rpc_url)
        self.tolerance_rate = self.settlement_config.tolerance_rate
        self.min_tolerance = self.settlement_config.min_tolerance
        self.poll_interval = self.settlement_config.poll_interval
        self.clock_skew = timedelta(seconds=self.settlement_config.clock_skew_seconds)

    def tolerance_for(self, expected: Decimal) -> Decimal:
        return max(self.min_tolerance, expected * self.tolerance_rate)

    def within_tolerance(self, actual: Decimal, expected: Decimal) -> bool:
        return abs(actual - expected) <= self.tolerance_for(expected)

    def resolve_token_amount(self, candidate: CandidatePayment, destination: str,
                             currency: str, issuer: str) -> Optional[Decimal]:
        """
        XRPB value carried by a payment, or None if it did not deliver the expected token.

        Structured delivered amount wins, then the structured transaction amount.
        A string (drops) amount only counts when the metadata shows the expected
        trust line moving; plain XRP payments are never mistaken for XRPB.
        """
        expected_currency = normalize_currency(currency)

        def is_token(amount: Amount) -> bool:
            return (isinstance(amount, IssuedAmount)
                    and normalize_currency(amount.currency) == expected_currency
                    and amount.issuer == issuer)

        if isinstance(candidate.delivered_amount, IssuedAmount):
            return candidate.delivered_amount.value if is_token(candidate.delivered_amount) else None
        if candidate.delivered_amount is None and isinstance(candidate.amount, IssuedAmount):
            return candidate.amount.value if is_token(candidate.amount) else None

        native = candidate.delivered_amount or candidate.amount
        if not isinstance(native, NativeAmount):
            return None

        # The destination's own XRPB line must have moved
        evidence = [
            change for change in candidate.trustline_changes
            if normalize_currency(change.currency) == expected_currency
            and change.involves(issuer)
            and change.involves(destination)
        ]
        if not evidence:
            return None

        for change in evidence:
            if change.delta:
                return abs(change.delta)
        return native.value

    def match_payment(self, candidate: CandidatePayment, destination: str, expected_amount: Decimal,
                      currency: str, issuer: str, not_before: Optional[datetime]) -> Optional[Decimal]:
        """Return the matched amount when candidate satisfies every check, else None"""
        if not candidate.validated:
            return None
        if candidate.transaction_type != "Payment":
            return None
        if candidate.destination != destination:
            return None
        if candidate.result_code != "tesSUCCESS":
            return None
        if not_before is not None:
            if candidate.executed_at is None or candidate.executed_at < not_before:
                return None

        actual = self.resolve_token_amount(candidate, destination, currency, issuer)
        if actual is None:
            return None
        if not self.within_tolerance(actual, expected_amount):
            logger.info(
                f"XRPL_VERIFIER: {candidate.tx_hash} amount {actual} outside tolerance "
                f"of {expected_amount} (±{self.tolerance_for(expected_amount)})"
            )
            return None
        return actual

    async def fetch_recent_payments(self, destination: str, limit: int = 20) -> List[CandidatePayment]:
        response = await self.client.request(AccountTx(
            account=destination,
            ledger_index_min=-1,
            ledger_index_max=-1,
            limit=limit,
            forward=False,
        ))
        if not response.is_successful():
            raise ChainNetworkError(f"account_tx failed: {response.result}")
        return [decode_account_tx_entry(entry) for entry in response.result.get("transactions", [])]

    async def fetch_transaction(self, tx_hash: str) -> Optional[CandidatePayment]:
        response = await self.client.request(Tx(transaction=tx_hash))
        if not response.is_successful():
            if response.result.get("error") == "txnNotFound":
                return None
            raise ChainNetworkError(f"tx lookup failed: {response.result}")
        return decode_tx_result(response.result)

    async def wait_for_token_payment(
        self,
        destination: str,
        expected_amount,
        currency: Optional[str] = None,
        issuer: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        is_hash_used: Optional[Callable[[str], Awaitable[bool]]] = None,
        monitoring_start: Optional[datetime] = None,
    ) -> VerificationResult:
        """
        Poll until a matching payment appears, the timeout elapses, or cancel_event is set.

        Nothing is persisted here; a timed-out or cancelled wait leaves no trace.
        """
        expected_amount = Decimal(str(expected_amount))
        currency = currency or self.token_config.currency_hex
        issuer = issuer or self.token_config.issuer
        timeout_seconds = self.settlement_config.verify_timeout if timeout_seconds is None else timeout_seconds

        started_at = monitoring_start or datetime.now(timezone.utc)
        not_before = started_at - self.clock_skew
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        polls = 0

        logger.info(
            f"🔍 XRPL_VERIFIER: watching {destination} for {expected_amount} {currency[:8]} "
            f"(timeout {timeout_seconds}s)"
        )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"XRPL_VERIFIER: monitoring of {destination} cancelled after {polls} polls")
                return VerificationResult(success=False, error="Payment monitoring cancelled",
                                          error_code=PaymentErrorCode.CANCELLED)

            polls += 1
            try:
                candidates = await self.fetch_recent_payments(destination)
            except Exception as e:
                logger.warning(f"⚠️ XRPL_VERIFIER: poll {polls} failed: {e}")
                candidates = []

            for candidate in candidates:
                actual = self.match_payment(candidate, destination, expected_amount, currency, issuer, not_before)
                if actual is None:
                    continue
                if is_hash_used is not None and await is_hash_used(candidate.tx_hash):
                    logger.info(f"XRPL_VERIFIER: {candidate.tx_hash} already recorded against another escrow")
                    continue
                logger.info(f"✅ XRPL_VERIFIER: payment found {candidate.tx_hash} amount={actual}")
                return VerificationResult(success=True, tx_hash=candidate.tx_hash, actual_amount=actual)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"⏰ XRPL_VERIFIER: no matching payment to {destination} within {timeout_seconds}s")
                return VerificationResult(success=False, error="Payment monitoring timed out",
                                          error_code=PaymentErrorCode.TIMEOUT)

            wait = min(self.poll_interval, remaining)
            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait)

    async def verify_transaction(self, tx_hash: str, destination: str, expected_amount,
                                 not_before: Optional[datetime] = None) -> VerificationResult:
        """Check a single known transaction hash against the expected payment"""
        expected_amount = Decimal(str(expected_amount))
        candidate = await self.fetch_transaction(tx_hash)
        if candidate is None:
            return VerificationResult(success=False, tx_hash=tx_hash, error="Transaction not found",
                                      error_code=PaymentErrorCode.PAYMENT_NOT_VERIFIED)
        if not_before is not None:
            not_before = not_before - self.clock_skew
        actual = self.match_payment(
            candidate, destination, expected_amount,
            self.token_config.currency_hex, self.token_config.issuer, not_before
        )
        if actual is None:
            return VerificationResult(success=False, tx_hash=tx_hash,
                                      error="Transaction does not match the expected XRPB payment",
                                      error_code=PaymentErrorCode.PAYMENT_NOT_VERIFIED)
        return VerificationResult(success=True, tx_hash=tx_hash, actual_amount=actual)

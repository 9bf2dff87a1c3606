"""
Chain Payment Adapter base
Uniform transfer/verify contract for XRPL, XRPL-EVM and Solana platform token payments
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, Optional

from config import ChainTokenConfig, SettlementConfig
from utils.payment_errors import (
    PaymentErrorClassifier,
    PaymentErrorCode,
    SettlementError,
    ValidationError,
    WalletNotConnectedError,
    format_error_message,
)

logger = logging.getLogger(__name__)


def to_base_units(amount, decimals: int) -> int:
    """Scale a token amount to integer on-chain units (rounded down, never float)"""
    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid token amount: {amount}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid token amount: {amount}")
    scaled = (amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    if scaled <= 0:
        raise ValidationError(f"Amount {amount} is below the smallest unit")
    return int(scaled)


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(int(value)) / (Decimal(10) ** decimals)


@dataclass
class PaymentResult:
    """Outcome of an adapter transfer: {success, tx_ref} or {success: False, error}"""
    success: bool
    chain: str
    tx_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None
    # XRPL buyer payments complete out-of-band in an external wallet app
    pending: bool = False
    payment_url: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, chain: str, exc, amount: Optional[Decimal] = None) -> "PaymentResult":
        code = PaymentErrorClassifier.classify(exc)
        raw = exc.message if isinstance(exc, SettlementError) else str(exc)
        return cls(
            success=False,
            chain=chain,
            amount=amount,
            error=format_error_message(raw),
            error_code=code,
            details={"raw_error": raw[:500]},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": self.success, "chain": self.chain}
        if self.tx_ref:
            data["txRef"] = self.tx_ref
        if self.amount is not None:
            data["amount"] = str(self.amount)
        if self.pending:
            data["pending"] = True
            data["paymentUrl"] = self.payment_url
        if not self.success:
            data["error"] = self.error
            data["errorCode"] = self.error_code.value if self.error_code else None
        return data


@dataclass
class TransferVerification:
    """On-chain check of an externally submitted transfer"""
    verified: bool
    tx_hash: str
    actual_amount: Optional[Decimal] = None
    error: Optional[str] = None


class ChainPaymentAdapter(ABC):
    """
    Base class for chain payment adapters

    Provides:
    - Amount validation and base-unit scaling from the chain's token decimals
    - Error capture at the adapter boundary, classified into the payment taxonomy
    - Platform signer loading for payouts
    """

    chain: str = ""

    def __init__(self, settlement_config: SettlementConfig):
        self.settlement_config = settlement_config
        self.token_config: ChainTokenConfig = settlement_config.for_chain(self.chain)
        self.decimals = self.token_config.decimals

    def to_base_units(self, amount) -> int:
        return to_base_units(amount, self.decimals)

    async def send_token_payment(self, sender, recipient: str, amount) -> PaymentResult:
        """Transfer amount of the platform token from sender to recipient"""
        try:
            try:
                amount = Decimal(str(amount))
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Invalid token amount: {amount}")
            if sender is None:
                raise WalletNotConnectedError("Wallet not connected")
            if not recipient:
                raise ValidationError("Recipient address is required")
            # Validate before any network activity
            self.to_base_units(amount)

            tx_ref = await self._submit_transfer(sender, recipient, amount)
            logger.info(f"✅ {self.chain.upper()}_ADAPTER: sent {amount} XRPB to {recipient} tx={tx_ref}")
            return PaymentResult(success=True, chain=self.chain, tx_ref=tx_ref, amount=amount)

        except Exception as e:
            logger.error(f"❌ {self.chain.upper()}_ADAPTER: transfer of {amount} to {recipient} failed: {e}")
            return PaymentResult.failure(self.chain, e, amount=amount if isinstance(amount, Decimal) else None)

    @abstractmethod
    async def _submit_transfer(self, sender, recipient: str, amount: Decimal) -> str:
        """Build, sign, submit and confirm a transfer; return the transaction reference"""
        pass

    @abstractmethod
    async def verify_payment(self, tx_hash: str, recipient: str, expected_amount,
                             not_before: Optional[datetime] = None) -> TransferVerification:
        """Confirm tx_hash moved expected_amount of the platform token to recipient after not_before"""
        pass

    @abstractmethod
    async def get_token_balance(self, address: str) -> Decimal:
        pass

    @abstractmethod
    def load_platform_signer(self):
        """Platform payout signer from configured credentials"""
        pass

"""
XRPL Payment Adapter
Buyer payments go out as Xaman deep links (signed in the wallet app, confirmed by the
verifier); platform payouts are signed server-side with the platform seed.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Optional
from urllib.parse import urlencode

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.transaction import submit_and_wait
from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.requests import AccountLines
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

from config import Config, SettlementConfig
from models import Chain
from services.chain_adapters.base import ChainPaymentAdapter, PaymentResult, TransferVerification
from services.xrpl_payment_verifier import XRPLPaymentVerifier
from utils.payment_errors import (
    ChainNetworkError,
    InsufficientBalanceError,
    SettlementError,
    ValidationError,
    WalletNotConnectedError,
)

logger = logging.getLogger(__name__)

XAMAN_REQUEST_URL = "https://xaman.app/detect/request:{recipient}"


def format_issued_value(amount: Decimal, decimals: int) -> str:
    """Issued currency value string, trimmed to the token's precision"""
    quantum = Decimal(1).scaleb(-decimals)
    value = amount.quantize(quantum, rounding=ROUND_DOWN).normalize()
    return format(value, "f")


class XRPLPaymentAdapter(ChainPaymentAdapter):
    """XRPB issued-currency payments on the XRP Ledger"""

    chain = Chain.XRPL.value

    def __init__(self, settlement_config: SettlementConfig,
                 client: Optional[AsyncJsonRpcClient] = None,
                 verifier: Optional[XRPLPaymentVerifier] = None):
        super().__init__(settlement_config)
        self.network = settlement_config.network
        self.client = client or AsyncJsonRpcClient(self.token_config.rpc_url)
        self.verifier = verifier or XRPLPaymentVerifier(settlement_config, client=self.client)

    def build_payment_url(self, recipient: str, amount: Decimal) -> str:
        query = urlencode({
            "amount": format_issued_value(amount, self.decimals),
            "currency": self.token_config.currency_hex,
            "issuer": self.token_config.issuer,
            "network": self.network,
        })
        return f"{XAMAN_REQUEST_URL.format(recipient=recipient)}?{query}"

    async def send_token_payment(self, sender, recipient: str, amount) -> PaymentResult:
        """
        Platform wallet senders are signed and submitted here. Any other sender
        (a buyer address or nothing) gets a pending result with a deep link for the
        external wallet app; the verifier confirms it later.
        """
        if isinstance(sender, Wallet):
            return await super().send_token_payment(sender, recipient, amount)

        try:
            amount = Decimal(str(amount))
            self.to_base_units(amount)
            if not recipient:
                raise ValidationError("Recipient address is required")
        except Exception as e:
            return PaymentResult.failure(self.chain, e)

        payment_url = self.build_payment_url(recipient, amount)
        logger.info(f"📱 XRPL_ADAPTER: payment request for {amount} XRPB to {recipient} (awaiting wallet app)")
        return PaymentResult(
            success=True,
            chain=self.chain,
            amount=amount,
            pending=True,
            payment_url=payment_url,
            details={"sender": sender} if sender else {},
        )

    async def _submit_transfer(self, sender: Wallet, recipient: str, amount: Decimal) -> str:
        balance = await self.get_token_balance(sender.address)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Insufficient XRPB balance on platform wallet: {balance} < {amount}"
            )

        payment = Payment(
            account=sender.address,
            destination=recipient,
            amount=IssuedCurrencyAmount(
                currency=self.token_config.currency_hex,
                issuer=self.token_config.issuer,
                value=format_issued_value(amount, self.decimals),
            ),
        )
        response = await submit_and_wait(payment, self.client, sender)
        result = response.result
        engine_result = (result.get("meta") or {}).get("TransactionResult")
        if engine_result != "tesSUCCESS":
            raise SettlementError(f"XRPL payment failed: {engine_result}")
        return result.get("hash") or (result.get("tx_json") or {}).get("hash")

    async def get_token_balance(self, address: str) -> Decimal:
        response = await self.client.request(AccountLines(
            account=address,
            peer=self.token_config.issuer,
            ledger_index="validated",
        ))
        if not response.is_successful():
            if response.result.get("error") == "actNotFound":
                return Decimal(0)
            raise ChainNetworkError(f"account_lines failed: {response.result.get('error')}")

        for line in response.result.get("lines", []):
            if line.get("currency") in (self.token_config.currency_hex, self.token_config.currency):
                return Decimal(str(line.get("balance", "0")))
        return Decimal(0)

    async def verify_payment(self, tx_hash: str, recipient: str, expected_amount,
                             not_before: Optional[datetime] = None) -> TransferVerification:
        result = await self.verifier.verify_transaction(tx_hash, recipient, expected_amount, not_before=not_before)
        return TransferVerification(
            verified=result.success,
            tx_hash=tx_hash,
            actual_amount=result.actual_amount,
            error=result.error,
        )

    def load_platform_signer(self) -> Wallet:
        if not Config.XRPL_PLATFORM_SEED:
            raise WalletNotConnectedError("XRPL platform wallet seed is not configured")
        return Wallet.from_seed(Config.XRPL_PLATFORM_SEED)

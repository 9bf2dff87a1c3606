"""
Solana Payment Adapter
SPL-token XRPB transfers between associated token accounts
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from bip_utils import Bip39SeedGenerator
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from config import Config, SettlementConfig
from models import Chain
from services.chain_adapters.base import (
    ChainPaymentAdapter,
    TransferVerification,
    from_base_units,
)
from utils.payment_errors import (
    InsufficientBalanceError,
    SettlementError,
    WalletNotConnectedError,
)

logger = logging.getLogger(__name__)

SOLANA_DERIVATION_PATH = "m/44'/501'/0'/0'"


class SolanaPaymentAdapter(ChainPaymentAdapter):
    """XRPB SPL-token payments on Solana (6 decimals)"""

    chain = Chain.SOLANA.value

    def __init__(self, settlement_config: SettlementConfig, client: Optional[AsyncClient] = None):
        super().__init__(settlement_config)
        self.client = client or AsyncClient(self.token_config.rpc_url, commitment=Confirmed)
        self.mint = Pubkey.from_string(self.token_config.token_address)

    async def _submit_transfer(self, sender: Keypair, recipient: str, amount: Decimal) -> str:
        base_units = self.to_base_units(amount)
        owner = sender.pubkey()
        destination_owner = Pubkey.from_string(recipient)

        source_ata = get_associated_token_address(owner, self.mint)
        destination_ata = get_associated_token_address(destination_owner, self.mint)

        balance = await self._ata_balance(source_ata)
        if balance < base_units:
            raise InsufficientBalanceError(
                f"Insufficient XRPB balance: {from_base_units(balance, self.decimals)} < {amount}"
            )

        instructions = []
        account_info = await self.client.get_account_info(destination_ata)
        if account_info.value is None:
            logger.info(f"📋 SOLANA_ADAPTER: creating token account for {recipient}")
            instructions.append(create_associated_token_account(owner, destination_owner, self.mint))

        instructions.append(transfer_checked(TransferCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            source=source_ata,
            mint=self.mint,
            dest=destination_ata,
            owner=owner,
            amount=base_units,
            decimals=self.decimals,
        )))

        blockhash = (await self.client.get_latest_blockhash(Confirmed)).value.blockhash
        message = Message.new_with_blockhash(instructions, owner, blockhash)
        tx = Transaction([sender], message, blockhash)

        response = await self.client.send_transaction(tx, opts=TxOpts(preflight_commitment=Confirmed))
        signature = response.value
        confirmation = await self.client.confirm_transaction(signature, commitment=Confirmed)
        status = confirmation.value[0] if confirmation.value else None
        if status is not None and status.err is not None:
            raise SettlementError(f"Solana transfer failed: {status.err}")
        return str(signature)

    async def _ata_balance(self, ata: Pubkey) -> int:
        account_info = await self.client.get_account_info(ata)
        if account_info.value is None:
            return 0
        response = await self.client.get_token_account_balance(ata)
        return int(response.value.amount)

    async def get_token_balance(self, address: str) -> Decimal:
        ata = get_associated_token_address(Pubkey.from_string(address), self.mint)
        return from_base_units(await self._ata_balance(ata), self.decimals)

    async def verify_payment(self, tx_hash: str, recipient: str, expected_amount,
                             not_before: Optional[datetime] = None) -> TransferVerification:
        response = await self.client.get_transaction(
            Signature.from_string(tx_hash),
            encoding="jsonParsed",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        tx = response.value
        if tx is None:
            return TransferVerification(False, tx_hash, error="Transaction not found")

        meta = tx.transaction.meta
        if meta is None or meta.err is not None:
            return TransferVerification(False, tx_hash, error="Transaction failed on-chain")

        if not_before is not None:
            if tx.block_time is None:
                return TransferVerification(False, tx_hash, error="Transaction has no block time")
            executed_at = datetime.fromtimestamp(tx.block_time, tz=timezone.utc)
            if not_before.tzinfo is None:
                not_before = not_before.replace(tzinfo=timezone.utc)
            if executed_at < not_before:
                return TransferVerification(False, tx_hash, error="Transaction predates the escrow")

        received = self._recipient_delta(meta, recipient)
        actual = from_base_units(max(received, 0), self.decimals)
        if received <= 0:
            return TransferVerification(False, tx_hash, actual_amount=actual,
                                        error="No XRPB transfer to the escrow wallet")
        if received < self.to_base_units(expected_amount):
            return TransferVerification(False, tx_hash, actual_amount=actual,
                                        error=f"Underpaid: received {actual}, expected {expected_amount}")
        return TransferVerification(True, tx_hash, actual_amount=actual)

    def _recipient_delta(self, meta, recipient: str) -> int:
        """Net XRPB base units gained by recipient's token accounts in this transaction"""
        mint = str(self.mint)

        def total(balances) -> int:
            amount = 0
            for balance in balances or []:
                if str(balance.mint) == mint and str(balance.owner) == recipient:
                    amount += int(balance.ui_token_amount.amount)
            return amount

        return total(meta.post_token_balances) - total(meta.pre_token_balances)

    def load_platform_signer(self) -> Keypair:
        if not Config.SOLANA_PLATFORM_SEED_PHRASE:
            raise WalletNotConnectedError("Solana platform seed phrase is not configured")
        seed = Bip39SeedGenerator(Config.SOLANA_PLATFORM_SEED_PHRASE).Generate()
        return Keypair.from_seed_and_derivation_path(seed[:64], SOLANA_DERIVATION_PATH)

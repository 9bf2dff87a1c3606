"""
XRPL-EVM Payment Adapter
ERC-20 XRPB transfers on the XRPL EVM sidechain via web3.py
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from config import Config, SettlementConfig
from models import Chain
from services.chain_adapters.base import (
    ChainPaymentAdapter,
    TransferVerification,
    from_base_units,
)
from utils.payment_errors import (
    GasOrFeeError,
    InsufficientBalanceError,
    SettlementError,
    WalletNotConnectedError,
)

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT_SECONDS = 120

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]


class XRPLEVMPaymentAdapter(ChainPaymentAdapter):
    """XRPB ERC-20 payments on XRPL EVM (18 decimals)"""

    chain = Chain.XRPL_EVM.value

    def __init__(self, settlement_config: SettlementConfig, web3: Optional[AsyncWeb3] = None):
        super().__init__(settlement_config)
        self.w3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.token_config.rpc_url))
        self.token = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.token_config.token_address),
            abi=ERC20_ABI,
        )

    async def _submit_transfer(self, sender: LocalAccount, recipient: str, amount: Decimal) -> str:
        base_units = self.to_base_units(amount)
        to_address = AsyncWeb3.to_checksum_address(recipient)

        gas_balance = from_base_units(await self.w3.eth.get_balance(sender.address), 18)
        if gas_balance < self.settlement_config.evm_min_gas_balance:
            raise GasOrFeeError(
                f"Insufficient XRP for gas on {sender.address}: {gas_balance} "
                f"< {self.settlement_config.evm_min_gas_balance}"
            )

        token_balance = await self.token.functions.balanceOf(sender.address).call()
        if token_balance < base_units:
            raise InsufficientBalanceError(
                f"Insufficient XRPB balance: {from_base_units(token_balance, self.decimals)} < {amount}"
            )

        nonce = await self.w3.eth.get_transaction_count(sender.address, "pending")
        tx = await self.token.functions.transfer(to_address, base_units).build_transaction({
            "from": sender.address,
            "nonce": nonce,
            "chainId": self.token_config.chain_id,
        })
        signed = sender.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"🔍 XRPL_EVM_ADAPTER: submitted {AsyncWeb3.to_hex(tx_hash)}, waiting for receipt")

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
        if receipt["status"] != 1:
            raise SettlementError(f"XRPL EVM transfer reverted: {AsyncWeb3.to_hex(tx_hash)}")
        return AsyncWeb3.to_hex(tx_hash)

    async def get_token_balance(self, address: str) -> Decimal:
        raw = await self.token.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()
        return from_base_units(raw, self.decimals)

    async def verify_payment(self, tx_hash: str, recipient: str, expected_amount,
                             not_before: Optional[datetime] = None) -> TransferVerification:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return TransferVerification(False, tx_hash, error="Transaction not found")

        if receipt["status"] != 1:
            return TransferVerification(False, tx_hash, error="Transaction reverted")

        if not_before is not None:
            block = await self.w3.eth.get_block(receipt["blockNumber"])
            executed_at = datetime.fromtimestamp(block["timestamp"], tz=timezone.utc)
            if not_before.tzinfo is None:
                not_before = not_before.replace(tzinfo=timezone.utc)
            if executed_at < not_before:
                return TransferVerification(False, tx_hash, error="Transaction predates the escrow")

        recipient = AsyncWeb3.to_checksum_address(recipient)
        received = 0
        for event in self.token.events.Transfer().process_receipt(receipt):
            if AsyncWeb3.to_checksum_address(event["args"]["to"]) == recipient:
                received += event["args"]["value"]

        actual = from_base_units(received, self.decimals)
        if received == 0:
            return TransferVerification(False, tx_hash, actual_amount=actual,
                                        error="No XRPB transfer to the escrow wallet")
        if received < self.to_base_units(expected_amount):
            return TransferVerification(False, tx_hash, actual_amount=actual,
                                        error=f"Underpaid: received {actual}, expected {expected_amount}")
        return TransferVerification(True, tx_hash, actual_amount=actual)

    def load_platform_signer(self) -> LocalAccount:
        if not Config.XRPL_EVM_PLATFORM_PRIVATE_KEY:
            raise WalletNotConnectedError("XRPL EVM platform private key is not configured")
        return Account.from_key(Config.XRPL_EVM_PLATFORM_PRIVATE_KEY)

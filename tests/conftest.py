"""
Shared Test Fixtures for the Settlement Core

Key Components:
1. Environment bootstrap (SQLite database URL, JWT and cron secrets) before project imports
2. Per-test SQLite database created and dropped around each test
3. In-memory chain adapters standing in for XRPL, XRPL-EVM and Solana
4. Escrow/listing factories and bearer token helpers
"""

import os
import tempfile

_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="settlement_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_BOOTSTRAP_DIR, 'bootstrap.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["SETTLEMENT_NETWORK"] = "testnet"
os.environ["ENABLE_SETTLEMENT_SCHEDULER"] = "false"

import asyncio
import logging
import secrets
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import jwt
import pytest
import pytest_asyncio
from sqlalchemy import select, update

from config import build_settlement_config
from database import async_managed_session, configure_database, create_tables, drop_tables
from models import Chain, Escrow, Listing, Order
from services.chain_adapters.base import ChainPaymentAdapter, TransferVerification
from services.chain_adapters.registry import ChainAdapterRegistry
from services.escrow_orchestrator import EscrowOrchestrator
from services.notification_service import NotificationService
from utils.chain_detection import BASE58_ALPHABET

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

JWT_TEST_SECRET = "test-secret"
CRON_TEST_SECRET = "cron-test-secret"

BUYER_ADDRESS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
SELLER_ADDRESS = "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH"
WITHDRAWAL_ADDRESS = "rpeh58KQ7cs76Aa2639LYT2hpw4D6yrSDq"


def fake_tx_hash(chain: str) -> str:
    """Transaction reference in the format chain detection expects"""
    if chain == Chain.XRPL_EVM.value:
        return "0x" + uuid.uuid4().hex + uuid.uuid4().hex
    if chain == Chain.SOLANA.value:
        return "".join(secrets.choice(BASE58_ALPHABET) for _ in range(88))
    return (uuid.uuid4().hex + uuid.uuid4().hex).upper()


class FakeChainAdapter(ChainPaymentAdapter):
    """In-memory chain adapter recording every transfer"""

    def __init__(self, settlement_config, chain: str = Chain.XRPL.value, delay: float = 0,
                 fail_with: Optional[Exception] = None, fail_for: Optional[set] = None,
                 verification: Optional[TransferVerification] = None):
        self.chain = chain
        super().__init__(settlement_config)
        self.delay = delay
        self.fail_with = fail_with
        self.fail_for = fail_for or set()
        self.verification = verification
        self.transfers = []
        self.verify_calls = []

    async def _submit_transfer(self, sender, recipient, amount):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if recipient in self.fail_for:
            raise RuntimeError("insufficient funds in platform wallet")
        tx_hash = fake_tx_hash(self.chain)
        self.transfers.append({"sender": sender, "recipient": recipient, "amount": amount, "tx_hash": tx_hash})
        return tx_hash

    async def verify_payment(self, tx_hash, recipient, expected_amount, not_before=None):
        self.verify_calls.append({"tx_hash": tx_hash, "recipient": recipient,
                                  "expected_amount": expected_amount, "not_before": not_before})
        if self.verification is not None:
            return self.verification
        return TransferVerification(True, tx_hash, actual_amount=Decimal(str(expected_amount)))

    async def get_token_balance(self, address):
        return Decimal("1000000")

    def load_platform_signer(self):
        return "platform-signer"


@pytest.fixture
def settlement_config():
    """Testnet profile with fast polling"""
    return replace(build_settlement_config("testnet"), poll_interval=0.01, verify_timeout=1)


@pytest_asyncio.fixture
async def test_db(tmp_path):
    """Fresh SQLite database per test"""
    engine = configure_database(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    await create_tables(engine)
    yield engine
    await drop_tables(engine)
    await engine.dispose()


@pytest.fixture
def fake_adapters(settlement_config):
    return {chain: FakeChainAdapter(settlement_config, chain.value) for chain in Chain}


@pytest.fixture
def adapter_registry(settlement_config, fake_adapters):
    registry = ChainAdapterRegistry(settlement_config)
    for chain, adapter in fake_adapters.items():
        registry.register(chain, adapter)
    return registry


@pytest.fixture
def orchestrator(settlement_config, adapter_registry):
    return EscrowOrchestrator(settlement_config, adapters=adapter_registry, notifications=NotificationService())


class SettlementDataFactory:
    """Creates listings and escrows in known states"""

    def __init__(self, orchestrator: EscrowOrchestrator):
        self.orchestrator = orchestrator

    async def create_listing(self, user_id: str = "seller-user", is_physical: bool = False,
                             seller_xrpl_address: Optional[str] = SELLER_ADDRESS,
                             title: str = "Signed vinyl") -> Listing:
        listing = Listing(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            price=Decimal("25.00"),
            is_physical=is_physical,
            seller_xrpl_address=seller_xrpl_address,
        )
        async with async_managed_session() as session:
            session.add(listing)
        return listing

    async def create_pending_escrow(self, amount: str = "100", chain: str = Chain.XRPL.value,
                                    buyer: str = BUYER_ADDRESS, seller: Optional[str] = SELLER_ADDRESS,
                                    listing_id: Optional[str] = None, buyer_user_id: Optional[str] = None) -> str:
        result = await self.orchestrator.create_escrow(
            seller, buyer, amount, chain, listing_id=listing_id, buyer_user_id=buyer_user_id,
        )
        assert result.success, result.error
        return result.escrow_id

    async def create_funded_escrow(self, amount: str = "100", chain: str = Chain.XRPL.value,
                                   **kwargs) -> str:
        escrow_id = await self.create_pending_escrow(amount=amount, chain=chain, **kwargs)
        funded = await self.orchestrator.confirm_external_payment(escrow_id, fake_tx_hash(chain), chain=chain)
        assert funded.success, funded.error
        return escrow_id

    async def age_order(self, escrow_id: str, days: int) -> None:
        async with async_managed_session() as session:
            await session.execute(
                update(Order)
                .where(Order.escrow_id == escrow_id)
                .values(created_at=datetime.now(timezone.utc) - timedelta(days=days))
            )

    async def get_escrow(self, escrow_id: str) -> Escrow:
        async with async_managed_session() as session:
            result = await session.execute(select(Escrow).where(Escrow.id == escrow_id))
            return result.scalar_one()

    async def get_order(self, escrow_id: str) -> Optional[Order]:
        async with async_managed_session() as session:
            result = await session.execute(select(Order).where(Order.escrow_id == escrow_id))
            return result.scalar_one_or_none()


@pytest.fixture
def data_factory(orchestrator):
    return SettlementDataFactory(orchestrator)


def make_token(user_id: str = "buyer-user", role: str = "user", wallet_address: Optional[str] = None,
               expires_in: int = 3600, secret: str = JWT_TEST_SECRET) -> str:
    payload = {
        "userId": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if wallet_address:
        payload["walletAddress"] = wallet_address
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token(wallet_address=BUYER_ADDRESS)}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token(user_id='admin-1', role='admin')}"}

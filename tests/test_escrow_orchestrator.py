"""
Escrow Orchestrator Tests

Coverage Focus Areas:
- Escrow creation with and without a marketplace listing
- Funding from verified external transactions (duplicates, unverified, chain mismatch)
- Seller release: platform fee, address validation, single payout under concurrency
- Dispute, admin resolution, cancellation and delivery confirmation
- Purchase flow from a USD price quote
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from database import async_managed_session
from models import Chain, EscrowStatus, Notification, NotificationType, OrderStatus
from services.chain_adapters.base import TransferVerification
from services.escrow_orchestrator import PENDING_WALLET_SETUP, EscrowOrchestrator
from services.notification_service import NotificationService
from services.price_oracle import PriceQuote
from utils.payment_errors import PaymentErrorCode, PriceUnavailableError

from conftest import BUYER_ADDRESS, SELLER_ADDRESS, WITHDRAWAL_ADDRESS, fake_tx_hash

SELLER_IDENTITIES = ["seller-user", SELLER_ADDRESS]
BUYER_IDENTITIES = ["buyer-user", BUYER_ADDRESS]


async def notifications_for(user_id: str):
    async with async_managed_session() as session:
        result = await session.execute(select(Notification).where(Notification.user_id == user_id))
        return result.scalars().all()


class TestCreateEscrow:

    @pytest.mark.asyncio
    async def test_direct_escrow(self, test_db, orchestrator, data_factory, settlement_config):
        result = await orchestrator.create_escrow(SELLER_ADDRESS, BUYER_ADDRESS, "100", "xrpl")

        assert result.success is True
        assert result.data["escrowWallet"] == settlement_config.for_chain(Chain.XRPL).recipient
        assert result.data["orderId"] is None

        escrow = await data_factory.get_escrow(result.escrow_id)
        assert escrow.status == EscrowStatus.PENDING.value
        assert escrow.amount == Decimal("100")
        assert escrow.conditions["auto_release_days"] == 20

    @pytest.mark.asyncio
    async def test_listing_purchase_creates_order(self, test_db, orchestrator, data_factory):
        listing = await data_factory.create_listing(is_physical=True)
        result = await orchestrator.create_escrow(
            None, BUYER_ADDRESS, "40", "xrpl", listing_id=listing.id, buyer_user_id="buyer-user",
            shipping_address={"city": "Lisbon"},
        )

        assert result.success is True
        escrow = await data_factory.get_escrow(result.escrow_id)
        order = await data_factory.get_order(result.escrow_id)
        assert escrow.seller == SELLER_ADDRESS
        assert escrow.conditions["delivery_required"] is True
        assert order.id == result.data["orderId"]
        assert order.buyer_id == "buyer-user"
        assert order.seller_id == "seller-user"
        assert order.status == OrderStatus.PENDING.value
        assert order.shipping_address == {"city": "Lisbon"}

        notes = await notifications_for("seller-user")
        assert [n.type for n in notes] == [NotificationType.ORDER_RECEIVED.value]

    @pytest.mark.asyncio
    async def test_seller_without_wallet(self, test_db, orchestrator, data_factory):
        listing = await data_factory.create_listing(seller_xrpl_address=None)
        result = await orchestrator.create_escrow(None, BUYER_ADDRESS, "40", "xrpl", listing_id=listing.id)

        assert result.success is True
        escrow = await data_factory.get_escrow(result.escrow_id)
        assert escrow.seller == PENDING_WALLET_SETUP

        types = {n.type for n in await notifications_for("seller-user")}
        assert types == {NotificationType.ORDER_RECEIVED.value, NotificationType.WALLET_SETUP.value}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seller,buyer,amount,chain,code", [
        (SELLER_ADDRESS, BUYER_ADDRESS, "0", "xrpl", PaymentErrorCode.VALIDATION_ERROR),
        (SELLER_ADDRESS, BUYER_ADDRESS, "abc", "xrpl", PaymentErrorCode.VALIDATION_ERROR),
        (SELLER_ADDRESS, None, "10", "xrpl", PaymentErrorCode.VALIDATION_ERROR),
        (None, BUYER_ADDRESS, "10", "xrpl", PaymentErrorCode.VALIDATION_ERROR),
        (SELLER_ADDRESS, BUYER_ADDRESS, "10", "bitcoin", PaymentErrorCode.UNSUPPORTED_CHAIN),
    ])
    async def test_rejects_invalid_input(self, test_db, orchestrator, seller, buyer, amount, chain, code):
        result = await orchestrator.create_escrow(seller, buyer, amount, chain)

        assert result.success is False
        assert result.error_code == code

    @pytest.mark.asyncio
    async def test_unknown_listing(self, test_db, orchestrator):
        result = await orchestrator.create_escrow(None, BUYER_ADDRESS, "10", "xrpl", listing_id="missing")
        assert result.error_code == PaymentErrorCode.VALIDATION_ERROR


class TestFunding:

    @pytest.mark.asyncio
    async def test_verified_transaction_funds_escrow(self, test_db, orchestrator, data_factory, fake_adapters):
        listing = await data_factory.create_listing()
        escrow_id = await data_factory.create_pending_escrow(listing_id=listing.id, buyer_user_id="buyer-user")
        tx_hash = fake_tx_hash("xrpl")

        result = await orchestrator.confirm_external_payment(escrow_id, tx_hash, chain="xrpl")

        assert result.success is True
        assert result.tx_hash == tx_hash
        escrow = await data_factory.get_escrow(escrow_id)
        order = await data_factory.get_order(escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.transaction_hash == tx_hash
        assert order.status == OrderStatus.ESCROW_FUNDED.value

        verify_call = fake_adapters[Chain.XRPL].verify_calls[0]
        assert verify_call["expected_amount"] == Decimal("100")
        assert verify_call["not_before"] is not None

        assert NotificationType.ESCROW_FUNDED.value in {n.type for n in await notifications_for("buyer-user")}

    @pytest.mark.asyncio
    async def test_chain_inferred_from_hash(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_pending_escrow(chain="xrpl_evm")
        result = await orchestrator.confirm_external_payment(escrow_id, fake_tx_hash("xrpl_evm"))
        assert result.success is True

    @pytest.mark.asyncio
    async def test_same_hash_is_idempotent(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_pending_escrow()
        tx_hash = fake_tx_hash("xrpl")
        await orchestrator.confirm_external_payment(escrow_id, tx_hash, chain="xrpl")

        again = await orchestrator.confirm_external_payment(escrow_id, tx_hash, chain="xrpl")

        assert again.success is True
        assert again.data["status"] == EscrowStatus.FUNDED.value

    @pytest.mark.asyncio
    async def test_hash_cannot_fund_two_escrows(self, test_db, orchestrator, data_factory):
        first = await data_factory.create_pending_escrow()
        second = await data_factory.create_pending_escrow()
        tx_hash = fake_tx_hash("xrpl")
        await orchestrator.confirm_external_payment(first, tx_hash, chain="xrpl")

        result = await orchestrator.confirm_external_payment(second, tx_hash, chain="xrpl")

        assert result.success is False
        assert result.error_code == PaymentErrorCode.DUPLICATE_TRANSACTION
        assert (await data_factory.get_escrow(second)).status == EscrowStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_unverified_payment_leaves_escrow_pending(self, test_db, orchestrator, data_factory,
                                                            fake_adapters):
        escrow_id = await data_factory.create_pending_escrow()
        tx_hash = fake_tx_hash("xrpl")
        fake_adapters[Chain.XRPL].verification = TransferVerification(
            False, tx_hash, actual_amount=Decimal("50"), error="Underpaid: received 50, expected 100",
        )

        result = await orchestrator.confirm_external_payment(escrow_id, tx_hash, chain="xrpl")

        assert result.success is False
        assert result.error_code == PaymentErrorCode.PAYMENT_NOT_VERIFIED
        assert (await data_factory.get_escrow(escrow_id)).status == EscrowStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_chain_mismatch(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_pending_escrow(chain="xrpl")
        result = await orchestrator.confirm_external_payment(escrow_id, fake_tx_hash("solana"), chain="solana")
        assert result.error_code == PaymentErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, test_db, orchestrator):
        result = await orchestrator.confirm_external_payment("missing", fake_tx_hash("xrpl"))
        assert result.error_code == PaymentErrorCode.NOT_FOUND


class TestRelease:

    @pytest.mark.asyncio
    async def test_pays_seller_less_platform_fee(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow(amount="100")

        result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS, requested_by=SELLER_IDENTITIES)

        assert result.success is True
        assert Decimal(result.data["amount"]) == Decimal("97.5")
        assert Decimal(result.data["fee"]) == Decimal("2.5")

        transfers = fake_adapters[Chain.XRPL].transfers
        assert len(transfers) == 1
        assert transfers[0]["recipient"] == WITHDRAWAL_ADDRESS
        assert transfers[0]["amount"] == Decimal("97.5")
        assert transfers[0]["sender"] == "platform-signer"

        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.release_hash == result.tx_hash
        assert escrow.withdrawal_address == WITHDRAWAL_ADDRESS

    @pytest.mark.asyncio
    async def test_release_completes_order(self, test_db, orchestrator, data_factory):
        listing = await data_factory.create_listing()
        escrow_id = await data_factory.create_funded_escrow(listing_id=listing.id, buyer_user_id="buyer-user")

        result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS, requested_by=["seller-user"])

        assert result.success is True
        assert (await data_factory.get_order(escrow_id)).status == OrderStatus.COMPLETED.value
        types = {n.type for n in await notifications_for("seller-user")}
        assert NotificationType.ESCROW_RELEASED.value in types

    @pytest.mark.asyncio
    async def test_pending_escrow_cannot_release(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_pending_escrow()

        result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)

        assert result.error_code == PaymentErrorCode.INVALID_TRANSITION
        assert result.error == "Cannot release escrow. Escrow is not yet funded."
        assert fake_adapters[Chain.XRPL].transfers == []

    @pytest.mark.asyncio
    async def test_invalid_withdrawal_address(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()

        result = await orchestrator.release_escrow(escrow_id, "0x1234")

        assert result.error_code == PaymentErrorCode.VALIDATION_ERROR
        assert fake_adapters[Chain.XRPL].transfers == []

    @pytest.mark.asyncio
    async def test_second_release_rejected(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()
        await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)

        result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)

        assert result.error_code == PaymentErrorCode.ALREADY_RELEASED
        assert len(fake_adapters[Chain.XRPL].transfers) == 1

    @pytest.mark.asyncio
    async def test_concurrent_releases_pay_once(self, test_db, orchestrator, data_factory, fake_adapters):
        """Two simultaneous requests: one payout, the other sees ALREADY_RELEASED"""
        escrow_id = await data_factory.create_funded_escrow()
        fake_adapters[Chain.XRPL].delay = 0.05

        results = await asyncio.gather(
            orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS),
            orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS),
        )

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_code == PaymentErrorCode.ALREADY_RELEASED
        assert len(fake_adapters[Chain.XRPL].transfers) == 1

    @pytest.mark.asyncio
    async def test_failed_transfer_can_be_retried(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()
        fake_adapters[Chain.XRPL].fail_with = RuntimeError("insufficient funds in platform wallet")

        failed = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)

        assert failed.success is False
        assert failed.error_code == PaymentErrorCode.INSUFFICIENT_BALANCE
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.release_claim is None

        fake_adapters[Chain.XRPL].fail_with = None
        retried = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS)
        assert retried.success is True

    @pytest.mark.asyncio
    async def test_stranger_cannot_release(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()

        result = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS, requested_by=["someone-else"])

        assert result.error_code == PaymentErrorCode.UNAUTHORIZED
        assert fake_adapters[Chain.XRPL].transfers == []

    @pytest.mark.asyncio
    async def test_buyer_cannot_release_to_themselves(self, test_db, orchestrator, data_factory, fake_adapters):
        listing = await data_factory.create_listing()
        escrow_id = await data_factory.create_funded_escrow(listing_id=listing.id, buyer_user_id="buyer-user")

        result = await orchestrator.release_escrow(escrow_id, BUYER_ADDRESS, requested_by=BUYER_IDENTITIES)

        assert result.success is False
        assert result.error_code == PaymentErrorCode.UNAUTHORIZED
        assert fake_adapters[Chain.XRPL].transfers == []
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.release_claim is None
        assert (await data_factory.get_order(escrow_id)).status == OrderStatus.ESCROW_FUNDED.value


class TestDisputeAndAdmin:

    @pytest.mark.asyncio
    async def test_dispute_blocks_seller_release(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()

        disputed = await orchestrator.dispute_escrow(escrow_id, "item never arrived",
                                                     requested_by=BUYER_IDENTITIES, actor="buyer-user")
        assert disputed.success is True
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.DISPUTED.value
        assert escrow.dispute_reason == "item never arrived"
        assert escrow.conditions["dispute"]["initiator"] == "buyer-user"

        blocked = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS, requested_by=SELLER_IDENTITIES)
        assert blocked.error_code == PaymentErrorCode.INVALID_TRANSITION
        assert blocked.error == "Cannot release escrow. Escrow is under dispute."

    @pytest.mark.asyncio
    async def test_admin_resolves_dispute(self, test_db, orchestrator, data_factory, fake_adapters):
        escrow_id = await data_factory.create_funded_escrow()
        await orchestrator.dispute_escrow(escrow_id, "wrong item")

        result = await orchestrator.admin_release_escrow(escrow_id, WITHDRAWAL_ADDRESS, admin_id="admin-1")

        assert result.success is True
        assert (await data_factory.get_escrow(escrow_id)).status == EscrowStatus.RELEASED.value
        assert len(fake_adapters[Chain.XRPL].transfers) == 1

    @pytest.mark.asyncio
    async def test_only_funded_escrows_can_be_disputed(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_pending_escrow()
        result = await orchestrator.dispute_escrow(escrow_id, "changed my mind")
        assert result.error_code == PaymentErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_dispute_requires_reason(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()
        result = await orchestrator.dispute_escrow(escrow_id, "  ")
        assert result.error_code == PaymentErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_stranger_cannot_dispute(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()
        result = await orchestrator.dispute_escrow(escrow_id, "fraud", requested_by=["someone-else"])
        assert result.error_code == PaymentErrorCode.UNAUTHORIZED


class TestCancelAndDelivery:

    @pytest.mark.asyncio
    async def test_cancel_pending(self, test_db, orchestrator, data_factory):
        listing = await data_factory.create_listing()
        escrow_id = await data_factory.create_pending_escrow(listing_id=listing.id, buyer_user_id="buyer-user")

        result = await orchestrator.cancel_escrow(escrow_id, requested_by=BUYER_IDENTITIES)

        assert result.success is True
        assert (await data_factory.get_escrow(escrow_id)).status == EscrowStatus.CANCELLED.value
        assert (await data_factory.get_order(escrow_id)).status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_funded_escrow_cannot_be_cancelled(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()
        result = await orchestrator.cancel_escrow(escrow_id)
        assert result.error_code == PaymentErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_buyer_confirms_delivery(self, test_db, orchestrator, data_factory):
        listing = await data_factory.create_listing(is_physical=True)
        escrow_id = await data_factory.create_funded_escrow(listing_id=listing.id, buyer_user_id="buyer-user")

        denied = await orchestrator.confirm_delivery(escrow_id, requested_by=SELLER_IDENTITIES)
        assert denied.error_code == PaymentErrorCode.UNAUTHORIZED

        result = await orchestrator.confirm_delivery(escrow_id, requested_by=["buyer-user"])

        assert result.success is True
        escrow = await data_factory.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.CONDITIONS_MET.value
        assert escrow.conditions["delivery_confirmed"] is True
        assert (await data_factory.get_order(escrow_id)).status == OrderStatus.COMPLETED.value

        released = await orchestrator.release_escrow(escrow_id, WITHDRAWAL_ADDRESS, requested_by=["seller-user"])
        assert released.success is True


class TestQueries:

    @pytest.mark.asyncio
    async def test_status(self, test_db, orchestrator, data_factory):
        escrow_id = await data_factory.create_funded_escrow()

        result = await orchestrator.get_status(escrow_id)

        assert result.success is True
        assert result.data["escrow"]["status"] == EscrowStatus.FUNDED.value
        assert result.data["order"] is None
        assert result.data["terminal"] is False

    @pytest.mark.asyncio
    async def test_status_not_found(self, test_db, orchestrator):
        result = await orchestrator.get_status("missing")
        assert result.error_code == PaymentErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_by_party_and_status(self, test_db, orchestrator, data_factory):
        funded = await data_factory.create_funded_escrow()
        await data_factory.create_pending_escrow()
        await data_factory.create_pending_escrow(buyer="rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe",
                                                 seller="rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn")

        everything = await orchestrator.list_escrows(BUYER_ADDRESS)
        only_funded = await orchestrator.list_escrows(SELLER_ADDRESS, status=EscrowStatus.FUNDED.value)

        assert len(everything.data["escrows"]) == 2
        assert [e["id"] for e in only_funded.data["escrows"]] == [funded]

    @pytest.mark.asyncio
    async def test_list_requires_address(self, test_db, orchestrator):
        result = await orchestrator.list_escrows("")
        assert result.error_code == PaymentErrorCode.VALIDATION_ERROR


class TestPurchaseFlow:

    def make_orchestrator(self, settlement_config, adapter_registry, quote=None, error=None):
        oracle = MagicMock()
        oracle.quote = AsyncMock(return_value=quote, side_effect=error)
        return EscrowOrchestrator(settlement_config, adapters=adapter_registry, price_oracle=oracle,
                                  notifications=NotificationService())

    @pytest.mark.asyncio
    async def test_quote_pay_and_fund(self, test_db, settlement_config, adapter_registry, fake_adapters,
                                      data_factory):
        quote = PriceQuote(chain="solana", usd_amount=Decimal("10"), price_usd=Decimal("0.5"),
                           token_amount=Decimal("20"), source="geckoterminal")
        orchestrator = self.make_orchestrator(settlement_config, adapter_registry, quote=quote)

        result = await orchestrator.create_escrow_payment("10", "solana", buyer="buyer-wallet",
                                                          seller="seller-wallet", sender="buyer-keypair")

        assert result.success is True
        assert result.data["quote"]["token_amount"] == "20"
        transfer = fake_adapters[Chain.SOLANA].transfers[0]
        assert transfer["recipient"] == settlement_config.for_chain(Chain.SOLANA).recipient
        assert transfer["amount"] == Decimal("20")

        escrow = await data_factory.get_escrow(result.escrow_id)
        assert escrow.status == EscrowStatus.FUNDED.value
        assert escrow.transaction_hash == transfer["tx_hash"]

    @pytest.mark.asyncio
    async def test_failed_buyer_payment_leaves_escrow_pending(self, test_db, settlement_config, adapter_registry,
                                                              fake_adapters, data_factory):
        quote = PriceQuote(chain="xrpl_evm", usd_amount=Decimal("10"), price_usd=Decimal("0.5"),
                           token_amount=Decimal("20"), source="geckoterminal")
        orchestrator = self.make_orchestrator(settlement_config, adapter_registry, quote=quote)
        fake_adapters[Chain.XRPL_EVM].fail_with = RuntimeError("User rejected the request.")

        result = await orchestrator.create_escrow_payment("10", "xrpl_evm", buyer="0xbuyer", seller="0xseller",
                                                          sender="buyer-account")

        assert result.success is False
        assert result.error_code == PaymentErrorCode.USER_REJECTED
        assert (await data_factory.get_escrow(result.escrow_id)).status == EscrowStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_price_unavailable(self, test_db, settlement_config, adapter_registry, fake_adapters):
        orchestrator = self.make_orchestrator(settlement_config, adapter_registry,
                                              error=PriceUnavailableError("No price source available"))

        result = await orchestrator.create_escrow_payment("10", "xrpl", buyer=BUYER_ADDRESS, seller=SELLER_ADDRESS)

        assert result.success is False
        assert result.error_code == PaymentErrorCode.PRICE_UNAVAILABLE
        assert result.escrow_id is None
        assert fake_adapters[Chain.XRPL].transfers == []

"""
Escrow API Routes
Create, fund, release, dispute and cancel escrows over HTTP.
Every handler delegates to the escrow orchestrator and maps its result code onto a status.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from routes.responses import result_response
from services.escrow_orchestrator import get_escrow_orchestrator
from utils.auth import authenticate_request, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/escrow", tags=["escrow"])
admin_router = APIRouter(prefix="/api/admin/escrows", tags=["admin"])

DISCONNECT_POLL_SECONDS = 1.0


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event):
    """Set cancel_event once the client goes away"""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("🔌 ESCROW_API: client disconnected, cancelling payment monitoring")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post("")
async def create_escrow(request: Request):
    """
    Create an escrow for a purchase.
    When the client already paid from its own wallet (transactionHash + paymentVerified)
    the transaction is verified and the escrow funded in the same request.
    """
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        chain = body.get("chain") or body.get("blockchain")
        orchestrator = get_escrow_orchestrator()

        result = await orchestrator.create_escrow(
            seller=body.get("seller"),
            buyer=body.get("buyer") or user.wallet_address,
            amount=body.get("amount"),
            chain=chain,
            conditions=body.get("conditions"),
            listing_id=body.get("listingId"),
            buyer_user_id=user.user_id,
            shipping_address=body.get("shippingAddress"),
        )
        if not result.success:
            return result_response(result)

        tx_hash = body.get("transactionHash")
        if tx_hash and body.get("paymentVerified"):
            funded = await orchestrator.confirm_external_payment(
                result.escrow_id, tx_hash, chain=chain, actor=user.user_id,
            )
            funded.data.setdefault("escrowWallet", result.data.get("escrowWallet"))
            funded.data.setdefault("orderId", result.data.get("orderId"))
            return result_response(funded)

        return result_response(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: create failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/fund")
async def fund_escrow(request: Request):
    """Fund from a submitted transaction hash, or wait for an XRPL wallet-app payment"""
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        escrow_id = body.get("escrowId")
        if not escrow_id:
            raise HTTPException(status_code=400, detail="Escrow ID is required")
        orchestrator = get_escrow_orchestrator()

        tx_hash = body.get("transactionHash")
        if tx_hash:
            result = await orchestrator.confirm_external_payment(
                escrow_id, tx_hash, chain=body.get("chain"), actor=user.user_id,
            )
            return result_response(result)

        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        try:
            result = await orchestrator.await_xrpl_payment(
                escrow_id, cancel_event=cancel_event, actor=user.user_id,
            )
        finally:
            watcher.cancel()
        return result_response(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: funding failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("")
async def list_escrows(request: Request, address: Optional[str] = Query(None),
                       status: Optional[str] = Query(None)):
    user = authenticate_request(request)
    try:
        result = await get_escrow_orchestrator().list_escrows(address or user.wallet_address, status=status)
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: listing failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{escrow_id}")
async def get_escrow(escrow_id: str):
    try:
        result = await get_escrow_orchestrator().get_status(escrow_id)
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: status lookup for {escrow_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/release")
async def release_escrow(request: Request):
    """Seller withdrawal of a funded escrow"""
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        result = await get_escrow_orchestrator().release_escrow(
            body.get("escrowId"),
            body.get("withdrawalAddress"),
            requested_by=user.identities,
            actor=user.user_id,
        )
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: release failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/dispute")
async def dispute_escrow(request: Request):
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        result = await get_escrow_orchestrator().dispute_escrow(
            body.get("escrowId"),
            body.get("reason"),
            requested_by=user.identities,
            actor=user.user_id,
            evidence=body.get("evidence"),
        )
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: dispute failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/confirm-received")
async def confirm_received(request: Request):
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        result = await get_escrow_orchestrator().confirm_delivery(
            body.get("escrowId"), requested_by=user.identities, actor=user.user_id,
        )
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: delivery confirmation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/cancel")
async def cancel_escrow(request: Request):
    user = authenticate_request(request)
    try:
        body = await _read_body(request)
        result = await get_escrow_orchestrator().cancel_escrow(
            body.get("escrowId"), requested_by=user.identities, actor=user.user_id,
        )
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ESCROW_API: cancel failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@admin_router.post("/release")
async def admin_release_escrow(request: Request):
    """Admin resolution of a funded or disputed escrow"""
    admin = require_admin(request)
    try:
        body = await _read_body(request)
        logger.info(f"🛡️ ADMIN_RELEASE: {admin.user_id} releasing escrow {body.get('escrowId')}")
        result = await get_escrow_orchestrator().admin_release_escrow(
            body.get("escrowId"), body.get("withdrawalAddress"), admin_id=admin.user_id,
        )
        return result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ADMIN_RELEASE: failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

"""XRPB price quotes per chain"""

import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from routes.responses import status_for
from services.price_oracle import get_price_oracle
from utils.payment_errors import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/price", tags=["price"])


@router.get("/{chain}")
async def get_price_quote(chain: str, usd: str = Query("1"), estimate: bool = Query(False)):
    """
    USD -> XRPB quote. estimate=true falls back to a flagged constant instead of
    returning 503, for display only.
    """
    try:
        try:
            usd_amount = Decimal(usd)
        except InvalidOperation:
            raise HTTPException(status_code=400, detail=f"Invalid USD amount: {usd}")
        if not usd_amount.is_finite() or usd_amount < 0:
            raise HTTPException(status_code=400, detail=f"Invalid USD amount: {usd}")

        oracle = get_price_oracle()
        quote = await (oracle.estimate(chain, usd_amount) if estimate else oracle.quote(chain, usd_amount))
        return {"success": True, **quote.to_dict()}

    except HTTPException:
        raise
    except SettlementError as e:
        logger.warning(f"🚫 PRICE_API: quote for {chain} failed: {e.message}")
        return JSONResponse(
            status_code=status_for(e.code),
            content={"success": False, "error": e.message, "errorCode": e.code.value},
        )
    except Exception as e:
        logger.error(f"❌ PRICE_API: quote for {chain} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

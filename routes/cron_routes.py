"""
Cron Trigger Routes
External schedulers hit these with ?secret=<CRON_SECRET>.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from services.auto_release_service import get_auto_release_service
from utils.auth import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _result_item(item: dict) -> dict:
    payload = {
        "orderId": item["order_id"],
        "escrowId": item["escrow_id"],
        "success": item["success"],
        "amount": item["amount"],
        "blockchain": item["blockchain"],
    }
    if item["success"]:
        payload["releaseHash"] = item.get("release_hash")
    else:
        payload["error"] = item.get("error")
    return payload


@router.api_route("/auto-release", methods=["GET", "POST"])
async def trigger_auto_release(secret: Optional[str] = Query(None)):
    if not verify_cron_secret(secret):
        logger.warning("🚫 CRON: auto-release trigger rejected, bad secret")
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        summary = await get_auto_release_service().process_auto_release()
        response = {
            "success": summary["success"],
            "message": summary["message"],
            "releasedCount": summary["released_count"],
            "results": [_result_item(item) for item in summary["results"]],
        }
        if summary.get("error"):
            response["error"] = summary["error"]
        return response
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ CRON: auto-release failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

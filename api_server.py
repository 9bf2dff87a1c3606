"""
FastAPI Settlement Server
Escrow, price and cron endpoints for the RippleBids multi-chain settlement core
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import check_connection, create_tables
from jobs.settlement_scheduler import get_settlement_scheduler
from routes.cron_routes import router as cron_router
from routes.escrow_routes import admin_router as escrow_admin_router
from routes.escrow_routes import router as escrow_router
from routes.price_routes import router as price_router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify configuration, create tables, start the settlement jobs
    Shutdown: stop the scheduler
    """
    Config.log_environment_config()
    await create_tables()

    scheduler = None
    if Config.ENABLE_SETTLEMENT_SCHEDULER:
        scheduler = get_settlement_scheduler()
        scheduler.start()
    else:
        logger.info("⏸️ Settlement scheduler disabled (ENABLE_SETTLEMENT_SCHEDULER=false)")

    logger.info("✅ Settlement server ready")
    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Settlement server shutting down...")


app = FastAPI(
    title="RippleBids Settlement API",
    description="Multi-chain XRPB escrow settlement for XRPL, XRPL-EVM and Solana",
    lifespan=lifespan
)

app.include_router(escrow_router)
app.include_router(escrow_admin_router)
app.include_router(price_router)
app.include_router(cron_router)


@app.get("/health")
async def health_check():
    database_ok = await check_connection()
    if not database_ok:
        return JSONResponse(
            content={"status": "unhealthy", "service": "ripplebids-settlement", "database": "unreachable"},
            status_code=503
        )
    return {
        "status": "healthy",
        "service": "ripplebids-settlement",
        "network": Config.SETTLEMENT_NETWORK,
        "database": "connected",
    }

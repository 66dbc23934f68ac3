from routes.payment import payment_router
from routes.tokens import tokens_router
from routes.ai import ai_router
from utils.environment import ENVIRONMENT
from metering.errors import MeteringError
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
import os
import logging

from database import db, client, check_db_connection

# Create the main app
app = FastAPI(title="Metered AI Gateway")


# ==================== ERROR HANDLERS ====================

@app.exception_handler(MeteringError)
async def metering_error_handler(request: Request, exc: MeteringError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ==================== HEALTH ====================

@app.get("/")
async def root():
    return {"message": "Metered AI Gateway API", "version": "1.0.0", "environment": ENVIRONMENT}


@app.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": db_error})
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


app.include_router(ai_router)
app.include_router(tokens_router)
app.include_router(payment_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    from metering.db_init import ensure_indexes
    await ensure_indexes(db)

    from services.scheduler_setup import setup_scheduler
    setup_scheduler(scheduler, db)
    scheduler.start()
    logger.info("Schedulers started - usage summary: 00:00 UTC, pending charge sweep: every 10 min")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Metering scheduler shut down")

    # Close MongoDB client
    client.close()

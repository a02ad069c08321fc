import asyncio
import logging
import re
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.routers import autopilot
from app.utils.logger import logger

APP_VERSION = "0.1.0"

app = FastAPI(title="Reseller Autopilot API", version=APP_VERSION)

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(autopilot.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Reseller Autopilot API starting up (version %s)...", APP_VERSION)

    database_url = settings.DATABASE_URL
    masked_url = re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", database_url)
    logger.info("Database URL: %s", masked_url)

    try:
        from app.models_sqlalchemy import init_db

        init_db()
        logger.info("Autopilot tables ready")
    except Exception as e:
        logger.error("Failed to create autopilot tables: %s", e)

    if settings.AUTOPILOT_LOOP_ENABLED:
        from app.workers import run_autopilot_loop

        asyncio.create_task(run_autopilot_loop())
        logger.info(
            "Autopilot loop started (runs every %s seconds)", settings.AUTOPILOT_LOOP_INTERVAL_SECONDS
        )
    else:
        logger.info("Autopilot loop disabled (AUTOPILOT_LOOP_ENABLED=false)")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from app.models_sqlalchemy import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )


@app.get("/")
async def root():
    return {
        "message": "Reseller Autopilot API",
        "version": APP_VERSION,
        "docs": "/docs",
    }

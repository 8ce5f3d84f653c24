"""
Roof KPI Hub — API Server
===========================

JSON API over the analytics engine. Callers post JobNimbus job records
and get back the sales-funnel KPIs and the AR ledger.

Route groups:
  /api/health     - Health check
  /api/reports/*  - Funnel + AR reports
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scripts.lib.config import load_engine_config
from scripts.lib.errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Load and validate the engine config once at startup."""
    logger.info("Starting Roof KPI Hub...")
    try:
        app.state.engine_config = load_engine_config()
    except ConfigError as e:
        # Report routes retry the load and answer 500 with the config error
        logger.error("Engine config not loaded: %s", e)
        app.state.engine_config = None
    logger.info("Roof KPI Hub ready")
    yield
    logger.info("Shutting down Roof KPI Hub...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Roof KPI Hub",
    version=VERSION,
    description="Sales funnel KPIs and accounts receivable for roofing jobs",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.reports import router as reports_router

app.include_router(reports_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with config status."""
    config = getattr(app.state, "engine_config", None)
    return {
        "status": "healthy",
        "service": "Roof KPI Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "config_loaded": config is not None,
        "milestones": [m.name for m in config.milestones] if config else [],
    }

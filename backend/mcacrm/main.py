"""Main FastAPI application for the MCA lead CRM."""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Import database and ALL models first so every table is registered
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
from mcacrm.config import settings
from mcacrm.database import Base, engine
from mcacrm.models import (
    Conversation,
    LeadDetails,
    Message,
    Document,
    FCSResult,
    FCSAnalysis,
    Lender,
    LenderMatch,
    JobQueue,
    CsvImport,
    AIChatMessage,
    AgentAction,
)

from mcacrm.exceptions import CRMError
from mcacrm.routers import (
    ai,
    conversations,
    csv_import,
    documents,
    fcs,
    health,
    lenders,
    lookups,
    messages,
    worker,
)
from mcacrm.scheduler import start_scheduler, stop_scheduler
from mcacrm.websocket import get_socket_app

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="MCA Lead CRM API",
    description="Lead pipeline, messaging, FCS analysis and lender qualification for MCA brokering",
    version="1.0.0",
    redirect_slashes=False
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ============================================
# ROUTER REGISTRATION
# ============================================

app.include_router(health.router)
app.include_router(conversations.router)
app.include_router(messages.router)
app.include_router(documents.router)
app.include_router(fcs.router)
app.include_router(lenders.router)
app.include_router(lookups.router)
app.include_router(csv_import.router)
app.include_router(ai.router)
app.include_router(worker.router)

# Mount WebSocket
socket_app = get_socket_app()
app.mount("/socket.io", socket_app)

# ============================================
# ROOT ENDPOINT
# ============================================

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "MCA Lead CRM API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health"
    }


# ============================================
# STARTUP & SHUTDOWN
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Starting MCA Lead CRM API...")

    if settings.CREATE_TABLES_ON_STARTUP:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info("=" * 50)
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables:")
    for table_name in sorted(Base.metadata.tables.keys()):
        logger.info(f"  ✓ {table_name}")
    logger.info("=" * 50)
    logger.info("Registered Routes:")
    for route in app.routes:
        if hasattr(route, 'path'):
            logger.info(f"  {route.path}")
    logger.info("=" * 50)

    # Start APScheduler
    start_scheduler()

    logger.info("Application started successfully!")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Shutting down MCA Lead CRM API...")
    stop_scheduler()
    await engine.dispose()

"""
RelayDesk - Main Application Entry Point
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from relaydesk.agent.structured_logging import (
    enable_structured_logging,
    generate_request_id,
    set_request_context,
)
from relaydesk.api import (
    messages_router,
    orchestration_router,
    tenants_router,
    webhooks_router,
)
from relaydesk.config import settings
from relaydesk.db import init_db

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    if settings.json_logs:
        enable_structured_logging()

    print("📨 RelayDesk starting up...")
    await init_db()
    print("✅ Registry database initialized")

    if settings.enable_scheduler:
        try:
            from relaydesk.scripts.scheduled_tasks import start_scheduler
            start_scheduler(settings.status_sweep_interval_seconds)
            print("✅ Status/dedup sweep scheduler started")
        except Exception as e:
            print(f"⚠️ Could not start scheduler: {e}")

    yield

    print("📨 RelayDesk shutting down gracefully...")

    # 1. Let in-flight orchestration runs finish so none is left "processing"
    from relaydesk.agent.orchestrator import get_orchestrator
    await get_orchestrator().drain()

    # 2. Stop scheduler
    if settings.enable_scheduler:
        from relaydesk.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler()
        print("📅 Scheduler stopped")

    print("📨 RelayDesk shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Multi-tenant message orchestration: credential routing, agent selection, memory and reply delivery",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = generate_request_id(request.headers.get("x-request-id"))
    set_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


# Include routers
app.include_router(orchestration_router, prefix=settings.api_prefix)
app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(messages_router, prefix=settings.api_prefix)
app.include_router(tenants_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": VERSION,
        "features": ["credential_routing", "dedup", "status_tracking", "agent_selection", "memory", "telegram_webhook"],
    }

"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, SQLModel

from app.api.deliveries import router as deliveries_router
from app.api.events import router as events_router
from app.api.notifications import router as notifications_router
from app.api.queues import router as queues_router
from app.api.webhooks import router as webhooks_router
from app.config import get_settings
from app.db.session import engine
from app.exception_handlers import configure_exception_handlers
from app.services.queue import QueueService

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables and default lanes on startup."""
    settings.validate()
    # Import models to register them with SQLModel
    from app.models import DeliveryAttempt, Job, Lane, Notification, WebhookRegistration  # noqa: F401
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        queue = QueueService(session, settings)
        queue.ensure_default_lanes()
        lane_names = [lane.name for lane in queue.list_lanes()]
    logger.info("Delivery engine ready", extra={"lanes": lane_names})
    yield

app = FastAPI(
    title="Delivery Engine API",
    description="Reliable asynchronous delivery of webhooks and notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

configure_exception_handlers(app)

# Register routers
app.include_router(events_router)
app.include_router(webhooks_router)
app.include_router(deliveries_router)
app.include_router(queues_router)
app.include_router(notifications_router)


@app.get("/health")
def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import MessagingError
from app.api.router import api_router
from app.db.async_session import get_async_db_manager, startup_async_database, shutdown_async_database
from app.services.async_offer import AsyncOfferService
from app.services.notification import DatabaseNotificationSink, get_notification_sink, set_notification_sink
from app.services.presence import roster
from app.utils.logger import configure_logging, api_logger

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    description=settings.PROJECT_DESCRIPTION,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    redirect_slashes=False,  # Prevent automatic trailing slash redirects that cause HTTPS->HTTP issues
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        api_logger.error(f"{request.method} {request.url.path} failed", error=exc.detail)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


app.include_router(api_router, prefix=settings.API_V1_PREFIX)

_background_tasks = []


async def _presence_sweeper():
    """Drop roster members that stopped sending heartbeats."""
    while True:
        await asyncio.sleep(settings.PRESENCE_HEARTBEAT_SECONDS)
        try:
            await roster.expire_stale()
        except Exception as e:
            logger.error(f"Presence sweep failed: {e}")


async def reconcile_paid_offers() -> int:
    """Finish offers whose payment completion step never committed."""
    manager = await get_async_db_manager()
    async with manager.session_scope() as db:
        completed = await AsyncOfferService.reconcile_payments(db, notifier=get_notification_sink())
    return len(completed)


async def _payment_reconciler():
    while True:
        try:
            await reconcile_paid_offers()
        except Exception as e:
            logger.error(f"Payment reconcile failed: {e}")
        await asyncio.sleep(settings.PAYMENT_RECONCILE_SECONDS)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    try:
        logger.info("Starting up KisanMandi messaging API...")

        await startup_async_database()
        logger.info("Async database initialized successfully")

        set_notification_sink(DatabaseNotificationSink())
        _background_tasks.append(asyncio.create_task(_presence_sweeper()))
        _background_tasks.append(asyncio.create_task(_payment_reconciler()))

        logger.info("KisanMandi messaging API startup completed successfully")

    except Exception as e:
        logger.error(f"Failed to start up application: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on application shutdown."""
    try:
        logger.info("Shutting down KisanMandi messaging API...")

        for task in _background_tasks:
            task.cancel()
        _background_tasks.clear()

        await shutdown_async_database()
        logger.info("Async database connections closed")

    except Exception as e:
        logger.error(f"Error during application shutdown: {e}")


@app.get("/")
async def root():
    return {"status": "ok", "message": "Welcome to KisanMandi messaging API"}

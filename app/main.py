"""
BabeCycle Backend — FastAPI Entry Point

Initializes the FastAPI app, registers route handlers and, when a send
capability is supplied, runs the notification dispatcher for the lifetime
of the app.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.notifications import router as notifications_router
from app.core.config import LOG_LEVEL, PROJECT_NAME, is_supabase_configured
from app.services.dispatcher import NotificationDispatcher, SendCapability
from app.services.notification_queue import get_notification_queue

logger = logging.getLogger(__name__)


def create_app(send: SendCapability | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        send: Async push/email transport. When None the dispatcher is not
            started and notifications stay pending in the queue.
    """
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not is_supabase_configured():
            logger.warning("Supabase credentials missing: phase events and preferences will fail")
        if send is None:
            logger.info("No send capability configured — dispatcher disabled")
            app.state.dispatcher = None
            yield
            return

        dispatcher = NotificationDispatcher(get_notification_queue(), send)
        app.state.dispatcher = dispatcher
        task = asyncio.create_task(dispatcher.run())
        try:
            yield
        finally:
            dispatcher.stop()
            await task

    app = FastAPI(
        title=f"{PROJECT_NAME} API",
        description="Cycle phase notifications for linked partners — Backend API",
        version="0.1.0",
        lifespan=lifespan,
    )

    # --- Register API routers ---
    app.include_router(notifications_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint. Returns service status and queue counts."""
        try:
            counts = get_notification_queue().counts()
        except Exception as exc:
            logger.warning(f"Health check could not read the notification queue: {exc}")
            return {"status": "degraded", "queue": None}
        return {"status": "ok", "queue": counts}

    return app


app = create_app()

"""FastAPI application factory.

Creates and configures the FastAPI application with all routes, middleware
and background services.

## Usage

```python
from calendar_sync.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3001)
```

## Application State

Everything with a lifetime is created here and torn down on shutdown:

- `app.state.rate_limiter`: per-client request budgets
- `app.state.dispatcher`: background webhook sync tasks
- `app.state.scheduler`: periodic webhook channel renewal
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calendar_sync.api.errors import register_error_handlers
from calendar_sync.api.rate_limit import RateLimiter
from calendar_sync.config import get_settings
from calendar_sync.database.connection import close_db, init_db
from calendar_sync.webhooks.channels import handle_webhook_notification
from calendar_sync.webhooks.dispatcher import SyncDispatcher
from calendar_sync.webhooks.scheduler import WebhookRenewalScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database connection
    - Start webhook dispatch and channel renewal
    - Drain background work and close connections on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    await init_db()

    app.state.dispatcher = SyncDispatcher(handle_webhook_notification)
    app.state.scheduler = WebhookRenewalScheduler()
    if settings.webhook_url:
        app.state.scheduler.start()
    else:
        logger.warning("WEBHOOK_BASE_URL not set, webhook renewal disabled")

    yield

    logger.info("Shutting down")
    await app.state.scheduler.stop()
    await app.state.dispatcher.aclose()
    app.state.rate_limiter.reset()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Google Calendar mirror with push-notification sync",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.rate_limiter = RateLimiter.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    from calendar_sync.api.routes import auth, events, webhooks

    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(events.router, prefix="/api/calendar", tags=["Calendar"])
    app.include_router(webhooks.router, prefix="/api/webhook", tags=["Webhooks"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    return app

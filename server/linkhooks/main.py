"""Entrypoint for the FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from linkhooks.api import health, webhooks
from linkhooks.core.config import Settings, get_settings
from linkhooks.core.rate_limiter import FixedWindowRateLimiter, RateLimiter, RedisRateLimiter
from linkhooks.core.redis_manager import get_redis_client
from linkhooks.services.delivery_worker import DeliveryWorker
from linkhooks.services.dispatcher import CeleryDispatcher, Dispatcher, InProcessDispatcher
from linkhooks.services.event_emitter import WebhookEventEmitter

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="[%(asctime)s] %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_dispatcher(settings: Settings) -> Dispatcher:
    """Create the delivery dispatcher selected by configuration."""
    if settings.webhook_dispatch_backend == "celery":
        return CeleryDispatcher()
    return InProcessDispatcher(DeliveryWorker.from_settings(settings))


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Create the inbound rate limiter selected by configuration."""
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(get_redis_client())
    return FixedWindowRateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    dispatcher = build_dispatcher(settings)
    app.state.dispatcher = dispatcher
    app.state.event_emitter = WebhookEventEmitter(dispatcher)
    rate_limiter = build_rate_limiter(settings)
    app.state.rate_limiter = rate_limiter
    logger.info(f"Webhook delivery backend: {settings.webhook_dispatch_backend}")
    try:
        yield
    finally:
        await dispatcher.shutdown()
        if isinstance(rate_limiter, RedisRateLimiter):
            await rate_limiter.aclose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Signed outbound webhook notifications for profile events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# Register API routers
app.include_router(health.router)  # Health checks at root level
app.include_router(webhooks.router, prefix=settings.api_prefix)

"""Health check endpoints for monitoring service and dependency status."""
from typing import Any

from fastapi import APIRouter, Request
from sqlalchemy import text

from linkhooks.core.config import get_settings
from linkhooks.core.db import engine
from linkhooks.core.rate_limiter import RedisRateLimiter
from linkhooks.core.redis_manager import get_redis_client

router = APIRouter(tags=["health"])


def _component(status: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"status": status, "message": message, **extra}


def _check_database() -> dict[str, Any]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return _component("healthy", "Database connection successful")
    except Exception as e:
        return _component("unhealthy", f"Database connection failed: {e}")


async def _check_redis(rate_limiter: Any) -> dict[str, Any]:
    # Ping through the limiter's pool when there is one; otherwise use a short-lived client
    if isinstance(rate_limiter, RedisRateLimiter):
        client, owned = rate_limiter.redis, False
    else:
        client, owned = get_redis_client(), True

    try:
        await client.ping()
        return _component("healthy", "Redis connection successful")
    except Exception as e:
        return _component("degraded", f"Redis connection failed: {e}")
    finally:
        if owned:
            await client.aclose()


def _check_celery_workers() -> dict[str, Any]:
    from linkhooks.tasks.celery_app import celery_app

    try:
        active_workers = celery_app.control.inspect(timeout=2.0).active()
    except Exception as e:
        return _component("degraded", f"Failed to inspect Celery workers: {e}")

    if not active_workers:
        return _component("degraded", "No active Celery workers found")
    return _component(
        "healthy",
        f"{len(active_workers)} worker(s) available",
        workers=list(active_workers.keys()),
    )


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint.

    Returns:
        Simple status response for load balancers
    """
    return {"status": "ok"}


@router.get("/health/detailed")
async def detailed_health_check(request: Request) -> dict[str, Any]:
    """Detailed health check for the dependencies in use.

    Checks:
    - Database connectivity
    - Redis connectivity (when Redis backs the rate limiter)
    - Celery workers (when deliveries go through Celery)
    - In-flight in-process deliveries

    Returns:
        Overall status plus one entry per component; a failing database makes
        the service unhealthy, any other failing component makes it degraded
    """
    settings = get_settings()
    components: dict[str, Any] = {"database": _check_database()}

    if settings.rate_limit_backend == "redis":
        components["redis"] = await _check_redis(getattr(request.app.state, "rate_limiter", None))

    if settings.webhook_dispatch_backend == "celery":
        components["celery"] = _check_celery_workers()
    else:
        dispatcher = getattr(request.app.state, "dispatcher", None)
        components["deliveries"] = _component(
            "healthy",
            "Deliveries run in-process",
            in_flight=getattr(dispatcher, "in_flight", 0),
        )

    statuses = {component["status"] for component in components.values()}
    if "unhealthy" in statuses:
        overall = "unhealthy"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"

    return {"status": overall, "components": components}

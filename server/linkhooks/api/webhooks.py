"""Webhook subscription management API endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from linkhooks.core.config import get_settings
from linkhooks.core.db import get_session
from linkhooks.core.rate_limiter import RateLimiter
from linkhooks.models.webhook import WebhookEvent
from linkhooks.schemas.webhook import (
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionUpdate,
    VisitorMetadata,
    WebhookDeliveryResponse,
    WebhookTestResponse,
)
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.event_emitter import WebhookEventEmitter
from linkhooks.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

TEST_EVENT = WebhookEvent.PROFILE_UPDATED
TEST_VISITOR = VisitorMetadata(ip_hash="test-ip", browser="Linkhooks-Test")


def get_current_owner_id(x_owner_id: str | None = Header(default=None, alias="X-Owner-Id")) -> str:
    """Resolve the calling account; stands in for the authentication layer."""
    if not x_owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_owner_id


def get_subscription_repository(session: Session = Depends(get_session)) -> SubscriptionRepository:
    """Dependency to get SubscriptionRepository instance."""
    return SubscriptionRepository(session)


def get_delivery_repository(session: Session = Depends(get_session)) -> DeliveryRepository:
    """Dependency to get DeliveryRepository instance."""
    return DeliveryRepository(session)


def get_event_emitter(request: Request) -> WebhookEventEmitter:
    """Dependency returning the emitter created at application startup."""
    return request.app.state.event_emitter


def get_rate_limiter(request: Request) -> RateLimiter:
    """Dependency returning the inbound rate limiter created at application startup."""
    return request.app.state.rate_limiter


async def enforce_test_event_rate_limit(
    response: Response,
    owner_id: str = Depends(get_current_owner_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Apply the fixed-window limit to manual test-event triggers.

    Raises:
        HTTPException: 429 with a Retry-After hint when the caller is over the limit
    """
    settings = get_settings()
    decision = await limiter.allow(
        f"webhook-test:{owner_id}",
        settings.test_event_rate_limit,
        settings.test_event_rate_window_ms,
    )
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if not decision.allowed:
        retry_after = decision.retry_after(limiter.now())
        logger.warning(f"Rate limit exceeded for test events of owner {owner_id}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limited", "retry_after": retry_after},
            headers={**headers, "Retry-After": str(retry_after)},
        )
    response.headers.update(headers)


def _get_owned_subscription(repository: SubscriptionRepository, owner_id: str, subscription_id: str):
    subscription = repository.get_for_owner(owner_id, subscription_id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook with ID {subscription_id} not found",
        )
    return subscription


@router.get(
    "",
    response_model=list[SubscriptionResponse],
    status_code=status.HTTP_200_OK,
    summary="List webhooks",
    description="Retrieve the caller's webhook subscriptions, newest first.",
)
async def list_webhooks(
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> list[SubscriptionResponse]:
    subscriptions = repository.list_for_owner(owner_id)
    return [SubscriptionResponse.from_model(s) for s in subscriptions]


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a webhook",
    description="Register a URL, a signing secret and the event kinds it should receive.",
)
async def create_webhook(
    subscription: SubscriptionCreate,
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> SubscriptionResponse:
    """
    Create a new webhook subscription.

    Args:
        subscription: Validated SubscriptionCreate schema
        owner_id: Calling account (injected)
        repository: SubscriptionRepository instance (injected)

    Returns:
        Created SubscriptionResponse
    """
    try:
        created = repository.create(owner_id, subscription)
        return SubscriptionResponse.from_model(created)
    except Exception as e:
        logger.exception(f"Unexpected error creating webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create webhook",
        ) from e


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_200_OK,
    summary="Get webhook by ID",
)
async def get_webhook(
    subscription_id: str,
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> SubscriptionResponse:
    subscription = _get_owned_subscription(repository, owner_id, subscription_id)
    return SubscriptionResponse.from_model(subscription)


@router.patch(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_200_OK,
    summary="Update a webhook",
    description="Partially update a webhook. Provided fields are validated like on creation.",
)
async def update_webhook(
    subscription_id: str,
    changes: SubscriptionUpdate,
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> SubscriptionResponse:
    """
    Update a webhook subscription.

    Raises:
        HTTPException: 404 if the subscription does not exist for this owner
    """
    try:
        updated = repository.update(owner_id, subscription_id, changes)
        if updated is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Webhook with ID {subscription_id} not found",
            )
        return SubscriptionResponse.from_model(updated)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error updating webhook {subscription_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update webhook",
        ) from e


@router.delete(
    "/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a webhook",
)
async def delete_webhook(
    subscription_id: str,
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> None:
    deleted = repository.delete(owner_id, subscription_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook with ID {subscription_id} not found",
        )


@router.post(
    "/{subscription_id}/test",
    response_model=WebhookTestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a test event",
    description=(
        "Emit a synthetic profile_updated event for the caller. Delivery happens in the "
        "background; inspect the deliveries endpoint for the outcome. Rate limited per caller."
    ),
    dependencies=[Depends(enforce_test_event_rate_limit)],
)
async def send_test_event(
    subscription_id: str,
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
    emitter: WebhookEventEmitter = Depends(get_event_emitter),
) -> WebhookTestResponse:
    """
    Trigger a test event through the regular emit path.

    Raises:
        HTTPException: 404 if the subscription does not exist for this owner
        HTTPException: 409 if no active subscription of this owner listens to the test event
    """
    _get_owned_subscription(repository, owner_id, subscription_id)

    delivery_ids = await emitter.emit(
        owner_id,
        TEST_EVENT,
        {
            "test": True,
            "message": "This is a test webhook payload",
            "subscription_id": subscription_id,
        },
        TEST_VISITOR,
    )

    if not delivery_ids:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"No active webhook listens to '{TEST_EVENT.value}'",
        )
    return WebhookTestResponse(success=True, message="Test event emitted", delivery_ids=delivery_ids)


@router.get(
    "/{subscription_id}/deliveries",
    response_model=list[WebhookDeliveryResponse],
    status_code=status.HTTP_200_OK,
    summary="Get webhook delivery history",
    description="Retrieve delivery records for a webhook, newest first, with pagination.",
)
async def get_webhook_deliveries(
    subscription_id: str,
    page: int = Query(default=1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(default=50, ge=1, le=100, description="Items per page (max 100)"),
    owner_id: str = Depends(get_current_owner_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
    deliveries: DeliveryRepository = Depends(get_delivery_repository),
) -> list[WebhookDeliveryResponse]:
    _get_owned_subscription(repository, owner_id, subscription_id)

    offset = (page - 1) * page_size
    records, _total = deliveries.list_for_subscription(subscription_id, limit=page_size, offset=offset)
    return [WebhookDeliveryResponse.model_validate(d) for d in records]

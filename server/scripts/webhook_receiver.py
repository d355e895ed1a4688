#!/usr/bin/env python3
"""Reference webhook receiver that verifies delivery signatures.

Run it next to the service to inspect deliveries locally:

    WEBHOOK_SECRET=s3cr3t-minimum-16ch uvicorn scripts.webhook_receiver:app --port 9000

then register ``http://localhost:9000/webhook`` as a subscription with the same
secret. Requests with a missing or invalid signature are rejected with 401.
Deliveries are deduplicated on the ``X-Webhook-Delivery`` header, since the
sender retries and may deliver the same event more than once.
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request, status

# Add parent directory to path so we can import linkhooks modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from linkhooks.services.signing import verify_signature

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s - %(message)s",
)


def create_receiver(secret: str) -> FastAPI:
    """Build a receiver app that accepts deliveries signed with ``secret``."""
    receiver = FastAPI(title="Webhook receiver")
    seen_deliveries: set[str] = set()
    receiver.state.received = []

    @receiver.post("/webhook", status_code=status.HTTP_200_OK)
    async def receive(
        request: Request,
        x_webhook_signature: str | None = Header(default=None),
        x_webhook_delivery: str | None = Header(default=None),
    ) -> dict[str, Any]:
        body = await request.body()
        if not verify_signature(body, x_webhook_signature, secret):
            logger.warning(f"Rejected delivery {x_webhook_delivery}: invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

        if x_webhook_delivery in seen_deliveries:
            logger.info(f"Duplicate delivery {x_webhook_delivery} ignored")
            return {"received": True, "duplicate": True}

        if x_webhook_delivery:
            seen_deliveries.add(x_webhook_delivery)
        event = await request.json()
        receiver.state.received.append(event)
        logger.info(f"Accepted delivery {x_webhook_delivery}: {event.get('event')}")
        return {"received": True, "duplicate": False}

    return receiver


app = create_receiver(os.getenv("WEBHOOK_SECRET", "change-me-to-a-long-secret"))

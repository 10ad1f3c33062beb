"""Inbound platform webhooks.

WHAT:
    POST /webhooks/shopify/{topic}   e.g. /webhooks/shopify/orders/create
    POST /webhooks/squarespace       topic carried in the signed body

WHY:
    Thin HTTP layer: the body is read as raw bytes (the signature covers the
    exact bytes) and handed to the webhook service, whose outcome decides
    the status code the platform sees.

REFERENCES:
    - storelink/services/webhook_service.py
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storelink.adapters import AdapterProvider, get_adapter_provider
from storelink.database import get_db
from storelink.models import PlatformEnum
from storelink.services.webhook_service import WebhookOutcome, process_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _response(outcome: WebhookOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content={"message": outcome.message})


@router.post("/shopify/{topic:path}")
async def shopify_webhook(
    topic: str,
    request: Request,
    db: Session = Depends(get_db),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    body = await request.body()
    outcome = await process_webhook(
        db,
        PlatformEnum.shopify,
        headers=request.headers,
        body=body,
        topic=topic,
        adapter=adapters(PlatformEnum.shopify),
    )
    return _response(outcome)


@router.post("/squarespace")
async def squarespace_webhook(
    request: Request,
    db: Session = Depends(get_db),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    body = await request.body()
    outcome = await process_webhook(
        db,
        PlatformEnum.squarespace,
        headers=request.headers,
        body=body,
        adapter=adapters(PlatformEnum.squarespace),
    )
    return _response(outcome)

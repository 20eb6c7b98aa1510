import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from supabase import Client

from webpilotx.database.supabase_client import get_supabase
from webpilotx.modules.webhooks.schemas import PushEvent, WebhookResponse
from webpilotx.modules.webhooks.secret import get_or_create_webhook_secret
from webpilotx.modules.webhooks.service import WebhookService, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_service(supabase: Client = Depends(get_supabase)) -> WebhookService:
    return WebhookService(supabase)


@router.post("/github", response_model=WebhookResponse, response_model_exclude_none=True)
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    service: WebhookService = Depends(get_webhook_service)
):
    """
    Receive a GitHub push notification.
    401 on a bad signature, 404 when no page builds the pushed branch,
    200 otherwise (other event types are acknowledged and ignored).
    """
    payload = await request.body()
    if not verify_signature(get_or_create_webhook_secret(), payload, x_hub_signature_256):
        logger.error("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.info(f"Received GitHub event: {x_github_event}")
    if x_github_event != "push":
        logger.info(f"Unhandled GitHub event: {x_github_event}")
        return WebhookResponse(message=f"Event {x_github_event} ignored")

    try:
        event = PushEvent.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid push payload: {e}")

    deployment_ids, failed = service.dispatch_push(event)
    return WebhookResponse(
        message="Webhook processed successfully",
        deployment_ids=deployment_ids,
        failed_page_ids=failed or None,
    )

import hmac

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from wacanda.config import settings
from wacanda.database import get_db
from wacanda.logging_config import get_logger
from wacanda.schemas.webhook import ProviderEvent, WebhookResponse
from wacanda.services.event_processor import EventProcessor
from wacanda.services.pipeline_service import run_pipeline_for_new_messages

logger = get_logger("webhook")

router = APIRouter()

event_processor = EventProcessor(batch_size=settings.sync_batch_size)


def _get_request_webhook_secret(request: Request) -> str | None:
    header_secret = request.headers.get("X-Webhook-Secret")
    if header_secret:
        return header_secret.strip()
    query_secret = request.query_params.get("webhook_secret")
    if query_secret:
        return query_secret.strip()
    return None


def _verify_webhook_secret(request: Request) -> None:
    expected = settings.webhook_secret
    if not expected:
        return
    provided = _get_request_webhook_secret(request)
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


async def _parse_provider_event(request: Request, instance_key: str | None) -> ProviderEvent | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read", extra={"context": {"instance_key": instance_key}})
        return WebhookResponse(success=True, message="Client disconnected")
    except ValueError as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Webhook payload must be an object")

    try:
        event = ProviderEvent.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Webhook payload validation failed", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=False, message="Invalid webhook payload")

    if not event.instance and instance_key:
        event.instance = instance_key
    return event


async def _handle_provider_event(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session,
    instance_key: str | None = None,
) -> WebhookResponse:
    _verify_webhook_secret(request)

    parsed = await _parse_provider_event(request, instance_key)
    if isinstance(parsed, WebhookResponse):
        return parsed

    outcome = await run_in_threadpool(
        event_processor.handle,
        db,
        {"event": parsed.event, "instance": parsed.instance, "data": parsed.data},
    )

    if settings.auto_reply_enabled and outcome.new_inbound:
        background_tasks.add_task(run_pipeline_for_new_messages, list(outcome.new_inbound))

    # acknowledged either way; the provider must not retry ignored or failed events
    return WebhookResponse(
        success=outcome.handled or outcome.action == "ignored",
        message="Event processed" if outcome.handled else f"Event not applied: {outcome.action}",
        event=outcome.event,
        action=outcome.action,
        detail=outcome.detail,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Provider webhook; the instance is taken from the payload."""
    return await _handle_provider_event(request, background_tasks, db)


@router.post("/webhook/{instance_key}", response_model=WebhookResponse)
async def handle_instance_webhook(
    instance_key: str, request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    return await _handle_provider_event(request, background_tasks, db, instance_key=instance_key)


@router.get("/webhook/{instance_key}")
async def handle_webhook_check(instance_key: str):
    """Reachability check for gateway UI setup; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload", "instance_key": instance_key}

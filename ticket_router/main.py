import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ticket_router import config
from ticket_router.config import Settings, get_settings
from ticket_router.context import AppContext, build_context, get_context
from ticket_router.dispatcher import dispatch
from ticket_router.extractor import NormalizedMessage
from ticket_router.gateway import GatewayError
from ticket_router.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from ticket_router.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from ticket_router.models import Ticket
from ticket_router.phone import normalize_phone
from ticket_router.routing import persist_message
from ticket_router.storage import init_db, check_db_health, get_db, get_tickets, get_ticket_messages, get_stats
from ticket_router.schemas import (
    ErrorResponse,
    GatewayEnvelope,
    GatewayResult,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    ReplyRequest,
    StatsResponse,
    TicketResponse,
    TicketsListResponse,
    WebhookConfigRequest,
    WebhookResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _utc_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _gateway_http_error(error: GatewayError) -> HTTPException:
    """Map a gateway failure onto the status agents see."""
    if error.status_code in (400, 404, 409):
        return HTTPException(status_code=error.status_code, detail=error.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, start the message batcher when enabled
    - Shutdown: flush pending batches, close the gateway client and the engine
    """
    ctx: AppContext = app.state.context
    init_db(ctx.engine)

    if ctx.batcher is not None:
        ctx.batcher.start()

    yield

    if ctx.batcher is not None:
        await ctx.batcher.stop()
    await ctx.gateway.aclose()
    ctx.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # Setup structured JSON logging
    setup_logging(settings.LOG_LEVEL)

    application = FastAPI(
        title="Ticket Router",
        description="Routes WhatsApp gateway webhooks into support tickets",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.context = build_context(settings, gateway_transport=gateway_transport)
    application.add_middleware(RequestLoggingMiddleware)
    application.include_router(router)
    return application


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    ctx: AppContext = Depends(get_context),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    tickets/messages schema is applied. Otherwise returns 503.
    """
    if not check_db_health(ctx.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@router.post("/webhook", response_model=WebhookResponse, include_in_schema=False)
@router.post("/webhook/evolution", response_model=WebhookResponse)
async def evolution_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
) -> WebhookResponse:
    """
    Ingest an Evolution API webhook envelope.

    Always answers 200: a gateway that sees repeated non-2xx responses
    disables the webhook. Failures are reported through `processed`,
    `message`, the request log and the webhook_events_total metric.
    """
    timestamp = _utc_iso()
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        envelope = GatewayEnvelope.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError, RecursionError) as e:
        logger.warning(f"Invalid webhook payload: {type(e).__name__}: {str(e)[:200]}")
        record_webhook_outcome("unknown", "validation_error")
        log_webhook_data(request=request, result="validation_error")
        return WebhookResponse(
            timestamp=timestamp,
            event="unknown",
            processed=False,
            message="Invalid payload",
        )

    logger.info(f"Webhook received: event={envelope.event}, instance={envelope.instance}")
    result = dispatch(db, envelope, ctx)

    log_webhook_data(
        request=request,
        event=result.event,
        instance=envelope.instance or None,
        message_id=result.message_id,
        ticket_id=result.ticket_id,
        result=result.result,
    )

    return WebhookResponse(
        timestamp=timestamp,
        event=envelope.event or "unknown",
        instance=envelope.instance or None,
        processed=result.processed,
        message=result.message,
        ticket_id=result.ticket_id,
    )


# =============================================================================
# Ticket Routes
# =============================================================================

@router.get("/tickets", response_model=TicketsListResponse)
async def list_tickets(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of tickets to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of tickets to skip")] = 0,
    status_param: Annotated[Optional[str], Query(alias="status", description="Filter by status")] = None,
    phone: Annotated[Optional[str], Query(description="Filter by client phone, any format")] = None,
    instance: Annotated[Optional[str], Query(description="Filter by gateway instance")] = None,
    auto_created: Annotated[Optional[bool], Query(description="Only tickets created from inbound messages")] = None,
    db: Session = Depends(get_db),
) -> TicketsListResponse:
    """
    List tickets, newest first, with pagination and filtering.

    The phone filter goes through the same normalization as routing, so
    '+55 11 98888-7766' and '11988887766' find the same tickets.
    """
    tickets, total = get_tickets(
        db=db,
        limit=limit,
        offset=offset,
        status=status_param,
        client_phone=normalize_phone(phone) if phone else None,
        instance_name=instance,
        auto_created=auto_created,
    )

    return TicketsListResponse(
        data=[TicketResponse.model_validate(ticket) for ticket in tickets],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/tickets/{ticket_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_ticket_messages(ticket_id: str, db: Session = Depends(get_db)) -> MessagesListResponse:
    if db.get(Ticket, ticket_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ticket not found")

    messages = get_ticket_messages(db, ticket_id)
    return MessagesListResponse(
        ticket_id=ticket_id,
        data=[MessageResponse.model_validate(message) for message in messages],
    )


@router.post(
    "/tickets/{ticket_id}/reply",
    response_model=MessageResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Ticket or gateway resource not found"},
        409: {"model": ErrorResponse, "description": "Ticket has no WhatsApp contact"},
        502: {"model": ErrorResponse, "description": "Gateway call failed"},
    },
)
async def reply_to_ticket(
    ticket_id: str,
    body: ReplyRequest,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
) -> MessageResponse:
    """
    Send an agent reply through the gateway and record it on the ticket.

    The gateway echoes the sent message back as a self-sent
    MESSAGES_UPSERT, which the webhook ignores; this route is where agent
    messages get stored.
    """
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ticket not found")

    meta = ticket.meta or {}
    number = meta.get("whatsapp_number") or ticket.client_phone
    if not number or not ticket.instance_name:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="ticket has no WhatsApp contact")

    try:
        sent = await ctx.gateway.send_text(ticket.instance_name, number, body.text)
    except GatewayError as e:
        raise _gateway_http_error(e)

    sent = sent if isinstance(sent, dict) else {}
    gateway_id = (sent.get("key") or {}).get("id") or f"agent-{uuid.uuid4()}"

    message = NormalizedMessage(
        sender_phone=number,
        sender_name=body.sender_name,
        content=body.text,
        message_type="text",
        instance_name=ticket.instance_name,
        gateway_message_id=gateway_id,
        timestamp=datetime.now(timezone.utc),
        from_me=True,
        remote_jid=(sent.get("key") or {}).get("remoteJid", ""),
        raw=sent,
    )
    row = persist_message(db, ticket.id, message, sender_role="agent", sender_id=body.sender_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="message already recorded")

    return MessageResponse.model_validate(row)


# =============================================================================
# Gateway Instance Routes
# =============================================================================

@router.get(
    "/instances/{instance_name}/qrcode",
    response_model=GatewayResult,
    responses={502: {"model": ErrorResponse}},
)
async def instance_qrcode(instance_name: str, ctx: AppContext = Depends(get_context)) -> GatewayResult:
    try:
        data = await ctx.gateway.connect_instance(instance_name)
    except GatewayError as e:
        raise _gateway_http_error(e)
    return GatewayResult(instance=instance_name, data=data)


@router.post(
    "/instances/{instance_name}/webhook",
    response_model=GatewayResult,
    responses={422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def configure_instance_webhook(
    instance_name: str,
    body: WebhookConfigRequest,
    ctx: AppContext = Depends(get_context),
) -> GatewayResult:
    """Point the instance's webhook at this service (or the given URL)."""
    url = body.url or ctx.settings.PUBLIC_WEBHOOK_URL
    if not url:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="webhook url required (body.url or PUBLIC_WEBHOOK_URL)",
        )

    try:
        data = await ctx.gateway.set_webhook(instance_name, url, body.events)
    except GatewayError as e:
        raise _gateway_http_error(e)
    return GatewayResult(instance=instance_name, data=data)


# =============================================================================
# Stats Route
# =============================================================================

@router.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Ticket and message counts for the dashboard."""
    stats = get_stats(db)
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


app = create_app(config.settings)

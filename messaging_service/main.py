import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from messaging_service import services
from messaging_service.config import Settings, get_settings
from messaging_service.errors import (
    AppError,
    FieldError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from messaging_service.logging_utils import RequestLoggingMiddleware, log_ingest_data, setup_logging
from messaging_service.mappers import to_iso
from messaging_service.metrics import get_metrics, get_metrics_content_type, record_ingest_outcome
from messaging_service.schemas import (
    ConversationListResponse,
    ConversationResponse,
    ConversationWithMessages,
    DatabaseHealth,
    ErrorResponse,
    HealthCheckResponse,
    HealthResponse,
    InboundEmailWebhook,
    InboundSmsWebhook,
    MessageDirection,
    MessageResponse,
    MessageStatusUpdateRequest,
    MessageType,
    OutboundEmailRequest,
    OutboundSmsRequest,
    Pagination,
    ProviderType,
    SendMessagePayload,
)
from messaging_service.storage import Database, get_db

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation failed"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
NOT_FOUND_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Not found"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


# =============================================================================
# Error Handling
# =============================================================================

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render every AppError variant as {"code", "message", "details"}."""
    details = exc.details
    if isinstance(exc, InternalError):
        # The cause stays in the logs; callers only get the generic message
        logger.error(f"Internal error: {exc.message}", exc_info=exc.cause)
        details = None
    elif not isinstance(exc, (ValidationError, NotFoundError)):
        logger.error(f"Unhandled application error: {exc.message}")

    body = ErrorResponse(code=exc.code, message=exc.message, details=details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def _field_name(loc: tuple) -> str:
    parts = [str(part) for part in loc[1:]] if len(loc) > 1 else [str(part) for part in loc]
    return ".".join(parts)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request shapes in the same format as semantic validation errors."""
    fields = [
        FieldError(field=_field_name(tuple(err["loc"])), message=err["msg"], code=err["type"].upper())
        for err in exc.errors()
    ]
    logger.warning(f"Request validation failed: {[f.field for f in fields]}")
    return await app_error_handler(request, ValidationError(fields))


def _check_limit(request: Request, limit: Optional[int], default: int) -> int:
    settings: Settings = request.app.state.settings
    if limit is None:
        return default
    if limit > settings.MAX_PAGE_LIMIT:
        raise ValidationError([FieldError(
            field="limit",
            message=f"limit must be at most {settings.MAX_PAGE_LIMIT}",
            code="LIMIT_TOO_LARGE",
        )])
    return limit


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health", response_model=HealthCheckResponse)
def health(request: Request, response: Response) -> HealthCheckResponse:
    """
    Overall health including database connectivity and latency.
    Returns 503 when the database is unreachable or the schema is missing.
    """
    database: Database = request.app.state.database
    db_health = database.health()

    if not db_health["connected"]:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthCheckResponse(
        status="healthy" if db_health["connected"] else "unhealthy",
        timestamp=to_iso(datetime.now(timezone.utc)),
        uptime=int(time.time() - request.app.state.started_at),
        database=DatabaseHealth(connected=db_health["connected"], latency_ms=db_health["latency_ms"]),
    )


@router.get("/health/live", response_model=HealthResponse)
def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
def health_ready(request: Request, response: Response) -> HealthResponse:
    """Readiness probe - 200 only if the DB is reachable and the schema is applied."""
    if not request.app.state.database.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

def _ingest(request: Request, db: Session, payload: SendMessagePayload) -> MessageResponse:
    """Run the ingestion pipeline and record the outcome in logs and metrics."""
    provider_type = payload.provider_type.value
    direction = payload.direction.value
    started = time.perf_counter()

    try:
        message, is_duplicate = services.send_message(db, payload)
    except ValidationError:
        record_ingest_outcome(provider_type, direction, "validation_error")
        log_ingest_data(request, provider_message_id=payload.provider_message_id, result="validation_error")
        raise
    except AppError:
        record_ingest_outcome(provider_type, direction, "error")
        log_ingest_data(request, provider_message_id=payload.provider_message_id, result="error")
        raise

    result = "duplicate" if is_duplicate else "created"
    record_ingest_outcome(provider_type, direction, result, duration_seconds=time.perf_counter() - started)
    log_ingest_data(
        request,
        message_id=message.id,
        provider_message_id=payload.provider_message_id,
        dup=is_duplicate,
        result=result,
    )
    return message


@router.post(
    "/api/messages/sms",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    tags=["Messages"],
)
def send_sms(body: OutboundSmsRequest, request: Request, db: Session = Depends(get_db)) -> MessageResponse:
    """Send an SMS or MMS message."""
    payload = SendMessagePayload(
        provider_type=ProviderType.SMS,
        message_type=MessageType(body.message_type),
        direction=MessageDirection.OUTBOUND,
        from_address=body.from_address,
        to_address=body.to_address,
        body=body.body,
        attachments=body.attachments,
        timestamp=body.timestamp,
    )
    return _ingest(request, db, payload)


@router.post(
    "/api/messages/email",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    tags=["Messages"],
)
def send_email(body: OutboundEmailRequest, request: Request, db: Session = Depends(get_db)) -> MessageResponse:
    """Send an email message."""
    payload = SendMessagePayload(
        provider_type=ProviderType.EMAIL,
        message_type=MessageType.EMAIL,
        direction=MessageDirection.OUTBOUND,
        from_address=body.from_address,
        to_address=body.to_address,
        body=body.body,
        attachments=body.attachments,
        timestamp=body.timestamp,
    )
    return _ingest(request, db, payload)


@router.get(
    "/api/messages/{message_id}",
    response_model=MessageResponse,
    responses=NOT_FOUND_RESPONSES,
    tags=["Messages"],
)
def get_message(message_id: str, db: Session = Depends(get_db)) -> MessageResponse:
    return services.get_message_by_id(db, message_id)


@router.patch(
    "/api/messages/{message_id}/status",
    response_model=MessageResponse,
    responses={**ERROR_RESPONSES, **NOT_FOUND_RESPONSES},
    tags=["Messages"],
)
def update_message_status(
    message_id: str,
    body: MessageStatusUpdateRequest,
    db: Session = Depends(get_db),
) -> MessageResponse:
    """Record a delivery status change (e.g. sent, delivered, failed)."""
    return services.update_message_status(db, message_id, body.status, body.error_message)


@router.delete(
    "/api/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=NOT_FOUND_RESPONSES,
    tags=["Messages"],
)
def delete_message(message_id: str, db: Session = Depends(get_db)) -> Response:
    services.delete_message(db, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Webhook Routes
# =============================================================================

@router.post(
    "/api/webhooks/sms",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Webhooks"],
)
def receive_sms(body: InboundSmsWebhook, request: Request, db: Session = Depends(get_db)) -> MessageResponse:
    """
    Receive an inbound SMS/MMS from the provider.

    Idempotent: a repeated messaging_provider_id returns the stored message.
    """
    payload = SendMessagePayload(
        provider_type=ProviderType.SMS,
        provider_message_id=body.messaging_provider_id,
        message_type=MessageType(body.message_type),
        direction=MessageDirection.INBOUND,
        from_address=body.from_address,
        to_address=body.to_address,
        body=body.body,
        attachments=body.attachments,
        timestamp=body.timestamp,
    )
    return _ingest(request, db, payload)


@router.post(
    "/api/webhooks/email",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    tags=["Webhooks"],
)
def receive_email(body: InboundEmailWebhook, request: Request, db: Session = Depends(get_db)) -> MessageResponse:
    """
    Receive an inbound email from the provider.

    Idempotent: a repeated xillio_id returns the stored message.
    """
    payload = SendMessagePayload(
        provider_type=ProviderType.EMAIL,
        provider_message_id=body.xillio_id,
        message_type=MessageType.EMAIL,
        direction=MessageDirection.INBOUND,
        from_address=body.from_address,
        to_address=body.to_address,
        body=body.body,
        attachments=body.attachments,
        timestamp=body.timestamp,
    )
    return _ingest(request, db, payload)


# =============================================================================
# Conversation Routes
# =============================================================================

@router.get(
    "/api/conversations",
    response_model=ConversationListResponse,
    responses=ERROR_RESPONSES,
    tags=["Conversations"],
)
def list_conversations(
    request: Request,
    limit: Annotated[Optional[int], Query(ge=1, description="Maximum conversations to return")] = None,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    """
    List conversations ordered by most recent message (last_message_at DESC, id DESC).
    """
    limit = _check_limit(request, limit, request.app.state.settings.DEFAULT_CONVERSATION_LIMIT)
    conversations, total = services.list_conversations(db, limit=limit, offset=offset)

    return ConversationListResponse(
        conversations=conversations,
        pagination=Pagination(limit=limit, offset=offset, total=total),
    )


@router.get(
    "/api/conversations/{conversation_id}/metadata",
    response_model=ConversationResponse,
    responses=NOT_FOUND_RESPONSES,
    tags=["Conversations"],
)
def get_conversation_metadata(conversation_id: str, db: Session = Depends(get_db)) -> ConversationResponse:
    return services.get_conversation_metadata(db, conversation_id)


@router.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=ConversationWithMessages,
    responses=NOT_FOUND_RESPONSES,
    tags=["Conversations"],
)
def get_conversation_history(
    conversation_id: str,
    request: Request,
    limit: Annotated[Optional[int], Query(ge=1, description="Maximum messages to return")] = None,
    db: Session = Depends(get_db),
) -> ConversationWithMessages:
    """Conversation with its most recent messages in chronological order."""
    limit = _check_limit(request, limit, request.app.state.settings.DEFAULT_MESSAGE_LIMIT)
    return services.get_conversation_with_messages(db, conversation_id, message_limit=limit)


@router.delete(
    "/api/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=NOT_FOUND_RESPONSES,
    tags=["Conversations"],
)
def delete_conversation(conversation_id: str, db: Session = Depends(get_db)) -> Response:
    """Delete a conversation and all of its messages."""
    services.delete_conversation(db, conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus-style metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application and its storage handle.

    Serve with: uvicorn --factory messaging_service.main:create_app
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    database = Database(settings.DATABASE_URL, echo=settings.DB_ECHO)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.init_db()
        yield
        database.dispose()

    app = FastAPI(
        title="Messaging Service",
        description="Unified SMS, MMS and email conversations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.started_at = time.time()

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "messaging_service.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
    )

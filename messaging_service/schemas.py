"""
Pydantic schemas for request/response validation.

This module contains:
- Enumerations shared by requests, responses and the ingestion pipeline
- Request models for outbound sends and provider webhooks
- Response models for API responses (camelCase on the wire)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Enumerations
# =============================================================================

class ProviderType(str, Enum):
    """Transport channel."""
    SMS = "sms"
    EMAIL = "email"


class MessageType(str, Enum):
    """Content format. sms/mms travel over the sms provider, email over email."""
    SMS = "sms"
    MMS = "mms"
    EMAIL = "email"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class _MessageRequest(BaseModel):
    """Fields shared by every send request and webhook payload."""
    # Note: 'from' is a reserved word in Python, so we use alias
    from_address: str = Field(..., alias="from", description="Sender phone number or email")
    to_address: str = Field(..., alias="to", description="Recipient phone number or email")
    body: str = Field("", description="Message text content")
    attachments: Optional[list[str]] = Field(None, description="Attachment URLs")
    timestamp: datetime = Field(..., description="Event time in ISO-8601")

    model_config = ConfigDict(populate_by_name=True)


class OutboundSmsRequest(_MessageRequest):
    """
    Outbound SMS/MMS request payload.

    Example:
        {"from": "+12025551234", "to": "+12025555678", "type": "sms",
         "body": "hi", "attachments": null, "timestamp": "2025-10-24T10:00:00Z"}
    """
    message_type: Literal["sms", "mms"] = Field(..., alias="type", description="sms or mms")


class OutboundEmailRequest(_MessageRequest):
    """Outbound email request payload. The message type is always email."""


class InboundSmsWebhook(OutboundSmsRequest):
    """Inbound SMS/MMS webhook payload from the SMS provider."""
    messaging_provider_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("messaging_provider_id", "providerMessageId"),
        description="Provider-assigned message identifier",
    )


class InboundEmailWebhook(OutboundEmailRequest):
    """Inbound email webhook payload from the email provider."""
    xillio_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("xillio_id", "providerMessageId"),
        description="Provider-assigned message identifier",
    )


class MessageStatusUpdateRequest(BaseModel):
    """Status transition reported by a delivery path outside ingestion."""
    status: MessageStatus
    error_message: Optional[str] = Field(None, alias="errorMessage")

    model_config = ConfigDict(populate_by_name=True)


class SendMessagePayload(BaseModel):
    """
    Input of the ingestion pipeline, shared by outbound sends and webhooks.

    Shape checks only; semantic validation happens in services.send_message.
    """
    provider_type: ProviderType
    provider_message_id: Optional[str] = None
    message_type: MessageType
    direction: MessageDirection
    from_address: str
    to_address: str
    body: str = ""
    attachments: Optional[list[str]] = None
    timestamp: datetime


# =============================================================================
# Pydantic Response Models
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    code: str = Field(..., description="Machine readable error code")
    message: str = Field(..., description="Error description")
    details: Optional[Any] = Field(None, description="Field errors or context")


class MessageResponse(_CamelModel):
    """API representation of a stored message."""
    id: str
    conversation_id: str
    provider_type: ProviderType
    message_type: MessageType
    direction: MessageDirection
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    body: str
    attachments: Optional[list[str]] = None
    status: MessageStatus
    timestamp: str
    created_at: str


class ConversationResponse(_CamelModel):
    """API representation of a conversation without its history."""
    id: str
    participants: list[str]
    created_at: str
    updated_at: str
    last_message_at: str
    message_count: Optional[int] = None
    last_message: Optional[MessageResponse] = None


class ConversationWithMessages(ConversationResponse):
    """Conversation plus its message history in chronological order."""
    messages: list[MessageResponse] = Field(default_factory=list)


class Pagination(BaseModel):
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)
    total: int = Field(..., ge=0, description="Total conversations (ignoring limit/offset)")


class ConversationListResponse(BaseModel):
    """Response model for GET /api/conversations."""
    conversations: list[ConversationResponse] = Field(default_factory=list)
    pagination: Pagination


class DatabaseHealth(_CamelModel):
    connected: bool
    latency_ms: float


class HealthCheckResponse(BaseModel):
    """Response model for GET /health."""
    status: Literal["healthy", "unhealthy"]
    timestamp: str
    uptime: int
    database: DatabaseHealth


class HealthResponse(BaseModel):
    """Response model for liveness/readiness probes."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")

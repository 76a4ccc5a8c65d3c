"""
Map ORM rows to API response models.

Stored values are treated with suspicion: JSON text columns may be
malformed and timestamps may come back naive (SQLite) or as strings. Enum
columns are the exception - a value outside the known set means the data
has drifted and mapping fails loudly.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from messaging_service.schemas import (
    ConversationResponse,
    ConversationWithMessages,
    MessageDirection,
    MessageResponse,
    MessageStatus,
    MessageType,
    ProviderType,
)

E = TypeVar("E", bound=Enum)


def narrow(value: Any, enum_cls: Type[E]) -> E:
    """
    Narrow a stored string to a member of enum_cls.

    Raises:
        ValueError: if the value is not one of the allowed members
    """
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f'Invalid value "{value}". Expected one of: {allowed}') from None


def to_iso(value: Any) -> str:
    """
    Convert a datetime, ISO string or missing value to an ISO-8601 UTC string.

    Naive datetimes are taken as UTC. Missing or unparsable input yields now.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            value = None

    if not isinstance(value, datetime):
        value = datetime.now(timezone.utc)

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)

    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def safe_json_list(value: Any) -> Optional[list]:
    """Parse a JSON array stored as text. Anything else degrades to None."""
    if isinstance(value, list):
        return value
    if not isinstance(value, str):
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, list) else None


def to_message_response(message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        provider_type=narrow(message.provider_type, ProviderType),
        message_type=narrow(message.message_type, MessageType),
        direction=narrow(message.direction, MessageDirection),
        from_address=message.from_address,
        to_address=message.to_address,
        body=message.body,
        attachments=safe_json_list(message.attachments),
        status=narrow(message.status, MessageStatus),
        timestamp=to_iso(message.timestamp),
        created_at=to_iso(message.created_at),
    )


def to_conversation_response(
    conversation,
    message_count: Optional[int] = None,
    last_message=None,
) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        participants=safe_json_list(conversation.participants) or [],
        created_at=to_iso(conversation.created_at),
        updated_at=to_iso(conversation.updated_at),
        last_message_at=to_iso(conversation.last_message_at),
        message_count=message_count,
        last_message=to_message_response(last_message) if last_message is not None else None,
    )


def to_conversation_with_messages(
    conversation,
    messages: list,
    message_count: Optional[int] = None,
) -> ConversationWithMessages:
    base = to_conversation_response(
        conversation,
        message_count=message_count,
        last_message=messages[-1] if messages else None,
    )
    return ConversationWithMessages(
        **dict(base),
        messages=[to_message_response(m) for m in messages],
    )

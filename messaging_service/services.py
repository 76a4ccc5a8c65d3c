"""
Conversation and message services.

Semantic validation, contact normalization and transaction boundaries live
here; storage.py is plain I/O and mappers.py shapes the results. Every
function takes the request's session explicitly.

Failure semantics:
- AppError subclasses (validation, not found) propagate unchanged.
- Anything else is logged with its cause and re-raised as InternalError.
"""

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Tuple

from sqlalchemy.orm import Session

from messaging_service import storage
from messaging_service.errors import (
    AppError,
    FieldError,
    InternalError,
    InvalidContactFormat,
    NotFoundError,
    ValidationError,
)
from messaging_service.mappers import (
    to_conversation_response,
    to_conversation_with_messages,
    to_message_response,
)
from messaging_service.normalizer import build_participant_key, normalize_contact
from messaging_service.schemas import (
    ConversationResponse,
    ConversationWithMessages,
    MessageDirection,
    MessageResponse,
    MessageStatus,
    MessageType,
    ProviderType,
    SendMessagePayload,
)

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


@contextmanager
def _guard(db: Session, action: str, **context) -> Iterator[None]:
    """Roll back on failure and turn unexpected errors into InternalError."""
    try:
        yield
    except AppError:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}", extra=context, exc_info=True)
        raise InternalError(f"Failed to {action}", cause=e) from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_participants(
    from_address: str,
    to_address: str,
) -> Tuple[Optional[str], Optional[str], list[FieldError]]:
    """
    Normalize both contacts, collecting a field error for each side that fails.

    Both sides are always attempted so a request with two bad contacts
    reports two errors.
    """
    errors: list[FieldError] = []
    normalized = {}

    for field, raw in (("from", from_address), ("to", to_address)):
        try:
            normalized[field] = normalize_contact(raw)
        except InvalidContactFormat:
            errors.append(FieldError(
                field=field,
                message="Invalid phone or email format",
                code="INVALID_CONTACT_FORMAT",
            ))

    normalized_from = normalized.get("from")
    normalized_to = normalized.get("to")

    if normalized_from and normalized_to and normalized_from == normalized_to:
        errors.append(FieldError(
            field="participants",
            message="Message cannot be sent from a contact to itself",
            code="PARTICIPANTS_IDENTICAL",
        ))

    return normalized_from, normalized_to, errors


def _require_conversation(db: Session, conversation_id: str):
    conversation = storage.find_conversation_by_id(db, conversation_id)
    if conversation is None:
        logger.warning(f"Conversation not found: {conversation_id}")
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def _require_message(message, message_id: str):
    if message is None:
        logger.warning(f"Message not found: {message_id}")
        raise NotFoundError(f"Message {message_id} not found")
    return message


# =============================================================================
# Conversations
# =============================================================================

def find_or_create_conversation(db: Session, from_address: str, to_address: str) -> ConversationResponse:
    """
    Resolve the conversation between two contacts, creating it on first contact.

    Raises:
        ValidationError: if either contact is invalid or both are the same person
    """
    normalized_from, normalized_to, errors = _normalize_participants(from_address, to_address)
    if errors:
        logger.warning(f"Conversation validation failed: {[e.code for e in errors]}")
        raise ValidationError(errors)

    participants_key = build_participant_key(normalized_from, normalized_to)

    with _guard(db, "find or create conversation", participants_key=participants_key):
        conversation = storage.find_or_create_conversation(db, participants_key)
        db.commit()
        return to_conversation_response(conversation)


def list_conversations(db: Session, limit: int = 50, offset: int = 0) -> Tuple[list[ConversationResponse], int]:
    """
    List conversations by recent activity with message counts and last message.

    Returns:
        Tuple of (conversations page, total conversations)
    """
    start = time.perf_counter()

    with _guard(db, "list conversations", limit=limit, offset=offset):
        conversations = storage.list_conversations(db, limit=limit, offset=offset)
        total = storage.count_conversations(db)
        ids = [c.id for c in conversations]
        counts = storage.count_messages_by_conversation(db, ids)
        latest = storage.find_latest_messages(db, ids)

        result = [
            to_conversation_response(
                conversation,
                message_count=counts.get(conversation.id, 0),
                last_message=latest.get(conversation.id),
            )
            for conversation in conversations
        ]

    logger.info(f"Conversations listed: {len(result)} of {total} in {_elapsed_ms(start)}ms")
    return result, total


def get_conversation_metadata(db: Session, conversation_id: str) -> ConversationResponse:
    with _guard(db, "fetch conversation metadata", conversation_id=conversation_id):
        conversation = _require_conversation(db, conversation_id)
        return to_conversation_response(
            conversation,
            message_count=storage.count_messages_by_conversation_id(db, conversation_id),
            last_message=storage.find_latest_message(db, conversation_id),
        )


def get_conversation_with_messages(
    db: Session,
    conversation_id: str,
    message_limit: int = 100,
) -> ConversationWithMessages:
    """Conversation with its most recent message_limit messages, oldest first."""
    with _guard(db, "fetch conversation with messages", conversation_id=conversation_id):
        found = storage.find_conversation_with_messages(db, conversation_id, message_limit)
        if found is None:
            logger.warning(f"Conversation not found: {conversation_id}")
            raise NotFoundError(f"Conversation {conversation_id} not found")

        conversation, messages = found
        return to_conversation_with_messages(
            conversation,
            messages,
            message_count=storage.count_messages_by_conversation_id(db, conversation_id),
        )


def delete_conversation(db: Session, conversation_id: str) -> None:
    """Delete a conversation and, by cascade, all of its messages."""
    with _guard(db, "delete conversation", conversation_id=conversation_id):
        if not storage.delete_conversation(db, conversation_id):
            logger.warning(f"Conversation not found for deletion: {conversation_id}")
            raise NotFoundError(f"Conversation {conversation_id} not found")
        db.commit()

    logger.info(f"Conversation deleted: {conversation_id}")


# =============================================================================
# Message ingestion
# =============================================================================

def validate_message(payload: SendMessagePayload) -> Tuple[Optional[str], Optional[str], list[FieldError]]:
    """
    Run every ingestion check and return all failures, never just the first.

    Returns:
        Tuple of (normalized from, normalized to, field errors)
    """
    normalized_from, normalized_to, errors = _normalize_participants(
        payload.from_address, payload.to_address
    )

    if not payload.body.strip() and payload.message_type != MessageType.MMS:
        errors.append(FieldError(
            field="body",
            message="Message body cannot be empty",
            code="EMPTY_BODY",
        ))

    if payload.message_type == MessageType.MMS and not payload.attachments:
        errors.append(FieldError(
            field="attachments",
            message="MMS messages must include at least one attachment",
            code="MMS_REQUIRES_ATTACHMENTS",
        ))

    if payload.provider_type == ProviderType.SMS and payload.message_type == MessageType.EMAIL:
        errors.append(FieldError(
            field="messageType",
            message="Email message type cannot be sent via SMS provider",
            code="PROVIDER_MESSAGE_TYPE_MISMATCH",
        ))

    if payload.provider_type == ProviderType.EMAIL and payload.message_type in (MessageType.SMS, MessageType.MMS):
        errors.append(FieldError(
            field="messageType",
            message="SMS/MMS message type cannot be sent via email provider",
            code="PROVIDER_MESSAGE_TYPE_MISMATCH",
        ))

    return normalized_from, normalized_to, errors


def send_message(db: Session, payload: SendMessagePayload) -> Tuple[MessageResponse, bool]:
    """
    Unified entry point for outbound sends and inbound webhook deliveries.

    Validates, normalizes both participants, resolves the conversation and
    stores the message in one transaction, then refreshes the conversation's
    last_message_at. A repeated (provider_type, provider_message_id) is a
    no-op that returns the stored message.

    Returns:
        Tuple of (message, is_duplicate)

    Raises:
        ValidationError: with every failed check
        InternalError: on any storage failure
    """
    start = time.perf_counter()

    logger.debug(
        f"Processing message: provider={payload.provider_type.value}, "
        f"type={payload.message_type.value}, direction={payload.direction.value}"
    )

    normalized_from, normalized_to, errors = validate_message(payload)
    if errors:
        logger.warning(
            f"Message validation failed: {[e.code for e in errors]}",
            extra={"duration_ms": _elapsed_ms(start)},
        )
        raise ValidationError(errors)

    participants_key = build_participant_key(normalized_from, normalized_to)

    if payload.direction == MessageDirection.OUTBOUND:
        status = MessageStatus.PENDING
    else:
        status = MessageStatus.DELIVERED

    attachments = json.dumps(payload.attachments) if payload.attachments is not None else None

    with _guard(db, "send message", participants_key=participants_key):
        conversation = storage.find_or_create_conversation(db, participants_key)

        message, is_duplicate = storage.create_message(
            db,
            conversation_id=conversation.id,
            provider_type=payload.provider_type.value,
            message_type=payload.message_type.value,
            direction=payload.direction.value,
            from_address=normalized_from,
            to_address=normalized_to,
            body=payload.body,
            status=status.value,
            timestamp=_as_utc(payload.timestamp),
            attachments=attachments,
            provider_message_id=payload.provider_message_id,
        )

        if not is_duplicate:
            storage.touch_conversation(db, conversation)
            db.commit()

        response = to_message_response(message)

    logger.info(
        f"Message {'deduplicated' if is_duplicate else 'persisted'}: {response.id} "
        f"(conversation={response.conversation_id}, status={response.status.value})",
        extra={"duration_ms": _elapsed_ms(start)},
    )
    return response, is_duplicate


# =============================================================================
# Messages
# =============================================================================

def get_message_by_id(db: Session, message_id: str) -> MessageResponse:
    with _guard(db, "fetch message by ID", message_id=message_id):
        message = _require_message(storage.find_message_by_id(db, message_id), message_id)
        return to_message_response(message)


def get_messages_by_conversation(
    db: Session,
    conversation_id: str,
    limit: int = 100,
    offset: int = 0,
) -> list[MessageResponse]:
    """Messages of a conversation ordered by timestamp, then id."""
    with _guard(db, "fetch messages for conversation", conversation_id=conversation_id):
        messages = storage.find_messages_by_conversation(db, conversation_id, limit=limit, offset=offset)
        return [to_message_response(m) for m in messages]


def update_message_status(
    db: Session,
    message_id: str,
    status: MessageStatus,
    error_message: Optional[str] = None,
) -> MessageResponse:
    """Record a status transition reported after ingestion."""
    with _guard(db, "update message status", message_id=message_id):
        message = _require_message(
            storage.update_message_status(db, message_id, status.value, error_message),
            message_id,
        )
        db.commit()
        return to_message_response(message)


def record_delivery_retry(db: Session, message_id: str) -> int:
    """Bump the retry counter of a message and return the new value."""
    with _guard(db, "increment retry count", message_id=message_id):
        message = _require_message(storage.increment_retry_count(db, message_id), message_id)
        db.commit()
        return message.retry_count


def find_duplicate_inbound_message(
    db: Session,
    provider_type: ProviderType,
    provider_message_id: str,
) -> Optional[MessageResponse]:
    """Look up a previously delivered provider message, if any."""
    with _guard(db, "check for duplicate message", provider_message_id=provider_message_id):
        message = storage.find_message_by_provider_id(db, provider_type.value, provider_message_id)
        if message is None:
            logger.debug(f"No duplicate message found: {provider_type.value}/{provider_message_id}")
            return None

        logger.warning(f"Duplicate message detected: {provider_type.value}/{provider_message_id} -> {message.id}")
        return to_message_response(message)


def delete_message(db: Session, message_id: str) -> None:
    """Delete a message and re-derive its conversation's last_message_at."""
    with _guard(db, "delete message", message_id=message_id):
        message = storage.find_message_by_id(db, message_id)
        if message is None or not storage.delete_message(db, message_id):
            logger.warning(f"Message not found for deletion: {message_id}")
            raise NotFoundError(f"Message {message_id} not found")

        conversation = storage.find_conversation_by_id(db, message.conversation_id)
        if conversation is not None:
            storage.touch_conversation(db, conversation)
        db.commit()

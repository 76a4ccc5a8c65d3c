import logging
import time
from typing import Generator, Iterable, Optional, Tuple

from fastapi import Request
from sqlalchemy import create_engine, event, func, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Storage handle: one engine and session factory per process.

    Built once by the application factory and kept on ``app.state.database``.
    Request handlers get their sessions through the ``get_db`` dependency.
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # check_same_thread=False is required for SQLite behind FastAPI's threadpool
            connect_args["check_same_thread"] = False

        self.url = url
        self.engine = create_engine(url, connect_args=connect_args, echo=echo)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        try:
            # Import models to register them with Base.metadata
            from messaging_service import models  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        return self.health()["connected"]

    def health(self) -> dict:
        """Probe connectivity and schema, returning connected flag and round-trip latency."""
        start = time.perf_counter()
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
            tables = inspect(self.engine)
            connected = tables.has_table("conversations") and tables.has_table("messages")
            if not connected:
                logger.error("Database schema not applied: tables missing")
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            connected = False

        return {
            "connected": connected,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = request.app.state.database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Conversation Repository Functions
#
# Pure I/O: these flush but never commit. The calling service owns the
# transaction boundary.
# =============================================================================

def find_conversation_by_participants(db: Session, participants_key: str):
    """Find a conversation by its normalized participants key."""
    from messaging_service.models import Conversation

    conversation = (
        db.query(Conversation)
        .filter(Conversation.participants == participants_key)
        .first()
    )
    logger.debug(f"Find by participants {participants_key}: {'found' if conversation else 'not found'}")
    return conversation


def create_conversation(db: Session, participants_key: str):
    """Insert a conversation for the given participants key."""
    from messaging_service.models import Conversation

    conversation = Conversation(participants=participants_key)
    db.add(conversation)
    db.flush()
    logger.info(f"Created new conversation: {conversation.id}")
    return conversation


def find_or_create_conversation(db: Session, participants_key: str):
    """
    Find or create the conversation for a participants key.

    The participants column is unique, so a concurrent creator that loses
    the race gets an IntegrityError; the transaction is rolled back and the
    winning row is read instead.
    """
    existing = find_conversation_by_participants(db, participants_key)
    if existing is not None:
        logger.debug(f"Using existing conversation: {existing.id}")
        return existing

    try:
        return create_conversation(db, participants_key)
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation created concurrently, re-reading: {participants_key}")
        winner = find_conversation_by_participants(db, participants_key)
        if winner is None:
            raise
        return winner


def find_conversation_by_id(db: Session, conversation_id: str):
    from messaging_service.models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def list_conversations(db: Session, limit: int = 50, offset: int = 0) -> list:
    """
    List conversations ordered by most recent activity.

    Ordering: last_message_at DESC, id DESC (stable across pages).
    """
    from messaging_service.models import Conversation

    logger.debug(f"Querying conversations: limit={limit}, offset={offset}")
    conversations = (
        db.query(Conversation)
        .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(conversations)} conversations")
    return conversations


def count_conversations(db: Session) -> int:
    from messaging_service.models import Conversation

    return db.query(func.count(Conversation.id)).scalar() or 0


def delete_conversation(db: Session, conversation_id: str) -> bool:
    """Delete a conversation; its messages go with it via ON DELETE CASCADE."""
    from messaging_service.models import Conversation

    deleted = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id)
        .delete(synchronize_session=False)
    )
    logger.info(f"Delete conversation {conversation_id}: {'deleted' if deleted else 'not found'}")
    return deleted > 0


def find_conversation_with_messages(db: Session, conversation_id: str, message_limit: int = 100):
    """
    Load a conversation with its most recent messages.

    Returns:
        Tuple of (conversation, messages) with messages in ascending
        chronological order, or None if the conversation does not exist.
    """
    from messaging_service.models import Message

    conversation = find_conversation_by_id(db, conversation_id)
    if conversation is None:
        return None

    recent = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(message_limit)
        .all()
    )
    recent.reverse()
    return conversation, recent


def touch_conversation(db: Session, conversation) -> None:
    """
    Set last_message_at to the newest message timestamp in the conversation,
    or back to created_at once the conversation has no messages left.
    """
    from messaging_service.models import Message

    newest = (
        db.query(func.max(Message.timestamp))
        .filter(Message.conversation_id == conversation.id)
        .scalar()
    )
    conversation.last_message_at = newest if newest is not None else conversation.created_at
    db.flush()


def count_messages_by_conversation(db: Session, conversation_ids: Iterable[str]) -> dict:
    """Message counts keyed by conversation id. Conversations without messages are omitted."""
    from messaging_service.models import Message

    ids = list(conversation_ids)
    if not ids:
        return {}

    rows = (
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(Message.conversation_id.in_(ids))
        .group_by(Message.conversation_id)
        .all()
    )
    return {conversation_id: count for conversation_id, count in rows}


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: str,
    provider_type: str,
    message_type: str,
    direction: str,
    from_address: str,
    to_address: str,
    body: str,
    status: str,
    timestamp,
    attachments: Optional[str] = None,
    provider_message_id: Optional[str] = None,
) -> Tuple[object, bool]:
    """
    Insert a message (idempotent on provider_type + provider_message_id).

    Returns:
        Tuple of (message, is_duplicate)
        - (new message, False): message inserted
        - (stored message, True): the provider already delivered this id; the
          transaction is rolled back and the stored row is returned
    """
    from messaging_service.models import Message

    logger.debug(
        f"Creating message: conversation={conversation_id}, provider={provider_type}, "
        f"direction={direction}, provider_message_id={provider_message_id}"
    )

    message = Message(
        conversation_id=conversation_id,
        provider_type=provider_type,
        message_type=message_type,
        provider_message_id=provider_message_id,
        direction=direction,
        from_address=from_address,
        to_address=to_address,
        body=body,
        attachments=attachments,
        status=status,
        timestamp=timestamp,
        retry_count=0,
        error_message=None,
    )

    try:
        db.add(message)
        db.flush()
    except IntegrityError:
        db.rollback()
        if provider_message_id is None:
            raise
        existing = find_message_by_provider_id(db, provider_type, provider_message_id)
        if existing is None:
            raise
        logger.info(f"Duplicate message detected: {provider_type}/{provider_message_id}")
        return existing, True

    logger.info(f"Message created: {message.id}")
    return message, False


def find_message_by_provider_id(db: Session, provider_type: str, provider_message_id: str):
    from messaging_service.models import Message

    return (
        db.query(Message)
        .filter(
            Message.provider_type == provider_type,
            Message.provider_message_id == provider_message_id,
        )
        .first()
    )


def find_message_by_id(db: Session, message_id: str):
    from messaging_service.models import Message

    logger.debug(f"Looking up message by ID: {message_id}")
    return db.query(Message).filter(Message.id == message_id).first()


def find_messages_by_conversation(
    db: Session,
    conversation_id: str,
    limit: int = 100,
    offset: int = 0,
) -> list:
    """Messages for a conversation ordered by timestamp ASC, id ASC."""
    from messaging_service.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def find_latest_message(db: Session, conversation_id: str):
    from messaging_service.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .first()
    )


def find_latest_messages(db: Session, conversation_ids: Iterable[str]) -> dict:
    """
    Newest message per conversation in one query, keyed by conversation id.

    Ranks messages with ROW_NUMBER() over (timestamp DESC, id DESC) per
    conversation, the same order find_latest_message uses.
    """
    from messaging_service.models import Message

    ids = list(conversation_ids)
    if not ids:
        return {}

    ranked = (
        db.query(
            Message.id.label("id"),
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=(Message.timestamp.desc(), Message.id.desc()),
            )
            .label("row_position"),
        )
        .filter(Message.conversation_id.in_(ids))
        .subquery()
    )

    latest = (
        db.query(Message)
        .join(ranked, Message.id == ranked.c.id)
        .filter(ranked.c.row_position == 1)
        .all()
    )
    return {message.conversation_id: message for message in latest}


def update_message_status(
    db: Session,
    message_id: str,
    status: str,
    error_message: Optional[str] = None,
):
    """Set status and error message. Returns None if the message does not exist."""
    message = find_message_by_id(db, message_id)
    if message is None:
        return None

    message.status = status
    message.error_message = error_message
    db.flush()
    logger.info(f"Message status updated: {message_id} -> {status}")
    return message


def increment_retry_count(db: Session, message_id: str):
    """Atomically add one to retry_count. Returns None if the message does not exist."""
    from messaging_service.models import Message

    updated = (
        db.query(Message)
        .filter(Message.id == message_id)
        .update({Message.retry_count: Message.retry_count + 1}, synchronize_session=False)
    )
    if not updated:
        return None

    return (
        db.query(Message)
        .populate_existing()
        .filter(Message.id == message_id)
        .first()
    )


def delete_message(db: Session, message_id: str) -> bool:
    from messaging_service.models import Message

    deleted = (
        db.query(Message)
        .filter(Message.id == message_id)
        .delete(synchronize_session=False)
    )
    logger.info(f"Delete message {message_id}: {'deleted' if deleted else 'not found'}")
    return deleted > 0


def count_messages_by_conversation_id(db: Session, conversation_id: str) -> int:
    from messaging_service.models import Message

    return (
        db.query(func.count(Message.id))
        .filter(Message.conversation_id == conversation_id)
        .scalar()
        or 0
    )

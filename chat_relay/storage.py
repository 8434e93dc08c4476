"""
Message stores.

A MessageStore owns every chat message: it truncates, timestamps and numbers
them on insert, serves the recent-history snapshot, and deletes expired
messages for the retention sweeper. Two backings share the interface:

- SqlMessageStore: SQLAlchemy over any database URL (in-memory SQLite by default)
- InMemoryMessageStore: a plain list, nothing survives a restart

Every operation takes the store's lock, so inserts from the relay and
deletes from the sweeper are serialized even when called from worker threads.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from chat_relay.config import Settings
from chat_relay.errors import PersistenceError
from chat_relay.schemas import ChatMessage
from chat_relay.utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

Clock = Callable[[], datetime]


# =============================================================================
# Engine Setup
# =============================================================================

def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite needs check_same_thread=False because store calls arrive from the
    threadpool. An in-memory SQLite database lives inside a single connection,
    so it is pinned with StaticPool.
    """
    logger.debug(f"Creating engine for URL: {database_url}")
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)

    in_memory = database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url
    if in_memory:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        echo=False,
    )


def init_db(engine: Engine) -> None:
    """
    Create all tables and indexes.
    Called when a SqlMessageStore is built.
    """
    try:
        # Import models to register them with Base.metadata
        from chat_relay.models import Message  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise PersistenceError("Failed to initialize database") from e


# =============================================================================
# Store Interface
# =============================================================================

class MessageStore(ABC):
    """
    Interface shared by all message store backings.

    Args:
        clock: Returns the current time; injected so tests can age messages
        max_username_length: Usernames are truncated to this many characters
        max_content_length: Content is truncated to this many characters
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        max_username_length: int = 20,
        max_content_length: int = 500,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        self.max_username_length = max_username_length
        self.max_content_length = max_content_length

    def _normalize(self, username: str, content: str):
        return username[:self.max_username_length], content[:self.max_content_length]

    def _cutoff_for_window(self, window_hours: float) -> str:
        return format_timestamp(self._clock() - timedelta(hours=window_hours))

    @abstractmethod
    def insert(self, username: str, content: str, source_address: str) -> ChatMessage:
        """
        Store a new message.

        Truncates username and content, stamps the current time and assigns
        the next id.

        Raises:
            PersistenceError: the write failed; nothing was stored
        """

    @abstractmethod
    def recent(self, window_hours: float, limit: int = 100) -> List[ChatMessage]:
        """
        Messages from the last window_hours, oldest first.

        At most `limit` messages are returned: the most recent ones.

        Raises:
            PersistenceError: the read failed
        """

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        """
        Delete every message stamped strictly before cutoff.

        Returns:
            Number of messages deleted

        Raises:
            PersistenceError: the delete failed
        """

    @abstractmethod
    def count(self) -> int:
        """Total number of stored messages."""

    @abstractmethod
    def ping(self) -> bool:
        """True if the backing store is reachable and ready."""


# =============================================================================
# SQLAlchemy Backing
# =============================================================================

class SqlMessageStore(MessageStore):
    """Message store on top of a SQLAlchemy engine."""

    def __init__(self, engine: Engine, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        init_db(engine)

    @staticmethod
    def _to_chat_message(record) -> ChatMessage:
        return ChatMessage(
            id=record.id,
            username=record.username,
            content=record.content,
            timestamp=record.timestamp,
            source_address=record.ip_address,
        )

    def insert(self, username: str, content: str, source_address: str) -> ChatMessage:
        from chat_relay.models import Message

        username, content = self._normalize(username, content)

        with self._lock:
            db = self._session_factory()
            try:
                record = Message(
                    username=username,
                    content=content,
                    timestamp=format_timestamp(self._clock()),
                    ip_address=source_address,
                )
                db.add(record)
                db.commit()
                db.refresh(record)
                message = self._to_chat_message(record)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to insert message from {username!r}: {e}")
                raise PersistenceError("Failed to store message") from e
            finally:
                db.close()

        logger.debug(f"Message stored: id={message.id}, timestamp={message.timestamp}")
        return message

    def recent(self, window_hours: float, limit: int = 100) -> List[ChatMessage]:
        from chat_relay.models import Message

        cutoff = self._cutoff_for_window(window_hours)

        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(Message)
                    .filter(Message.timestamp >= cutoff)
                    .order_by(Message.id.desc())
                    .limit(limit)
                    .all()
                )
                messages = [self._to_chat_message(row) for row in reversed(rows)]
            except SQLAlchemyError as e:
                logger.error(f"Failed to load recent messages: {e}")
                raise PersistenceError("Failed to load recent messages") from e
            finally:
                db.close()

        logger.debug(f"Loaded {len(messages)} recent messages since {cutoff}")
        return messages

    def delete_older_than(self, cutoff: datetime) -> int:
        from chat_relay.models import Message

        cutoff_ts = format_timestamp(cutoff)

        with self._lock:
            db = self._session_factory()
            try:
                deleted = (
                    db.query(Message)
                    .filter(Message.timestamp < cutoff_ts)
                    .delete(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to delete messages before {cutoff_ts}: {e}")
                raise PersistenceError("Failed to delete expired messages") from e
            finally:
                db.close()

        return deleted

    def count(self) -> int:
        from chat_relay.models import Message

        with self._lock:
            db = self._session_factory()
            try:
                return db.query(Message).count()
            except SQLAlchemyError as e:
                raise PersistenceError("Failed to count messages") from e
            finally:
                db.close()

    def ping(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and the messages table exists, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self._lock, self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                if not inspect(conn).has_table("messages"):
                    logger.error("Database schema not applied: 'messages' table not found")
                    return False
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False


# =============================================================================
# In-Memory Backing
# =============================================================================

class InMemoryMessageStore(MessageStore):
    """Message store kept in a Python list, in insertion order."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._messages: List[ChatMessage] = []
        self._ids = itertools.count(1)

    def insert(self, username: str, content: str, source_address: str) -> ChatMessage:
        username, content = self._normalize(username, content)
        with self._lock:
            message = ChatMessage(
                id=next(self._ids),
                username=username,
                content=content,
                timestamp=format_timestamp(self._clock()),
                source_address=source_address,
            )
            self._messages.append(message)
        return message

    def recent(self, window_hours: float, limit: int = 100) -> List[ChatMessage]:
        cutoff = self._cutoff_for_window(window_hours)
        with self._lock:
            matching = [m for m in self._messages if m.timestamp >= cutoff]
        return matching[-limit:] if limit > 0 else []

    def delete_older_than(self, cutoff: datetime) -> int:
        cutoff_ts = format_timestamp(cutoff)
        with self._lock:
            kept = [m for m in self._messages if m.timestamp >= cutoff_ts]
            deleted = len(self._messages) - len(kept)
            self._messages = kept
        return deleted

    def count(self) -> int:
        with self._lock:
            return len(self._messages)

    def ping(self) -> bool:
        return True


def create_store(settings: Settings, clock: Clock = utc_now) -> MessageStore:
    """
    Build the message store selected by STORE_BACKEND.

    Raises:
        ValueError: unknown backend name
    """
    limits = dict(
        clock=clock,
        max_username_length=settings.MAX_USERNAME_LENGTH,
        max_content_length=settings.MAX_CONTENT_LENGTH,
    )
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        logger.info("Using in-memory message store")
        return InMemoryMessageStore(**limits)
    if backend == "sql":
        logger.info("Using SQL message store")
        return SqlMessageStore(build_engine(settings.DATABASE_URL), **limits)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND!r}")

"""
Relay session manager.

Sits between the transport and the message store. It is the only component
that writes messages and the only one that broadcasts them:

- on connect, sends the new session the recent-history snapshot
- on "chat message", validates, stores, then fans the stored message out to
  every session (sender included)

Inbound messages are handled one at a time, so ids are assigned in the order
messages are accepted and every session receives broadcasts in id order.
"""

import asyncio
import logging
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from chat_relay.errors import PersistenceError, ValidationError
from chat_relay.metrics import record_chat_outcome, record_history_load
from chat_relay.schemas import (
    EVENT_CHAT_HISTORY,
    EVENT_CHAT_MESSAGE,
    EVENT_ERROR,
    ChatMessage,
    Envelope,
    InboundChatMessage,
)
from chat_relay.storage import MessageStore
from chat_relay.transport import ClientSession, SessionRegistry

logger = logging.getLogger(__name__)

ERROR_EMPTY_FIELDS = "Username and message content cannot be empty"
ERROR_CONTENT_TOO_LONG = "Message length cannot exceed {limit} characters"
ERROR_SEND_FAILED = "Failed to send message"
ERROR_HISTORY_FAILED = "Failed to load chat history"
ERROR_MALFORMED_EVENT = "Malformed event"


class RelayManager:
    """
    Validates, stores and fans out chat messages.

    Args:
        store: Where messages are persisted
        registry: Live sessions; queried and delivered through, never mutated
        retention_hours: Age limit of the history snapshot
        history_limit: Maximum messages in the history snapshot
        max_content_length: Longer content is rejected outright
    """

    def __init__(
        self,
        store: MessageStore,
        registry: SessionRegistry,
        retention_hours: float = 48,
        history_limit: int = 100,
        max_content_length: int = 500,
    ):
        self.store = store
        self.registry = registry
        self.retention_hours = retention_hours
        self.history_limit = history_limit
        self.max_content_length = max_content_length
        self._inbound_lock = asyncio.Lock()

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    async def on_connect(self, session: ClientSession) -> List[ChatMessage]:
        """
        Send the recent-history snapshot to a newly connected session only.

        Runs under the inbound lock, and the session only starts receiving
        broadcasts once the snapshot is queued: the snapshot is always its
        first event and never overlaps a broadcast.

        If the store cannot be read the session gets a generic error instead
        of a snapshot and the connection stays up.
        """
        async with self._inbound_lock:
            try:
                messages = await run_in_threadpool(
                    self.store.recent, self.retention_hours, self.history_limit
                )
            except PersistenceError as e:
                logger.error(f"Could not load history for session {session.id}: {e}")
                record_history_load("persistence_error")
                self.registry.send(session, EVENT_ERROR, ERROR_HISTORY_FAILED)
                session.mark_live()
                return []

            snapshot = [m.to_history_entry().model_dump() for m in messages]
            self.registry.send(session, EVENT_CHAT_HISTORY, snapshot)
            session.mark_live()

        record_history_load("sent")
        logger.info(f"Sent history snapshot of {len(snapshot)} messages to session {session.id}")
        return messages

    # =========================================================================
    # Inbound Events
    # =========================================================================

    async def handle_frame(self, session: ClientSession, raw: str) -> Optional[ChatMessage]:
        """
        Dispatch one raw text frame received from a session.

        Returns:
            The stored message if the frame was an accepted chat message
        """
        try:
            envelope = Envelope.model_validate_json(raw)
        except PydanticValidationError:
            logger.info(f"Malformed frame from session {session.id}")
            self.registry.send(session, EVENT_ERROR, ERROR_MALFORMED_EVENT)
            return None

        if envelope.event == EVENT_CHAT_MESSAGE:
            return await self.on_chat_message(session, envelope.data)

        logger.debug(f"Ignoring unknown event {envelope.event!r} from session {session.id}")
        return None

    def validate(self, data: Any) -> InboundChatMessage:
        """
        Check an inbound chat message payload.

        Username length is not checked here; the store truncates it.

        Raises:
            ValidationError: empty/missing fields, or content too long
        """
        try:
            inbound = InboundChatMessage.model_validate(data)
        except PydanticValidationError:
            raise ValidationError(ERROR_EMPTY_FIELDS)

        if not inbound.username or not inbound.username.strip():
            raise ValidationError(ERROR_EMPTY_FIELDS)
        if not inbound.content or not inbound.content.strip():
            raise ValidationError(ERROR_EMPTY_FIELDS)
        if len(inbound.content) > self.max_content_length:
            raise ValidationError(ERROR_CONTENT_TOO_LONG.format(limit=self.max_content_length))

        return inbound

    async def on_chat_message(self, session: ClientSession, data: Any) -> Optional[ChatMessage]:
        """
        Validate, store and broadcast one chat message.

        Errors go to the originating session only and nothing is broadcast.

        Returns:
            The stored message, or None if it was rejected or not stored
        """
        try:
            inbound = self.validate(data)
        except ValidationError as e:
            logger.info(f"Rejected message from session {session.id}: {e}")
            record_chat_outcome("validation_error")
            self.registry.send(session, EVENT_ERROR, str(e))
            return None

        async with self._inbound_lock:
            try:
                message = await run_in_threadpool(
                    self.store.insert, inbound.username, inbound.content, session.source_address
                )
            except PersistenceError as e:
                logger.error(f"Failed to save message from session {session.id}: {e}")
                record_chat_outcome("persistence_error")
                self.registry.send(session, EVENT_ERROR, ERROR_SEND_FAILED)
                return None

            # Queued while still holding the lock so broadcasts leave in id order
            self.registry.broadcast(EVENT_CHAT_MESSAGE, message.to_broadcast().model_dump())

        record_chat_outcome("accepted")
        logger.info(f"Message saved: id={message.id}, username={message.username!r}")
        return message

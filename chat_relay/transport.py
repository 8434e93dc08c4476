"""
WebSocket transport adapter.

Owns the registry of live sessions and every frame that goes out to a
client. Each ClientSession has a bounded outbound queue drained by its own
writer task, so queueing an event never waits on the network: a slow client
only fills its own queue, and a client whose queue overflows or whose socket
fails is dropped from the registry.

Frames are JSON envelopes: {"event": <name>, "data": <payload>}.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from chat_relay.logging_utils import log_context
from chat_relay.metrics import set_connected_sessions
from chat_relay.utils import client_address

logger = logging.getLogger(__name__)

# Close code sent to clients that cannot keep up
SLOW_CONSUMER_CLOSE_CODE = 1008

# How long close() lets the writer finish before cancelling it
CLOSE_TIMEOUT_SECONDS = 5.0

_CLOSE = object()


class ClientSession:
    """
    One live client connection.

    Args:
        websocket: Anything with async send_json() and close() (a Starlette WebSocket)
        source_address: Originating address captured at connect time
        queue_size: Bound of the outbound queue
    """

    def __init__(self, websocket, source_address: str, queue_size: int = 256):
        self.id = uuid.uuid4().hex
        self.source_address = source_address
        self.closed = False
        self._websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._overflowed = False
        # Held back from broadcasts until the history snapshot is queued
        self.live = False

    def __repr__(self) -> str:
        return f"ClientSession(id={self.id!r}, source_address={self.source_address!r})"

    def mark_live(self) -> None:
        """Let broadcasts reach this session from now on."""
        self.live = True

    def start(self) -> None:
        """Start the writer task. Must be called from the event loop."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._pump(), name=f"session-writer-{self.id}")

    def enqueue(self, event: str, data: Any) -> bool:
        """
        Queue one event for delivery without waiting.

        Returns:
            False if the session is closed or has just overflowed
        """
        if self.closed:
            return False
        try:
            self._queue.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for session {self.id}, closing it")
            self.closed = True
            self._overflowed = True
            self._discard_pending()
            self._queue.put_nowait(_CLOSE)
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued event has been sent or discarded."""
        await self._queue.join()

    async def close(self) -> None:
        """
        Stop the writer once already queued events are out.

        A writer stuck on a send for longer than CLOSE_TIMEOUT_SECONDS is
        cancelled.
        """
        if not self.closed:
            self.closed = True
            try:
                self._queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                if self._writer is not None:
                    self._writer.cancel()
        if self._writer is None:
            return

        done, _ = await asyncio.wait({self._writer}, timeout=CLOSE_TIMEOUT_SECONDS)
        if not done:
            logger.warning(f"Writer for session {self.id} did not stop, cancelling")
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def _pump(self) -> None:
        with log_context(session_id=self.id):
            while True:
                frame = await self._queue.get()
                try:
                    if frame is _CLOSE:
                        break
                    await self._websocket.send_json(frame)
                except Exception as e:
                    logger.info(f"Send failed, closing session: {e}")
                    self.closed = True
                    self._discard_pending()
                    return
                finally:
                    self._queue.task_done()

            if self._overflowed:
                try:
                    await self._websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
                except Exception as e:
                    logger.debug(f"Close after overflow failed: {e}")

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()


class SessionRegistry:
    """
    Registry of live sessions and the fan-out over them.

    The WebSocket endpoint opens and closes sessions; everybody else only
    reads the registry and asks it to deliver events.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._sessions: Dict[str, ClientSession] = {}

    def open(self, websocket, live: bool = False) -> ClientSession:
        """
        Register an accepted WebSocket and start its writer.

        New sessions receive broadcasts only once marked live, which the
        relay does right after queueing their history snapshot. Pass
        live=True for sessions that get no snapshot.

        The originating address prefers the first X-Forwarded-For hop over the
        raw peer address.
        """
        peer = websocket.client.host if websocket.client else None
        address = client_address(websocket.headers, peer)
        session = ClientSession(websocket, address, queue_size=self.queue_size)
        if live:
            session.mark_live()
        session.start()
        self._sessions[session.id] = session
        set_connected_sessions(len(self._sessions))
        logger.info(f"Session connected: {session.id} from {address}")
        return session

    async def close(self, session: ClientSession) -> None:
        """Unregister a session and stop its writer. Safe to call twice."""
        self._forget(session, "disconnected")
        await session.close()

    async def close_all(self) -> None:
        for session in self.sessions():
            await self.close(session)

    def count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[ClientSession]:
        """Snapshot of the live sessions."""
        return list(self._sessions.values())

    def send(self, session: ClientSession, event: str, data: Any) -> bool:
        """Deliver one event to one session."""
        delivered = session.enqueue(event, data)
        if not delivered:
            self._forget(session, "evicted")
        return delivered

    def broadcast(self, event: str, data: Any) -> int:
        """
        Deliver one event to every live session, fire-and-forget.

        Sessions still waiting for their history snapshot are skipped; the
        snapshot will already contain anything broadcast before it.

        Returns:
            Number of sessions the event was queued for
        """
        queued = 0
        for session in self.sessions():
            if not session.live:
                continue
            if self.send(session, event, data):
                queued += 1
        logger.debug(f"Broadcast {event!r} to {queued} sessions")
        return queued

    def _forget(self, session: ClientSession, reason: str) -> None:
        if self._sessions.pop(session.id, None) is not None:
            set_connected_sessions(len(self._sessions))
            logger.info(f"Session {reason}: {session.id}")

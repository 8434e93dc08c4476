"""
Pydantic schemas for the chat relay.

This module contains:
- The stored message model handed out by message stores
- Wire models for WebSocket events (inbound and outbound)
- Response models for the HTTP endpoints
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr


# =============================================================================
# Wire Event Names
# =============================================================================

EVENT_CHAT_HISTORY = "chat history"
EVENT_CHAT_MESSAGE = "chat message"
EVENT_ERROR = "error"


# =============================================================================
# Stored Message
# =============================================================================

class ChatMessage(BaseModel):
    """
    A message as persisted by a message store.

    Immutable once created. source_address is kept for auditing and is never
    part of any outbound event.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1, description="Store-assigned, strictly increasing")
    username: str = Field(..., description="Display name, already truncated")
    content: str = Field(..., description="Message body, already truncated")
    timestamp: str = Field(..., description="Server time, ISO-8601 UTC (Z suffix)")
    source_address: Optional[str] = Field(None, description="Originating address")

    def to_broadcast(self) -> "OutboundChatMessage":
        return OutboundChatMessage(
            id=self.id,
            username=self.username,
            content=self.content,
            timestamp=self.timestamp,
        )

    def to_history_entry(self) -> "HistoryEntry":
        return HistoryEntry(
            username=self.username,
            content=self.content,
            timestamp=self.timestamp,
        )


# =============================================================================
# WebSocket Wire Models
# =============================================================================

class Envelope(BaseModel):
    """
    One WebSocket frame in either direction.

    Example:
        {"event": "chat message", "data": {"username": "Alice", "content": "hi"}}
    """
    event: str = Field(..., min_length=1, description="Event name")
    data: Any = Field(None, description="Event payload")


class InboundChatMessage(BaseModel):
    """
    Payload of a client -> server "chat message" event.

    Both fields are optional at the schema level: emptiness and length are
    checked by the relay so it can answer with the right error string.
    """
    model_config = ConfigDict(extra="ignore")

    username: Optional[StrictStr] = None
    content: Optional[StrictStr] = None


class OutboundChatMessage(BaseModel):
    """Payload of a server -> all "chat message" event."""
    id: int
    username: str
    content: str
    timestamp: str


class HistoryEntry(BaseModel):
    """One entry of the "chat history" snapshot."""
    username: str
    content: str
    timestamp: str


# =============================================================================
# HTTP Response Models
# =============================================================================

class OnlineUsersResponse(BaseModel):
    """Response model for GET /api/online-users."""
    count: int = Field(..., ge=0, description="Currently connected sessions")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")

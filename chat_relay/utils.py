"""
Utility functions for the chat relay.
"""

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    """Current server time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """
    Format a datetime as an ISO-8601 UTC string with Z suffix.

    Second precision, fixed width, so strings sort the same way the
    datetimes do.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def client_address(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    """
    Resolve the originating address of a connection.

    Args:
        headers: Handshake headers (case-insensitive mapping)
        peer_host: Host of the raw socket peer, if known

    Returns:
        First X-Forwarded-For hop if the header is present, otherwise the
        peer host, otherwise "unknown"
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            logger.debug(f"Using forwarded address: {first_hop}")
            return first_hop
    return peer_host or "unknown"

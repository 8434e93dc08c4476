from chat_relay.transport import SessionRegistry


class PresenceCounter:
    """Reports how many sessions are connected right now."""

    def __init__(self, registry: SessionRegistry):
        self._registry = registry

    def count(self) -> int:
        return self._registry.count()

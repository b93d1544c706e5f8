from __future__ import annotations

import uuid

from quillpress.logging import get_logger
from quillpress.service.errors import InvalidOAuthState
from quillpress.storage.interfaces import KeyValueStore

logger = get_logger(__name__)

DEFAULT_STATE_TTL_SECONDS = 600
_STATE_MARKER = "valid"


class OAuthHandshakeState:
    """One-time state values binding an OAuth redirect to its callback."""

    def __init__(
        self, kv: KeyValueStore, *, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(state: str) -> str:
        return f"oauth_state_{state}"

    def issue(self) -> str:
        state = uuid.uuid4().hex
        self.kv.put(self._key(state), _STATE_MARKER, ttl_seconds=self.ttl_seconds)
        return state

    def consume(self, state: str) -> bool:
        """Delete a live state and report whether it existed."""
        if not state:
            return False
        return self.kv.pop(self._key(state)) == _STATE_MARKER

    def require(self, state: str) -> None:
        if not self.consume(state):
            logger.warning("oauth_state_rejected")
            raise InvalidOAuthState()

"""Narrow capabilities the auth core needs from its collaborators."""

from __future__ import annotations

import threading
import time
from typing import List, Optional, Protocol

from quillpress.storage.models import GitHubIdentity, User


class Clock(Protocol):
    def now(self) -> float:
        """Current time as epoch seconds."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to; used by tests and offline tooling."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``."""
        ...

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, setting its TTL when the key is first created."""
        ...


class UserDirectory(Protocol):
    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_github_id(self, github_id: int) -> Optional[User]: ...

    def upsert_github_user(self, identity: GitHubIdentity, *, role: str) -> User:
        """Create the user with ``role`` or refresh an existing user's profile.

        Existing users keep their stored role.
        """
        ...

    def list_users(
        self, *, limit: int = 50, offset: int = 0, role: Optional[str] = None
    ) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

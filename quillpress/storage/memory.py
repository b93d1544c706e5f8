from __future__ import annotations

import math
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from quillpress.logging import get_logger
from quillpress.storage.interfaces import Clock, SystemClock
from quillpress.storage.models import GitHubIdentity, User

logger = get_logger(__name__)


class MemoryUserDirectory:
    """In-process user directory for tests and single-node development."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._data_lock = threading.RLock()

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == needle:
                    return replace(user)
        return None

    def get_user_by_github_id(self, github_id: int) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.github_id == github_id:
                    return replace(user)
        return None

    def upsert_github_user(self, identity: GitHubIdentity, *, role: str) -> User:
        now = datetime.utcnow()
        with self._data_lock:
            existing = next(
                (u for u in self.users.values() if u.github_id == identity.github_id),
                None,
            )
            if existing:
                existing.username = identity.username
                existing.email = identity.email
                existing.name = identity.name
                existing.avatar_url = identity.avatar_url
                existing.updated_at = now
                existing.last_login_at = now
                return replace(existing)
            user = User(
                id=str(uuid.uuid4()),
                email=identity.email,
                username=identity.username,
                github_id=identity.github_id,
                name=identity.name,
                avatar_url=identity.avatar_url,
                role=role,
                created_at=now,
                updated_at=now,
                last_login_at=now,
            )
            self.users[user.id] = user
            logger.info("user_created", user_id=user.id, role=role)
            return replace(user)

    def add_user(self, user: User) -> User:
        """Insert a fully formed user record."""
        with self._data_lock:
            self.users[user.id] = replace(user)
        return user

    def list_users(
        self, *, limit: int = 50, offset: int = 0, role: Optional[str] = None
    ) -> List[User]:
        with self._data_lock:
            users = [u for u in self.users.values() if role is None or u.role == role]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return [replace(u) for u in users[offset : offset + limit]]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = datetime.utcnow()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = datetime.utcnow()
            return replace(user)


class MemoryKeyValueStore:
    """Key/value store with per-key expiry, used when Redis is unavailable."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _expires_at(self, ttl_seconds: Optional[int]) -> float:
        if ttl_seconds is None:
            return math.inf
        return self.clock.now() + ttl_seconds

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock.now():
            self._entries.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expires_at(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._entries.pop(key, None)
            return entry[0]

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._entries[key] = ("1", self._expires_at(ttl_seconds))
                return 1
            count = int(entry[0]) + 1
            self._entries[key] = (str(count), entry[1])
            return count

    def purge_expired(self) -> int:
        now = self.clock.now()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for key in expired:
                self._entries.pop(key, None)
        return len(expired)

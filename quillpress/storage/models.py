from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

ROLES = ("user", "collaborator", "admin")


@dataclass
class User:
    id: str
    email: str
    username: str = ""
    github_id: Optional[int] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class GitHubIdentity:
    """Profile fields returned by the identity provider after a code exchange."""

    github_id: int
    username: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None

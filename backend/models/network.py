"""Network peer data models."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Credential:
    """OAuth credential bound to one peer's proxy."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime


@dataclass
class Peer:
    """A network participant whose AI proxy can be contacted."""
    peer_id: str
    name: Optional[str]
    credential: Credential
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name or "Unknown user"

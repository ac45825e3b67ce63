from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


class IdentityProvider(Protocol):
    def current_user_id(self) -> Optional[str]: ...


@dataclass(frozen=True)
class StaticIdentity:
    """Identity known up front, e.g. taken from a request header."""

    user_id: Optional[str] = None

    def current_user_id(self) -> Optional[str]:
        if self.user_id is None:
            return None
        cleaned = self.user_id.strip()
        return cleaned or None


ANONYMOUS = StaticIdentity()

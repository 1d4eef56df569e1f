"""Client-side session state and its non-sensitive persistence."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from backend.app.auth.schemas import IdentityPublic

logger = logging.getLogger("client.state")


class SessionStatus(str, enum.Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class SessionState:
    user: Optional[IdentityPublic] = None
    is_authenticated: bool = False
    is_loading: bool = True

    @property
    def status(self) -> SessionStatus:
        if self.is_loading:
            return SessionStatus.LOADING
        if self.is_authenticated:
            return SessionStatus.AUTHENTICATED
        return SessionStatus.UNAUTHENTICATED

    def to_persisted(self) -> Dict[str, Any]:
        # Only the identity and the flag are kept; tokens live in the cookie jar.
        return {
            "user": self.user.model_dump() if self.user else None,
            "isAuthenticated": self.is_authenticated,
        }

    @classmethod
    def from_persisted(cls, data: Dict[str, Any]) -> "SessionState":
        raw_user = data.get("user")
        user = IdentityPublic.model_validate(raw_user) if raw_user else None
        return cls(user=user, is_authenticated=bool(data.get("isAuthenticated")) and user is not None, is_loading=True)


class SessionStateStore:
    def load(self) -> Optional[SessionState]:
        raise NotImplementedError

    def save(self, state: SessionState) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemorySessionStateStore(SessionStateStore):
    def __init__(self) -> None:
        self._data: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[SessionState]:
        if self._data is None:
            return None
        return SessionState.from_persisted(self._data)

    def save(self, state: SessionState) -> None:
        self._data = state.to_persisted()

    def clear(self) -> None:
        self._data = None


class FileSessionStateStore(SessionStateStore):
    """Persists the session snapshot as JSON readable only by the owner."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or Path.home() / ".bookkeeping" / "session.json"

    def load(self) -> Optional[SessionState]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            return SessionState.from_persisted(data)
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, exc)
            return None

    def save(self, state: SessionState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as handle:
                json.dump(state.to_persisted(), handle, indent=2)
            self.path.chmod(0o600)
        except OSError as exc:
            logger.error("Failed to persist session state to %s: %s", self.path, exc)

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to clear session state at %s: %s", self.path, exc)

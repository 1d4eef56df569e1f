from backend.app.client.session import (
    LoginRejectedError,
    SessionError,
    SessionExpiredError,
    SessionOrchestrator,
    build_client,
)
from backend.app.client.state import (
    FileSessionStateStore,
    MemorySessionStateStore,
    SessionState,
    SessionStateStore,
    SessionStatus,
)

__all__ = [
    "FileSessionStateStore",
    "LoginRejectedError",
    "MemorySessionStateStore",
    "SessionError",
    "SessionExpiredError",
    "SessionOrchestrator",
    "SessionState",
    "SessionStateStore",
    "SessionStatus",
    "build_client",
]

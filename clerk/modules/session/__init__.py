"""Per-connection authentication state and chat-driven flows."""

from .manager import (
    CANCEL_WORD,
    IdentityResolver,
    PendingFlow,
    SessionManager,
    SessionReply,
    SessionState,
)

__all__ = [
    "CANCEL_WORD",
    "IdentityResolver",
    "PendingFlow",
    "SessionManager",
    "SessionReply",
    "SessionState",
]

"""Friend request and friendship state machine."""

from .service import FriendOutcome, FriendResult, FriendView, RelationshipManager

__all__ = ["FriendOutcome", "FriendResult", "FriendView", "RelationshipManager"]

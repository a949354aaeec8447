"""
Client Module - Optimistic board projection for UI sessions.

The store applies a move locally first, then reconciles with the
server's answer and with broadcasts from other sessions.
"""

from .board_store import (
    ClientBoardStore,
    MoveRejected,
    MoveState,
    PendingMove,
)
from .transport import ServiceTransport

__all__ = [
    "ClientBoardStore",
    "MoveRejected",
    "MoveState",
    "PendingMove",
    "ServiceTransport",
]

"""
API Module - Board client interface.

Exposes the engine via REST and WebSocket.
A board client:
1. Loads the full board
2. Subscribes to the board's events
3. Moves cards, adopting the committed position from the response
4. Reloads the board whenever events were missed

All state is account-scoped; the account comes from the X-Account-Id header.
"""

from .models import (
    # Requests
    MoveRequest,
    DeactivateStageRequest,
    # Responses
    MoveResponse,
    DeactivateStageResponse,
    BoardResponse,
    StageListResponse,
    ErrorResponse,
    # Shared
    CardInfo,
    StageInfo,
)
from .service import BoardService, BoardAccessDenied, allow_all
from .app import create_app

__all__ = [
    # Requests
    "MoveRequest",
    "DeactivateStageRequest",
    # Responses
    "MoveResponse",
    "DeactivateStageResponse",
    "BoardResponse",
    "StageListResponse",
    "ErrorResponse",
    # Shared
    "CardInfo",
    "StageInfo",
    # Service
    "BoardService",
    "BoardAccessDenied",
    "allow_all",
    "create_app",
]

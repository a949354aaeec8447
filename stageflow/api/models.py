"""
API Models - Request and response shapes for the board service.

These models define the contract between clients and the engine.
All models are plain dataclasses, serializable to JSON.

Design principles:
- Moves return the committed card, so clients need no second read
- Errors carry a stable code and never internal detail
- Versioned (API version in responses)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..engine_core.state import Card, Stage


class APIVersion(Enum):
    V1 = "v1"


# =============================================================================
# Shared Models
# =============================================================================

@dataclass
class CardInfo:
    """Card information for display."""
    card_id: str
    stage_key: str
    position: float
    unread_count: int = 0
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_card(cls, card: Card) -> CardInfo:
        return cls(
            card_id=card.card_id,
            stage_key=card.stage_key,
            position=card.position,
            unread_count=card.unread_count,
            attributes=dict(card.attributes),
        )


@dataclass
class StageInfo:
    """Stage (column) information for display."""
    stage_id: str
    key: str
    name: str
    position: int
    active: bool = True
    color: str | None = None
    icon: str | None = None

    @classmethod
    def from_stage(cls, stage: Stage) -> StageInfo:
        return cls(
            stage_id=stage.stage_id,
            key=stage.key,
            name=stage.name,
            position=stage.position,
            active=stage.active,
            color=stage.color,
            icon=stage.icon,
        )


# =============================================================================
# Request Models
# =============================================================================

@dataclass
class MoveRequest:
    """
    Request to move a card to a stage.

    POST /api/v1/boards/{board_key}/move

    position_params holds one of:
    - {"absolute": 1234.5}
    - {"after_id": "3", "before_id": "4"} (either or both)
    - nothing (append)
    """
    account_id: str
    board_key: str
    card_id: str
    stage_key: str
    position_params: dict[str, Any] | None = None


@dataclass
class DeactivateStageRequest:
    """
    Request to deactivate a stage.

    DELETE /api/v1/stages/{stage_id}
    """
    account_id: str
    stage_id: str


# =============================================================================
# Response Models
# =============================================================================

@dataclass
class ErrorResponse:
    """
    Error response.

    Returned for any 4xx or 5xx status.
    """
    error: str
    error_code: str
    details: dict[str, Any] | None = None
    api_version: str = APIVersion.V1.value


@dataclass
class MoveResponse:
    """Response after a committed move."""
    card_id: str
    committed_stage_key: str
    committed_position: float
    card: CardInfo
    status: str = "success"
    message: str = "Card moved successfully"
    api_version: str = APIVersion.V1.value

    def to_payload(self) -> dict[str, Any]:
        """Payload in the shape ClientBoardStore expects from a transport."""
        return {
            "status": self.status,
            "card_id": self.card_id,
            "committed_stage_key": self.committed_stage_key,
            "committed_position": self.committed_position,
        }


@dataclass
class DeactivateStageResponse:
    """Response after deactivating a stage."""
    success: bool
    stage_id: str
    stage_key: str
    fallback_stage_key: str | None = None
    migrated_card_ids: list[str] = field(default_factory=list)
    api_version: str = APIVersion.V1.value


@dataclass
class BoardResponse:
    """
    Full board for initial load and recovery.

    Stages are active stages in display order; cards are in display order
    (attention first, then position).
    """
    board_key: str
    stages: list[StageInfo] = field(default_factory=list)
    cards_by_stage: dict[str, list[CardInfo]] = field(default_factory=dict)
    api_version: str = APIVersion.V1.value

    def to_payload(self) -> dict[str, Any]:
        """Payload in the shape ClientBoardStore.refresh() expects."""
        return {
            "board_key": self.board_key,
            "stages": [vars(s).copy() for s in self.stages],
            "cards_by_stage": {
                key: [vars(c).copy() for c in cards]
                for key, cards in self.cards_by_stage.items()
            },
        }


@dataclass
class StageListResponse:
    """All stages of a board, inactive included."""
    board_key: str
    stages: list[StageInfo] = field(default_factory=list)
    api_version: str = APIVersion.V1.value


# =============================================================================
# WebSocket Models
# =============================================================================

class WSMessageType(Enum):
    # Client -> Server
    PING = "ping"

    # Server -> Client; board events are forwarded as published
    ERROR = "error"
    PONG = "pong"

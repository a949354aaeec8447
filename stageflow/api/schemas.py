"""
Pydantic Schemas for API - Request/response models for OpenAPI.

These models define the exact contract between board clients and the engine.
All responses include explicit types for OpenAPI schema generation.

Error Codes:
- NOT_FOUND: Card, stage or target stage does not exist (or is inactive)
- INVALID: Operation refused, e.g. deactivating the last active stage
- INVALID_TRANSITION: The card record rejected the new stage/position
- TRANSITION_FAILED: Unexpected failure while committing a move
- FORBIDDEN: Caller may not use this board
- VALIDATION_ERROR: Malformed request
"""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field, model_validator

from ..engine_core.state import ErrorCode


# =============================================================================
# Enums
# =============================================================================

class MoveStatus(str, Enum):
    """Move outcome values."""
    SUCCESS = "success"


# =============================================================================
# Shared Models
# =============================================================================

class CardInfo(BaseModel):
    """Card information for display."""
    card_id: str
    stage_key: str
    position: float
    unread_count: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class StageInfo(BaseModel):
    """Stage (column) information for display."""
    stage_id: str
    key: str
    name: str
    position: int
    active: bool = True
    color: Optional[str] = None
    icon: Optional[str] = None

    model_config = {"from_attributes": True}


# =============================================================================
# Request Models
# =============================================================================

class PositionParams(BaseModel):
    """
    Where to place a card inside its target stage.

    Either an absolute position, or neighbour ids (after, before or both).
    Empty means append at the end of the stage.
    """
    absolute: Optional[float] = Field(None, description="Exact position to commit")
    after_id: Optional[str] = Field(None, description="Card to land after")
    before_id: Optional[str] = Field(None, description="Card to land before")

    @model_validator(mode="before")
    @classmethod
    def accept_absolute_position(cls, data: Any) -> Any:
        if isinstance(data, dict) and "absolute_position" in data and "absolute" not in data:
            data = dict(data)
            data["absolute"] = data.pop("absolute_position")
        return data

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class MoveBody(BaseModel):
    """Request body for moving a card."""
    card_id: str = Field(..., min_length=1, description="Card to move")
    stage_key: str = Field(..., min_length=1, description="Target stage key")
    position_params: Optional[PositionParams] = None

    @model_validator(mode="before")
    @classmethod
    def coerce_card_id(cls, data: Any) -> Any:
        # Numeric card ids are common
        if isinstance(data, dict) and isinstance(data.get("card_id"), int):
            data = dict(data)
            data["card_id"] = str(data["card_id"])
        return data


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """
    Structured error response.

    All errors return this format with appropriate HTTP status codes:
    - 400: Malformed request
    - 403: Board access denied
    - 404: Card or stage not found
    - 422: Transition rejected
    - 500: Transition failed
    """
    error: str = Field(..., description="Human-readable error message")
    error_code: ErrorCode = Field(..., description="Machine-readable error code")
    details: Optional[dict[str, Any]] = Field(
        None, description="Additional error context, e.g. available_stages"
    )
    api_version: str = "v1"


class MoveResponse(BaseModel):
    """Response after a committed move."""
    status: MoveStatus = MoveStatus.SUCCESS
    message: str = "Card moved successfully"
    card_id: str
    committed_stage_key: str
    committed_position: float
    card: CardInfo
    api_version: str = "v1"


class BoardResponse(BaseModel):
    """
    Full board read.

    Used for initial load and to recover after missed events.
    """
    board_key: str
    stages: list[StageInfo] = Field(default_factory=list)
    cards_by_stage: dict[str, list[CardInfo]] = Field(
        default_factory=dict,
        description="Per active stage, cards with unread first, then by position",
    )
    api_version: str = "v1"


class StageListResponse(BaseModel):
    """All stages of a board, inactive included."""
    board_key: str
    stages: list[StageInfo]
    count: int
    api_version: str = "v1"


class DeactivateStageResponse(BaseModel):
    """Response after deactivating a stage."""
    success: bool
    stage_id: str
    stage_key: str
    fallback_stage_key: Optional[str] = Field(
        None, description="Stage that received the migrated cards"
    )
    migrated_card_ids: list[str] = Field(default_factory=list)
    api_version: str = "v1"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str

"""
Board State - Cards, stages and the value objects that move them.

Design principles:
- Stage membership and position are typed fields on Card, never a loose blob
- Position only orders cards inside one (board_key, stage_key) partition
- Value objects (directives, results) are plain dataclasses, serializable to dicts
- A board has no record of its own: it is the stages sharing a board_key
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable


DEFAULT_BOARD_KEY = "sales"

# Gap left between a neighbour and a card placed after/before it
POSITION_DELTA = 1000.0


class ErrorCode(str, Enum):
    """Stable error codes shared by the engine, service and HTTP layers."""
    NOT_FOUND = "NOT_FOUND"
    INVALID = "INVALID"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TRANSITION_FAILED = "TRANSITION_FAILED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"


def default_position(card_id: str) -> float:
    """
    Position for a card that was never placed explicitly.

    Numeric ids spread out by POSITION_DELTA so older cards come first.
    """
    try:
        return float(card_id) * POSITION_DELTA
    except (TypeError, ValueError):
        return 0.0


@dataclass
class Card:
    """
    A card on a board.

    The engine only ever updates stage_key and position of existing cards.
    Everything else belongs to the external card collaborator.
    """
    card_id: str
    board_key: str
    stage_key: str
    position: float | None = None
    unread_count: int = 0  # Attention indicator, sorts before everything else
    attributes: dict[str, Any] = field(default_factory=dict)  # Opaque display payload

    def __post_init__(self):
        self.card_id = str(self.card_id)
        if self.position is None:
            self.position = default_position(self.card_id)
        self.position = float(self.position)

    def copy(self) -> Card:
        """Return an independent copy (attributes included)."""
        return replace(self, attributes=dict(self.attributes))

    def to_dict(self) -> dict[str, Any]:
        return {
            "card_id": self.card_id,
            "board_key": self.board_key,
            "stage_key": self.stage_key,
            "position": self.position,
            "unread_count": self.unread_count,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Card:
        return cls(
            card_id=data.get("card_id", data.get("id")),
            board_key=data.get("board_key", DEFAULT_BOARD_KEY),
            stage_key=data["stage_key"],
            position=data.get("position"),
            unread_count=int(data.get("unread_count") or 0),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class Stage:
    """
    A named column on a board.

    key is write-once; position orders the columns left to right.
    """
    stage_id: str
    board_key: str
    key: str
    name: str
    position: int = 0
    active: bool = True
    color: str | None = None
    icon: str | None = None

    def __post_init__(self):
        self.stage_id = str(self.stage_id)

    def copy(self) -> Stage:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "board_key": self.board_key,
            "key": self.key,
            "name": self.name,
            "position": self.position,
            "active": self.active,
            "color": self.color,
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stage:
        return cls(
            stage_id=data.get("stage_id", data.get("id")),
            board_key=data.get("board_key", DEFAULT_BOARD_KEY),
            key=data["key"],
            name=data.get("name", data["key"]),
            position=int(data.get("position") or 0),
            active=bool(data.get("active", True)),
            color=data.get("color"),
            icon=data.get("icon"),
        )


DEFAULT_STAGES = [
    {"key": "new", "name": "New", "color": "#0EA5E9", "icon": "sparkle", "position": 0},
    {"key": "qualified", "name": "Qualified", "color": "#8B5CF6", "icon": "person-check", "position": 1},
    {"key": "proposal", "name": "Proposal", "color": "#F59E0B", "icon": "document", "position": 2},
    {"key": "negotiation", "name": "Negotiation", "color": "#10B981", "icon": "chat-multiple", "position": 3},
    {"key": "closed", "name": "Closed", "color": "#6B7280", "icon": "checkmark-circle", "position": 4},
]


def display_order(cards: Iterable[Card]) -> list[Card]:
    """
    Sort cards for display: cards needing attention first, then by position.

    The sort is stable, so equal positions keep their insertion order.
    """
    return sorted(cards, key=lambda c: (0 if c.unread_count > 0 else 1, c.position))


@dataclass(frozen=True)
class PositionDirective:
    """
    Where a moving card should land inside its target stage.

    One of:
    - absolute: exact position value
    - after_id and/or before_id: neighbour references
    - nothing: append to the end
    """
    absolute: float | None = None
    after_id: str | None = None
    before_id: str | None = None

    def __post_init__(self):
        if self.absolute is not None:
            object.__setattr__(self, "absolute", float(self.absolute))
        if self.after_id is not None:
            object.__setattr__(self, "after_id", str(self.after_id))
        if self.before_id is not None:
            object.__setattr__(self, "before_id", str(self.before_id))

    @property
    def is_append(self) -> bool:
        return self.absolute is None and self.after_id is None and self.before_id is None

    @classmethod
    def append(cls) -> PositionDirective:
        return cls()

    @classmethod
    def at(cls, position: float) -> PositionDirective:
        return cls(absolute=position)

    @classmethod
    def between(
        cls,
        after_id: str | None = None,
        before_id: str | None = None,
    ) -> PositionDirective:
        return cls(after_id=after_id, before_id=before_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PositionDirective:
        """
        Build a directive from request parameters.

        Accepts both `absolute` and `absolute_position` spellings.
        Empty values count as missing.
        """
        if not data:
            return cls()
        absolute = data.get("absolute")
        if absolute in (None, ""):
            absolute = data.get("absolute_position")
        return cls(
            absolute=None if absolute in (None, "") else absolute,
            after_id=data.get("after_id") or None,
            before_id=data.get("before_id") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.absolute is not None:
            data["absolute"] = self.absolute
        if self.after_id is not None:
            data["after_id"] = self.after_id
        if self.before_id is not None:
            data["before_id"] = self.before_id
        return data


@dataclass(frozen=True)
class TransitionRequest:
    """A request to move one card. Ephemeral, never persisted."""
    card_id: str
    target_stage_key: str
    directive: PositionDirective = field(default_factory=PositionDirective)

    def __post_init__(self):
        object.__setattr__(self, "card_id", str(self.card_id))


@dataclass
class CommittedTransition:
    """
    A transition that has been written.

    Carries the full card so the requester needs no second read.
    """
    card_id: str
    board_key: str
    new_stage_key: str
    new_position: float
    card: Card

    def to_event(self) -> dict[str, Any]:
        """Minimal broadcast payload for passive subscribers."""
        return {
            "event": "card_moved",
            "card_id": self.card_id,
            "stage_key": self.new_stage_key,
            "position": self.new_position,
        }


@dataclass
class TransitionResult:
    """
    Result of a transition attempt.

    Contains either the committed transition or an error.
    """
    success: bool
    committed: CommittedTransition | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Create a failure result."""
        return cls(success=False, error=error, error_code=error_code, details=details or {})

    @classmethod
    def ok(cls, committed: CommittedTransition) -> TransitionResult:
        """Create a success result."""
        return cls(success=True, committed=committed)


@dataclass
class DeactivationResult:
    """Result of deactivating a stage."""
    success: bool
    stage_key: str | None = None
    board_key: str | None = None
    fallback_stage_key: str | None = None
    migrated_card_ids: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def failure(cls, error: str, error_code: ErrorCode, stage_key: str | None = None) -> DeactivationResult:
        return cls(success=False, error=error, error_code=error_code, stage_key=stage_key)

    def to_event(self) -> dict[str, Any]:
        return {
            "event": "stage_deactivated",
            "stage_key": self.stage_key,
            "fallback_stage_key": self.fallback_stage_key,
        }

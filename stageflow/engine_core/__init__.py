"""
Engine Core - Positions and stage transitions for board cards.

The engine:
1. Allocates fractional positions from neighbour references
2. Validates a move against the board's active stages
3. Commits stage + position as one unit
4. Publishes the committed move to the board's subscribers
"""

from .state import (
    Card,
    Stage,
    PositionDirective,
    TransitionRequest,
    CommittedTransition,
    TransitionResult,
    DeactivationResult,
    ErrorCode,
    display_order,
    DEFAULT_BOARD_KEY,
    POSITION_DELTA,
)
from .allocator import PositionAllocator, allocate_position, estimate_insert_index
from .transition import StageTransitionEngine

__all__ = [
    "Card",
    "Stage",
    "PositionDirective",
    "TransitionRequest",
    "CommittedTransition",
    "TransitionResult",
    "DeactivationResult",
    "ErrorCode",
    "display_order",
    "DEFAULT_BOARD_KEY",
    "POSITION_DELTA",
    "PositionAllocator",
    "allocate_position",
    "estimate_insert_index",
    "StageTransitionEngine",
]

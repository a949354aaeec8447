"""
Position Allocator - Fractional positions for cards inside a stage.

Given the target stage's cards and a PositionDirective, pick one float:
- absolute: used verbatim
- after + before: midpoint of the two neighbours
- after only: after + DELTA
- before only: before - DELTA
- nothing resolvable: wall-clock milliseconds (append)

Stale neighbour ids (deleted or moved cards) are treated as absent,
so an allocation never fails. Positions are never deduplicated or
renormalized; ties are left to the display sort.
"""

from __future__ import annotations
import threading
import time
from typing import Callable, Sequence

from .state import Card, PositionDirective, POSITION_DELTA


class PositionAllocator:
    """
    Computes new positions. Holds no board state.

    The only memory is the last fallback value, which keeps append
    positions strictly increasing even if the clock stalls or steps back.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        delta: float = POSITION_DELTA,
    ):
        self.clock = clock
        self.delta = delta
        self._last_fallback = float("-inf")
        self._lock = threading.Lock()

    def allocate(self, stage_cards: Sequence[Card], directive: PositionDirective) -> float:
        """Return the position for a card landing in stage_cards."""
        if directive.absolute is not None:
            return float(directive.absolute)

        after = _find(stage_cards, directive.after_id)
        before = _find(stage_cards, directive.before_id)

        if after is not None and before is not None:
            return (after.position + before.position) / 2.0
        if after is not None:
            return after.position + self.delta
        if before is not None:
            return before.position - self.delta
        return self.fallback()

    def fallback(self) -> float:
        """Timestamp-derived append position, strictly increasing per allocator."""
        with self._lock:
            value = self.clock() * 1000.0
            if value <= self._last_fallback:
                value = self._last_fallback + 1.0
            self._last_fallback = value
            return value


def _find(cards: Sequence[Card], card_id: str | None) -> Card | None:
    if card_id is None:
        return None
    for card in cards:
        if card.card_id == card_id:
            return card
    return None


def estimate_insert_index(stage_cards: Sequence[Card], directive: PositionDirective) -> int:
    """
    Client-side guess of the list index a directive points at.

    Mirrors allocate(): after wins over before, unknown ids append.
    """
    ids = [c.card_id for c in stage_cards]
    if directive.after_id is not None and directive.after_id in ids:
        return ids.index(directive.after_id) + 1
    if directive.before_id is not None and directive.before_id in ids:
        return ids.index(directive.before_id)
    if directive.absolute is not None:
        for i, card in enumerate(stage_cards):
            if card.position > directive.absolute:
                return i
    return len(stage_cards)


default_allocator = PositionAllocator()


def allocate_position(stage_cards: Sequence[Card], directive: PositionDirective) -> float:
    """Allocate with the process-wide default allocator."""
    return default_allocator.allocate(stage_cards, directive)

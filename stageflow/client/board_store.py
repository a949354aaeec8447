"""
Client Board Store - One client's projection of a board, kept in sync.

The store holds stage_key -> ordered cards and reconciles three inputs:
1. Local moves, applied optimistically before the server answers
2. Remote broadcasts of moves committed by anyone (including us)
3. Full-board refreshes (initial load, recovery after missed events)

Per local move:
    IDLE -> OPTIMISTIC -> CONFIRMED | ROLLED_BACK

- OPTIMISTIC: card already moved locally with a provisional position
- CONFIRMED: server response or matching broadcast arrived; the committed
  position replaces the provisional one
- ROLLED_BACK: the server call failed; the card returns to its exact
  pre-move stage, index and position, and the error is re-raised

A remote broadcast for a card with a pending move is applied as-is
(remote wins). The pending move is then superseded and a later rollback
leaves the card where the broadcast put it.

A second local move on a card whose first move is still in flight
replaces it: the first move's outcome no longer moves the card, and the
second rolls back to where the card was before either of them (or to
where the first one committed, if it did).

Every method is synchronous except move()/reload()/listen(), which only
await the network between two synchronous state changes.
"""

from __future__ import annotations
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TYPE_CHECKING

from ..engine_core.allocator import PositionAllocator, estimate_insert_index
from ..engine_core.state import (
    Card,
    Stage,
    PositionDirective,
    DEFAULT_BOARD_KEY,
    display_order,
)

if TYPE_CHECKING:
    from ..broadcast.channel import Subscription


logger = logging.getLogger(__name__)

# (card_id, board_key, stage_key, directive) -> move response payload
MoveTransport = Callable[[str, str, str, PositionDirective], Awaitable[dict[str, Any]]]
# board_key -> full board payload
BoardLoader = Callable[[str], Awaitable[dict[str, Any]]]


class MoveState(Enum):
    """State of one local move."""
    IDLE = "idle"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class MoveRejected(Exception):
    """The server answered a move with an error payload."""

    def __init__(self, message: str, error_code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


@dataclass
class PendingMove:
    """
    Bookkeeping for one local move.

    from_* fields capture the location to restore on rollback: the card's
    last place the server agreed with. A move started while another one on
    the same card is still in flight inherits that move's origin.
    """
    move_id: int
    card_id: str
    from_stage_key: str
    from_index: int
    from_position: float
    to_stage_key: str
    directive: PositionDirective
    provisional_position: float
    state: MoveState = MoveState.OPTIMISTIC
    superseded: bool = False  # A remote event or refresh overrode this move
    replaced_by: PendingMove | None = None  # A later local move on the same card
    committed_position: float | None = None
    error: Exception | None = None


class ClientBoardStore:
    """
    Per-session projection of one board.

    Usage:
        store = ClientBoardStore("sales", transport=api_move, loader=api_board)
        await store.reload()

        # User drags card 7 between cards 3 and 4
        await store.move("7", "qualified", PositionDirective.between("3", "4"))

        # Broadcast loop
        await store.listen(channel.subscribe("sales"))
    """

    def __init__(
        self,
        board_key: str = DEFAULT_BOARD_KEY,
        transport: MoveTransport | None = None,
        loader: BoardLoader | None = None,
        allocator: PositionAllocator | None = None,
        move_timeout: float | None = None,
    ):
        self.board_key = board_key
        self.transport = transport
        self.loader = loader
        self.allocator = allocator or PositionAllocator()
        self.move_timeout = move_timeout

        self.stages: list[Stage] = []
        self.cards: dict[str, list[Card]] = {}
        self.error: str | None = None

        self._pending: dict[str, PendingMove] = {}
        self._move_ids = itertools.count(1)

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def is_moving(self) -> bool:
        return bool(self._pending)

    def cards_in(self, stage_key: str) -> list[Card]:
        return list(self.cards.get(stage_key, []))

    def card_ids(self, stage_key: str) -> list[str]:
        return [c.card_id for c in self.cards.get(stage_key, [])]

    def locate(self, card_id: str) -> tuple[str, int] | None:
        """Return (stage_key, index) of a card, or None."""
        card_id = str(card_id)
        for stage_key, cards in self.cards.items():
            for index, card in enumerate(cards):
                if card.card_id == card_id:
                    return stage_key, index
        return None

    def get_card(self, card_id: str) -> Card | None:
        found = self.locate(card_id)
        if found is None:
            return None
        stage_key, index = found
        return self.cards[stage_key][index]

    def move_state(self, card_id: str) -> MoveState:
        pending = self._pending.get(str(card_id))
        return pending.state if pending else MoveState.IDLE

    def pending_move(self, card_id: str) -> PendingMove | None:
        return self._pending.get(str(card_id))

    def active_stages(self) -> list[Stage]:
        return [s for s in self.stages if s.active]

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """Plain-dict view: stage_key -> [{card_id, position, ...}]."""
        return {
            stage_key: [card.to_dict() for card in cards]
            for stage_key, cards in self.cards.items()
        }

    # =========================================================================
    # Full refresh
    # =========================================================================

    def refresh(self, payload: dict[str, Any]):
        """
        Rebuild the projection from a full-board read.

        Pending moves stay pending, but the refreshed data is the truth
        now, so a later rollback will not move their cards.
        """
        self.board_key = payload.get("board_key", self.board_key)
        self.stages = [
            s if isinstance(s, Stage) else Stage.from_dict({"board_key": self.board_key, **s})
            for s in payload.get("stages", [])
        ]
        cards: dict[str, list[Card]] = {s.key: [] for s in self.stages if s.active}
        for stage_key, raw_cards in (payload.get("cards_by_stage") or {}).items():
            parsed = [
                c if isinstance(c, Card) else Card.from_dict(
                    {"board_key": self.board_key, "stage_key": stage_key, **c}
                )
                for c in raw_cards
            ]
            cards[stage_key] = display_order(parsed)
        self.cards = cards
        for pending in self._pending.values():
            pending.superseded = True
        self.error = None

    async def reload(self):
        """Fetch the board with the loader and refresh."""
        if self.loader is None:
            raise RuntimeError("No board loader configured")
        payload = await self.loader(self.board_key)
        self.refresh(payload)

    # =========================================================================
    # Local (optimistic) moves
    # =========================================================================

    def begin_move(
        self,
        card_id: str,
        to_stage_key: str,
        directive: PositionDirective | None = None,
    ) -> PendingMove:
        """
        Apply a local move immediately and start tracking it.

        Raises LookupError if the card is not on this board.
        """
        card_id = str(card_id)
        directive = directive or PositionDirective()
        found = self.locate(card_id)
        if found is None:
            raise LookupError(f"Card {card_id} is not on board '{self.board_key}'")
        from_stage_key, from_index = found

        card = self.cards[from_stage_key].pop(from_index)
        move = PendingMove(
            move_id=next(self._move_ids),
            card_id=card_id,
            from_stage_key=from_stage_key,
            from_index=from_index,
            from_position=card.position,
            to_stage_key=to_stage_key,
            directive=directive,
            provisional_position=0.0,
        )

        target = self.cards.setdefault(to_stage_key, [])
        index = estimate_insert_index(target, directive)
        move.provisional_position = self.allocator.allocate(target, directive)
        card.stage_key = to_stage_key
        card.position = move.provisional_position
        target.insert(index, card)
        self._resort(to_stage_key)

        previous = self._pending.get(card_id)
        if previous is not None:
            # The later local move owns the card from now on
            previous.replaced_by = move
            if not previous.superseded:
                move.from_stage_key = previous.from_stage_key
                move.from_index = previous.from_index
                move.from_position = previous.from_position
        self._pending[card_id] = move
        logger.debug(
            "[stageflow] optimistic move card=%s %s -> %s position=%s",
            card_id, from_stage_key, to_stage_key, move.provisional_position,
        )
        return move

    def confirm(
        self,
        move: PendingMove,
        committed_stage_key: str | None = None,
        committed_position: float | None = None,
    ):
        """
        Mark a move as committed by the server.

        The card already sits in its target stage; only its position is
        refreshed. A superseded move changes nothing. A replaced move
        becomes the origin its replacement rolls back to.
        """
        if move.state is not MoveState.OPTIMISTIC:
            return
        move.state = MoveState.CONFIRMED
        move.committed_position = committed_position
        self._clear_pending(move)
        if move.replaced_by is not None:
            if committed_position is not None:
                self._rebase(move, committed_stage_key or move.to_stage_key, committed_position)
            return
        if move.superseded or committed_position is None:
            return
        self._place(move.card_id, committed_stage_key or move.to_stage_key, committed_position)

    def rollback(self, move: PendingMove, error: Exception | None = None):
        """Undo a failed move, restoring the exact pre-move location."""
        if move.state is not MoveState.OPTIMISTIC:
            return
        move.state = MoveState.ROLLED_BACK
        move.error = error
        self._clear_pending(move)
        self.error = str(error) if error else None
        if move.superseded:
            logger.debug("[stageflow] rollback of card=%s skipped, superseded by remote state", move.card_id)
            return
        if move.replaced_by is not None:
            logger.debug("[stageflow] rollback of card=%s skipped, replaced by a later move", move.card_id)
            return

        found = self.locate(move.card_id)
        if found is None:
            return
        stage_key, index = found
        card = self.cards[stage_key].pop(index)
        if not self.cards[stage_key] and stage_key not in {s.key for s in self.active_stages()}:
            # Target was never a stage here, e.g. a rejected stage key
            del self.cards[stage_key]
        card.stage_key = move.from_stage_key
        card.position = move.from_position
        source = self.cards.setdefault(move.from_stage_key, [])
        source.insert(min(move.from_index, len(source)), card)
        self._resort(move.from_stage_key)
        logger.debug("[stageflow] rolled back card=%s to %s", move.card_id, move.from_stage_key)

    async def move(
        self,
        card_id: str,
        to_stage_key: str,
        directive: PositionDirective | None = None,
    ) -> PendingMove:
        """
        Move a card: apply locally, send to the server, confirm or roll back.

        Any transport failure (including timeout) or error payload rolls
        back and is re-raised.
        """
        if self.transport is None:
            raise RuntimeError("No move transport configured")
        move = self.begin_move(card_id, to_stage_key, directive)

        try:
            call = self.transport(move.card_id, self.board_key, to_stage_key, move.directive)
            if self.move_timeout is not None:
                response = await asyncio.wait_for(call, self.move_timeout)
            else:
                response = await call
        except Exception as exc:
            self.rollback(move, exc)
            raise

        if response.get("error"):
            rejected = MoveRejected(
                response["error"],
                error_code=response.get("error_code"),
                details=response.get("details"),
            )
            self.rollback(move, rejected)
            raise rejected

        self.confirm(
            move,
            committed_stage_key=response.get("committed_stage_key"),
            committed_position=response.get("committed_position"),
        )
        return move

    # =========================================================================
    # Remote events
    # =========================================================================

    def apply_event(self, event: dict[str, Any]) -> bool:
        """
        Apply one broadcast event. Returns True if the projection changed.

        Unknown event types are ignored.
        """
        kind = event.get("event")
        if kind == "card_moved":
            return self.apply_remote_move(event["card_id"], event["stage_key"], event["position"])
        if kind == "stage_deactivated":
            return self.apply_stage_deactivated(event["stage_key"], event["fallback_stage_key"])
        logger.debug("[stageflow] ignoring event %r", kind)
        return False

    def apply_remote_move(self, card_id: str, stage_key: str, position: float) -> bool:
        """
        Reposition a known card from a broadcast.

        A broadcast that lands a pending card in its target stage confirms
        that move. Any other broadcast for it supersedes the move.
        Cards this client does not know are ignored.
        """
        card_id = str(card_id)
        pending = self._pending.get(card_id)
        if pending is not None and pending.state is MoveState.OPTIMISTIC:
            if stage_key == pending.to_stage_key and not pending.superseded:
                pending.state = MoveState.CONFIRMED
                pending.committed_position = float(position)
                self._clear_pending(pending)
            else:
                pending.superseded = True
        return self._place(card_id, stage_key, float(position))

    def apply_stage_deactivated(self, stage_key: str, fallback_stage_key: str) -> bool:
        """Fold a deactivated stage's cards into the fallback stage."""
        for stage in self.stages:
            if stage.key == stage_key:
                stage.active = False
        moved = self.cards.pop(stage_key, [])
        for card in moved:
            card.stage_key = fallback_stage_key
        for pending in self._pending.values():
            if stage_key in (pending.to_stage_key, pending.from_stage_key):
                pending.superseded = True
        if moved:
            self.cards.setdefault(fallback_stage_key, []).extend(moved)
            self._resort(fallback_stage_key)
        return bool(moved)

    async def listen(self, subscription: Subscription):
        """
        Apply events from a subscription until it closes.

        When the subscription reports dropped events, the board is
        reloaded with the loader.
        """
        async for event in subscription:
            self.apply_event(event)
            if subscription.lagged and self.loader is not None:
                subscription.lagged = False
                await self.reload()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _place(self, card_id: str, stage_key: str, position: float) -> bool:
        found = self.locate(card_id)
        if found is None:
            return False
        current_key, index = found
        if current_key == stage_key:
            card = self.cards[current_key][index]
            card.position = position
        else:
            card = self.cards[current_key].pop(index)
            card.stage_key = stage_key
            card.position = position
            self.cards.setdefault(stage_key, []).append(card)
        self._resort(stage_key)
        return True

    def _resort(self, stage_key: str):
        self.cards[stage_key] = display_order(self.cards.get(stage_key, []))

    def _clear_pending(self, move: PendingMove):
        if self._pending.get(move.card_id) is move:
            del self._pending[move.card_id]

    def _rebase(self, move: PendingMove, stage_key: str, position: float):
        """Make a committed move the rollback origin of the moves that replaced it."""
        latest = move.replaced_by
        while latest.replaced_by is not None:
            latest = latest.replaced_by
        if latest.state is not MoveState.OPTIMISTIC or latest.superseded:
            return
        latest.from_stage_key = stage_key
        latest.from_position = position
        latest.from_index = len(self.cards.get(stage_key, []))

"""
Board Repository - In-memory card and stage records, scoped per account.

This is the storage collaborator the engine consumes. It provides:
- Account-scoped card handles with an atomic save()
- Stage catalogue lookups by board, filterable by active, ordered by position
- Bulk re-staging for stage deactivation
- Optional JSON snapshots (one file per account)

Concurrency:
- Each card has its own lock; save() writes stage_key and position
  together under it, so a reader never sees one without the other
- The check that the target stage is active and the write itself happen
  under the repository lock, the same lock stage deactivation takes
- A change is applied in memory only after its snapshot write succeeded
- Two saves of the same card simply land in order, last one wins
"""

from __future__ import annotations
import itertools
import logging
import math
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Iterable

from ..engine_core.state import Card, Stage, DEFAULT_BOARD_KEY, DEFAULT_STAGES
from .errors import RecordInvalid, RecordNotFound

if TYPE_CHECKING:
    from .snapshot import BoardSnapshotStore


logger = logging.getLogger(__name__)


class CardHandle:
    """
    Mutable view of one stored card.

    Callers change stage_key and position, then call save().
    Nothing is visible to other readers until save() returns.
    """

    def __init__(self, scope: AccountScope, card: Card):
        self._scope = scope
        self.card_id = card.card_id
        self.board_key = card.board_key
        self.stage_key = card.stage_key
        self.position = card.position

    def save(self) -> Card:
        """Write stage_key and position as one unit. Returns the stored card."""
        return self._scope._commit(self)

    def __repr__(self) -> str:
        return f"<CardHandle {self.card_id} {self.board_key}/{self.stage_key}@{self.position}>"


class BoardRepository:
    """
    Holds every account's cards and stages.

    Usage:
        repo = BoardRepository()
        scope = repo.scoped("acme")
        scope.seed_default_stages("sales")
        scope.add_card(Card(card_id="1", board_key="sales", stage_key="new"))

        handle = scope.card_handle("1")
        handle.stage_key = "qualified"
        handle.save()
    """

    def __init__(self, snapshot_store: BoardSnapshotStore | None = None):
        self.snapshot_store = snapshot_store
        self._lock = threading.RLock()
        self._cards: dict[str, dict[str, Card]] = defaultdict(dict)
        self._stages: dict[str, dict[str, Stage]] = defaultdict(dict)
        self._card_locks: dict[tuple[str, str], threading.Lock] = {}
        self._loaded: set[str] = set()
        self._stage_ids = itertools.count(1)

    def scoped(self, account_id: str) -> AccountScope:
        """Return a view limited to one account's records."""
        account_id = str(account_id)
        self._ensure_loaded(account_id)
        return AccountScope(self, account_id)

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _ensure_loaded(self, account_id: str):
        with self._lock:
            if account_id in self._loaded:
                return
            self._loaded.add(account_id)
            if self.snapshot_store is None:
                return
            data = self.snapshot_store.load(account_id)
            if not data:
                return
            for raw in data.get("stages", []):
                stage = Stage.from_dict(raw)
                self._stages[account_id][stage.stage_id] = stage
            for raw in data.get("cards", []):
                card = Card.from_dict(raw)
                self._cards[account_id][card.card_id] = card
            self._bump_stage_ids()
            logger.info(
                "[stageflow] loaded snapshot account=%s stages=%d cards=%d",
                account_id,
                len(self._stages[account_id]),
                len(self._cards[account_id]),
            )

    def _bump_stage_ids(self):
        numeric = [
            int(sid)
            for stages in self._stages.values()
            for sid in stages
            if sid.isdigit()
        ]
        start = max(numeric, default=0) + 1
        self._stage_ids = itertools.count(start)

    def _card_lock(self, account_id: str, card_id: str) -> threading.Lock:
        with self._lock:
            key = (account_id, card_id)
            lock = self._card_locks.get(key)
            if lock is None:
                lock = self._card_locks[key] = threading.Lock()
            return lock

    def _persist(
        self,
        account_id: str,
        cards: Iterable[Card] = (),
        stages: Iterable[Stage] = (),
        removed_card_ids: Iterable[str] = (),
    ):
        """
        Apply a change to an account's records.

        The snapshot (if any) is written with the change first; the
        in-memory records only change once that write succeeded. A failed
        write raises and leaves the account exactly as it was.
        """
        cards = list(cards)
        stages = list(stages)
        removed = set(removed_card_ids)
        with self._lock:
            if self.snapshot_store is not None:
                next_cards = {
                    cid: c for cid, c in self._cards[account_id].items() if cid not in removed
                }
                next_cards.update((c.card_id, c) for c in cards)
                next_stages = dict(self._stages[account_id])
                next_stages.update((s.stage_id, s) for s in stages)
                self.snapshot_store.save(account_id, {
                    "stages": [s.to_dict() for s in next_stages.values()],
                    "cards": [c.to_dict() for c in next_cards.values()],
                })
            for card_id in removed:
                self._cards[account_id].pop(card_id, None)
            for stage in stages:
                self._stages[account_id][stage.stage_id] = stage
            for card in cards:
                self._cards[account_id][card.card_id] = card


class AccountScope:
    """
    The scoped handle the engine is given.

    Every lookup is limited to one account, so a card or stage id from
    another account is indistinguishable from one that does not exist.
    """

    def __init__(self, repository: BoardRepository, account_id: str):
        self.repository = repository
        self.account_id = account_id

    @property
    def _cards(self) -> dict[str, Card]:
        return self.repository._cards[self.account_id]

    @property
    def _stages(self) -> dict[str, Stage]:
        return self.repository._stages[self.account_id]

    # =========================================================================
    # Cards
    # =========================================================================

    def card_handle(self, card_id: str) -> CardHandle:
        """Look up a card for update. Raises RecordNotFound."""
        return CardHandle(self, self.get_card(card_id))

    def get_card(self, card_id: str) -> Card:
        """Return a copy of a card. Raises RecordNotFound."""
        card = self._cards.get(str(card_id))
        if card is None:
            raise RecordNotFound(f"Card {card_id} not found")
        return card.copy()

    def find_card(self, card_id: str) -> Card | None:
        card = self._cards.get(str(card_id))
        return card.copy() if card else None

    def cards_in_stage(self, board_key: str, stage_key: str) -> list[Card]:
        """Cards of one stage ordered by position (copies)."""
        with self.repository._lock:
            cards = [
                c.copy() for c in self._cards.values()
                if c.board_key == board_key and c.stage_key == stage_key
            ]
        return sorted(cards, key=lambda c: c.position)

    def add_card(self, card: Card) -> Card:
        """
        Register a card created by the card-management side.

        Not used by transitions; moves only update existing cards.
        """
        with self.repository._lock:
            if card.card_id in self._cards:
                raise RecordInvalid(f"Card {card.card_id} already exists")
            self.repository._persist(self.account_id, cards=[card.copy()])
        return card.copy()

    def remove_card(self, card_id: str) -> bool:
        with self.repository._lock:
            if str(card_id) not in self._cards:
                return False
            self.repository._persist(self.account_id, removed_card_ids=[str(card_id)])
        return True

    def set_unread(self, card_id: str, unread_count: int) -> Card:
        """Update the attention indicator of a card."""
        with self.repository._card_lock(self.account_id, str(card_id)):
            card = self.get_card(card_id)
            card.unread_count = max(0, int(unread_count))
            self.repository._persist(self.account_id, cards=[card])
        return card.copy()

    def restage_cards(self, board_key: str, from_stage_key: str, to_stage_key: str) -> list[str]:
        """
        Move every card of one stage to another, keeping positions.

        Returns the ids of the migrated cards.
        """
        moved = []
        for card in self.cards_in_stage(board_key, from_stage_key):
            with self.repository._card_lock(self.account_id, card.card_id):
                current = self._cards.get(card.card_id)
                if current is None or current.stage_key != from_stage_key:
                    continue
                updated = current.copy()
                updated.stage_key = to_stage_key
                self.repository._persist(self.account_id, cards=[updated])
                moved.append(card.card_id)
        return moved

    def _commit(self, handle: CardHandle) -> Card:
        """Validate and write a handle's stage_key and position together."""
        position = _as_position(handle.position)
        with self.repository._card_lock(self.account_id, handle.card_id):
            with self.repository._lock:
                current = self._cards.get(handle.card_id)
                if current is None:
                    raise RecordNotFound(f"Card {handle.card_id} not found")
                if self.find_stage(current.board_key, handle.stage_key, active_only=True) is None:
                    raise RecordNotFound(
                        f"Stage '{handle.stage_key}' is not an active stage of board "
                        f"'{current.board_key}'"
                    )
                updated = current.copy()
                updated.stage_key = handle.stage_key
                updated.position = position
                # Single assignment: readers see the old card or the new one
                self.repository._persist(self.account_id, cards=[updated])
        return updated.copy()

    # =========================================================================
    # Stages
    # =========================================================================

    def stages(self, board_key: str, active_only: bool = False) -> list[Stage]:
        """Stages of a board ordered by display position."""
        with self.repository._lock:
            stages = [
                s.copy() for s in self._stages.values()
                if s.board_key == board_key and (s.active or not active_only)
            ]
        return sorted(stages, key=lambda s: (s.position, s.stage_id))

    def find_stage(self, board_key: str, key: str, active_only: bool = True) -> Stage | None:
        for stage in self.stages(board_key, active_only=active_only):
            if stage.key == key:
                return stage
        return None

    def get_stage(self, stage_id: str) -> Stage:
        """Return a copy of a stage. Raises RecordNotFound."""
        stage = self._stages.get(str(stage_id))
        if stage is None:
            raise RecordNotFound(f"Stage {stage_id} not found")
        return stage.copy()

    def default_stage(self, board_key: str, exclude: Iterable[str] = ()) -> Stage | None:
        """First active stage of a board, skipping the given stage ids."""
        excluded = {str(sid) for sid in exclude}
        for stage in self.stages(board_key, active_only=True):
            if stage.stage_id not in excluded:
                return stage
        return None

    def add_stage(
        self,
        board_key: str,
        key: str,
        name: str | None = None,
        position: int | None = None,
        active: bool = True,
        color: str | None = None,
        icon: str | None = None,
    ) -> Stage:
        """Register a stage. Keys are unique per board."""
        with self.repository._lock:
            existing = self.stages(board_key)
            if any(s.key == key for s in existing):
                raise RecordInvalid(f"Stage key '{key}' already exists on board '{board_key}'")
            if position is None:
                position = max((s.position for s in existing), default=-1) + 1
            stage = Stage(
                stage_id=str(next(self.repository._stage_ids)),
                board_key=board_key,
                key=key,
                name=name or key,
                position=position,
                active=active,
                color=color,
                icon=icon,
            )
            self.repository._persist(self.account_id, stages=[stage])
        return stage.copy()

    def seed_default_stages(self, board_key: str = DEFAULT_BOARD_KEY) -> list[Stage]:
        """Create the default stages for a board that has none."""
        if self.stages(board_key):
            return self.stages(board_key)
        return [self.add_stage(board_key=board_key, **attrs) for attrs in DEFAULT_STAGES]

    def set_stage_active(self, stage_id: str, active: bool) -> Stage:
        with self.repository._lock:
            stage = self.get_stage(stage_id)
            stage.active = active
            self.repository._persist(self.account_id, stages=[stage])
        return stage.copy()


def _as_position(value: Any) -> float:
    try:
        position = float(value)
    except (TypeError, ValueError):
        raise RecordInvalid(f"Position must be a number, got {value!r}")
    if not math.isfinite(position):
        raise RecordInvalid("Position must be a finite number")
    return position

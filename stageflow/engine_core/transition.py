"""
Stage Transition Engine - Moves one card to a (stage, position) atomically.

The engine is the single point where a card's stage and position change.
All moves go through transition().

Checks, in order (a failed check changes nothing):
1. The card exists in the caller's scope
2. The target stage key is an active stage on the card's board
3. Neighbour ids that do not resolve are ignored (append semantics)

Commit:
- stage_key and position are saved together through the card handle
- The committed transition is published on the board's channel
- The full card is returned so the requester needs no second read

Errors:
- NOT_FOUND: card or stage missing, with the valid stage keys
- INVALID_TRANSITION: the storage layer rejected the write
- TRANSITION_FAILED: anything else, logged, stable message only
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .allocator import PositionAllocator, default_allocator
from .state import (
    CommittedTransition,
    DeactivationResult,
    ErrorCode,
    PositionDirective,
    TransitionRequest,
    TransitionResult,
)
from ..storage.errors import RecordInvalid, RecordNotFound

if TYPE_CHECKING:
    from ..broadcast.channel import BroadcastChannel
    from ..storage.repository import AccountScope


logger = logging.getLogger(__name__)

TRANSITION_FAILED_MESSAGE = "Failed to move card"
LAST_ACTIVE_STAGE_MESSAGE = "Cannot deactivate the only active stage"


@dataclass
class StageTransitionEngine:
    """
    Applies transitions for one account scope.

    Holds no board state: everything is read from and written to the scope.
    The channel is optional so the engine can run without subscribers.
    """
    scope: AccountScope
    channel: BroadcastChannel | None = None
    allocator: PositionAllocator = field(default_factory=lambda: default_allocator)

    def apply(self, request: TransitionRequest, board_key: str | None = None) -> TransitionResult:
        """Apply a TransitionRequest."""
        return self.transition(
            request.card_id,
            request.target_stage_key,
            request.directive,
            board_key=board_key,
        )

    def transition(
        self,
        card_id: str,
        target_stage_key: str,
        directive: PositionDirective | None = None,
        board_key: str | None = None,
    ) -> TransitionResult:
        """
        Move a card to target_stage_key at the position the directive selects.

        board_key defaults to the card's own board. When given, a card from
        another board is reported as not found.
        """
        card_id = str(card_id)
        directive = directive or PositionDirective()
        context = {
            "account": self.scope.account_id,
            "board": board_key,
            "stage": target_stage_key,
            "card": card_id,
        }

        try:
            handle = self.scope.card_handle(card_id)
        except RecordNotFound:
            logger.error("[stageflow] card not found %s", _fmt(context))
            return TransitionResult.failure(
                f"Card {card_id} not found",
                ErrorCode.NOT_FOUND,
                details={"card_id": card_id},
            )

        if board_key is None:
            board_key = context["board"] = handle.board_key
        elif handle.board_key != board_key:
            logger.error("[stageflow] card belongs to board '%s' %s", handle.board_key, _fmt(context))
            return TransitionResult.failure(
                f"Card {card_id} not found",
                ErrorCode.NOT_FOUND,
                details={"card_id": card_id},
            )

        stage = self.scope.find_stage(board_key, target_stage_key, active_only=True)
        if stage is None:
            available = [s.key for s in self.scope.stages(board_key, active_only=True)]
            logger.error("[stageflow] stage not found %s available=%s", _fmt(context), available)
            return TransitionResult.failure(
                f"Stage '{target_stage_key}' not found",
                ErrorCode.NOT_FOUND,
                details={"stage_key": target_stage_key, "available_stages": available},
            )

        try:
            neighbours = [
                c for c in self.scope.cards_in_stage(board_key, stage.key)
                if c.card_id != card_id
            ]
            handle.stage_key = stage.key
            handle.position = self.allocator.allocate(neighbours, directive)
            card = handle.save()
        except RecordNotFound:
            if self.scope.find_stage(board_key, stage.key, active_only=True) is None:
                # Stage deactivated while the move was in flight
                available = [s.key for s in self.scope.stages(board_key, active_only=True)]
                logger.error("[stageflow] stage deactivated during move %s", _fmt(context))
                return TransitionResult.failure(
                    f"Stage '{target_stage_key}' not found",
                    ErrorCode.NOT_FOUND,
                    details={"stage_key": target_stage_key, "available_stages": available},
                )
            logger.error("[stageflow] card disappeared during move %s", _fmt(context))
            return TransitionResult.failure(
                f"Card {card_id} not found",
                ErrorCode.NOT_FOUND,
                details={"card_id": card_id},
            )
        except RecordInvalid as exc:
            logger.warning("[stageflow] invalid transition %s: %s", _fmt(context), exc)
            return TransitionResult.failure(str(exc), ErrorCode.INVALID_TRANSITION)
        except Exception:
            logger.exception("[stageflow] transition failed %s", _fmt(context))
            return TransitionResult.failure(TRANSITION_FAILED_MESSAGE, ErrorCode.TRANSITION_FAILED)

        committed = CommittedTransition(
            card_id=card.card_id,
            board_key=card.board_key,
            new_stage_key=card.stage_key,
            new_position=card.position,
            card=card,
        )
        logger.info(
            "[stageflow] moved %s position=%s directive=%s",
            _fmt(context), committed.new_position, directive.to_dict(),
        )
        self._publish(committed.board_key, committed.to_event())
        return TransitionResult.ok(committed)

    def deactivate_stage(self, stage_id: str) -> DeactivationResult:
        """
        Deactivate a stage and move its cards to the board's default stage.

        Rejected when no other active stage exists on the board. Migrated
        cards keep their positions; only stage_key changes.
        """
        try:
            stage = self.scope.get_stage(stage_id)
        except RecordNotFound:
            logger.error("[stageflow] stage not found account=%s stage_id=%s", self.scope.account_id, stage_id)
            return DeactivationResult.failure(f"Stage {stage_id} not found", ErrorCode.NOT_FOUND)

        if not stage.active:
            return DeactivationResult(success=True, stage_key=stage.key, board_key=stage.board_key)

        fallback = self.scope.default_stage(stage.board_key, exclude=[stage.stage_id])
        if fallback is None:
            logger.warning(
                "[stageflow] refused to deactivate last active stage account=%s board=%s stage=%s",
                self.scope.account_id, stage.board_key, stage.key,
            )
            return DeactivationResult.failure(LAST_ACTIVE_STAGE_MESSAGE, ErrorCode.INVALID, stage_key=stage.key)

        self.scope.set_stage_active(stage.stage_id, False)
        migrated = self.scope.restage_cards(stage.board_key, stage.key, fallback.key)

        result = DeactivationResult(
            success=True,
            stage_key=stage.key,
            board_key=stage.board_key,
            fallback_stage_key=fallback.key,
            migrated_card_ids=migrated,
        )
        logger.info(
            "[stageflow] deactivated account=%s board=%s stage=%s fallback=%s migrated=%d",
            self.scope.account_id, stage.board_key, stage.key, fallback.key, len(migrated),
        )
        self._publish(stage.board_key, result.to_event())
        return result

    def _publish(self, board_key: str, event: dict):
        if self.channel is None:
            return
        try:
            self.channel.publish(board_key, event)
        except Exception:
            # The write is already committed; subscribers recover via refresh
            logger.exception("[stageflow] publish failed board=%s event=%s", board_key, event.get("event"))


def _fmt(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())

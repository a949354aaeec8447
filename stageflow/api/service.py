"""
Board Service - Business logic layer between the API and the engine.

The service:
1. Checks the caller may use the board (authorization predicate)
2. Translates requests into engine transitions
3. Publishes committed changes on the account's board channel
4. Formats responses for clients

This layer is framework-agnostic (can be used with FastAPI, Flask, etc.)
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Callable

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
from ..broadcast import AccountChannel, InMemoryBroadcastChannel, Subscription
from ..config import Settings
from ..engine_core import (
    ErrorCode,
    PositionAllocator,
    PositionDirective,
    StageTransitionEngine,
    display_order,
)
from ..engine_core.allocator import default_allocator
from ..storage import BoardRepository, BoardSnapshotStore, RecordNotFound


logger = logging.getLogger(__name__)

# (account_id, board_key) -> may the caller use this board
Authorizer = Callable[[str, str], bool]


def allow_all(account_id: str, board_key: str) -> bool:
    return True


class BoardAccessDenied(PermissionError):
    """The authorization predicate refused a board."""


@dataclass
class BoardService:
    """
    Main board service.

    Usage:
        service = BoardService()

        # Full board for initial load
        board = service.get_board("acme", "sales")

        # Move a card between two others
        response = service.move(MoveRequest(
            account_id="acme", board_key="sales", card_id="7",
            stage_key="qualified", position_params={"after_id": "3", "before_id": "4"},
        ))

        # Listen to every committed move
        sub = service.subscribe("acme", "sales")
    """
    repository: BoardRepository = field(default_factory=BoardRepository)
    channel: InMemoryBroadcastChannel = field(default_factory=InMemoryBroadcastChannel)
    authorize: Authorizer = allow_all
    settings: Settings = field(default_factory=Settings)
    allocator: PositionAllocator = field(default_factory=lambda: default_allocator)

    @classmethod
    def from_settings(cls, settings: Settings, authorize: Authorizer = allow_all) -> BoardService:
        """Build a service with storage and channel sized by settings."""
        snapshot_store = BoardSnapshotStore(settings.data_dir) if settings.data_dir else None
        return cls(
            repository=BoardRepository(snapshot_store=snapshot_store),
            channel=InMemoryBroadcastChannel(queue_size=settings.subscriber_queue),
            authorize=authorize,
            settings=settings,
        )

    def engine(self, account_id: str) -> StageTransitionEngine:
        """Transition engine bound to one account's records and channel."""
        return StageTransitionEngine(
            scope=self.repository.scoped(account_id),
            channel=AccountChannel(self.channel, account_id),
            allocator=self.allocator,
        )

    def move(self, request: MoveRequest) -> MoveResponse | ErrorResponse:
        """
        Move a card to a stage.

        The committed card is returned; the move is also broadcast to
        every subscriber of the board, the requester included.
        """
        board_key = request.board_key or self.settings.default_board
        denied = self._check_access(request.account_id, board_key)
        if denied:
            return denied

        if not request.card_id or not request.stage_key:
            return ErrorResponse(
                error="card_id and stage_key are required",
                error_code=ErrorCode.VALIDATION_ERROR.value,
            )
        try:
            directive = PositionDirective.from_dict(request.position_params)
        except (TypeError, ValueError):
            return ErrorResponse(
                error="Invalid position parameters",
                error_code=ErrorCode.VALIDATION_ERROR.value,
                details={"position_params": request.position_params},
            )

        result = self.engine(request.account_id).transition(
            request.card_id,
            request.stage_key,
            directive,
            board_key=board_key,
        )
        if not result.success:
            return ErrorResponse(
                error=result.error,
                error_code=result.error_code.value,
                details=result.details or None,
            )

        committed = result.committed
        return MoveResponse(
            card_id=committed.card_id,
            committed_stage_key=committed.new_stage_key,
            committed_position=committed.new_position,
            card=CardInfo.from_card(committed.card),
        )

    def deactivate_stage(self, request: DeactivateStageRequest) -> DeactivateStageResponse | ErrorResponse:
        """
        Deactivate a stage, moving its cards to the board's default stage.

        Refused for the last active stage of a board.
        """
        scope = self.repository.scoped(request.account_id)
        try:
            stage = scope.get_stage(request.stage_id)
        except RecordNotFound:
            return ErrorResponse(
                error=f"Stage {request.stage_id} not found",
                error_code=ErrorCode.NOT_FOUND.value,
            )
        denied = self._check_access(request.account_id, stage.board_key)
        if denied:
            return denied

        result = self.engine(request.account_id).deactivate_stage(stage.stage_id)
        if not result.success:
            return ErrorResponse(
                error=result.error,
                error_code=result.error_code.value,
                details={"stage_key": result.stage_key} if result.stage_key else None,
            )
        return DeactivateStageResponse(
            success=True,
            stage_id=stage.stage_id,
            stage_key=result.stage_key,
            fallback_stage_key=result.fallback_stage_key,
            migrated_card_ids=result.migrated_card_ids,
        )

    def get_board(self, account_id: str, board_key: str | None = None) -> BoardResponse | ErrorResponse:
        """
        Full board read.

        Active stages in display order; per stage, the first cards by
        position (up to the configured limit) in display order.
        """
        board_key = board_key or self.settings.default_board
        denied = self._check_access(account_id, board_key)
        if denied:
            return denied

        scope = self.repository.scoped(account_id)
        stages = scope.stages(board_key, active_only=True)
        limit = self.settings.stage_card_limit
        cards_by_stage = {}
        for stage in stages:
            cards = scope.cards_in_stage(board_key, stage.key)[:limit]
            cards_by_stage[stage.key] = [CardInfo.from_card(c) for c in display_order(cards)]

        return BoardResponse(
            board_key=board_key,
            stages=[StageInfo.from_stage(s) for s in stages],
            cards_by_stage=cards_by_stage,
        )

    def list_stages(self, account_id: str, board_key: str | None = None) -> StageListResponse | ErrorResponse:
        """All stages of a board, inactive included, in display order."""
        board_key = board_key or self.settings.default_board
        denied = self._check_access(account_id, board_key)
        if denied:
            return denied
        stages = self.repository.scoped(account_id).stages(board_key)
        return StageListResponse(
            board_key=board_key,
            stages=[StageInfo.from_stage(s) for s in stages],
        )

    def subscribe(self, account_id: str, board_key: str | None = None) -> Subscription:
        """
        Subscribe to a board's events.

        Raises BoardAccessDenied if the caller may not use the board.
        """
        board_key = board_key or self.settings.default_board
        if not self.authorize(account_id, board_key):
            raise BoardAccessDenied(f"Board '{board_key}' access denied")
        return AccountChannel(self.channel, account_id).subscribe(board_key)

    # =========================================================================
    # Helper methods
    # =========================================================================

    def _check_access(self, account_id: str, board_key: str) -> ErrorResponse | None:
        if self.authorize(account_id, board_key):
            return None
        logger.warning("[stageflow] access denied account=%s board=%s", account_id, board_key)
        return ErrorResponse(
            error=f"Board '{board_key}' access denied",
            error_code=ErrorCode.FORBIDDEN.value,
        )

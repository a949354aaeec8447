"""
Service Transport - Connects a ClientBoardStore to an in-process BoardService.

Used by the CLI and tests. A networked client supplies its own coroutines
with the same shapes (see MoveTransport and BoardLoader).
"""

from __future__ import annotations
from dataclasses import asdict
from typing import Any, TYPE_CHECKING

from ..api.models import ErrorResponse, MoveRequest
from ..engine_core.state import PositionDirective

if TYPE_CHECKING:
    from ..api.service import BoardService


class ServiceTransport:
    """
    Move transport and board loader backed by a BoardService.

    Usage:
        transport = ServiceTransport(service, "acme")
        store = ClientBoardStore("sales", transport=transport, loader=transport.load_board)
    """

    def __init__(self, service: BoardService, account_id: str):
        self.service = service
        self.account_id = account_id

    async def __call__(
        self,
        card_id: str,
        board_key: str,
        stage_key: str,
        directive: PositionDirective,
    ) -> dict[str, Any]:
        response = self.service.move(MoveRequest(
            account_id=self.account_id,
            board_key=board_key,
            card_id=card_id,
            stage_key=stage_key,
            position_params=directive.to_dict(),
        ))
        if isinstance(response, ErrorResponse):
            return asdict(response)
        return response.to_payload()

    async def load_board(self, board_key: str) -> dict[str, Any]:
        response = self.service.get_board(self.account_id, board_key)
        if isinstance(response, ErrorResponse):
            raise PermissionError(response.error)
        return response.to_payload()

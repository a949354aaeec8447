"""
FastAPI Application - REST + WebSocket API for board clients.

Endpoints:
    GET    /api/v1/boards/{board_key}         Full board (initial load / recovery)
    POST   /api/v1/boards/{board_key}/move    Move a card to a stage
    GET    /api/v1/boards/{board_key}/stages  List stages, inactive included
    DELETE /api/v1/stages/{stage_id}          Deactivate a stage
    WS     /api/v1/boards/{board_key}/ws      Board events
    GET    /health                            Health check

Every request names its account in the X-Account-Id header.

Move flow:
    1. Client moves the card locally and POSTs /move
    2. The engine commits stage + position for that one card
    3. The response carries the committed position
    4. Every WebSocket on the board (the mover's included) gets card_moved

All responses are JSON with explicit Pydantic schemas.
"""

import asyncio
import json
import logging
from typing import Annotated, Optional, Union

from fastapi import FastAPI, Body, Header, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings
from . import models
from .service import BoardService
from .schemas import (
    # Request models
    MoveBody,
    # Response models
    MoveResponse,
    BoardResponse,
    StageListResponse,
    DeactivateStageResponse,
    ErrorResponse,
    HealthResponse,
    # Enums
    ErrorCode,
    # Nested models
    CardInfo,
    StageInfo,
)


logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"

ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID: 422,
    ErrorCode.INVALID_TRANSITION: 422,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.TRANSITION_FAILED: 500,
    ErrorCode.VALIDATION_ERROR: 400,
}

AccountId = Annotated[str, Header(alias="X-Account-Id", description="Tenant account")]


def create_app(service: Optional[BoardService] = None, settings: Optional[Settings] = None):
    """
    Create the FastAPI application.

    Args:
        service: Optional BoardService instance (built from settings if not provided)
        settings: Optional Settings (read from the environment if not provided)

    Returns:
        FastAPI application instance
    """
    settings = settings or (service.settings if service else Settings.from_env())
    api_service = service or BoardService.from_settings(settings)
    # Interactive docs are for development only
    docs_url = None if settings.is_production else "/api/docs"

    app = FastAPI(
        title="Stageflow API",
        description="""
Kanban stage transitions with fractional card positions.

## Positioning

`position_params` on a move accepts:

- `{"absolute": 1234.5}`: commit exactly this position
- `{"after_id": "3", "before_id": "4"}`: midpoint of the two cards
- `{"after_id": "3"}` / `{"before_id": "4"}`: 1000 past / before the neighbour
- nothing: append

Neighbours that are gone or in another stage are ignored.

## Error Codes

| Code | Status | Description |
|------|--------|-------------|
| `NOT_FOUND` | 404 | Card or target stage not found |
| `INVALID` | 422 | Refused, e.g. last active stage |
| `INVALID_TRANSITION` | 422 | Card rejected the new stage/position |
| `FORBIDDEN` | 403 | Board access denied |
| `TRANSITION_FAILED` | 500 | Move could not be committed |
| `VALIDATION_ERROR` | 400 | Malformed request |
        """,
        version=__version__,
        docs_url=docs_url,
        redoc_url=None if settings.is_production else "/api/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = api_service

    # =========================================================================
    # Error helpers
    # =========================================================================

    def make_error_response(
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> JSONResponse:
        """Create a standardized error response."""
        return JSONResponse(
            status_code=status_code or ERROR_STATUS.get(error_code, 400),
            content=ErrorResponse(
                error=message,
                error_code=error_code,
                details=details,
            ).model_dump(mode="json"),
        )

    def from_service_error(response: models.ErrorResponse) -> JSONResponse:
        return make_error_response(
            ErrorCode(response.error_code),
            response.error,
            details=response.details,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request, exc: RequestValidationError) -> JSONResponse:
        return make_error_response(
            ErrorCode.VALIDATION_ERROR,
            "Malformed request",
            details={"errors": json.loads(json.dumps(exc.errors(), default=str))},
        )

    # =========================================================================
    # Board Endpoints
    # =========================================================================

    @app.get(
        "/api/v1/boards/{board_key}",
        response_model=BoardResponse,
        responses={403: {"model": ErrorResponse}},
        tags=["Boards"],
        summary="Get a full board",
    )
    async def get_board(
        board_key: str,
        account_id: AccountId = DEFAULT_ACCOUNT_ID,
    ) -> Union[BoardResponse, JSONResponse]:
        """
        Active stages with their cards.

        Cards with unread activity come first in each stage, then by position.
        Use this after connecting, and again whenever events were missed.
        """
        response = api_service.get_board(account_id, board_key)
        if isinstance(response, models.ErrorResponse):
            return from_service_error(response)
        return _convert_board(response)

    @app.post(
        "/api/v1/boards/{board_key}/move",
        response_model=MoveResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Malformed request"},
            403: {"model": ErrorResponse, "description": "Board access denied"},
            404: {"model": ErrorResponse, "description": "Card or stage not found"},
            422: {"model": ErrorResponse, "description": "Transition rejected"},
            500: {"model": ErrorResponse, "description": "Transition failed"},
        },
        tags=["Boards"],
        summary="Move a card to a stage",
    )
    async def move_card(
        board_key: str,
        body: Annotated[MoveBody, Body()],
        account_id: AccountId = DEFAULT_ACCOUNT_ID,
    ) -> Union[MoveResponse, JSONResponse]:
        """
        Move a card, committing its stage and position together.

        The committed position may differ from what the client guessed;
        clients should adopt the returned value.
        """
        response = api_service.move(models.MoveRequest(
            account_id=account_id,
            board_key=board_key,
            card_id=body.card_id,
            stage_key=body.stage_key,
            position_params=body.position_params.to_params() if body.position_params else None,
        ))
        if isinstance(response, models.ErrorResponse):
            return from_service_error(response)

        return MoveResponse(
            card_id=response.card_id,
            committed_stage_key=response.committed_stage_key,
            committed_position=response.committed_position,
            card=_convert_card(response.card),
            message=response.message,
        )

    @app.get(
        "/api/v1/boards/{board_key}/stages",
        response_model=StageListResponse,
        responses={403: {"model": ErrorResponse}},
        tags=["Stages"],
        summary="List a board's stages",
    )
    async def list_stages(
        board_key: str,
        account_id: AccountId = DEFAULT_ACCOUNT_ID,
    ) -> Union[StageListResponse, JSONResponse]:
        """All stages in display order, inactive ones included."""
        response = api_service.list_stages(account_id, board_key)
        if isinstance(response, models.ErrorResponse):
            return from_service_error(response)
        stages = [_convert_stage(s) for s in response.stages]
        return StageListResponse(board_key=response.board_key, stages=stages, count=len(stages))

    @app.delete(
        "/api/v1/stages/{stage_id}",
        response_model=DeactivateStageResponse,
        responses={
            403: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            422: {"model": ErrorResponse, "description": "Last active stage"},
        },
        tags=["Stages"],
        summary="Deactivate a stage",
    )
    async def deactivate_stage(
        stage_id: str,
        account_id: AccountId = DEFAULT_ACCOUNT_ID,
    ) -> Union[DeactivateStageResponse, JSONResponse]:
        """
        Deactivate a stage.

        Its cards move to the board's first active stage, keeping their
        positions. The last active stage of a board cannot be deactivated.
        """
        response = api_service.deactivate_stage(models.DeactivateStageRequest(
            account_id=account_id,
            stage_id=stage_id,
        ))
        if isinstance(response, models.ErrorResponse):
            return from_service_error(response)
        return DeactivateStageResponse(
            success=response.success,
            stage_id=response.stage_id,
            stage_key=response.stage_key,
            fallback_stage_key=response.fallback_stage_key,
            migrated_card_ids=response.migrated_card_ids,
        )

    # =========================================================================
    # WebSocket Endpoint
    # =========================================================================

    @app.websocket("/api/v1/boards/{board_key}/ws")
    async def websocket_endpoint(websocket: WebSocket, board_key: str):
        """
        WebSocket for board events.

        Messages from server:
        - card_moved: {"event", "card_id", "stage_key", "position"}
        - stage_deactivated: {"event", "stage_key", "fallback_stage_key"}
        - pong: reply to ping
        - error: Error occurred

        Messages from client:
        - ping: Keep-alive

        The account comes from the X-Account-Id header or the account_id
        query parameter.
        """
        account_id = (
            websocket.headers.get("x-account-id")
            or websocket.query_params.get("account_id")
            or DEFAULT_ACCOUNT_ID
        )
        await websocket.accept()

        if not api_service.authorize(account_id, board_key):
            await websocket.send_json({
                "type": models.WSMessageType.ERROR.value,
                "payload": {"message": f"Board '{board_key}' access denied"},
            })
            await websocket.close(code=1008)
            return

        subscription = api_service.subscribe(account_id, board_key)
        logger.info("[stageflow] ws connected account=%s board=%s", account_id, board_key)

        async def forward_events():
            async for event in subscription:
                await websocket.send_json(event)

        forwarder = asyncio.create_task(forward_events())
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                    if message.get("type") == models.WSMessageType.PING.value:
                        await websocket.send_json({"type": models.WSMessageType.PONG.value})
                except (json.JSONDecodeError, AttributeError):
                    await websocket.send_json({
                        "type": models.WSMessageType.ERROR.value,
                        "payload": {"message": "Invalid JSON"},
                    })
        except WebSocketDisconnect:
            pass
        finally:
            subscription.close()
            forwarder.cancel()
            logger.info("[stageflow] ws disconnected account=%s board=%s", account_id, board_key)

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint for load balancers."""
        return HealthResponse(
            status="healthy",
            service="stageflow",
            version=__version__,
        )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": "Stageflow API",
            "docs": docs_url,
            "health": "/health",
        }

    # =========================================================================
    # Conversion helpers
    # =========================================================================

    def _convert_card(card: models.CardInfo) -> CardInfo:
        return CardInfo.model_validate(card)

    def _convert_stage(stage: models.StageInfo) -> StageInfo:
        return StageInfo.model_validate(stage)

    def _convert_board(response: models.BoardResponse) -> BoardResponse:
        return BoardResponse(
            board_key=response.board_key,
            stages=[_convert_stage(s) for s in response.stages],
            cards_by_stage={
                key: [_convert_card(c) for c in cards]
                for key, cards in response.cards_by_stage.items()
            },
        )

    return app


# For running directly: uvicorn stageflow.api.app:app
app = create_app()

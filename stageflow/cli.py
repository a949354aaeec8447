"""
Stageflow CLI - Command-line interface for the board engine.

Usage:
    stageflow serve [--host H] [--port P]          Run the HTTP/WebSocket API
    stageflow seed <board> [--cards N]             Create default stages (and sample cards)
    stageflow board <board>                        Print a board
    stageflow move <board> <card> <stage> [...]    Move one card

board/seed/move work on the snapshot directory (STAGEFLOW_DATA_DIR or --data-dir).
"""

import argparse
import logging
import sys

from .config import Settings


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Stageflow - Kanban stage transitions with fractional positions",
        prog="stageflow",
    )
    parser.add_argument("--data-dir", help="Snapshot directory (overrides STAGEFLOW_DATA_DIR)")
    parser.add_argument("--account", default="default", help="Account id")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    # Seed command
    seed_parser = subparsers.add_parser("seed", help="Create a board's default stages")
    seed_parser.add_argument("board", nargs="?", help="Board key")
    seed_parser.add_argument("--cards", type=int, default=0, help="Sample cards in the first stage")

    # Board command
    board_parser = subparsers.add_parser("board", help="Print a board")
    board_parser.add_argument("board", nargs="?", help="Board key")

    # Move command
    move_parser = subparsers.add_parser("move", help="Move a card to a stage")
    move_parser.add_argument("board", help="Board key")
    move_parser.add_argument("card_id", help="Card to move")
    move_parser.add_argument("stage_key", help="Target stage key")
    move_parser.add_argument("--after", dest="after_id", help="Land after this card")
    move_parser.add_argument("--before", dest="before_id", help="Land before this card")
    move_parser.add_argument("--position", type=float, help="Absolute position")

    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.data_dir:
        settings.data_dir = args.data_dir

    if args.command == "serve":
        cmd_serve(args, settings)
    elif args.command == "seed":
        cmd_seed(args, settings)
    elif args.command == "board":
        cmd_board(args, settings)
    elif args.command == "move":
        cmd_move(args, settings)
    else:
        parser.print_help()
        sys.exit(1)


def cmd_serve(args, settings):
    """Run the API with uvicorn."""
    import uvicorn
    from .api.app import create_app

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings=settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


def cmd_seed(args, settings):
    """Create default stages, optionally with sample cards."""
    from .engine_core import Card

    service = _offline_service(settings)
    board_key = args.board or settings.default_board
    scope = service.repository.scoped(args.account)
    stages = scope.seed_default_stages(board_key)
    first = stages[0].key
    added = 0
    card_id = 1
    while added < args.cards:
        if scope.find_card(str(card_id)) is None:
            scope.add_card(Card(card_id=str(card_id), board_key=board_key, stage_key=first))
            added += 1
        card_id += 1

    print(f"Board '{board_key}': {len(stages)} stages, {added} cards added")


def cmd_board(args, settings):
    """Print a board."""
    service = _offline_service(settings)
    board = service.get_board(args.account, args.board)
    if hasattr(board, "error_code"):
        print(f"Error: {board.error}")
        sys.exit(1)

    print(f"Board: {board.board_key}")
    if not board.stages:
        print("  (no stages, run `stageflow seed` first)")
    for stage in board.stages:
        cards = board.cards_by_stage.get(stage.key, [])
        print(f"\n[{stage.key}] {stage.name} ({len(cards)})")
        for card in cards:
            unread = f"  *{card.unread_count}" if card.unread_count else ""
            print(f"  {card.card_id:>8}  {card.position:>16.3f}{unread}")


def cmd_move(args, settings):
    """Move one card."""
    from .api.models import MoveRequest

    service = _offline_service(settings)
    params = {}
    if args.position is not None:
        params["absolute"] = args.position
    if args.after_id:
        params["after_id"] = args.after_id
    if args.before_id:
        params["before_id"] = args.before_id

    response = service.move(MoveRequest(
        account_id=args.account,
        board_key=args.board,
        card_id=args.card_id,
        stage_key=args.stage_key,
        position_params=params or None,
    ))
    if hasattr(response, "error_code"):
        print(f"Error [{response.error_code}]: {response.error}")
        if response.details and response.details.get("available_stages"):
            print(f"Available stages: {', '.join(response.details['available_stages'])}")
        sys.exit(1)

    print(
        f"Moved card {response.card_id} to '{response.committed_stage_key}' "
        f"at {response.committed_position}"
    )


def _offline_service(settings):
    from .api.service import BoardService

    if not settings.data_dir:
        print("Error: no data directory (set STAGEFLOW_DATA_DIR or pass --data-dir)")
        sys.exit(1)
    return BoardService.from_settings(settings)


if __name__ == "__main__":
    main()

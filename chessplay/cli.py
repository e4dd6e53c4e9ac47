"""Command-line front end: analyze positions, get hints, or play the engine.

Usage:
    chessplay analyze "<FEN>" [--depth 18]
    chessplay hint "<FEN>"
    chessplay play [--difficulty advanced] [--black] [--timed | --minutes 5 --increment 2]
"""

from __future__ import annotations

import argparse
import sys
import time
from concurrent.futures import TimeoutError as FutureTimeout

import chess
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chessplay.bridge import EngineBridge
from chessplay.config import Settings
from chessplay.coordinator import AICoordinator
from chessplay.errors import ChessPlayError, EngineError, IllegalMoveError
from chessplay.logging import setup_logging
from chessplay.models import (
    Difficulty,
    Evaluation,
    GameMode,
    Position,
    SessionConfig,
    SessionState,
    Side,
    TimerConfig,
)
from chessplay.oracle import MoveOracle
from chessplay.session import GameSession

# Unicode piece symbols
_PIECE_SYMBOLS = {
    "K": "♔", "Q": "♕", "R": "♖", "B": "♗",
    "N": "♘", "P": "♙",
    "k": "♚", "q": "♛", "r": "♜", "b": "♝",
    "n": "♞", "p": "♟",
}

_LIGHT_SQ = "grey85"
_DARK_SQ = "grey50"
_HIGHLIGHT = "yellow"
_CHECK = "red"


def render_board(state: SessionState) -> Panel:
    """Render the session's current position as a Rich Panel.

    Args:
        state: Session snapshot; its highlights mark the last move and a
            king in check.

    Returns:
        Panel containing the board, from the player's side.
    """
    board = chess.Board(state.position.fen)
    is_flipped = state.player_side is Side.BLACK

    marked: dict[str, str] = {}
    if state.highlights.last_move is not None:
        for square in state.highlights.last_move:
            marked[square] = _HIGHLIGHT
    if state.highlights.check is not None:
        marked[state.highlights.check] = _CHECK

    table = Table(show_header=False, show_edge=False, pad_edge=False,
                  box=None, padding=(0, 1))
    table.add_column(width=2, justify="right")
    for _ in range(8):
        table.add_column(width=3, justify="center")

    ranks = range(8) if is_flipped else range(7, -1, -1)
    files = list(range(7, -1, -1)) if is_flipped else list(range(8))

    for rank in ranks:
        row: list[Text] = [Text(str(rank + 1), style="bold")]
        for file in files:
            sq = chess.square(file, rank)
            piece = board.piece_at(sq)
            is_light = (rank + file) % 2 == 1
            bg = marked.get(chess.square_name(sq), _LIGHT_SQ if is_light else _DARK_SQ)
            symbol = _PIECE_SYMBOLS.get(piece.symbol(), "?") if piece is not None else " "
            row.append(Text(f" {symbol} ", style=f"on {bg}"))
        table.add_row(*row)

    file_labels = [Text("  ")]
    for f in files:
        file_labels.append(Text(f" {chr(ord('a') + f)} ", style="bold"))
    table.add_row(*file_labels)

    title = f"{state.status.value.capitalize()} - {state.side_to_move.value} to move"
    if state.status.is_terminal:
        title = f"Game over: {state.status.value}"
    return Panel(table, title=title, border_style="blue")


def _format_clock(ms: int) -> str:
    seconds = max(ms, 0) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def _format_score(evaluation: Evaluation) -> str:
    if evaluation.mate_in is not None:
        return f"Mate in {evaluation.mate_in}"
    return f"{evaluation.pawns:+.2f}"


def _format_moves(state: SessionState) -> str:
    moves = state.move_list
    lines = []
    for i in range(0, len(moves), 2):
        black = moves[i + 1] if i + 1 < len(moves) else ""
        lines.append(f"{i // 2 + 1}. {moves[i]} {black}".rstrip())
    return "  ".join(lines)


def _parse_position(fen: str) -> Position:
    position = Position(fen)
    if not MoveOracle().is_valid(position):
        raise ValueError(f"Invalid FEN: {fen}")
    return position


def _cli_analyze(console: Console, settings: Settings, fen: str, depth: int) -> int:
    """Stream engine analysis of a FEN position until the target depth.

    Args:
        console: Rich Console instance.
        settings: Loaded settings.
        fen: FEN string of the position to analyze.
        depth: Depth to analyze to.
    """
    position = _parse_position(fen)
    with EngineBridge(settings=settings.engine) as bridge:
        bridge.initialize().result()
        console.print(f"Position: {fen}")
        console.print(f"Side to move: {position.turn.value}")
        stream = bridge.start_continuous_analysis(position, depth=depth)
        for info in stream:
            if info.depth is None or not info.has_score:
                continue
            evaluation = Evaluation.from_info(info, position.turn)
            pv = " ".join(info.pv[:8])
            console.print(f"  depth {info.depth:>2}  {_format_score(evaluation):>10}  {pv}")
        if stream.error is not None:
            console.print(f"[red]{stream.error}[/red]")
            return 1
    return 0


def _cli_hint(console: Console, settings: Settings, fen: str) -> int:
    position = _parse_position(fen)
    session = GameSession()
    session.new_game(SessionConfig(mode=GameMode.ANALYSIS, starting_position=position))
    with EngineBridge(settings=settings.engine) as bridge:
        coordinator = AICoordinator(session, bridge, settings)
        move = coordinator.get_hint().result()
    _, san = session.oracle.apply(position, move)
    console.print(f"Hint: [bold]{san}[/bold] ({move.uci()})")
    return 0


def _play_timer(
    settings: Settings,
    minutes: float | None,
    increment: int | None,
    timed: bool = False,
) -> TimerConfig | None:
    """Clock for the play command. Missing values come from settings.timer."""
    if not timed and minutes is None and increment is None:
        return None
    return settings.timer.resolve(
        None if minutes is None else int(minutes * 60 * 1000),
        None if increment is None else increment * 1000,
    )


def _cli_play(
    console: Console,
    settings: Settings,
    difficulty: Difficulty,
    player_side: Side,
    timer: TimerConfig | None,
) -> int:
    """Play an interactive game against the engine.

    Args:
        console: Rich Console instance.
        settings: Loaded settings.
        difficulty: Engine difficulty.
        player_side: Side the human plays.
        timer: Clock setup, or None for an untimed game.
    """

    session = GameSession()
    with EngineBridge(settings=settings.engine) as bridge:
        coordinator = AICoordinator(session, bridge, settings)
        with coordinator:
            session.new_game(SessionConfig(
                mode=GameMode.VS_AUTOMATED,
                timer=timer,
                automated_difficulty=difficulty,
                player_side=player_side,
            ))
            console.print(f"New game vs engine ({difficulty.value}), you play {player_side.value}")
            console.print("Moves in SAN or UCI. Commands: undo, hint, eval, pgn, resign, draw, q")
            _play_loop(console, session, coordinator)
        console.print(session.to_pgn())
    return 0


def _play_loop(console: Console, session: GameSession, coordinator: AICoordinator) -> None:
    last_tick = time.monotonic()

    def _tick() -> None:
        nonlocal last_tick
        now = time.monotonic()
        session.tick(int((now - last_tick) * 1000))
        last_tick = now

    while True:
        _tick()
        state = session.snapshot()
        if not state.is_active:
            console.print(render_board(state))
            console.print(f"Game over: {state.status.value}")
            return

        if state.side_to_move is not state.player_side:
            # The attached coordinator moves on its own timer.
            time.sleep(0.05)
            continue

        console.print(render_board(state))
        if state.clock.enabled:
            console.print(
                f"White {_format_clock(state.clock.white_remaining_ms)}  "
                f"Black {_format_clock(state.clock.black_remaining_ms)}"
            )
        if state.history:
            console.print(_format_moves(state))

        user_input = console.input("Your move: ").strip()
        _tick()
        if not session.is_active:
            continue
        command = user_input.lower()
        if command == "q":
            console.print("Game ended by user.")
            return
        if command == "undo":
            # Take back the engine's reply and your own move.
            session.undo_last_move()
            session.undo_last_move()
            continue
        if command == "resign":
            session.resign(state.player_side)
            continue
        if command == "draw":
            session.declare_draw()
            continue
        if command == "pgn":
            console.print(session.to_pgn())
            continue
        if command == "hint":
            try:
                move = coordinator.get_hint().result(timeout=10)
                _, san = session.oracle.apply(session.position, move)
                console.print(f"Hint: [bold]{san}[/bold]")
            except (EngineError, FutureTimeout) as exc:
                console.print(f"[red]No hint available: {exc!r}[/red]")
            continue
        if command == "eval":
            try:
                console.print(f"Eval: {_format_score(coordinator.evaluate().result(timeout=10))}")
            except (EngineError, FutureTimeout) as exc:
                console.print(f"[red]No evaluation available: {exc!r}[/red]")
            continue

        try:
            move = session.oracle.parse_move(session.position, user_input)
            record = session.apply_move(move.from_square, move.to_square, move.promotion)
        except IllegalMoveError as exc:
            console.print(f"[red]{exc}[/red]")
            continue
        console.print(f"You played: {record.san}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for chessplay."""
    parser = argparse.ArgumentParser(
        description="Play and analyze chess against a UCI engine"
    )
    parser.add_argument("--config", help="Path to a chessplay.toml settings file")
    parser.add_argument("--log-level", help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a FEN position")
    analyze_parser.add_argument("fen", type=str, help="FEN string to analyze")
    analyze_parser.add_argument("--depth", type=int, default=18, help="Depth to analyze to")

    hint_parser = subparsers.add_parser("hint", help="Suggest a move for a FEN position")
    hint_parser.add_argument("fen", type=str, help="FEN string of the position")

    play_parser = subparsers.add_parser("play", help="Play against the engine")
    play_parser.add_argument(
        "--difficulty", choices=[d.value for d in Difficulty],
        default=Difficulty.INTERMEDIATE.value, help="Engine difficulty",
    )
    play_parser.add_argument("--black", action="store_true", help="Play the black pieces")
    play_parser.add_argument("--timed", action="store_true", help="Play with the configured clock")
    play_parser.add_argument("--minutes", type=float, help="Clock time per side")
    play_parser.add_argument("--increment", type=int, help="Increment in seconds")

    args = parser.parse_args(argv)

    settings = Settings.load(args.config)
    setup_logging(args.log_level or settings.log_level, settings.log_file, settings.protocol_log)
    console = Console()

    try:
        if args.command == "analyze":
            code = _cli_analyze(console, settings, args.fen, args.depth)
        elif args.command == "hint":
            code = _cli_hint(console, settings, args.fen)
        elif args.command == "play":
            code = _cli_play(
                console,
                settings,
                Difficulty(args.difficulty),
                Side.BLACK if args.black else Side.WHITE,
                _play_timer(settings, args.minutes, args.increment, args.timed),
            )
        else:
            parser.print_help()
            code = 1
    except (ChessPlayError, ValueError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()

"""MCP server for chess-play.

Exposes game sessions and the UCI engine as tools via FastMCP. Games
are stored in memory keyed by UUID; each game owns its own session,
engine bridge and coordinator.
"""

from __future__ import annotations

import atexit
import sys
import threading
import uuid
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

import chess
from loguru import logger
from mcp.server.fastmcp import FastMCP

from chessplay.bridge import EngineBridge
from chessplay.config import Settings
from chessplay.coordinator import AICoordinator
from chessplay.errors import ChessPlayError, EngineError, IllegalMoveError, NavigationOutOfRange
from chessplay.logging import setup_logging
from chessplay.models import (
    Difficulty,
    Evaluation,
    GameMode,
    Position,
    SessionConfig,
    Side,
    STARTING_FEN,
)
from chessplay.oracle import MoveOracle
from chessplay.session import GameSession

from response_schemas import (  # noqa: E402
    minify_analysis,
    minify_evaluation,
    minify_game_state,
)

mcp = FastMCP("chess-play")

# In-memory game store: game_id -> {session, bridge, coordinator}
_games: dict[str, dict] = {}

_settings = Settings.load()
_oracle = MoveOracle()

# Seconds to wait on the engine beyond its own deadline
_WAIT_SLACK_S = 2.0

# Longest a one-off analysis may run before it is stopped
_ANALYSIS_LIMIT_S = 30.0


def _make_bridge() -> EngineBridge:
    """Build an engine bridge from the loaded settings."""
    return EngineBridge(settings=_settings.engine)


def _wait_s(budget_ms: int) -> float:
    engine = _settings.engine
    return (engine.startup_timeout_ms + budget_ms + engine.grace_ms) / 1000.0 + _WAIT_SLACK_S


def _san(fen: str, uci: str) -> str:
    board = chess.Board(fen)
    return board.san(chess.Move.from_uci(uci))


def _build_game_state(game_id: str, game: dict) -> dict:
    """Build a game state dict from the in-memory game record.

    Args:
        game_id: UUID of the game.
        game: Internal game record with session, bridge, coordinator.

    Returns:
        Dict with position, history, status, clocks and legal moves.
    """
    session: GameSession = game["session"]
    state = session.snapshot()

    last = state.history[state.cursor] if state.cursor >= 0 else None
    board = chess.Board(state.position.fen)
    legal_moves = [board.san(m) for m in board.legal_moves] if state.at_live_end else []

    clock = None
    if state.clock.enabled:
        clock = {
            "white_ms": state.clock.white_remaining_ms,
            "black_ms": state.clock.black_remaining_ms,
            "increment_ms": state.clock.increment_ms,
        }

    return {
        "game_id": game_id,
        "mode": state.mode.value,
        "fen": state.position.fen,
        "board_display": str(board),
        "move_list": state.move_list,
        "cursor": state.cursor,
        "last_move": last.uci if last else None,
        "last_move_san": last.san if last else None,
        "check_square": state.highlights.check,
        "status": state.status.value,
        "is_game_over": not state.is_active,
        "result": session.result if state.status.is_terminal else None,
        "player_color": state.player_side.value,
        "difficulty": game["difficulty"],
        "eval_score": game.get("eval_score"),
        "clock": clock,
        "legal_moves": legal_moves,
    }


def _get_game(game_id: str) -> dict | None:
    """Look up a game by ID.

    Args:
        game_id: UUID string.

    Returns:
        Game record dict or None if not found.
    """
    return _games.get(game_id)


@atexit.register
def _dispose_all() -> None:
    for game in _games.values():
        game["bridge"].dispose()


# ---------------------------------------------------------------------------
# Core game tools
# ---------------------------------------------------------------------------


@mcp.tool()
def new_game(
    mode: str = "vs-automated",
    difficulty: str = "intermediate",
    player_color: str = "white",
    starting_fen: str | None = None,
    initial_time_ms: int | None = None,
    increment_ms: int | None = None,
    timed: bool = False,
) -> dict:
    """Start a new chess game.

    Args:
        mode: 'vs-automated' (against the engine), 'local' or 'analysis'.
        difficulty: beginner, intermediate, advanced or maximum.
        player_color: 'white' or 'black'. Default 'white'.
        starting_fen: Optional custom starting position FEN.
        initial_time_ms: Clock time per side.
        increment_ms: Time added after each move.
        timed: Play with a clock. Implied by either clock argument;
            values not given come from the configured timer defaults.

    Returns:
        Game state dict with initial board position.
    """
    try:
        game_mode = GameMode(mode)
        level = Difficulty(difficulty)
        side = Side(player_color)
    except ValueError as exc:
        return {"error": str(exc)}

    position = Position(starting_fen or STARTING_FEN)
    if not _oracle.is_valid(position):
        return {"error": f"Invalid FEN position: {position.fen}"}

    timer = None
    if timed or initial_time_ms is not None or increment_ms is not None:
        timer = _settings.timer.resolve(initial_time_ms, increment_ms)

    game_id = str(uuid.uuid4())
    session = GameSession(_oracle)
    bridge = _make_bridge()
    coordinator = AICoordinator(session, bridge, _settings)
    bridge.configure_difficulty(level)
    session.new_game(SessionConfig(
        mode=game_mode,
        timer=timer,
        automated_difficulty=level,
        player_side=side,
        starting_position=position,
    ))

    game = {
        "session": session,
        "bridge": bridge,
        "coordinator": coordinator,
        "difficulty": level.value,
        "eval_score": None,
    }
    _games[game_id] = game
    logger.info(f"Game {game_id} created ({game_mode.value}, {level.value})")
    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def get_board(game_id: str) -> dict:
    """Get the current board state for a game.

    Args:
        game_id: UUID of the game.

    Returns:
        Game state dict with current position, status and clocks.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def make_move(game_id: str, move: str) -> dict:
    """Make a player move in SAN or UCI notation.

    When an earlier ply is being reviewed, the moves after it are
    discarded and the game continues from there.

    Args:
        game_id: UUID of the game.
        move: Move such as 'e4', 'Nf3', 'O-O' or 'e2e4'.

    Returns:
        Updated game state dict after the move.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    if not session.is_active and session.at_live_end:
        return {"error": f"Game is already over. Result: {session.result}"}

    try:
        parsed = session.oracle.parse_move(session.position, move)
        session.apply_move(parsed.from_square, parsed.to_square, parsed.promotion)
    except IllegalMoveError:
        board = chess.Board(session.position.fen)
        legal = [board.san(m) for m in board.legal_moves]
        return {"error": f"Illegal move: {move}. Legal moves: {legal}"}

    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def engine_move(game_id: str) -> dict:
    """Have the engine make its move.

    Falls back to a random legal move if the engine fails.

    Args:
        game_id: UUID of the game.

    Returns:
        Updated game state dict after the engine's move.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    coordinator: AICoordinator = game["coordinator"]
    budget_ms = game["bridge"].difficulty.time_budget_ms
    try:
        coordinator.play_engine_move(timeout_s=_wait_s(budget_ms))
    except IllegalMoveError:
        return {"error": f"Game is already over. Result: {game['session'].result}"}

    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def undo_move(game_id: str) -> dict:
    """Undo the last move. Against the engine, undoes back to the player's turn.

    Args:
        game_id: UUID of the game.

    Returns:
        Updated game state dict after undo.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    if not session.history:
        return {"error": "No moves to undo"}
    if not session.at_live_end:
        return {"error": "Cannot undo while reviewing an earlier ply"}

    session.undo_last_move()

    # Undo the other half of the pair so the player is back on turn
    config = session.config
    if (config.mode is GameMode.VS_AUTOMATED and session.history
            and session.side_to_move is not config.player_side):
        session.undo_last_move()

    game["eval_score"] = None
    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def goto_ply(game_id: str, ply: int) -> dict:
    """Review the position after a given ply without changing the history.

    Args:
        game_id: UUID of the game.
        ply: Ply index; -1 is the starting position.

    Returns:
        Game state dict showing the reviewed position.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    try:
        game["session"].navigate_to_ply(ply)
    except NavigationOutOfRange as exc:
        return {"error": str(exc)}

    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def get_legal_moves(game_id: str, square: str | None = None) -> dict:
    """Get legal moves for the current position.

    Args:
        game_id: UUID of the game.
        square: Optional square (e.g. 'e2') to filter moves from.

    Returns:
        Dict with list of legal moves in SAN notation.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    try:
        moves = session.oracle.legal_moves(session.position, square)
    except ValueError:
        return {"error": f"Invalid square: {square}"}

    fen = session.position.fen
    return {
        "game_id": game_id,
        "square": square,
        "legal_moves": [_san(fen, m.uci()) for m in moves],
    }


@mcp.tool()
def resign(game_id: str) -> dict:
    """Resign the game on behalf of the player (the side to move in local games).

    Args:
        game_id: UUID of the game.

    Returns:
        Final game state dict.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    if not session.is_active:
        return {"error": f"Game is already over. Result: {session.result}"}
    config = session.config
    session.resign(config.player_side if config.mode is GameMode.VS_AUTOMATED else None)
    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def offer_draw(game_id: str) -> dict:
    """End the game as a draw by agreement.

    Args:
        game_id: UUID of the game.

    Returns:
        Final game state dict.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    if not session.is_active:
        return {"error": f"Game is already over. Result: {session.result}"}
    session.declare_draw()
    return minify_game_state(_build_game_state(game_id, game))


@mcp.tool()
def set_difficulty(game_id: str, difficulty: str) -> dict:
    """Change engine difficulty mid-game.

    Args:
        game_id: UUID of the game.
        difficulty: beginner, intermediate, advanced or maximum.

    Returns:
        Confirmation dict with the new difficulty settings.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    try:
        level = Difficulty(difficulty)
    except ValueError as exc:
        return {"error": str(exc)}

    settings = game["bridge"].configure_difficulty(level)
    game["difficulty"] = level.value

    return {
        "game_id": game_id,
        "difficulty": level.value,
        "skill_level": settings.skill_level,
        "depth": settings.depth,
        "message": f"Difficulty set to {level.value}",
    }


# ---------------------------------------------------------------------------
# Engine tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_hint(game_id: str) -> dict:
    """Suggest a move for the side to move without playing it.

    Args:
        game_id: UUID of the game.

    Returns:
        Dict with the suggested move in UCI and SAN.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    fen = session.position.fen
    coordinator: AICoordinator = game["coordinator"]
    try:
        move = coordinator.get_hint().result(timeout=_wait_s(_settings.engine.hint_time_budget_ms))
    except (EngineError, TimeoutError) as exc:
        return {"error": f"No hint available: {exc!r}"}

    return {"game_id": game_id, "move": move.uci(), "move_san": _san(fen, move.uci())}


@mcp.tool()
def evaluate_position(game_id: str) -> dict:
    """Evaluate the current position of a game.

    Args:
        game_id: UUID of the game.

    Returns:
        Dict with eval_score in pawns from White's point of view, mate_in,
        depth and principal variation.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    fen = session.position.fen
    coordinator: AICoordinator = game["coordinator"]
    try:
        evaluation: Evaluation = coordinator.evaluate().result(
            timeout=_wait_s(_settings.engine.evaluation_time_budget_ms)
        )
    except (EngineError, TimeoutError) as exc:
        return {"error": f"No evaluation available: {exc!r}"}

    game["eval_score"] = evaluation.pawns
    return minify_evaluation({
        "game_id": game_id,
        "fen": fen,
        "eval_score": evaluation.pawns,
        "mate_in": evaluation.mate_in,
        "depth": evaluation.depth,
        "pv": list(evaluation.pv),
    })


@mcp.tool()
def analyze_position(fen: str, depth: int = 18) -> dict:
    """Analyze any chess position at full strength.

    Does not require an active game. Creates a temporary engine for analysis.

    Args:
        fen: FEN string of the position to analyze.
        depth: Analysis depth (default 18).

    Returns:
        Dict with fen, depth, and lines (one per completed depth, each with
        depth, score_cp from White's point of view, moves and mate_in).
    """
    position = Position(fen)
    if not _oracle.is_valid(position):
        return {"error": f"Invalid FEN position: {fen}"}

    bridge = _make_bridge()
    watchdog = threading.Timer(_ANALYSIS_LIMIT_S, bridge.stop)
    watchdog.daemon = True
    lines: dict[int, dict] = {}
    try:
        bridge.initialize().result(timeout=_wait_s(0))
        stream = bridge.start_continuous_analysis(position, depth=depth)
        watchdog.start()
        for info in stream:
            if info.depth is None or not info.has_score:
                continue
            evaluation = Evaluation.from_info(info, position.turn)
            lines[info.depth] = {
                "depth": info.depth,
                "score_cp": evaluation.score_cp(),
                "moves": list(info.pv),
                "mate_in": evaluation.mate_in,
            }
        if stream.error is not None and not lines:
            return {"error": f"Analysis failed: {stream.error}"}
    except (ChessPlayError, TimeoutError) as exc:
        return {"error": f"Analysis failed: {exc!r}"}
    finally:
        watchdog.cancel()
        bridge.dispose()

    ordered = [lines[d] for d in sorted(lines, reverse=True)]
    return minify_analysis({"fen": fen, "depth": depth, "lines": ordered})


# ---------------------------------------------------------------------------
# Utility tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_game_pgn(game_id: str) -> dict:
    """Export game as PGN string.

    Args:
        game_id: UUID of the game.

    Returns:
        Dict with PGN string and result.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}

    session: GameSession = game["session"]
    return {"game_id": game_id, "pgn": session.to_pgn(), "result": session.result}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    setup_logging(_settings.log_level, _settings.log_file, _settings.protocol_log)
    mcp.run()

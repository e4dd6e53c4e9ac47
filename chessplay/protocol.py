"""Line-oriented engine protocol: command formatting and response parsing.

Parsing is tolerant. Lines the host does not care about parse to None,
and a malformed numeric field or move is reported through the on_warning
callback (default: a loguru warning) and skipped instead of failing the
whole line.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from chessplay.errors import ProtocolParseWarning
from chessplay.models import EngineInfo, Move, Position

UCI = "uci"
UCIOK = "uciok"
ISREADY = "isready"
READYOK = "readyok"
UCINEWGAME = "ucinewgame"
STOP = "stop"
QUIT = "quit"

_NULL_MOVES = {"(none)", "0000"}

# info keys followed by exactly one value the host ignores
_SKIPPED_INFO_KEYS = {
    "seldepth", "time", "nodes", "multipv", "currmove", "currmovenumber",
    "hashfull", "nps", "tbhits", "sbhits", "cpuload",
}

WarningHandler = Callable[[ProtocolParseWarning], None]


@dataclass(frozen=True)
class Ready:
    """Handshake acknowledgment: 'uciok' or 'readyok'."""

    token: str


@dataclass(frozen=True)
class Identity:
    """An 'id name ...' or 'id author ...' line."""

    key: str
    value: str


@dataclass(frozen=True)
class BestMove:
    """Terminal search result. move is None when the engine has no move."""

    move: Move | None
    ponder: Move | None = None


EngineMessage = Ready | Identity | EngineInfo | BestMove


def _log_warning(warning: ProtocolParseWarning) -> None:
    logger.warning(str(warning))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def position_command(position: Position) -> str:
    return f"position fen {position.fen}"


def go_command(
    depth: int | None = None,
    movetime_ms: int | None = None,
    infinite: bool = False,
) -> str:
    """Build a 'go' command.

    Args:
        depth: Maximum search depth in plies.
        movetime_ms: Search time budget in milliseconds.
        infinite: Search until stopped; overrides depth and movetime.

    Returns:
        Command line such as 'go depth 8 movetime 1000'.
    """
    if infinite:
        return "go infinite"
    parts = ["go"]
    if depth is not None:
        parts += ["depth", str(depth)]
    if movetime_ms is not None:
        parts += ["movetime", str(movetime_ms)]
    return " ".join(parts)


def setoption_command(name: str, value: object) -> str:
    return f"setoption name {name} value {value}"


def skill_level_command(level: int) -> str:
    if not 0 <= level <= 20:
        raise ValueError(f"Skill Level must be within 0-20, got {level}")
    return setoption_command("Skill Level", level)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def parse_move(text: str) -> Move | None:
    """Parse a long algebraic move; None for the engine's null-move markers.

    Raises:
        ValueError: If the text is neither a move nor a null-move marker.
    """
    if text in _NULL_MOVES:
        return None
    return Move.from_uci(text)


def parse_line(line: str, on_warning: WarningHandler | None = None) -> EngineMessage | None:
    """Parse one line of engine output.

    Args:
        line: Raw line, with or without the trailing newline.
        on_warning: Receives a ProtocolParseWarning for each malformed field.

    Returns:
        Parsed message, or None for lines the host ignores.
    """
    warn = on_warning or _log_warning
    tokens = line.split()
    if not tokens:
        return None
    head = tokens[0]

    if head in (UCIOK, READYOK):
        return Ready(head)
    if head == "id" and len(tokens) >= 3:
        return Identity(tokens[1], " ".join(tokens[2:]))
    if head == "bestmove":
        return _parse_bestmove(line, tokens, warn)
    if head == "info":
        return _parse_info(line, tokens, warn)
    return None


def _parse_bestmove(line: str, tokens: list[str], warn: WarningHandler) -> BestMove:
    if len(tokens) < 2:
        warn(ProtocolParseWarning(line, "bestmove without a move"))
        return BestMove(None)
    try:
        move = parse_move(tokens[1])
    except ValueError:
        warn(ProtocolParseWarning(line, f"malformed bestmove {tokens[1]!r}"))
        return BestMove(None)

    ponder = None
    if len(tokens) >= 4 and tokens[2] == "ponder":
        try:
            ponder = parse_move(tokens[3])
        except ValueError:
            warn(ProtocolParseWarning(line, f"malformed ponder move {tokens[3]!r}"))
    return BestMove(move, ponder)


def _parse_int(line: str, key: str, raw: str | None, warn: WarningHandler) -> int | None:
    if raw is None:
        warn(ProtocolParseWarning(line, f"missing value for {key!r}"))
        return None
    try:
        return int(raw)
    except ValueError:
        warn(ProtocolParseWarning(line, f"non-numeric {key} {raw!r}"))
        return None


def _parse_info(line: str, tokens: list[str], warn: WarningHandler) -> EngineInfo | None:
    if len(tokens) > 1 and tokens[1] == "string":
        return None

    depth = score_cp = mate_in = None
    pv: tuple[str, ...] = ()
    i = 1
    while i < len(tokens):
        key = tokens[i]
        value = tokens[i + 1] if i + 1 < len(tokens) else None
        if key == "depth":
            depth = _parse_int(line, "depth", value, warn)
            i += 2
        elif key == "score":
            kind = value
            raw = tokens[i + 2] if i + 2 < len(tokens) else None
            if kind == "cp":
                score_cp = _parse_int(line, "score cp", raw, warn)
            elif kind == "mate":
                mate_in = _parse_int(line, "score mate", raw, warn)
            else:
                warn(ProtocolParseWarning(line, f"unknown score kind {kind!r}"))
            i += 3
            # Bound markers qualify the score; the value itself is still usable.
            while i < len(tokens) and tokens[i] in ("lowerbound", "upperbound"):
                i += 1
        elif key == "pv":
            moves = []
            for text in tokens[i + 1:]:
                try:
                    Move.from_uci(text)
                except ValueError:
                    warn(ProtocolParseWarning(line, f"malformed pv move {text!r}"))
                    break
                moves.append(text)
            pv = tuple(moves)
            break
        elif key == "string":
            break
        elif key in _SKIPPED_INFO_KEYS:
            i += 2
        else:
            i += 1

    return EngineInfo(depth=depth, score_cp=score_cp, mate_in=mate_in, pv=pv)

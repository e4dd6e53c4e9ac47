"""Shared data models for chess-play.

Positions, moves and move records are immutable values: the session
replaces them on every mutation and never edits one in place, so they
can be handed to the engine thread, the tool server and the CLI freely.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

STARTING_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

_UCI_MOVE_RE = re.compile(r"^([a-h][1-8])([a-h][1-8])([qrbn])?$")


class Side(str, Enum):
    WHITE = "white"
    BLACK = "black"

    @property
    def opponent(self) -> Side:
        return Side.BLACK if self is Side.WHITE else Side.WHITE


class GameMode(str, Enum):
    LOCAL = "local"
    VS_AUTOMATED = "vs-automated"
    ANALYSIS = "analysis"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    MAXIMUM = "maximum"


class GameStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    CHECK = "check"
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    DRAW = "draw"
    RESIGNED = "resigned"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self not in (GameStatus.WAITING, GameStatus.ACTIVE, GameStatus.CHECK)


@dataclass(frozen=True)
class DifficultySettings:
    """Engine strength for one difficulty level."""

    skill_level: int
    depth: int
    time_budget_ms: int
    error_probability: float


DIFFICULTY_SETTINGS: dict[Difficulty, DifficultySettings] = {
    Difficulty.BEGINNER: DifficultySettings(1, 3, 500, 0.4),
    Difficulty.INTERMEDIATE: DifficultySettings(8, 8, 1000, 0.15),
    Difficulty.ADVANCED: DifficultySettings(15, 15, 2000, 0.05),
    Difficulty.MAXIMUM: DifficultySettings(20, 20, 3000, 0.0),
}


@dataclass(frozen=True)
class Position:
    """Serialized board snapshot (FEN). Compared by value."""

    fen: str = STARTING_FEN

    @property
    def turn(self) -> Side:
        fields = self.fen.split()
        if len(fields) > 1 and fields[1] == "b":
            return Side.BLACK
        return Side.WHITE

    @property
    def key(self) -> str:
        """FEN without the move counters, for repetition detection."""
        return " ".join(self.fen.split()[:4])

    def __str__(self) -> str:
        return self.fen


STARTING_POSITION = Position(STARTING_FEN)


@dataclass(frozen=True)
class Move:
    """A move in long algebraic form: source, destination, optional promotion."""

    from_square: str
    to_square: str
    promotion: str | None = None

    @classmethod
    def from_uci(cls, text: str) -> Move:
        """Parse a four or five character long algebraic move.

        Args:
            text: Move such as 'e2e4' or 'e7e8q'.

        Returns:
            Parsed Move.

        Raises:
            ValueError: If the text is not a well-formed move.
        """
        match = _UCI_MOVE_RE.match(text.strip())
        if match is None:
            raise ValueError(f"Malformed move: {text!r}")
        return cls(match.group(1), match.group(2), match.group(3))

    def uci(self) -> str:
        return f"{self.from_square}{self.to_square}{self.promotion or ''}"

    def __str__(self) -> str:
        return self.uci()


@dataclass(frozen=True)
class MoveRecord:
    """One applied move. Immutable once appended to the history."""

    from_square: str
    to_square: str
    promotion: str | None
    san: str
    position: Position
    timestamp_ms: int

    @property
    def move(self) -> Move:
        return Move(self.from_square, self.to_square, self.promotion)

    @property
    def uci(self) -> str:
        return self.move.uci()


@dataclass(frozen=True)
class TimerConfig:
    initial_time_ms: int
    increment_ms: int = 0


@dataclass(frozen=True)
class SessionConfig:
    """Creation-time options for a game."""

    mode: GameMode = GameMode.LOCAL
    timer: TimerConfig | None = None
    automated_difficulty: Difficulty = Difficulty.INTERMEDIATE
    player_side: Side = Side.WHITE
    starting_position: Position = STARTING_POSITION

    @property
    def automated_side(self) -> Side | None:
        if self.mode is not GameMode.VS_AUTOMATED:
            return None
        return self.player_side.opponent


@dataclass(frozen=True)
class ClockState:
    white_remaining_ms: int
    black_remaining_ms: int
    increment_ms: int
    enabled: bool

    def remaining(self, side: Side) -> int:
        if side is Side.WHITE:
            return self.white_remaining_ms
        return self.black_remaining_ms


@dataclass(frozen=True)
class Highlights:
    """Squares to mark: the last move's endpoints and a king in check."""

    last_move: tuple[str, str] | None = None
    check: str | None = None


@dataclass(frozen=True)
class SessionState:
    """Read-only snapshot of a GameSession."""

    position: Position
    history: tuple[MoveRecord, ...]
    cursor: int
    mode: GameMode
    clock: ClockState
    is_active: bool
    status: GameStatus
    highlights: Highlights
    player_side: Side = Side.WHITE
    automated_difficulty: Difficulty = Difficulty.INTERMEDIATE
    loser: Side | None = None
    version: int = 0

    @property
    def side_to_move(self) -> Side:
        return self.position.turn

    @property
    def at_live_end(self) -> bool:
        return self.cursor == len(self.history) - 1

    @property
    def move_list(self) -> list[str]:
        return [record.san for record in self.history]


class EngineRequestKind(str, Enum):
    BEST_MOVE = "bestMove"
    EVALUATE = "evaluate"
    ANALYZE = "analyze"


@dataclass(frozen=True)
class EngineRequest:
    id: int
    kind: EngineRequestKind
    position: Position
    time_budget_ms: int | None
    search_depth: int | None


@dataclass(frozen=True)
class EngineInfo:
    """One parsed 'info' line. Scores are relative to the side to move."""

    depth: int | None = None
    score_cp: int | None = None
    mate_in: int | None = None
    pv: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_score(self) -> bool:
        return self.score_cp is not None or self.mate_in is not None

    @property
    def pawns(self) -> float | None:
        if self.score_cp is None:
            return None
        return self.score_cp / 100.0


@dataclass(frozen=True)
class Evaluation:
    """Position evaluation from White's point of view (positive = White better)."""

    pawns: float
    mate_in: int | None = None
    depth: int = 0
    pv: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_info(cls, info: EngineInfo | None, turn: Side) -> Evaluation:
        """Normalize an engine-relative info line to White's point of view.

        Args:
            info: Last scored info line of the search, or None if none arrived.
            turn: Side to move in the evaluated position.

        Returns:
            Evaluation with pawns and mate distance signed for White.
        """
        if info is None or not info.has_score:
            return cls(pawns=0.0)
        sign = 1 if turn is Side.WHITE else -1
        mate_in = info.mate_in * sign if info.mate_in is not None else None
        if info.score_cp is not None:
            pawns = sign * info.score_cp / 100.0
        else:
            # Mate scores have no centipawn value; pin the bar to the winning side.
            # "mate 0" means the side to move is already mated.
            pawns = sign * (100.0 if info.mate_in > 0 else -100.0)
        return cls(pawns=pawns, mate_in=mate_in, depth=info.depth or 0, pv=info.pv)

    def score_cp(self, mate_score: int = 10000) -> int:
        if self.mate_in is not None:
            return mate_score if self.pawns > 0 else -mate_score
        return round(self.pawns * 100)

"""Game Session: the single authoritative owner of an in-progress game.

All board mutation flows through GameSession. The session keeps the
starting Position, the live move history and a cursor into it; the
current Position is always the one reached by replaying
history[0..cursor] from the starting Position. Mutations are serialized
by a re-entrant lock and subscribers are notified after it is released.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import chess
import chess.pgn
from loguru import logger

from chessplay.clock import Clock
from chessplay.errors import IllegalMoveError, NavigationOutOfRange
from chessplay.events import Channel, SessionEvent, SessionEventKind, Subscription
from chessplay.models import (
    GameMode,
    GameStatus,
    Highlights,
    Move,
    MoveRecord,
    Position,
    SessionConfig,
    SessionState,
    Side,
    STARTING_POSITION,
)
from chessplay.oracle import MoveOracle


def _now_ms() -> int:
    return int(time.time() * 1000)


class GameSession:
    """Position ledger, move history, cursor and clocks for one game."""

    def __init__(
        self,
        oracle: MoveOracle | None = None,
        clock_source: Callable[[], int] = _now_ms,
    ) -> None:
        """Create an idle session. Call new_game() to start playing.

        Args:
            oracle: Move Legality Oracle. Defaults to the python-chess one.
            clock_source: Returns the current time in ms, stamped on records.
        """
        self._oracle = oracle or MoveOracle()
        self._now_ms = clock_source
        self._lock = threading.RLock()
        self._events: Channel[SessionEvent] = Channel("session")

        self._config = SessionConfig()
        self._initial = STARTING_POSITION
        self._position = STARTING_POSITION
        self._history: list[MoveRecord] = []
        self._cursor = -1
        self._clock = Clock()
        self._started = False
        self._ended: GameStatus | None = None
        self._loser: Side | None = None
        self._live_status = GameStatus.WAITING
        self._highlights = Highlights()
        self._version = 0

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def oracle(self) -> MoveOracle:
        return self._oracle

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def position(self) -> Position:
        return self._position

    @property
    def initial_position(self) -> Position:
        return self._initial

    @property
    def history(self) -> tuple[MoveRecord, ...]:
        with self._lock:
            return tuple(self._history)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def version(self) -> int:
        """Incremented by every mutation, including navigation and ticks."""
        return self._version

    @property
    def side_to_move(self) -> Side:
        return self._position.turn

    @property
    def at_live_end(self) -> bool:
        return self._cursor == len(self._history) - 1

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._is_active()

    @property
    def status(self) -> GameStatus:
        with self._lock:
            if self._ended is not None:
                return self._ended
            return self._live_status

    @property
    def result(self) -> str:
        """PGN result string: '1-0', '0-1', '1/2-1/2' or '*' while undecided."""
        with self._lock:
            return self._result()

    def _is_active(self) -> bool:
        return self._started and self._ended is None and not self._live_status.is_terminal

    def _can_move(self) -> bool:
        # A finished board may still be branched from an earlier ply.
        if not self._started or self._ended is not None:
            return False
        return not self._live_status.is_terminal or not self.at_live_end

    def snapshot(self) -> SessionState:
        with self._lock:
            return SessionState(
                position=self._position,
                history=tuple(self._history),
                cursor=self._cursor,
                mode=self._config.mode,
                clock=self._clock.state,
                is_active=self._is_active(),
                status=self._ended or self._live_status,
                highlights=self._highlights,
                player_side=self._config.player_side,
                automated_difficulty=self._config.automated_difficulty,
                loser=self._loser,
                version=self._version,
            )

    def subscribe(self, callback: Callable[[SessionEvent], None]) -> Subscription:
        """Register for change notifications.

        Args:
            callback: Called with a SessionEvent after every mutation, outside
                the session lock.

        Returns:
            Subscription token; cancel() it to stop receiving events.
        """
        return self._events.subscribe(callback)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def new_game(self, config: SessionConfig | None = None) -> SessionState:
        """Reset to the starting position with an empty history and fresh clocks.

        Raises:
            ValueError: If config.starting_position is not a valid position.
        """
        config = config or SessionConfig()
        if not self._oracle.is_valid(config.starting_position):
            raise ValueError(f"Invalid starting position: {config.starting_position}")
        with self._lock:
            self._config = config
            self._initial = config.starting_position
            self._position = config.starting_position
            self._history = []
            self._cursor = -1
            self._clock = Clock.from_timer(config.timer)
            self._started = True
            self._ended = None
            self._loser = None
            self._live_status = self._oracle.status(self._initial)
            self._highlights = self._highlights_for(self._initial, None)
            state = self._bump()
        logger.info(
            f"New {config.mode.value} game from {config.starting_position.fen}"
            + (f" ({config.timer.initial_time_ms} ms + {config.timer.increment_ms} ms)"
               if config.timer else "")
        )
        self._publish(SessionEventKind.NEW_GAME, state)
        return state

    def apply_move(
        self,
        from_square: str,
        to_square: str,
        promotion: str | None = None,
        expected_position: Position | None = None,
    ) -> MoveRecord:
        """Play a move from the current position, all or nothing.

        When the cursor is behind the live end (reviewing), the moves after
        the cursor are discarded before the new move is appended.

        Args:
            from_square: Source square, e.g. 'e2'.
            to_square: Destination square, e.g. 'e4'.
            promotion: Lowercase promotion piece letter (q, r, b, n), if any.
            expected_position: Only play the move if this is still the
                current position. Checked under the session lock.

        Returns:
            The appended MoveRecord.

        Raises:
            IllegalMoveError: If the game is not active, the position is not
                expected_position, or the Oracle rejects the move. The
                session is left unchanged.
        """
        move = Move(from_square, to_square, promotion.lower() if promotion else None)
        with self._lock:
            if not self._can_move():
                raise IllegalMoveError(move.uci(), "game is not active")
            if expected_position is not None and self._position != expected_position:
                raise IllegalMoveError(move.uci(), "position changed")
            mover = self._position.turn
            resulting, san = self._oracle.apply(self._position, move)

            record = MoveRecord(
                from_square=move.from_square,
                to_square=move.to_square,
                promotion=move.promotion,
                san=san,
                position=resulting,
                timestamp_ms=self._now_ms(),
            )
            if not self.at_live_end:
                logger.debug(f"Branching from ply {self._cursor}, dropping "
                             f"{len(self._history) - 1 - self._cursor} moves")
                del self._history[self._cursor + 1:]
            self._history.append(record)
            self._cursor = len(self._history) - 1
            self._position = resulting
            if self._clock.enabled:
                self._clock.apply_increment(mover)
            self._live_status = self._oracle.status(resulting, self._line_before(self._cursor))
            self._highlights = self._highlights_for(resulting, record)
            state = self._bump()
        logger.debug(f"{mover.value} played {san} ({move.uci()})")
        self._publish(SessionEventKind.MOVE, state)
        if state.status.is_terminal:
            logger.info(f"Game over: {state.status.value}")
            self._publish(SessionEventKind.GAME_OVER, state)
        return record

    def apply_uci(self, text: str) -> MoveRecord:
        """Apply a long algebraic move such as 'e7e8q'."""
        try:
            move = Move.from_uci(text)
        except ValueError as exc:
            raise IllegalMoveError(text, "malformed move") from exc
        return self.apply_move(move.from_square, move.to_square, move.promotion)

    def undo_last_move(self) -> MoveRecord | None:
        """Remove the last move and step back to the position before it.

        Returns:
            The removed MoveRecord, or None when there is nothing to undo
            or the cursor is not at the live end.
        """
        with self._lock:
            if not self._history:
                return None
            if not self.at_live_end:
                logger.debug(f"Undo ignored while reviewing ply {self._cursor}")
                return None
            removed = self._history.pop()
            self._cursor = len(self._history) - 1
            self._position = self._history[-1].position if self._history else self._initial
            self._live_status = self._oracle.status(
                self._position, self._line_before(self._cursor)
            )
            self._highlights = self._highlights_for(
                self._position, self._history[-1] if self._history else None
            )
            state = self._bump()
        logger.debug(f"Undid {removed.san}")
        self._publish(SessionEventKind.UNDO, state)
        return removed

    def navigate_to_ply(self, index: int) -> Position:
        """Show the position after history[index] without touching the history.

        Args:
            index: Ply index; -1 is the starting position.

        Returns:
            The replayed Position, now the current position.

        Raises:
            NavigationOutOfRange: If index is outside [-1, len(history) - 1].
        """
        with self._lock:
            if not -1 <= index < len(self._history):
                raise NavigationOutOfRange(index, len(self._history))
            self._position = self.replay(index)
            self._cursor = index
            self._highlights = self._highlights_for(
                self._position, self._history[index] if index >= 0 else None
            )
            state = self._bump()
        self._publish(SessionEventKind.NAVIGATE, state)
        return state.position

    def resign(self, side: Side | None = None) -> None:
        """End the game as a loss for side (default: the side to move)."""
        with self._lock:
            if not self._is_active():
                return
            self._ended = GameStatus.RESIGNED
            self._loser = side or self._live_turn()
            state = self._bump()
        logger.info(f"{state.loser.value} resigned")
        self._publish(SessionEventKind.GAME_OVER, state)

    def declare_draw(self) -> None:
        with self._lock:
            if not self._is_active():
                return
            self._ended = GameStatus.DRAW
            state = self._bump()
        logger.info("Game drawn by agreement")
        self._publish(SessionEventKind.GAME_OVER, state)

    def tick(self, elapsed_ms: int) -> bool:
        """Run the clock of the side to move and flag it if it has expired.

        Only ticks while the game is active and clocks are enabled. The
        live side to move is charged even while an earlier ply is reviewed.

        Returns:
            True if the side to move ran out of time on this tick.
        """
        with self._lock:
            if not (self._is_active() and self._clock.enabled):
                return False
            side = self._live_turn()
            self._clock.tick(side, elapsed_ms)
            expired = self._clock.is_expired(side)
            if expired:
                self._ended = GameStatus.TIMEOUT
                self._loser = side
            state = self._bump()
        if expired:
            logger.info(f"{side.value} lost on time")
            self._publish(SessionEventKind.GAME_OVER, state)
        else:
            self._publish(SessionEventKind.TICK, state)
        return expired

    # ------------------------------------------------------------------
    # Queries delegated to the Oracle
    # ------------------------------------------------------------------

    def selectable_moves(self, square: str) -> frozenset[str]:
        """Legal destination squares for the piece on square, if it may move now."""
        return self._oracle.destinations(self._position, square)

    def legal_moves(self) -> list[Move]:
        return self._oracle.legal_moves(self._position)

    def replay(self, index: int | None = None) -> Position:
        """Replay history[0..index] from the starting position through the Oracle.

        Args:
            index: Last ply to replay; defaults to the cursor.
        """
        with self._lock:
            stop = self._cursor if index is None else index
            position = self._initial
            for record in self._history[: stop + 1]:
                position, _ = self._oracle.apply(position, record.move)
            return position

    def to_pgn(self) -> str:
        """Export the live line as PGN."""
        with self._lock:
            game = chess.pgn.Game()
            if self._initial != STARTING_POSITION:
                game.setup(chess.Board(self._initial.fen))
            game.headers["Event"] = f"chess-play {self._config.mode.value} game"
            if self._config.mode is GameMode.VS_AUTOMATED:
                player = self._config.player_side
                engine_name = f"Engine ({self._config.automated_difficulty.value})"
                game.headers["White"] = "Player" if player is Side.WHITE else engine_name
                game.headers["Black"] = "Player" if player is Side.BLACK else engine_name
            game.headers["Result"] = self._result()
            node = game
            for record in self._history:
                node = node.add_variation(chess.Move.from_uci(record.uci))
            return str(game)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _live_turn(self) -> Side:
        live = self._history[-1].position if self._history else self._initial
        return live.turn

    def _line_before(self, index: int) -> list[Position]:
        return [self._initial] + [r.position for r in self._history[:index]]

    def _highlights_for(self, position: Position, record: MoveRecord | None) -> Highlights:
        last_move = (record.from_square, record.to_square) if record else None
        check = None
        if self._oracle.is_in_check(position):
            check = self._oracle.king_square(position, position.turn)
        return Highlights(last_move=last_move, check=check)

    def _result(self) -> str:
        status = self._ended or self._live_status
        if status is GameStatus.CHECKMATE:
            return "0-1" if self._live_turn() is Side.WHITE else "1-0"
        if status in (GameStatus.RESIGNED, GameStatus.TIMEOUT) and self._loser is not None:
            return "0-1" if self._loser is Side.WHITE else "1-0"
        if status in (GameStatus.STALEMATE, GameStatus.DRAW):
            return "1/2-1/2"
        return "*"

    def _bump(self) -> SessionState:
        self._version += 1
        return self.snapshot()

    def _publish(self, kind: str, state: SessionState) -> None:
        self._events.publish(SessionEvent(kind, state))

"""AI Coordinator: plays the automated side of a session through the engine.

The coordinator listens to session events. Whenever it is the automated
side's turn in an active vs-automated game it arms a cancellable timer
with a short random delay, then asks the bridge for a move. Whatever
goes wrong on the engine side (not ready, timeout, cancelled, illegal
answer) ends in a uniformly random legal move, so the automated side
always moves.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout

from loguru import logger

from chessplay.bridge import AnalysisStream, EngineBridge
from chessplay.config import Settings
from chessplay.errors import EngineError, IllegalMoveError
from chessplay.events import SessionEvent, SessionEventKind, Subscription
from chessplay.models import (
    EngineInfo,
    GameMode,
    Move,
    MoveRecord,
    Position,
    SessionState,
)
from chessplay.session import GameSession

# Events after which the position on the board may differ
_POSITION_EVENTS = {
    SessionEventKind.NEW_GAME,
    SessionEventKind.MOVE,
    SessionEventKind.UNDO,
    SessionEventKind.NAVIGATE,
    SessionEventKind.GAME_OVER,
}


def _chain(source: Future, target: Future) -> None:
    """Copy the outcome of source onto target once source settles."""

    def _copy(done: Future) -> None:
        if target.done():
            return
        exc = done.exception()
        if exc is not None:
            target.set_exception(exc)
        else:
            target.set_result(done.result())

    source.add_done_callback(_copy)


class AICoordinator:
    """Connects one GameSession to one EngineBridge."""

    def __init__(
        self,
        session: GameSession,
        bridge: EngineBridge,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._session = session
        self._bridge = bridge
        self._settings = settings or Settings()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._subscription: Subscription | None = None
        self._generation = 0
        self._timer: threading.Timer | None = None
        self._analysis_callback: Callable[[EngineInfo], None] | None = None
        self._analysis: AnalysisStream | None = None

    @property
    def session(self) -> GameSession:
        return self._session

    @property
    def bridge(self) -> EngineBridge:
        return self._bridge

    @property
    def analysis(self) -> AnalysisStream | None:
        """The live analysis stream started by start_analysis(), if any."""
        return self._analysis

    @property
    def move_pending(self) -> bool:
        """True while an automated move is scheduled or being searched."""
        with self._lock:
            return self._timer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Start following the session. Schedules a move if one is due now."""
        with self._lock:
            if self._subscription is not None:
                return
            self._subscription = self._session.subscribe(self._on_event)
        self._schedule(self._session.snapshot())

    def detach(self) -> None:
        """Stop following the session and cancel any scheduled move."""
        with self._lock:
            subscription, self._subscription = self._subscription, None
            self._generation += 1
            self._cancel_timer()
        if subscription is not None:
            subscription.cancel()
        self.stop_analysis()

    def __enter__(self) -> AICoordinator:
        self.attach()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.detach()

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def _on_event(self, event: SessionEvent) -> None:
        if event.kind not in _POSITION_EVENTS:
            return
        with self._lock:
            self._generation += 1
            self._cancel_timer()
        if event.kind == SessionEventKind.NEW_GAME:
            self._prepare_engine(event.state)
        if self._analysis_callback is not None:
            self._restart_analysis()
        self._schedule(event.state)

    def _prepare_engine(self, state: SessionState) -> None:
        self._bridge.new_game()
        if state.mode is GameMode.VS_AUTOMATED:
            self._bridge.configure_difficulty(state.automated_difficulty)

    def _automated_turn(self, state: SessionState) -> bool:
        return (
            state.mode is GameMode.VS_AUTOMATED
            and state.is_active
            and state.at_live_end
            and state.side_to_move is self._session.config.automated_side
        )

    def _schedule(self, state: SessionState) -> None:
        if not self._automated_turn(state):
            return
        coordinator = self._settings.coordinator
        delay_ms = self._rng.uniform(coordinator.min_delay_ms, coordinator.max_delay_ms)
        with self._lock:
            if self._subscription is None:
                return
            self._cancel_timer()
            generation = self._generation
            timer = threading.Timer(delay_ms / 1000.0, self._fire, args=(generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()
        logger.debug(f"Automated move scheduled in {delay_ms:.0f} ms")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and self._subscription is not None

    # ------------------------------------------------------------------
    # Automated move
    # ------------------------------------------------------------------

    def _fire(self, generation: int) -> None:
        if not self._current(generation):
            return
        state = self._session.snapshot()
        if not self._automated_turn(state):
            self._done(generation)
            return
        weakness = self._bridge.difficulty.error_probability
        if weakness and self._rng.random() < weakness:
            logger.debug("Automated side plays a random move at this difficulty")
            self._play_random(generation, state.position)
            return
        request = self._when_ready(lambda: self._bridge.request_best_move(state.position))
        request.add_done_callback(lambda done: self._on_result(generation, state.position, done))

    def _on_result(self, generation: int, position: Position, done: Future) -> None:
        if not self._current(generation) or self._session.position != position:
            logger.debug("Discarding engine move for a position no longer on the board")
            return
        try:
            move = done.result()
        except EngineError as exc:
            logger.warning(f"Engine move failed ({exc}); playing a random legal move")
            self._play_random(generation, position)
            return
        try:
            self._apply(move, position)
        except IllegalMoveError as exc:
            if self._session.position != position:
                logger.debug(f"Engine move not applied: {exc}")
                self._done(generation)
                return
            logger.warning(f"Engine suggested {exc}; playing a random legal move")
            self._play_random(generation, position)
            return
        self._done(generation)

    def _play_random(self, generation: int, position: Position) -> None:
        if not self._current(generation) or self._session.position != position:
            return
        try:
            self._apply_random(position)
        except IllegalMoveError as exc:
            # The session moved on between the check above and the apply.
            logger.debug(f"Random fallback not applied: {exc}")
        self._done(generation)

    def _done(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation:
                self._timer = None

    def _apply(self, move: Move, expected: Position | None = None) -> MoveRecord:
        return self._session.apply_move(move.from_square, move.to_square, move.promotion, expected)

    def _apply_random(self, expected: Position | None = None) -> MoveRecord:
        if expected is None:
            moves = self._session.legal_moves()
        else:
            moves = self._session.oracle.legal_moves(expected)
        if not moves:
            raise IllegalMoveError("(none)", "no legal moves")
        return self._apply(self._rng.choice(moves), expected)

    def play_engine_move(self, timeout_s: float | None = None) -> MoveRecord:
        """Play the engine's move for the side to move, right now.

        Blocks until the engine answers or fails; any engine failure or
        illegal answer is replaced by a random legal move.

        Args:
            timeout_s: Longest wait for the engine. Defaults to the
                difficulty budget plus grace.

        Returns:
            The applied MoveRecord.

        Raises:
            IllegalMoveError: If the game is over, or the position changed
                while the engine was searching.
        """
        state = self._session.snapshot()
        if not state.is_active:
            raise IllegalMoveError("(none)", "game is not active")
        difficulty = self._bridge.difficulty
        if difficulty.error_probability and self._rng.random() < difficulty.error_probability:
            return self._apply_random()
        if timeout_s is None:
            timeout_s = (
                self._settings.engine.startup_timeout_ms
                + difficulty.time_budget_ms
                + self._settings.engine.grace_ms
            ) / 1000.0
        request = self._when_ready(lambda: self._bridge.request_best_move(state.position))
        try:
            move = request.result(timeout=timeout_s)
        except (EngineError, FutureTimeout) as exc:
            logger.warning(f"Engine move failed ({exc!r}); playing a random legal move")
            return self._apply_random()
        try:
            return self._apply(move, state.position)
        except IllegalMoveError as exc:
            if self._session.position != state.position:
                raise
            logger.warning(f"Engine suggested {exc}; playing a random legal move")
            return self._apply_random()

    # ------------------------------------------------------------------
    # Hints, evaluation and analysis
    # ------------------------------------------------------------------

    def get_hint(self) -> Future:
        """Ask the engine for a move in the current position. The session is untouched.

        Returns:
            Future resolving to a Move, or failing with an EngineError.
        """
        position = self._session.position
        budget = self._settings.engine.hint_time_budget_ms
        return self._when_ready(lambda: self._bridge.request_best_move(position, budget))

    def evaluate(self) -> Future:
        """Evaluate the current position (White's point of view)."""
        position = self._session.position
        return self._when_ready(lambda: self._bridge.request_evaluation(position))

    def start_analysis(self, on_info: Callable[[EngineInfo], None]) -> None:
        """Analyze the current position continuously, following every position change.

        Args:
            on_info: Called with each info line of the live analysis.
        """
        self._analysis_callback = on_info
        self._restart_analysis()

    def stop_analysis(self) -> None:
        self._analysis_callback = None
        stream, self._analysis = self._analysis, None
        if stream is not None and not stream.closed:
            self._bridge.stop()

    def _restart_analysis(self) -> None:
        callback = self._analysis_callback
        if callback is None:
            return
        position = self._session.position

        def _start() -> None:
            if self._analysis_callback is not callback or self._session.position != position:
                return
            stream = self._bridge.start_continuous_analysis(position)
            if stream.error is not None:
                logger.warning(f"Analysis unavailable: {stream.error}")
                return
            stream.subscribe(callback)
            self._analysis = stream

        if self._bridge.is_ready:
            _start()
            return

        def _on_ready(done: Future) -> None:
            if done.exception() is None:
                _start()
            else:
                logger.warning(f"Analysis unavailable: {done.exception()}")

        self._bridge.initialize().add_done_callback(_on_ready)

    def _when_ready(self, submit: Callable[[], Future]) -> Future:
        """Run submit once the bridge is ready, initializing it on first use."""
        if self._bridge.is_ready:
            return submit()
        outer: Future = Future()

        def _on_ready(done: Future) -> None:
            exc = done.exception()
            if exc is not None:
                outer.set_exception(exc)
            else:
                _chain(submit(), outer)

        self._bridge.initialize().add_done_callback(_on_ready)
        return outer

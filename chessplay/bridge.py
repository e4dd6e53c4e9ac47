"""Engine Bridge: asynchronous client for an out-of-process UCI engine.

The bridge owns one worker (see chessplay.transport) and turns the
line protocol into futures:

    Uninitialized -> Initializing -> Ready <-> Busy -> Terminated

Only one search is live at a time. Starting a request supersedes the
previous one, which settles with EngineCancelled. Every 'go' is queued
in order and every 'bestmove' closes the oldest queued search, so the
result of a stopped, timed-out or superseded search is recognised as
stale and dropped. Futures are settled exactly once, always after the
bridge lock has been released.
"""

from __future__ import annotations

import itertools
import queue
import threading
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from functools import partial

from loguru import logger

from chessplay import protocol
from chessplay.config import EngineSettings
from chessplay.errors import (
    EngineCancelled,
    EngineError,
    EngineTerminated,
    EngineTimeout,
    EngineUnavailable,
)
from chessplay.events import Channel, Subscription
from chessplay.models import (
    DIFFICULTY_SETTINGS,
    Difficulty,
    DifficultySettings,
    EngineInfo,
    EngineRequest,
    EngineRequestKind,
    Evaluation,
    Position,
)
from chessplay.transport import SubprocessTransport, Transport

Action = Callable[[], None]

# Protocol lines carry uci=True so setup_logging can route them to a transcript.
_uci_log = logger.bind(uci=True)


class BridgeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    TERMINATED = "terminated"


@dataclass
class _Pending:
    """A one-shot request and the future its caller holds."""

    request: EngineRequest
    future: Future
    timer: threading.Timer | None = None
    last_info: EngineInfo | None = None
    settled: bool = False


_CLOSED = object()


class AnalysisStream:
    """Successive info lines from one continuous-analysis search.

    Subscribe for callbacks, or iterate (single consumer) until the stream
    closes because it was stopped, superseded, finished its depth, or the
    worker went away.
    """

    def __init__(self, request: EngineRequest | None, error: EngineError | None = None) -> None:
        self._request = request
        self._channel: Channel[EngineInfo] = Channel("analysis")
        self._queue: queue.Queue = queue.Queue()
        self._latest: EngineInfo | None = None
        self._closed = threading.Event()
        self._error = error
        if error is not None:
            self._close()

    @property
    def request(self) -> EngineRequest | None:
        return self._request

    @property
    def latest(self) -> EngineInfo | None:
        return self._latest

    @property
    def error(self) -> EngineError | None:
        return self._error

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def subscribe(self, callback: Callable[[EngineInfo], None]) -> Subscription:
        return self._channel.subscribe(callback)

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def __iter__(self) -> Iterator[EngineInfo]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def _emit(self, info: EngineInfo) -> None:
        if self._closed.is_set():
            return
        self._latest = info
        self._queue.put(info)
        self._channel.publish(info)

    def _close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSED)
        self._channel.clear()


def _failed(exc: EngineError) -> Future:
    future: Future = Future()
    future.set_exception(exc)
    return future


def _resolved(value: object = None) -> Future:
    future: Future = Future()
    future.set_result(value)
    return future


class EngineBridge:
    """Persistent connection to a UCI search engine."""

    def __init__(
        self,
        transport_factory: Callable[[], Transport] | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """Create an uninitialized bridge. Nothing is spawned until initialize().

        Args:
            transport_factory: Builds the worker transport. Defaults to a
                SubprocessTransport on the configured (or detected) Stockfish.
            settings: Engine timeouts and search budgets.
        """
        self._settings = settings or EngineSettings()
        self._factory = transport_factory or (lambda: SubprocessTransport(self._settings.path))
        self._lock = threading.RLock()
        self._state = BridgeState.UNINITIALIZED
        self._transport: Transport | None = None
        self._init_future: Future | None = None
        self._handshake_timer: threading.Timer | None = None
        self._handshake_stage: str | None = None
        self._ids = itertools.count(1)
        self._active: _Pending | None = None
        self._stream: AnalysisStream | None = None
        self._searches: deque[int] = deque()
        self._difficulty = DIFFICULTY_SETTINGS[Difficulty.INTERMEDIATE]
        self._skill_pending = False
        self._engine_name: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state in (BridgeState.READY, BridgeState.BUSY)

    @property
    def engine_name(self) -> str | None:
        return self._engine_name

    @property
    def difficulty(self) -> DifficultySettings:
        return self._difficulty

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> Future:
        """Start the worker and run the handshake, once.

        Returns:
            Future resolving to None when the bridge is Ready. It fails with
            EngineUnavailable if the worker cannot start or the handshake
            does not finish within the startup timeout; the bridge is then
            Uninitialized again and initialize() may be retried.
        """
        failed_transport = None
        actions: list[Action] = []
        with self._lock:
            if self._state is BridgeState.TERMINATED:
                return _failed(EngineTerminated("Engine bridge has been disposed"))
            if self._state is BridgeState.INITIALIZING and self._init_future is not None:
                return self._init_future
            if self.is_ready:
                return _resolved()

            future: Future = Future()
            self._init_future = future
            self._state = BridgeState.INITIALIZING
            logger.info("Engine bridge initializing")
            try:
                transport = self._factory()
                transport.start(self._on_line, self._on_exit)
                self._transport = transport
                self._handshake_stage = protocol.UCI
                self._send(protocol.UCI)
            except OSError as exc:
                logger.warning(f"Engine worker failed to start: {exc}")
                failed_transport = self._transport
                self._transport = None
                self._teardown()
                self._fail_init(actions, EngineUnavailable(f"Engine worker failed to start: {exc}"))
            else:
                timer = threading.Timer(
                    self._settings.startup_timeout_ms / 1000.0,
                    self._on_handshake_timeout,
                    args=(future,),
                )
                timer.daemon = True
                self._handshake_timer = timer
                timer.start()
        if failed_transport is not None:
            failed_transport.close()
        self._run(actions)
        return future

    def dispose(self) -> None:
        """Terminate the worker. Outstanding requests fail with EngineTerminated."""
        actions: list[Action] = []
        with self._lock:
            if self._state is BridgeState.TERMINATED:
                return
            error = EngineTerminated("Engine bridge disposed")
            self._abort_searches(actions, error)
            self._fail_init(actions, error)
            transport = self._transport
            self._transport = None
            self._state = BridgeState.TERMINATED
        logger.info("Engine bridge terminated")
        if transport is not None:
            transport.close()
        self._run(actions)

    def __enter__(self) -> EngineBridge:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure_difficulty(self, level: Difficulty | str) -> DifficultySettings:
        """Set skill level and search budget for best-move requests.

        Sent immediately when the engine is up, otherwise right after the
        handshake completes.

        Returns:
            The DifficultySettings now in effect.
        """
        settings = DIFFICULTY_SETTINGS[Difficulty(level)]
        actions: list[Action] = []
        with self._lock:
            self._difficulty = settings
            self._skill_pending = True
            if self.is_ready:
                self._flush_skill(actions)
        self._run(actions)
        return settings

    def new_game(self) -> None:
        """Reset engine-side game state (ucinewgame)."""
        self.stop()
        actions: list[Action] = []
        with self._lock:
            if not self.is_ready:
                return
            try:
                self._send(protocol.UCINEWGAME)
                self._send(protocol.ISREADY)
            except OSError as exc:
                self._worker_lost_locked(exc, actions)
        self._run(actions)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_best_move(
        self,
        position: Position,
        time_budget_ms: int | None = None,
        depth: int | None = None,
    ) -> Future:
        """Ask for the engine's move in position.

        Args:
            position: Position to search.
            time_budget_ms: Search time; defaults to the difficulty budget.
            depth: Search depth; defaults to the difficulty depth.

        Returns:
            Future resolving to a Move. It fails with EngineUnavailable when
            the bridge is not ready, EngineCancelled when superseded or
            stopped, EngineTimeout after time_budget_ms + grace, and
            EngineTerminated if the worker goes away.
        """
        if time_budget_ms is None:
            time_budget_ms = self._difficulty.time_budget_ms
        if depth is None:
            depth = self._difficulty.depth
        return self._one_shot(EngineRequestKind.BEST_MOVE, position, time_budget_ms, depth)

    def request_evaluation(self, position: Position, depth: int | None = None) -> Future:
        """Evaluate position from the last scored info line before 'bestmove'.

        Returns:
            Future resolving to an Evaluation from White's point of view.
            Failure modes match request_best_move().
        """
        if depth is None:
            depth = self._settings.evaluation_depth
        return self._one_shot(
            EngineRequestKind.EVALUATE,
            position,
            self._settings.evaluation_time_budget_ms,
            depth,
        )

    def start_continuous_analysis(
        self,
        position: Position,
        depth: int | None = None,
        infinite: bool = False,
    ) -> AnalysisStream:
        """Stream info lines for position until stopped or superseded.

        Args:
            position: Position to analyze.
            depth: Depth to stop at; defaults to the configured analysis depth.
            infinite: Search until stop() regardless of depth.

        Returns:
            AnalysisStream. If the bridge is not ready it is returned already
            closed, with error set.
        """
        if depth is None:
            depth = self._settings.analysis_depth
        actions: list[Action] = []
        with self._lock:
            error = self._not_ready_error()
            if error is not None:
                return AnalysisStream(None, error)
            self._supersede(actions)
            request = EngineRequest(
                id=next(self._ids),
                kind=EngineRequestKind.ANALYZE,
                position=position,
                time_budget_ms=None,
                search_depth=None if infinite else depth,
            )
            stream = AnalysisStream(request)
            try:
                self._begin_search(request, infinite=infinite)
            except OSError as exc:
                stream._error = EngineTerminated(f"Engine worker lost: {exc}")
                actions.append(stream._close)
                self._worker_lost_locked(exc, actions)
            else:
                self._stream = stream
        self._run(actions)
        return stream

    def stop(self) -> None:
        """Stop the current search.

        A pending one-shot request settles with EngineCancelled; a running
        analysis stream is closed.
        """
        actions: list[Action] = []
        with self._lock:
            if self._active is None and self._stream is None:
                return
            self._supersede(actions, EngineCancelled("Engine request stopped"))
            if self._state is BridgeState.BUSY:
                self._state = BridgeState.READY
        self._run(actions)

    # ------------------------------------------------------------------
    # Internals: requests
    # ------------------------------------------------------------------

    def _one_shot(
        self,
        kind: EngineRequestKind,
        position: Position,
        time_budget_ms: int,
        depth: int,
    ) -> Future:
        actions: list[Action] = []
        with self._lock:
            error = self._not_ready_error()
            if error is not None:
                return _failed(error)
            self._supersede(actions)
            request = EngineRequest(
                id=next(self._ids),
                kind=kind,
                position=position,
                time_budget_ms=time_budget_ms,
                search_depth=depth,
            )
            pending = _Pending(request, Future())
            try:
                self._begin_search(request)
            except OSError as exc:
                self._finish(pending, actions, error=EngineTerminated(f"Engine worker lost: {exc}"))
                self._worker_lost_locked(exc, actions)
            else:
                deadline_ms = time_budget_ms + self._settings.grace_ms
                timer = threading.Timer(deadline_ms / 1000.0, self._on_deadline, args=(pending,))
                timer.daemon = True
                pending.timer = timer
                self._active = pending
                timer.start()
                logger.debug(f"Engine request {request.id} ({kind.value}) submitted")
        self._run(actions)
        return pending.future

    def _not_ready_error(self) -> EngineError | None:
        if self._state is BridgeState.TERMINATED:
            return EngineTerminated("Engine bridge has been disposed")
        if not self.is_ready:
            return EngineUnavailable(f"Engine bridge is {self._state.value}")
        return None

    def _begin_search(self, request: EngineRequest, infinite: bool = False) -> None:
        self._send(protocol.position_command(request.position))
        self._send(protocol.go_command(
            depth=request.search_depth,
            movetime_ms=request.time_budget_ms,
            infinite=infinite,
        ))
        self._searches.append(request.id)
        self._state = BridgeState.BUSY

    def _supersede(
        self,
        actions: list[Action],
        error: EngineError | None = None,
    ) -> None:
        """Cancel whatever search is live and tell the engine to stop."""
        had_search = self._active is not None or self._stream is not None
        if self._active is not None:
            logger.debug(f"Engine request {self._active.request.id} superseded")
            self._finish(
                self._active,
                actions,
                error=error or EngineCancelled("Engine request superseded by a newer one"),
            )
            self._active = None
        if self._stream is not None:
            actions.append(self._stream._close)
            self._stream = None
        if had_search and self._transport is not None:
            try:
                self._send(protocol.STOP)
            except OSError as exc:
                self._worker_lost_locked(exc, actions)

    def _finish(
        self,
        pending: _Pending,
        actions: list[Action],
        result: object = None,
        error: EngineError | None = None,
    ) -> None:
        if pending.settled:
            return
        pending.settled = True
        if pending.timer is not None:
            pending.timer.cancel()
        if error is not None:
            actions.append(partial(pending.future.set_exception, error))
        else:
            actions.append(partial(pending.future.set_result, result))

    def _abort_searches(self, actions: list[Action], error: EngineError) -> None:
        if self._active is not None:
            self._finish(self._active, actions, error=error)
            self._active = None
        if self._stream is not None:
            self._stream._error = error
            actions.append(self._stream._close)
            self._stream = None
        self._searches.clear()

    def _on_deadline(self, pending: _Pending) -> None:
        actions: list[Action] = []
        with self._lock:
            if pending.settled:
                return
            request = pending.request
            deadline_ms = (request.time_budget_ms or 0) + self._settings.grace_ms
            logger.warning(f"Engine request {request.id} timed out after {deadline_ms} ms")
            self._finish(pending, actions, error=EngineTimeout(request.id, deadline_ms))
            if self._active is pending:
                self._active = None
                if self._state is BridgeState.BUSY:
                    self._state = BridgeState.READY
            try:
                self._send(protocol.STOP)
            except OSError as exc:
                self._worker_lost_locked(exc, actions)
        self._run(actions)

    # ------------------------------------------------------------------
    # Internals: worker I/O
    # ------------------------------------------------------------------

    def _send(self, line: str) -> None:
        if self._transport is None:
            raise BrokenPipeError("No engine worker")
        _uci_log.trace(f"UCI send: {line}")
        self._transport.send(line)

    def _on_line(self, line: str) -> None:
        _uci_log.trace(f"UCI recv: {line}")
        actions: list[Action] = []
        with self._lock:
            if self._transport is None:
                return
            message = protocol.parse_line(line)
            try:
                if isinstance(message, protocol.Ready):
                    self._on_ready(message, actions)
                elif isinstance(message, protocol.Identity):
                    if message.key == "name":
                        self._engine_name = message.value
                elif isinstance(message, EngineInfo):
                    self._on_info(message, actions)
                elif isinstance(message, protocol.BestMove):
                    self._on_bestmove(message, actions)
            except OSError as exc:
                self._worker_lost_locked(exc, actions)
        self._run(actions)

    def _on_ready(self, message: protocol.Ready, actions: list[Action]) -> None:
        if self._state is not BridgeState.INITIALIZING:
            return
        if message.token == protocol.UCIOK and self._handshake_stage == protocol.UCI:
            self._handshake_stage = protocol.ISREADY
            self._send(protocol.ISREADY)
        elif message.token == protocol.READYOK and self._handshake_stage == protocol.ISREADY:
            if self._handshake_timer is not None:
                self._handshake_timer.cancel()
                self._handshake_timer = None
            self._handshake_stage = None
            self._state = BridgeState.READY
            logger.info(f"Engine ready: {self._engine_name or 'unknown engine'}")
            if self._skill_pending:
                self._flush_skill(actions)
            if self._state is not BridgeState.READY:
                return
            future = self._init_future
            self._init_future = None
            if future is not None:
                actions.append(partial(future.set_result, None))

    def _on_info(self, info: EngineInfo, actions: list[Action]) -> None:
        if not self._searches:
            return
        owner = self._searches[0]
        active = self._active
        if active is not None and active.request.id == owner and info.has_score:
            active.last_info = info
        stream = self._stream
        if stream is not None and stream.request is not None and stream.request.id == owner:
            actions.append(partial(stream._emit, info))

    def _on_bestmove(self, message: protocol.BestMove, actions: list[Action]) -> None:
        if not self._searches:
            logger.debug("Ignoring bestmove with no search outstanding")
            return
        owner = self._searches.popleft()
        active = self._active
        stream = self._stream
        if active is not None and active.request.id == owner:
            self._active = None
            request = active.request
            if request.kind is EngineRequestKind.EVALUATE:
                evaluation = Evaluation.from_info(active.last_info, request.position.turn)
                self._finish(active, actions, result=evaluation)
            elif message.move is None:
                self._finish(active, actions, error=EngineError("Engine returned no move"))
            else:
                self._finish(active, actions, result=message.move)
            logger.debug(f"Engine request {request.id} settled")
        elif stream is not None and stream.request is not None and stream.request.id == owner:
            self._stream = None
            actions.append(stream._close)
        else:
            logger.debug(f"Discarding stale bestmove of search {owner}")
        if self._active is None and self._stream is None and self._state is BridgeState.BUSY:
            self._state = BridgeState.READY

    def _on_exit(self, code: int | None) -> None:
        actions: list[Action] = []
        with self._lock:
            if self._transport is None:
                return
            logger.error(f"Engine worker exited unexpectedly (code {code})")
            transport = self._transport
            self._transport = None
            self._abort_searches(actions, EngineTerminated(f"Engine worker exited (code {code})"))
            self._fail_init(actions, EngineUnavailable(f"Engine worker exited (code {code})"))
            self._state = BridgeState.UNINITIALIZED
        # The process may outlive its reader.
        transport.close()
        self._run(actions)

    def _on_handshake_timeout(self, future: Future) -> None:
        actions: list[Action] = []
        with self._lock:
            if self._init_future is not future or self._state is not BridgeState.INITIALIZING:
                return
            timeout_ms = self._settings.startup_timeout_ms
            logger.warning(f"Engine handshake timed out after {timeout_ms} ms")
            transport = self._transport
            self._transport = None
            self._teardown()
            self._fail_init(actions, EngineUnavailable(f"Engine handshake timed out after {timeout_ms} ms"))
        if transport is not None:
            transport.close()
        self._run(actions)

    def _worker_lost_locked(self, exc: Exception, actions: list[Action]) -> None:
        logger.error(f"Lost engine worker: {exc}")
        transport = self._transport
        self._transport = None
        self._abort_searches(actions, EngineTerminated(f"Engine worker lost: {exc}"))
        self._fail_init(actions, EngineUnavailable(f"Engine worker lost: {exc}"))
        self._state = BridgeState.UNINITIALIZED
        if transport is not None:
            # The process is already gone; close() only reaps it.
            transport.close()

    def _teardown(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None
        self._handshake_stage = None
        self._searches.clear()
        self._state = BridgeState.UNINITIALIZED

    def _fail_init(self, actions: list[Action], error: EngineError) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None
        future = self._init_future
        self._init_future = None
        if future is not None and not future.done():
            actions.append(partial(future.set_exception, error))

    def _flush_skill(self, actions: list[Action]) -> None:
        try:
            self._send(protocol.skill_level_command(self._difficulty.skill_level))
            self._skill_pending = False
        except OSError as exc:
            self._worker_lost_locked(exc, actions)

    @staticmethod
    def _run(actions: list[Action]) -> None:
        for action in actions:
            action()

"""Shared test fixtures with dual-mode support (fake vs real Stockfish).

Usage:
    pytest tests/                  # Fast, scripted fake engine (no Stockfish)
    pytest tests/ --e2e            # Real Stockfish for integration tests

Fixtures:
    make_bridge        - Builds EngineBridges on a FakeEngineTransport with
                         short timeouts; disposes them after the test.
    fast_settings      - Settings with short timeouts and delays.
    enable_validation  - Sets CHESSPLAY_VALIDATE=1 for schema validation.
"""

from __future__ import annotations

import os
import queue
import threading
from collections.abc import Callable

import chess
import pytest

from chessplay.bridge import EngineBridge
from chessplay.config import CoordinatorSettings, EngineSettings, Settings
from chessplay.transport import SubprocessTransport

_EXIT = object()
_STOP_PUMP = object()


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no fakes).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--e2e"):
        return
    skip = pytest.mark.skip(reason="needs --e2e and a Stockfish binary")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Fake engine transport
# ---------------------------------------------------------------------------


def first_legal_move(fen: str) -> str:
    """Return the first legal move in python-chess order, or '(none)'."""
    board = chess.Board(fen)
    for move in board.legal_moves:
        return move.uci()
    return "(none)"


class FakeEngineTransport:
    """Scripted UCI engine.

    Output lines are delivered from a background thread, like a real
    engine's reader thread, never from inside send().

    Args:
        handshake: Answer 'uci' and 'isready'. False simulates a hung engine.
        bestmove: Move to answer 'go' with: a string, a callable taking the
            searched FEN, or None for the first legal move.
        infos: Info lines emitted before each bestmove.
        hold: Do not answer 'go' until 'stop' arrives.
        answer_stop: Emit a bestmove when a held search is stopped.
        fail_start: Raise from start() as if the binary were missing.
    """

    def __init__(
        self,
        handshake: bool = True,
        bestmove: str | Callable[[str], str] | None = None,
        infos: tuple[str, ...] = (),
        hold: bool = False,
        answer_stop: bool = True,
        fail_start: bool = False,
    ) -> None:
        self.handshake = handshake
        self.bestmove = bestmove
        self.infos = infos
        self.hold = hold
        self.answer_stop = answer_stop
        self.fail_start = fail_start
        self.sent: list[str] = []
        self.started = 0
        self.closed = False
        self._fen = chess.STARTING_FEN
        self._held: list[str] = []
        self._queue: queue.Queue = queue.Queue()
        self._on_line = None
        self._on_exit = None

    # Transport interface

    def start(self, on_line, on_exit) -> None:
        if self.fail_start:
            raise FileNotFoundError("Stockfish not found")
        self.started += 1
        self.closed = False
        self._on_line = on_line
        self._on_exit = on_exit
        self._queue = queue.Queue()
        threading.Thread(target=self._pump, args=(self._queue,), name="fake-engine", daemon=True).start()

    def send(self, line: str) -> None:
        if self.closed:
            raise BrokenPipeError("fake engine closed")
        self.sent.append(line)
        self._respond(line)

    def close(self) -> None:
        self.closed = True
        self._queue.put(_STOP_PUMP)

    # Test controls

    def emit(self, line: str) -> None:
        """Queue an output line as if the engine printed it."""
        self._queue.put(line)

    def crash(self) -> None:
        """Simulate the engine process dying."""
        self._queue.put(_EXIT)

    def commands(self, prefix: str) -> list[str]:
        return [line for line in self.sent if line.startswith(prefix)]

    # Internals

    def _pump(self, lines: queue.Queue) -> None:
        while True:
            item = lines.get()
            if item is _STOP_PUMP:
                return
            if item is _EXIT:
                self.closed = True
                self._on_exit(1)
                return
            self._on_line(item)

    def _answer(self, fen: str) -> str:
        if callable(self.bestmove):
            return self.bestmove(fen)
        return self.bestmove or first_legal_move(fen)

    def _respond(self, line: str) -> None:
        if line == "uci":
            if self.handshake:
                self.emit("id name FakeFish 1.0")
                self.emit("id author Tests")
                self.emit("uciok")
        elif line == "isready":
            if self.handshake:
                self.emit("readyok")
        elif line.startswith("position fen "):
            self._fen = line[len("position fen "):]
        elif line.startswith("go"):
            if self.hold:
                self._held.append(self._fen)
                return
            for info in self.infos:
                self.emit(info)
            self.emit(f"bestmove {self._answer(self._fen)}")
        elif line == "stop":
            if self._held and self.answer_stop:
                fen = self._held.pop(0)
                self.emit(f"bestmove {self._answer(fen)}")


# ---------------------------------------------------------------------------
# Settings and bridge fixtures
# ---------------------------------------------------------------------------


def fast_engine_settings(**overrides) -> EngineSettings:
    values = dict(
        startup_timeout_ms=500,
        grace_ms=200,
        evaluation_time_budget_ms=100,
        hint_time_budget_ms=100,
    )
    values.update(overrides)
    return EngineSettings(**values)


@pytest.fixture()
def fast_settings() -> Settings:
    return Settings(
        engine=fast_engine_settings(),
        coordinator=CoordinatorSettings(min_delay_ms=10, max_delay_ms=30),
    )


@pytest.fixture()
def make_bridge(request):
    """Factory: make_bridge(transport=None, **engine_overrides) -> (bridge, transport).

    With --e2e and no explicit transport, the bridge runs real Stockfish.
    """
    bridges: list[EngineBridge] = []
    e2e = request.config.getoption("--e2e")

    def _make(transport=None, **overrides):
        if transport is None and e2e:
            transport = SubprocessTransport(os.environ.get("CHESSPLAY_STOCKFISH"))
            overrides.setdefault("startup_timeout_ms", 5000)
        transport = transport or FakeEngineTransport()
        bridge = EngineBridge(lambda: transport, fast_engine_settings(**overrides))
        bridges.append(bridge)
        return bridge, transport

    yield _make
    for bridge in bridges:
        bridge.dispose()


# ---------------------------------------------------------------------------
# Schema validation fixture
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def enable_validation():
    """Set CHESSPLAY_VALIDATE=1 for the test session.

    Restores the original env var value after the test.
    """
    original = os.environ.get("CHESSPLAY_VALIDATE")
    os.environ["CHESSPLAY_VALIDATE"] = "1"
    yield
    if original is None:
        os.environ.pop("CHESSPLAY_VALIDATE", None)
    else:
        os.environ["CHESSPLAY_VALIDATE"] = original

"""Worker transports for the engine bridge.

A transport owns the external engine process and moves text lines in
both directions. Output lines are delivered from a background reader
thread, so the bridge never blocks on the engine.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from loguru import logger

from chessplay import protocol

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/games/stockfish",
    "/usr/bin/stockfish",
]

LineHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]


def find_stockfish() -> str:
    """Auto-detect Stockfish binary path.

    Checks known install paths, then falls back to PATH lookup.

    Returns:
        Path to Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set CHESSPLAY_STOCKFISH."
    )


class Transport(Protocol):
    """What the bridge needs from a worker."""

    def start(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        """Launch the worker; on_line gets each output line, on_exit its exit code."""

    def send(self, line: str) -> None:
        """Write one command line. Raises OSError if the worker is gone."""

    def close(self) -> None:
        """Stop the worker. on_exit is not called for a requested close."""


class SubprocessTransport:
    """Runs a UCI engine binary as a child process."""

    def __init__(self, path: str | None = None, quit_timeout: float = 1.0) -> None:
        self._path = path
        self._quit_timeout = quit_timeout
        self._proc: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._write_lock = threading.Lock()
        self._closing = False

    @property
    def path(self) -> str | None:
        return self._path

    def start(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        """Spawn the engine and start the reader thread.

        Raises:
            FileNotFoundError: If no engine binary can be located.
            OSError: If the process cannot be spawned.
        """
        self._path = self._path or find_stockfish()
        logger.debug(f"Starting engine process: {self._path}")
        self._closing = False
        self._proc = subprocess.Popen(
            [self._path],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(self._proc, on_line, on_exit),
            name="engine-reader",
            daemon=True,
        )
        self._reader.start()

    def _read_loop(
        self,
        proc: subprocess.Popen[str],
        on_line: LineHandler,
        on_exit: ExitHandler,
    ) -> None:
        assert proc.stdout is not None
        code: int | None = None
        try:
            for raw in proc.stdout:
                on_line(raw.rstrip("\r\n"))
            code = proc.wait()
        finally:
            # A reader that dies for any reason counts as a lost worker.
            if not self._closing:
                if code is None:
                    logger.warning("Engine reader stopped unexpectedly")
                    code = proc.poll()
                on_exit(code)

    def send(self, line: str) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.poll() is not None:
            raise BrokenPipeError("Engine process is not running")
        with self._write_lock:
            proc.stdin.write(line + "\n")
            proc.stdin.flush()

    def close(self) -> None:
        proc = self._proc
        if proc is None:
            return
        self._closing = True
        self._proc = None
        try:
            if proc.poll() is None and proc.stdin is not None:
                with self._write_lock:
                    proc.stdin.write(protocol.QUIT + "\n")
                    proc.stdin.flush()
            proc.wait(timeout=self._quit_timeout)
        except (OSError, subprocess.TimeoutExpired):
            logger.debug("Engine did not quit in time, killing it")
            proc.kill()
            proc.wait()

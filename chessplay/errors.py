"""Error taxonomy for chess-play.

Session errors (IllegalMoveError, NavigationOutOfRange) are raised to the
caller and leave the session untouched. Engine errors are set on the
futures returned by the engine bridge and are recovered by the AI
coordinator. ProtocolParseWarning is never raised: the protocol parser
hands it to a warning callback and skips the offending field or line.
"""

from __future__ import annotations


class ChessPlayError(Exception):
    """Base class for every error raised by chess-play."""


class IllegalMoveError(ChessPlayError):
    """The Oracle rejected a move. Session state is unchanged."""

    def __init__(self, move: str, reason: str = "illegal move") -> None:
        super().__init__(f"{reason}: {move}")
        self.move = move
        self.reason = reason


class NavigationOutOfRange(ChessPlayError):
    """A ply index fell outside [-1, len(history) - 1]."""

    def __init__(self, index: int, history_length: int) -> None:
        super().__init__(
            f"Ply index {index} out of range [-1, {history_length - 1}]"
        )
        self.index = index
        self.history_length = history_length


class EngineError(ChessPlayError):
    """Base class for engine bridge failures."""


class EngineUnavailable(EngineError):
    """Worker could not start, handshake timed out, or the bridge is not ready."""


class EngineTimeout(EngineError):
    """A search deadline elapsed without a bestmove. The search was stopped."""

    def __init__(self, request_id: int, deadline_ms: int) -> None:
        super().__init__(
            f"Engine request {request_id} timed out after {deadline_ms} ms"
        )
        self.request_id = request_id
        self.deadline_ms = deadline_ms


class EngineTerminated(EngineError):
    """The bridge was disposed, or the worker exited, with a request outstanding."""


class EngineCancelled(EngineError):
    """The request was superseded by a newer one or cancelled with stop()."""


class ProtocolParseWarning(ChessPlayError):
    """A malformed engine line or field. Reported and skipped, never raised."""

    def __init__(self, line: str, detail: str) -> None:
        super().__init__(f"{detail} in engine line {line!r}")
        self.line = line
        self.detail = detail

"""Typed event channels with explicit subscription tokens.

Subscribers are keyed by the token handed back from subscribe(), so
unsubscribing never depends on callback identity, and publishing works
on a copy of the subscriber table so a callback may cancel itself (or
subscribe another) while an event is being delivered.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from loguru import logger

from chessplay.models import SessionState

T = TypeVar("T")


class Subscription:
    """Handle returned by Channel.subscribe(); cancel() detaches the callback."""

    def __init__(self, channel: Channel, token: int) -> None:
        self._channel = channel
        self._token = token

    @property
    def active(self) -> bool:
        return self._channel.has_subscriber(self._token)

    def cancel(self) -> None:
        self._channel.unsubscribe(self._token)


class Channel(Generic[T]):
    """A single typed event channel."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._subscribers: dict[int, Callable[[T], None]] = {}

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
        return Subscription(self, token)

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def has_subscriber(self, token: int) -> bool:
        with self._lock:
            return token in self._subscribers

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def publish(self, event: T) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not stop delivery to the others.
                logger.exception(f"Subscriber on channel '{self._name}' failed")


class SessionEventKind:
    NEW_GAME = "new_game"
    MOVE = "move"
    UNDO = "undo"
    NAVIGATE = "navigate"
    GAME_OVER = "game_over"
    TICK = "tick"


@dataclass(frozen=True)
class SessionEvent:
    kind: str
    state: SessionState

"""Publish/subscribe channel broadcasting sync cycle progress."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]
Listener = Callable[[Snapshot], None]

STATUS_INITIALIZING = "initializing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


def _initial_state() -> Snapshot:
    return {"status": STATUS_INITIALIZING, "percentage": 0, "message": "Initializing..."}


class ProgressReporter:
    """Latest progress snapshot plus the listeners waiting for updates.

    A listener receives the current snapshot as soon as it subscribes and then
    every update, in registration order, until the state becomes terminal.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._state: Snapshot = _initial_state()

    @property
    def state(self) -> Snapshot:
        return dict(self._state)

    @property
    def finished(self) -> bool:
        return self._state.get("status") in TERMINAL_STATUSES

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns a callable that unregisters it."""
        listener(self.state)
        if self.finished:
            return lambda: None

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        self._state = _initial_state()
        self._broadcast()

    def publish(self, **partial: Any) -> None:
        if self.finished:
            logger.debug(f"Ignoring progress update after terminal state: {partial}")
            return
        self._state = {**self._state, **partial}
        self._broadcast()

    def complete(self, message: str = "Sync complete", **extra: Any) -> None:
        self.publish(status=STATUS_COMPLETED, percentage=100, message=message, **extra)

    def fail(self, error: Union[BaseException, str]) -> None:
        if self.finished:
            return
        self._state = {"status": STATUS_FAILED, "percentage": 100, "error": str(error)}
        self._broadcast()

    def _broadcast(self) -> None:
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(dict(snapshot))
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
        if self.finished:
            self._listeners.clear()

    async def stream(self) -> AsyncIterator[Snapshot]:
        """Yield the current snapshot and later ones, ending after a terminal state."""
        queue: "asyncio.Queue[Snapshot]" = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.get("status") in TERMINAL_STATUSES:
                    return
        finally:
            unsubscribe()

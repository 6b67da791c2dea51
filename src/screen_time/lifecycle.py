"""Host application lifecycle: foreground/background transitions."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"

    @property
    def is_backgrounded(self) -> bool:
        return self is not AppState.ACTIVE


StateCallback = Callable[[AppState], None]


class LifecycleSource(Protocol):
    """Anything that can report the host's foreground/background state."""

    @property
    def current_state(self) -> AppState: ...

    def subscribe(self, on_change: StateCallback) -> Callable[[], None]: ...


class ManualLifecycleSource:
    """Lifecycle source driven by explicit ``set_state`` calls.

    The host app reports its state changes over HTTP; the API layer
    forwards them here.
    """

    def __init__(self, initial: AppState = AppState.ACTIVE):
        self._state = initial
        self._callbacks: list[StateCallback] = []

    @property
    def current_state(self) -> AppState:
        return self._state

    def subscribe(self, on_change: StateCallback) -> Callable[[], None]:
        self._callbacks.append(on_change)

        def unsubscribe() -> None:
            if on_change in self._callbacks:
                self._callbacks.remove(on_change)

        return unsubscribe

    def set_state(self, state: AppState) -> None:
        state = AppState(state)
        if state == self._state:
            return
        logger.info("App state changed: %s -> %s", self._state.value, state.value)
        self._state = state
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("Lifecycle callback failed")

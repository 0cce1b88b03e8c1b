"""
Synchronous listener registry used by the scoring engines.

Each engine declares the closed set of event names it can emit. Listeners
run in registration order, after the engine has applied the mutation that
triggered the event. A listener that raises is logged and the remaining
listeners still run.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class ListenerRegistry:
    """Observer registry with a fixed set of event names."""

    def __init__(self, event_names: Iterable[str], enabled: bool = True):
        """
        Initialize the registry.

        Args:
            event_names: Names of the events that may be emitted.
            enabled: When False, emit() is a no-op.
        """
        self.event_names = frozenset(event_names)
        self.enabled = enabled
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def _check(self, event: str) -> None:
        if event not in self.event_names:
            raise ValueError(
                f"Unknown event '{event}'. Expected one of: {sorted(self.event_names)}"
            )

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that unsubscribes the listener.
        """
        self._check(event)
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        self._check(event)
        try:
            self._listeners[event].remove(listener)
            return True
        except ValueError:
            return False

    def emit(self, event: str, *args: Any) -> int:
        """
        Dispatch an event to its listeners.

        Returns:
            Number of listeners invoked.
        """
        self._check(event)
        if not self.enabled:
            return 0

        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Listener for '{event}' raised")
        return len(listeners)

    def listener_count(self, event: str) -> int:
        self._check(event)
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()


class EventSource:
    """Mixin exposing on/off for classes that own a `self.events` registry."""

    events: ListenerRegistry

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe callable."""
        return self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> bool:
        """Unsubscribe from an event."""
        return self.events.off(event, listener)

"""
Process-wide shared engine instances.

Every engine module keeps one `SharedInstance` and exposes the
create / get / set / reset functions on top of it, so tests can inject
fakes and start from a clean instance.
"""

import threading
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SharedInstance(Generic[T]):
    """Lazily-created, lock-guarded holder for one instance."""

    def __init__(
        self,
        factory: Callable[[], T],
        on_reset: Optional[Callable[[T], None]] = None,
    ):
        """
        Args:
            factory: Builds the default instance on first access.
            on_reset: Called with the old instance when it is reset.
        """
        self._factory = factory
        self._on_reset = on_reset
        self._instance: Optional[T] = None
        self._lock = threading.Lock()

    def get(self) -> T:
        instance = self._instance
        if instance is None:
            with self._lock:
                if self._instance is None:
                    self._instance = self._factory()
                instance = self._instance
        return instance

    def set(self, instance: T) -> None:
        with self._lock:
            self._instance = instance

    def reset(self) -> None:
        with self._lock:
            old, self._instance = self._instance, None
        if old is not None and self._on_reset is not None:
            self._on_reset(old)

    @property
    def is_set(self) -> bool:
        return self._instance is not None

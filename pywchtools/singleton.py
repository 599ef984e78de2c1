"""Construction guard for process-wide accessor and helper instances.

REST accessors, file system accessors and helpers hold no run state, so one
instance per artifact type is shared by the whole process. Their
constructors require the private token below, which only the factories in
:mod:`pywchtools.registry` pass.
"""

import threading
from typing import Callable, TypeVar

from .exceptions import WchSingletonViolationError

T = TypeVar("T")

_CONSTRUCTION_TOKEN = object()


def construction_token() -> object:
    """Get the token the factories pass to guarded constructors."""
    return _CONSTRUCTION_TOKEN


def check_token(token: object, class_name: str) -> None:
    """Fail unless a guarded constructor was called by a factory.

    Raises:
        WchSingletonViolationError: If ``token`` is not the construction token
    """
    if token is not _CONSTRUCTION_TOKEN:
        raise WchSingletonViolationError(
            f"{class_name} is a singleton per artifact type; "
            f"use the registry factory instead of constructing it directly"
        )


class InstanceCache:
    """Thread-safe map of lazily created instances."""

    def __init__(self) -> None:
        self._instances: dict[str, object] = {}
        self._lock = threading.Lock()

    def get(self, key: str, factory: Callable[[], T]) -> T:
        """Return the instance for ``key``, creating it on first use."""
        with self._lock:
            instance = self._instances.get(key)
            if instance is None:
                instance = factory()
                self._instances[key] = instance
            return instance  # type: ignore[return-value]

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()

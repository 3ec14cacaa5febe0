"""
Ambient (implicit) context properties.

Properties layered with ``with_context()`` are merged underneath the
explicit properties of every record logged inside the block, in the same
thread or asyncio task. Storage is a ``ContextVar``, so concurrent tasks
never see each other's context.

Usage:
    configure_sync({..., "context_local_storage": ContextLocalStorage()})

    with with_context(request_id=rid):
        log.info("Handling request")   # properties include request_id
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

from logtape.core import LoggerImpl, get_meta_logger

T = TypeVar("T")


class ContextLocalStorage:
    """Context-variable store for the ambient property bag."""

    def __init__(self, name: str = "logtape_context") -> None:
        self._var: ContextVar[Optional[dict[str, Any]]] = ContextVar(name, default=None)

    def get_store(self) -> Optional[dict[str, Any]]:
        return self._var.get()

    def run(self, store: Mapping[str, Any], callback: Callable[[], T]) -> T:
        """Call ``callback`` with ``store`` as the current bag."""
        with self.scope(store):
            return callback()

    @contextmanager
    def scope(self, store: Mapping[str, Any]) -> Iterator[None]:
        token = self._var.set(dict(store))
        try:
            yield
        finally:
            self._var.reset(token)


@contextmanager
def with_context(properties: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Iterator[None]:
    """
    Layer ``properties`` over the current ambient bag for the block.

    Without configured storage this only warns on the meta logger.
    """
    storage = LoggerImpl.get_logger().context_local_storage
    if storage is None:
        get_meta_logger().warning(
            "Context-local storage is not configured. "
            "Specify context_local_storage option in the configure() function."
        )
        yield
        return

    current = storage.get_store() or {}
    with storage.scope({**current, **(properties or {}), **kwargs}):
        yield

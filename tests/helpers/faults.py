"""Store wrapper that injects failures and pauses between repository calls."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from threading import Lock
from typing import Any

from app.services.store.base import EntityStore

Hook = Callable[[], None]

_REPOSITORIES = ("users", "startups", "mentors", "requests", "funding_applications", "notifications")


class FaultInjectingStore:
    """Delegates to ``inner``; hooks are keyed by ``"<repository>.<method>"`` or ``"commit"``."""

    def __init__(self, inner: EntityStore) -> None:
        self.inner = inner
        self.begun = 0
        self.calls: list[str] = []
        self._before: dict[str, list[Hook]] = defaultdict(list)
        self._after: dict[str, list[Hook]] = defaultdict(list)
        self._lock = Lock()

    def fail_on(self, call: str, error: Exception, *, times: int | None = 1) -> None:
        """Raise ``error`` instead of performing ``call`` (``times=None`` means always)."""
        remaining = {"count": times}

        def _raise() -> None:
            with self._lock:
                if remaining["count"] is not None:
                    if remaining["count"] <= 0:
                        return
                    remaining["count"] -= 1
            raise error

        self._before[call].append(_raise)

    def after(self, call: str, hook: Hook) -> None:
        self._after[call].append(hook)

    def begin(self, *, timeout_seconds: float | None = None) -> _FaultyTransaction:
        with self._lock:
            self.begun += 1
        return _FaultyTransaction(self, self.inner.begin(timeout_seconds=timeout_seconds))

    def ping(self) -> bool:
        return self.inner.ping()

    def dispose(self) -> None:
        self.inner.dispose()

    def run_before(self, call: str) -> None:
        with self._lock:
            self.calls.append(call)
        for hook in list(self._before.get(call, ())):
            hook()

    def run_after(self, call: str) -> None:
        for hook in list(self._after.get(call, ())):
            hook()


class _FaultyTransaction:
    def __init__(self, store: FaultInjectingStore, inner: Any) -> None:
        self._store = store
        self._inner = inner
        for name in _REPOSITORIES:
            setattr(self, name, _FaultyRepository(store, name, getattr(inner, name)))

    @property
    def closed(self) -> bool:
        return self._inner.closed

    def commit(self) -> None:
        self._store.run_before("commit")
        self._inner.commit()
        self._store.run_after("commit")

    def abort(self) -> None:
        self._inner.abort()


class _FaultyRepository:
    def __init__(self, store: FaultInjectingStore, name: str, inner: Any) -> None:
        self._store = store
        self._name = name
        self._inner = inner

    def __getattr__(self, attribute: str) -> Any:
        target = getattr(self._inner, attribute)
        if not callable(target):
            return target
        call = f"{self._name}.{attribute}"

        def _wrapped(*args: Any, **kwargs: Any) -> Any:
            self._store.run_before(call)
            result = target(*args, **kwargs)
            self._store.run_after(call)
            return result

        return _wrapped

"""Runs units of work as atomic, bounded, retryable store transactions."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextvars import ContextVar
from typing import TypeVar

from app.config import settings
from app.core.backoff import RetryPolicy
from app.observability.metrics import metrics
from app.services.store.base import EntityStore, StoreTransaction
from app.services.store.errors import NestedTransactionError, TransientError, WorkflowError

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

# Set while a unit runs in the current thread or asyncio task.
_active_unit: ContextVar[str | None] = ContextVar("incubator_active_unit", default=None)


class TransactionCoordinator:
    """Executes ``work(tx)`` so that all of its writes commit together or not at all."""

    def __init__(
        self,
        store: EntityStore,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.transaction_timeout_seconds
        )
        self._sleep = sleep

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def run_in_transaction(
        self,
        work: Callable[[StoreTransaction], ResultT],
        *,
        operation: str = "transaction",
    ) -> ResultT:
        """Run ``work`` in a fresh unit, retrying the whole unit on TransientError.

        Any other exception aborts the unit and propagates unchanged. Opening a
        unit while another one is active in the same context raises
        NestedTransactionError.
        """
        active = _active_unit.get()
        if active is not None:
            raise NestedTransactionError(
                f"Cannot start '{operation}' inside the active unit '{active}'."
            )
        token = _active_unit.set(operation)
        try:
            for attempt, delay in self._retry_policy.schedule():
                try:
                    return self._run_once(work, operation=operation, attempt=attempt)
                except TransientError as exc:
                    if attempt >= self._retry_policy.max_attempts:
                        logger.warning(
                            "transaction.retries_exhausted",
                            extra={"operation": operation, "attempts": attempt, "code": exc.code},
                        )
                        metrics.increment(
                            "transaction.retries_exhausted",
                            tags={"operation": operation, "code": exc.code},
                        )
                        raise
                    logger.info(
                        "transaction.retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "delay_seconds": round(delay, 4),
                            "code": exc.code,
                        },
                    )
                    metrics.increment(
                        "transaction.retry", tags={"operation": operation, "code": exc.code}
                    )
                    self._sleep(delay)
            raise RuntimeError("Retry schedule produced no attempts.")  # pragma: no cover
        finally:
            _active_unit.reset(token)

    def _run_once(
        self,
        work: Callable[[StoreTransaction], ResultT],
        *,
        operation: str,
        attempt: int,
    ) -> ResultT:
        started = time.perf_counter()
        tx = self._store.begin(timeout_seconds=self._timeout_seconds)
        try:
            result = work(tx)
            tx.commit()
        except WorkflowError as exc:
            logger.info(
                "transaction.aborted",
                extra={"operation": operation, "attempt": attempt, "code": exc.code},
            )
            metrics.increment("transaction.aborted", tags={"operation": operation, "code": exc.code})
            raise
        finally:
            if not tx.closed:
                tx.abort()
            duration_ms = (time.perf_counter() - started) * 1000
            metrics.timing("transaction.duration_ms", duration_ms, tags={"operation": operation})
        logger.info(
            "transaction.committed",
            extra={
                "operation": operation,
                "attempt": attempt,
                "duration_ms": round(duration_ms, 2),
            },
        )
        metrics.increment("transaction.committed", tags={"operation": operation})
        return result

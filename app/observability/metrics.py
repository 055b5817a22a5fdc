"""Metrics emitter for transactions, workflows and the entity store."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from app.config import settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except Exception:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

_UNSAMPLED_TYPES = frozenset({"gauge"})


class MetricsReporter:
    """Emits counters, timings and gauges as log events and, optionally, to StatsD.

    Every payload carries the deployment ``environment`` tag so stdout events
    from several deployments can share one log sink.
    """

    def __init__(self) -> None:
        self._disabled = settings.metrics_disable
        self._namespace = settings.metrics_namespace or "incubator"
        self._backend = (settings.metrics_backend or "stdout").lower()
        self._sample_rate = max(0.0, min(settings.metrics_sample_rate, 1.0))
        self._default_tags = {"environment": settings.environment}
        self._statsd: StatsClient | None = None
        if self._backend == "statsd" and not self._disabled:
            self._statsd = self._connect_statsd()

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags=tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags=tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags=tags)

    @contextmanager
    def timer(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[None]:
        """Record the wall time of the block in milliseconds, even when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timing(metric, (time.perf_counter() - started) * 1000, tags=tags)

    def _connect_statsd(self) -> StatsClient | None:
        if StatsClient is None:
            logger.warning("statsd backend requested but statsd package is not installed.")
            return None
        try:
            return StatsClient(
                host=settings.metrics_statsd_host,
                port=settings.metrics_statsd_port,
                prefix="",
            )
        except Exception as exc:  # pragma: no cover - defensive guard
            self._log_backend_error("statsd.init", exc)
            return None

    def _emit(
        self, metric_type: str, metric: str, value: float, *, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None:
            return
        sample_rate = self._sample_for(metric_type)
        if sample_rate is None:
            return
        name = self._normalize_metric(metric)
        payload = {
            "metric": name,
            "value": round(float(value), 4),
            "type": metric_type,
            "tags": {**self._default_tags, **(tags or {})},
        }
        if sample_rate < 1.0:
            payload["sample_rate"] = round(sample_rate, 4)
        self._log_event(f"{self._namespace}.metric", payload)
        if self._statsd is not None:
            self._send_statsd(metric_type, name, value, sample_rate)

    def _sample_for(self, metric_type: str) -> float | None:
        """Return the rate to report with, or None when this emission is dropped."""
        if metric_type in _UNSAMPLED_TYPES or self._sample_rate >= 1.0:
            return 1.0
        roll = secrets.randbelow(1_000_000) / 1_000_000
        return self._sample_rate if roll <= self._sample_rate else None

    def _send_statsd(self, metric_type: str, name: str, value: float, sample_rate: float) -> None:
        try:
            if metric_type == "timing":
                self._statsd.timing(name, value, rate=sample_rate)
            elif metric_type == "gauge":
                self._statsd.gauge(name, value)
            else:
                self._statsd.incr(name, value, rate=sample_rate)
        except Exception as exc:  # pragma: no cover - defensive guard
            self._log_backend_error(name, exc)

    def _normalize_metric(self, metric: str) -> str:
        trimmed = (metric or "").strip()
        if trimmed.startswith(f"{self._namespace}."):
            return trimmed
        return f"{self._namespace}.{trimmed}" if trimmed else self._namespace

    def _log_event(self, event: str, payload: dict[str, Any]) -> None:
        try:
            logger.info(event, extra={"metrics": payload})
        except Exception:  # pragma: no cover - defensive guard
            logger.debug("Unable to log metrics payload", exc_info=True)

    def _log_backend_error(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend, "error": type(exc).__name__},
        )


metrics = MetricsReporter()

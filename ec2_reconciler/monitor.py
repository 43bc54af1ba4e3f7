"""
Metrics and alerting surface for the EC2 reconciler.

Components report counts, measurements and operational errors through a
Monitor. The sink behind it is not this package's concern; LoggingMonitor
keeps the values in memory and forwards errors to the logging module.
"""

import logging
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Monitor(Protocol):
    """
    Protocol for metrics/alert sinks.

    Keys are dotted names; ``prefix()`` returns a monitor that prepends a
    namespace to every key it reports.
    """

    def count(self, key: str, value: int = 1) -> None:
        """Increment a counter."""
        ...

    def measure(self, key: str, value: float) -> None:
        """Record a measurement (e.g., a delay in milliseconds)."""
        ...

    def report_error(
        self,
        error: BaseException,
        level: str = "error",
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Report an operational error or alert at the given severity."""
        ...

    def timer(self, key: str) -> Any:
        """Context manager measuring the elapsed milliseconds of its block."""
        ...

    def prefix(self, name: str) -> "Monitor":
        """Return a monitor that reports under ``name.``."""
        ...


class LoggingMonitor:
    """
    In-memory Monitor that logs reported errors.

    Counters and measurements are shared between a monitor and every monitor
    derived from it with prefix(), so the root monitor sees all values.

    Example:
        >>> monitor = LoggingMonitor()
        >>> cwe = monitor.prefix("cloud-watch-events")
        >>> cwe.count("handled-messages")
        >>> monitor.counters["cloud-watch-events.handled-messages"]
        1
    """

    def __init__(
        self,
        namespace: str = "",
        counters: dict[str, int] | None = None,
        measurements: dict[str, list[float]] | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        self.namespace = namespace
        self.counters: dict[str, int] = counters if counters is not None else defaultdict(int)
        self.measurements: dict[str, list[float]] = (
            measurements if measurements is not None else defaultdict(list)
        )
        self.errors: list[dict[str, Any]] = errors if errors is not None else []

    def _key(self, key: str) -> str:
        return f"{self.namespace}.{key}" if self.namespace else key

    def count(self, key: str, value: int = 1) -> None:
        self.counters[self._key(key)] += value

    def measure(self, key: str, value: float) -> None:
        self.measurements[self._key(key)].append(value)

    def report_error(
        self,
        error: BaseException,
        level: str = "error",
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.errors.append(
            {"error": error, "level": level, "namespace": self.namespace, "extra": extra or {}}
        )
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            log_level = logging.ERROR
        logger.log(
            log_level,
            f"[{self.namespace or 'root'}] {type(error).__name__}: {error}",
            extra={"monitor_extra": extra or {}},
            exc_info=error if log_level >= logging.ERROR else None,
        )

    @contextmanager
    def timer(self, key: str) -> Iterator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            self.measure(key, (time.monotonic() - start) * 1000.0)

    def prefix(self, name: str) -> "LoggingMonitor":
        return LoggingMonitor(
            namespace=self._key(name),
            counters=self.counters,
            measurements=self.measurements,
            errors=self.errors,
        )

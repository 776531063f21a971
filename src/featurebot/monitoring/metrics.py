"""
Per-event metrics collection for the event bus.
"""

import threading
import time
from collections import defaultdict
from typing import Any

from featurebot.core.interfaces import IMetrics
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)


def _empty_metric() -> dict[str, Any]:
    return {
        "count": 0,
        "total_time": 0.0,
        "errors": 0,
        "middleware_errors": 0,
        "last_recorded": 0.0
    }


class EventMetrics(IMetrics):
    """Collects invocation counts, processing time and failures per event name."""

    def __init__(self):
        self._metrics: dict[str, dict[str, Any]] = defaultdict(_empty_metric)
        self._start_time = time.time()
        self._lock = threading.RLock()

    def record_event(
        self,
        event_name: str,
        duration: float = 0.0,
        handler_errors: int = 0,
        middleware_errors: int = 0
    ) -> None:
        """
        Records one emit of an event.

        Args:
            event_name: Name of the emitted event.
            duration: Wall time from PRE middleware start to POST middleware end.
            handler_errors: Number of handlers that failed during this emit.
            middleware_errors: Number of middleware transforms that failed.
        """
        with self._lock:
            metric = self._metrics[event_name]
            metric["count"] += 1
            metric["total_time"] += duration
            metric["errors"] += handler_errors
            metric["middleware_errors"] += middleware_errors
            metric["last_recorded"] = time.time()
        logger.debug(
            f"Event metric recorded: {event_name}, duration={duration:.4f}s, "
            f"handler_errors={handler_errors}, middleware_errors={middleware_errors}"
        )

    def get_metrics(self, event_name: str | None = None) -> dict[str, Any]:
        """
        Returns a snapshot of one event's counters, or of all events plus totals.
        """
        with self._lock:
            if event_name is not None:
                data = self._metrics.get(event_name)
                return self._with_average(data.copy() if data else _empty_metric())

            events = {name: self._with_average(data.copy()) for name, data in self._metrics.items()}

        total_count = sum(m["count"] for m in events.values())
        total_time = sum(m["total_time"] for m in events.values())
        return {
            "uptime_seconds": time.time() - self._start_time,
            "timestamp": time.time(),
            "total_count": total_count,
            "total_time": total_time,
            "avg_time": total_time / total_count if total_count else 0.0,
            "total_errors": sum(m["errors"] for m in events.values()),
            "total_middleware_errors": sum(m["middleware_errors"] for m in events.values()),
            "events": events
        }

    def reset_metrics(self) -> None:
        """
        Resets all collected metrics.
        """
        with self._lock:
            self._metrics.clear()
            self._start_time = time.time()
        logger.info("Event metrics reset.")

    @staticmethod
    def _with_average(metric: dict[str, Any]) -> dict[str, Any]:
        metric["avg_time"] = metric["total_time"] / metric["count"] if metric["count"] else 0.0
        metric["error_rate"] = metric["errors"] / metric["count"] if metric["count"] else 0.0
        return metric

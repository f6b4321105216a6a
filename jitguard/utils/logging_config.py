"""
Logging setup and operational metrics for the authorization engine.
"""

import logging
import os
import sys
import threading
from typing import Any, Dict, Optional


DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: Optional[str] = None, fmt: str = DEFAULT_FORMAT) -> None:
    """Configure the root logger from JITGUARD_LOG_LEVEL (default INFO)."""
    level_name = (level or os.getenv("JITGUARD_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, level_name, None)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level_name}")

    root = logging.getLogger()
    root.setLevel(numeric)
    if not any(getattr(h, "_jitguard", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(fmt))
        handler._jitguard = True
        root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class MetricsCollector:
    """Counters and gauges for operational observability."""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def increment_counter(self, name: str, value: int = 1) -> None:
        """Increment a counter metric."""
        with self._lock:
            self.metrics[name] = self.metrics.get(name, 0) + value

    def record_gauge(self, name: str, value: float) -> None:
        """Record a gauge metric."""
        with self._lock:
            self.metrics[name] = value

    def get(self, name: str, default: Any = 0) -> Any:
        return self.metrics.get(name, default)

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        with self._lock:
            return self.metrics.copy()

    def clear_metrics(self) -> None:
        with self._lock:
            self.metrics.clear()

"""Notification and metrics collaborators fed by the orchestrator.

Both are best effort: delivery failures are logged and never reach the
caller of a sync cycle.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict

import requests

logger = logging.getLogger(__name__)

NOTIFICATION_DETAIL_LIMIT = 5

# =============================================================================
# Notifications
# =============================================================================


class Notifier(ABC):
    @abstractmethod
    def send(self, payload: Dict[str, Any]) -> None:
        """Deliver a sync_complete / sync_failed event."""
        pass


class WebhookNotifier(Notifier):
    """POSTs notification payloads as JSON to a webhook URL."""

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self._url = url
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def send(self, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            logger.debug(f"Sent {payload.get('type')} notification")
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send notification: {e}")


# =============================================================================
# Metrics
# =============================================================================


@dataclass(frozen=True)
class Metric:
    name: str
    value: float
    timestamp: float = field(default_factory=time.time)
    tags: Dict[str, Any] = field(default_factory=dict)


class MetricsSink(ABC):
    @abstractmethod
    def record(self, metric: Metric) -> None:
        pass


class LoggingMetricsSink(MetricsSink):
    def record(self, metric: Metric) -> None:
        logger.info(f"metric {metric.name}={metric.value:g} {metric.tags}")


class JsonLinesMetricsSink(MetricsSink):
    """Appends one JSON object per metric to a file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def record(self, metric: Metric) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(metric), sort_keys=True) + "\n")
        except OSError as e:
            logger.warning(f"Failed to record metric {metric.name}: {e}")

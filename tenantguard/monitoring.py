"""Operational alerting.

Escalation path for gaps that must be remediated but must not block
the triggering operation (for example a failed domain-channel audit
write). Adapters deliver alerts; the dispatcher fans out and never
lets a delivery failure propagate back into the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

ALERT_LOGGER_NAME = "tenantguard.alerts"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class OperationalAlert:
    """An alert raised for operators."""

    code: str
    message: str
    severity: AlertSeverity = AlertSeverity.CRITICAL
    organization_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    raised_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "organization_id": self.organization_id,
            "context": self.context,
            "raised_at": self.raised_at,
        }


class AlertAdapter(ABC):
    """Base class for alert delivery adapters."""

    @abstractmethod
    async def send(self, alert: OperationalAlert) -> None:
        """Deliver an alert."""
        pass


class LoggingAlertAdapter(AlertAdapter):
    """Writes alerts to the dedicated alerts logger."""

    _LEVELS = {
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.ERROR: logging.ERROR,
        AlertSeverity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self, logger_name: str = ALERT_LOGGER_NAME):
        self._logger = logging.getLogger(logger_name)

    async def send(self, alert: OperationalAlert) -> None:
        self._logger.log(
            self._LEVELS[alert.severity],
            "[ALERT %s] %s org=%s context=%s",
            alert.code,
            alert.message,
            alert.organization_id,
            alert.context,
        )


class AlertDispatcher:
    """Fans alerts out to every registered adapter."""

    def __init__(self, adapters: list[AlertAdapter] | None = None):
        self.adapters: list[AlertAdapter] = (
            adapters if adapters is not None else [LoggingAlertAdapter()]
        )

    def register(self, adapter: AlertAdapter) -> None:
        """Add an adapter."""
        self.adapters.append(adapter)

    async def dispatch(self, alert: OperationalAlert) -> int:
        """Send an alert to all adapters.

        Returns:
            Number of adapters that accepted the alert
        """
        delivered = 0
        for adapter in self.adapters:
            try:
                await adapter.send(alert)
                delivered += 1
            except Exception:
                logger.exception(
                    "Alert adapter %s failed to deliver %s",
                    type(adapter).__name__,
                    alert.code,
                )
        return delivered

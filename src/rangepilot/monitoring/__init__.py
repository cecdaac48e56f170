"""
Monitoring and observability package.

This package contains the price range monitor, metrics, health probes and
the status board.
"""

from rangepilot.monitoring.health import ComponentHealth, HealthChecker, start_metrics_server
from rangepilot.monitoring.metrics_rich import RichMetrics
from rangepilot.monitoring.price_monitor import MonitorConfig, MonitorEvent, PriceRangeMonitor
from rangepilot.monitoring.status import StatusBoard

__all__ = [
    "HealthChecker",
    "ComponentHealth",
    "start_metrics_server",
    "RichMetrics",
    "MonitorConfig",
    "MonitorEvent",
    "PriceRangeMonitor",
    "StatusBoard",
]

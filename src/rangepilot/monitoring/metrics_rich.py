"""
Rich Prometheus metrics for production observability.

Organized into: rpc, transactions, pipeline, monitoring, persistence.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class RichMetrics:
    """Metrics for the position lifecycle service."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === RPC Metrics ===
        self.rpc_requests = Counter(
            'rpc_requests_total',
            'RPC operations by endpoint and outcome (ok or error kind)',
            labelnames=['endpoint', 'outcome'],
            registry=reg
        )
        self.rpc_failovers = Counter(
            'rpc_failovers_total',
            'Operations that succeeded on a different endpoint than they started on',
            registry=reg
        )
        self.rpc_latency_ms = Histogram(
            'rpc_latency_ms',
            'Successful RPC operation latency (milliseconds)',
            labelnames=['endpoint'],
            buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )
        self.endpoint_healthy = Gauge(
            'rpc_endpoint_healthy',
            'Last observed endpoint health (1=healthy, 0=failing)',
            labelnames=['endpoint'],
            registry=reg
        )

        # === Transaction Metrics ===
        self.tx_submitted = Counter(
            'tx_submitted_total',
            'Transaction submissions by outcome',
            labelnames=['outcome'],
            registry=reg
        )
        self.tx_reconciled = Counter(
            'tx_reconciled_total',
            'Nonce reconciliation results',
            labelnames=['outcome'],
            registry=reg
        )

        # === Pipeline Metrics ===
        self.stage_duration_ms = Histogram(
            'stage_duration_ms',
            'Pipeline stage duration (milliseconds)',
            labelnames=['stage'],
            buckets=[100, 500, 1000, 5000, 15000, 30000, 60000, 120000],
            registry=reg
        )
        self.stage_failures = Counter(
            'stage_failures_total',
            'Pipeline stage failures',
            labelnames=['stage'],
            registry=reg
        )
        self.position_create_retries = Counter(
            'position_create_retries_total',
            'Position creation retries',
            registry=reg
        )
        self.swaps_executed = Counter(
            'swaps_executed_total',
            'External exchange swaps by purpose',
            labelnames=['purpose'],
            registry=reg
        )
        self.instances_by_status = Gauge(
            'instances_by_status',
            'Strategy instances per status',
            labelnames=['status'],
            registry=reg
        )
        self.exits_total = Counter(
            'strategy_exits_total',
            'Exit procedures by reason',
            labelnames=['reason'],
            registry=reg
        )

        # === Monitoring Metrics ===
        self.monitor_range_events = Counter(
            'monitor_range_events_total',
            'Range edge crossings',
            labelnames=['edge'],
            registry=reg
        )
        self.monitor_timeouts = Counter(
            'monitor_timeouts_total',
            'Out-of-range timeouts fired',
            registry=reg
        )

        # === Persistence Metrics ===
        self.persistence_errors = Counter(
            'persistence_errors_total',
            'Instance map load/save failures',
            labelnames=['op'],
            registry=reg
        )
        self.state_save_duration_ms = Histogram(
            'state_save_duration_ms',
            'Time to save the instance map (milliseconds)',
            buckets=[1, 5, 10, 50, 100, 500],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

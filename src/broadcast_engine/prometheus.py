# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring scheduled broadcasts.

All metrics use the ``wab_`` prefix.

Metrics exposed:
    - ``wab_sent_total``: Counter of successful sends per instance.
    - ``wab_send_errors_total``: Counter of failed sends per instance.
    - ``wab_executions_total``: Counter of execution passes by ledger status.
    - ``wab_jobs_processed_total``: Counter of jobs claimed and executed.
    - ``wab_due_jobs``: Gauge of pending jobs due at the last poll.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class BroadcastMetrics:
    """Prometheus metrics collector for the broadcast engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of successful gateway sends.
        send_errors: Counter of failed gateway sends.
        executions: Counter of execution passes labeled by status.
        jobs_processed: Counter of executed jobs.
        due: Gauge of due jobs observed by the last poll.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "wab_sent_total",
            "Total successful sends",
            ["instance_id"],
            registry=self.registry,
        )
        self.send_errors = Counter(
            "wab_send_errors_total",
            "Total failed sends",
            ["instance_id"],
            registry=self.registry,
        )
        self.executions = Counter(
            "wab_executions_total",
            "Execution passes by ledger status",
            ["status"],
            registry=self.registry,
        )
        self.jobs_processed = Counter(
            "wab_jobs_processed_total",
            "Jobs claimed and executed",
            registry=self.registry,
        )
        self.due = Gauge(
            "wab_due_jobs",
            "Pending jobs due at the last poll",
            registry=self.registry,
        )

    def inc_sent(self, instance_id: str) -> None:
        self.sent.labels(instance_id=instance_id or "default").inc()

    def inc_send_error(self, instance_id: str) -> None:
        self.send_errors.labels(instance_id=instance_id or "default").inc()

    def inc_execution(self, status: str) -> None:
        """Count one execution pass with the given ledger status."""
        self.executions.labels(status=status).inc()

    def inc_processed(self) -> None:
        self.jobs_processed.inc()

    def set_due(self, value: int) -> None:
        self.due.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

from __future__ import annotations

import logging
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)


@dataclass
class RuntimeStats:
    last_fire_ts: float | None = None
    last_executed_query_id: int | None = None
    consecutive_ai_failures: int = 0
    consecutive_export_failures: int = 0


class Metrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        # private registry per instance
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.executions_total = Counter("query_executions_total", "Query executions", ["trigger"], registry=r)
        self.execution_failures_total = Counter("query_execution_failures_total", "Failed query executions", registry=r)
        self.overlapping_fires_total = Counter(
            "query_overlapping_fires_total", "Fires skipped while a run was in flight", registry=r
        )

        self.ai_latency_seconds = Histogram(
            "ai_latency_seconds", "Answer API latency", buckets=(0.5, 1, 2, 5, 10, 20, 60, 120, 240), registry=r
        )

        self.exports_total = Counter("document_exports_total", "Exported documents", registry=r)
        self.export_failures_total = Counter("document_export_failures_total", "Export failures", registry=r)

        self.registered_triggers = Gauge("registered_triggers", "Queries registered with the trigger", registry=r)
        self.consecutive_failures = Gauge("consecutive_failures", "Consecutive failures", ["type"], registry=r)

    def start_server(self, bind: str, port: int) -> None:
        start_http_server(port, addr=bind, registry=self.registry)
        logger.info("metrics server started at %s:%s", bind, port)

    def set_consecutive(self, typ: str, value: int) -> None:
        self.consecutive_failures.labels(type=typ).set(value)

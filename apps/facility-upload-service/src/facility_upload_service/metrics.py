from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


@dataclass(frozen=True)
class ApiRequestMetric:
    method: str
    path: str
    status_code: int
    duration_ms: float
    trace_id: str
    upload_result: str | None = None


@dataclass(frozen=True)
class StageDuration:
    stage: str
    duration_ms: float


class MetricsCollector(Protocol):
    def observe(self, metric: ApiRequestMetric) -> None: ...

    def observe_stage_duration(self, stage: str, duration_ms: float) -> None: ...

    def record_upload(self, result: str, rows: int = 0) -> None: ...


class InMemoryMetricsCollector(MetricsCollector):
    def __init__(self) -> None:
        self._requests: list[ApiRequestMetric] = []
        self.stage_durations: list[StageDuration] = []
        self.upload_results: dict[str, int] = defaultdict(int)
        self.staged_rows = 0

    def observe(self, metric: ApiRequestMetric) -> None:
        self._requests.append(metric)

    def observe_stage_duration(self, stage: str, duration_ms: float) -> None:
        self.stage_durations.append(StageDuration(stage=stage, duration_ms=duration_ms))

    def record_upload(self, result: str, rows: int = 0) -> None:
        self.upload_results[result] += 1
        self.staged_rows += max(rows, 0)

    def snapshot(self) -> list[dict]:
        return [asdict(item) for item in self._requests]


class PrometheusMetricsCollector(MetricsCollector):
    def __init__(self) -> None:
        self._registry = CollectorRegistry()
        self._request_counter = Counter(
            "facility_upload_http_requests_total",
            "Total HTTP requests",
            labelnames=("method", "path", "status_code"),
            registry=self._registry,
        )
        self._latency_histogram = Histogram(
            "facility_upload_http_request_duration_ms",
            "HTTP request latency in milliseconds",
            labelnames=("method", "path"),
            buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 3000),
            registry=self._registry,
        )
        self._stage_histogram = Histogram(
            "facility_upload_stage_duration_ms",
            "CSV ingestion stage duration in milliseconds",
            labelnames=("stage",),
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
            registry=self._registry,
        )
        self._upload_results = Counter(
            "facility_upload_results_total",
            "CSV uploads grouped by outcome",
            labelnames=("result",),
            registry=self._registry,
        )
        self._staged_rows = Counter(
            "facility_upload_rows_total",
            "Rows committed to the staging table",
            registry=self._registry,
        )

    def observe(self, metric: ApiRequestMetric) -> None:
        status = str(metric.status_code)
        self._request_counter.labels(metric.method, metric.path, status).inc()
        self._latency_histogram.labels(metric.method, metric.path).observe(metric.duration_ms)

    def observe_stage_duration(self, stage: str, duration_ms: float) -> None:
        self._stage_histogram.labels(stage).observe(duration_ms)

    def record_upload(self, result: str, rows: int = 0) -> None:
        self._upload_results.labels(result).inc()
        if rows > 0:
            self._staged_rows.inc(rows)

    def render(self) -> str:
        return generate_latest(self._registry).decode("utf-8")


class CompositeMetricsCollector(MetricsCollector):
    def __init__(self, collectors: list[MetricsCollector]) -> None:
        self._collectors = collectors

    def observe(self, metric: ApiRequestMetric) -> None:
        for collector in self._collectors:
            collector.observe(metric)

    def observe_stage_duration(self, stage: str, duration_ms: float) -> None:
        for collector in self._collectors:
            collector.observe_stage_duration(stage, duration_ms)

    def record_upload(self, result: str, rows: int = 0) -> None:
        for collector in self._collectors:
            collector.record_upload(result, rows)

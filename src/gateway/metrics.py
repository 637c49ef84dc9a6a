"""Request accounting for the gateway.

``MetricsLogger.write`` takes the record the dispatcher builds at the end of a
logical request and fans it out to a dated JSONL file, the Prometheus text
snapshot and, when the SDK is installed, an OpenTelemetry meter.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]

MODE_ENV = "GATEWAY_METRICS_EXPORT_MODE"
OTEL_FLAG_ENV = "GATEWAY_OTEL_METRICS_EXPORT"
PROM_SNAPSHOT = "prometheus.prom"
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
HISTOGRAM_BUCKETS: tuple[float, ...] = (0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0)


class ExportMode(str, Enum):
    PROM = "prom"
    OTEL = "otel"
    BOTH = "both"

    @property
    def prometheus(self) -> bool:
        return self is not ExportMode.OTEL

    @property
    def opentelemetry(self) -> bool:
        return self is not ExportMode.PROM

    @classmethod
    def from_env(cls) -> "ExportMode":
        raw = (os.environ.get(MODE_ENV) or "").strip().lower()
        try:
            return cls(raw)
        except ValueError:
            pass
        # The flag on its own enables both exporters.
        flag = (os.environ.get(OTEL_FLAG_ENV) or "").strip().lower()
        return cls.BOTH if flag in {"1", "true", "yes", "on"} else cls.PROM


@dataclass
class _LatencyHistogram:
    buckets: list[int] = field(default_factory=lambda: [0] * len(HISTOGRAM_BUCKETS))
    count: int = 0
    total: float = 0.0

    def observe(self, seconds: float) -> None:
        for idx, bound in enumerate(HISTOGRAM_BUCKETS):
            if seconds <= bound:
                self.buckets[idx] += 1
        self.count += 1
        self.total += seconds

    def lines(self, name: str, status: str) -> list[str]:
        out = [
            f'{name}_bucket{{status="{status}",le="{format(bound, ".6g")}"}} {hits}'
            for bound, hits in zip(HISTOGRAM_BUCKETS, self.buckets)
        ]
        out.append(f'{name}_bucket{{status="{status}",le="+Inf"}} {self.count}')
        out.append(f'{name}_count{{status="{status}"}} {self.count}')
        out.append(f'{name}_sum{{status="{status}"}} {self.total}')
        return out


class _PrometheusSnapshot:
    """Aggregates records in memory and rewrites ``prometheus.prom`` after each one."""

    def __init__(self, dirpath: str) -> None:
        self.path = os.path.join(dirpath, PROM_SNAPSHOT)
        self._lock = threading.Lock()
        self._requests: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._calls: defaultdict[str, int] = defaultdict(int)
        self._restarts: defaultdict[str, int] = defaultdict(int)
        self._latency: defaultdict[str, _LatencyHistogram] = defaultdict(_LatencyHistogram)

    def record(self, record: dict[str, Any]) -> None:
        status = str(record.get("status") or "unknown")
        credential = str(record.get("credential") or "none")
        seconds = max(float(record.get("latency_ms") or 0) / 1000.0, 0.0)
        with self._lock:
            self._requests[(status, credential)] += 1
            self._calls[status] += int(record.get("calls") or 0)
            self._restarts[status] += int(record.get("restarts") or 0)
            self._latency[status].observe(seconds)
            text = self._render()
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_path, self.path)

    def render(self) -> str:
        with self._lock:
            return self._render()

    def _render(self) -> str:
        lines = [
            "# HELP gateway_requests_total Logical generation requests by outcome",
            "# TYPE gateway_requests_total counter",
        ]
        lines.extend(
            f'gateway_requests_total{{status="{status}",credential="{credential}"}} {value}'
            for (status, credential), value in sorted(self._requests.items())
        )
        for name, help_text, values in (
            ("gateway_upstream_calls_total", "Network calls issued to the upstream", self._calls),
            ("gateway_restarts_total", "Attempts restarted after fragments were delivered", self._restarts),
        ):
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} counter")
            lines.extend(f'{name}{{status="{status}"}} {value}' for status, value in sorted(values.items()))
        lines.append("# HELP gateway_request_latency_seconds Latency of logical requests")
        lines.append("# TYPE gateway_request_latency_seconds histogram")
        for status, histogram in sorted(self._latency.items()):
            lines.extend(histogram.lines("gateway_request_latency_seconds", status))
        return "\n".join(lines) + "\n"


class _OtelMeter:
    def __init__(self, reader: Optional["MetricReader"]) -> None:
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self.provider = MeterProvider(
            resource=Resource.create({"service.name": "llm-gateway"}),
            metric_readers=[reader or InMemoryMetricReader()],
        )
        meter = self.provider.get_meter("gateway.metrics")
        self.requests = meter.create_counter("requests_total", description="Logical generation requests.")
        self.latency = meter.create_histogram("latency_ms", unit="ms", description="Logical request latency.")

    def record(self, record: dict[str, Any]) -> None:
        attrs = {key: record[key] for key in ("status", "mode") if isinstance(record.get(key), str)}
        self.requests.add(1, attributes=attrs)
        latency = record.get("latency_ms")
        if isinstance(latency, (int, float)) and not isinstance(latency, bool):
            self.latency.record(float(latency), attributes=attrs)

    async def flush(self) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self.provider.force_flush)


class MetricsLogger:
    # One meter provider per process; loggers created later share it.
    _shared_lock: ClassVar[threading.Lock] = threading.Lock()
    _shared_meter: ClassVar[Optional[_OtelMeter]] = None
    _sdk_missing: ClassVar[bool] = False
    _reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._mode = ExportMode.from_env()
        self._prom = _PrometheusSnapshot(self.dir) if self._mode.prometheus else None
        self._otel = self._shared_otel() if self._mode.opentelemetry else None

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        """Drop the shared meter so the next logger exports through ``reader``."""
        with cls._shared_lock:
            if cls._shared_meter is not None:
                cls._shared_meter.provider.shutdown()
            cls._shared_meter = None
            cls._sdk_missing = False
            cls._reader = reader

    @classmethod
    def _shared_otel(cls) -> Optional[_OtelMeter]:
        with cls._shared_lock:
            if cls._shared_meter is None and not cls._sdk_missing:
                try:
                    cls._shared_meter = _OtelMeter(cls._reader)
                except ImportError:
                    cls._sdk_missing = True
            return cls._shared_meter

    def render_prometheus(self) -> str:
        return self._prom.render() if self._prom is not None else ""

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        path = os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")
        async with self._lock:
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        for sink in (self._prom, self._otel):
            if sink is not None:
                sink.record(record)

    async def flush(self) -> None:
        if self._otel is not None:
            await self._otel.flush()

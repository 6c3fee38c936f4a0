"""Gauges and histograms exported in the Prometheus text format."""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TypeVar

from .threads import spawn

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEXT_FORMAT = "text/plain; version=0.0.4"


def default_duration_buckets() -> list[float]:
    """Bucket bounds for durations, in seconds."""
    return [
        1e-6, 2e-6, 5e-6, 1e-5, 2e-5, 5e-5, 1e-4, 2e-4, 5e-4, 1e-3, 2e-3, 5e-3,
        1e-2, 2e-2, 5e-2, 1e-1, 2e-1, 5e-1, 1.0, 2.0, 5.0, 10.0, 20.0, 50.0, 100.0,
    ]


def default_size_buckets() -> list[float]:
    """Bucket bounds for sizes and counts."""
    return [
        1.0, 2.0, 5.0, 1e1, 2e1, 5e1, 1e2, 2e2, 5e2, 1e3, 2e3, 5e3, 1e4, 2e4,
        5e4, 1e5, 2e5, 5e5, 1e6, 2e6, 5e6, 1e7,
    ]


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


class Gauge:
    """A gauge with a single label dimension."""

    kind = "gauge"

    def __init__(self, name: str, desc: str, label: str) -> None:
        self.name = name
        self.desc = desc
        self.label = label
        self._values: dict[str, float] = {}
        self._lock = threading.Lock()

    def set(self, label: str, value: float) -> None:
        with self._lock:
            self._values[label] = float(value)

    def value(self, label: str) -> float:
        """Current value for ``label``; zero if it was never set."""
        with self._lock:
            return self._values.get(label, 0.0)

    def _samples(self) -> list[str]:
        with self._lock:
            items = sorted(self._values.items())
        return [
            f'{self.name}{{{self.label}="{_escape_label(key)}"}} {_format_number(value)}'
            for key, value in items
        ]


@dataclass
class _Series:
    buckets: list[int]
    total: float = 0.0
    count: int = 0


@dataclass
class _HistogramState:
    series: dict[str, _Series] = field(default_factory=dict)


class Histogram:
    """A histogram with a single label dimension."""

    kind = "histogram"

    def __init__(self, name: str, desc: str, label: str, buckets: Iterable[float]) -> None:
        bounds = [float(bound) for bound in buckets]
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds.pop()
        if any(low >= high for low, high in itertools.pairwise(bounds)):
            raise ValueError(f"histogram buckets must be strictly increasing: {bounds}")
        self.name = name
        self.desc = desc
        self.label = label
        self.buckets = tuple(bounds)
        self._state = _HistogramState()
        self._lock = threading.Lock()

    def observe(self, label: str, value: float) -> None:
        value = float(value)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            series = self._state.series.get(label)
            if series is None:
                series = _Series(buckets=[0] * (len(self.buckets) + 1))
                self._state.series[label] = series
            series.buckets[index] += 1
            series.total += value
            series.count += 1

    def observe_duration(self, label: str, func: Callable[[], T]) -> T:
        """Call ``func``, record how long it took, and return its result."""
        start = time.perf_counter()
        try:
            return func()
        finally:
            self.observe(label, time.perf_counter() - start)

    def count(self, label: str) -> int:
        """Number of observations recorded for ``label``."""
        with self._lock:
            series = self._state.series.get(label)
            return series.count if series is not None else 0

    def _samples(self) -> list[str]:
        with self._lock:
            items = sorted(
                (key, list(s.buckets), s.total, s.count)
                for key, s in self._state.series.items()
            )
        lines = []
        bounds = [*self.buckets, math.inf]
        for key, buckets, total, count in items:
            label = f'{self.label}="{_escape_label(key)}"'
            for bound, cumulative in zip(bounds, itertools.accumulate(buckets)):
                lines.append(
                    f'{self.name}_bucket{{{label},le="{_format_number(bound)}"}} {cumulative}'
                )
            lines.append(f"{self.name}_sum{{{label}}} {_format_number(total)}")
            lines.append(f"{self.name}_count{{{label}}} {count}")
        return lines


class _MetricsServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, addr: tuple[str, int], metrics: Metrics) -> None:
        self.metrics = metrics
        super().__init__(addr, _MetricsHandler)


class _MetricsHandler(BaseHTTPRequestHandler):
    server: _MetricsServer

    def do_GET(self) -> None:  # noqa: N802 - name fixed by the base class
        body = self.server.metrics.render().encode()
        self.send_response(200)
        self.send_header("Content-Type", TEXT_FORMAT)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug("metrics request: " + format, *args)


class Metrics:
    """A registry of metrics, optionally served over HTTP."""

    PREFIX = "electrum_index_"

    def __init__(self) -> None:
        self._families: dict[str, Gauge | Histogram] = {}
        self._lock = threading.Lock()
        self._server: _MetricsServer | None = None

    def _register(self, family: Gauge | Histogram) -> None:
        with self._lock:
            if family.name in self._families:
                raise ValueError(f"metric {family.name!r} is already registered")
            self._families[family.name] = family

    def gauge(self, name: str, desc: str, label: str) -> Gauge:
        gauge = Gauge(self.PREFIX + name, desc, label)
        self._register(gauge)
        return gauge

    def histogram_vec(
        self, name: str, desc: str, label: str, buckets: Iterable[float]
    ) -> Histogram:
        histogram = Histogram(self.PREFIX + name, desc, label, buckets)
        self._register(histogram)
        return histogram

    def render(self) -> str:
        """All registered metrics in the Prometheus text exposition format."""
        with self._lock:
            families = sorted(self._families.values(), key=lambda f: f.name)
        lines = []
        for family in families:
            lines.append(f"# HELP {family.name} {_escape_help(family.desc)}")
            lines.append(f"# TYPE {family.name} {family.kind}")
            lines.extend(family._samples())
        return "".join(line + "\n" for line in lines)

    def serve(self, addr: tuple[str, int]) -> tuple[str, int]:
        """Serve the metrics over HTTP at ``addr``; return the bound address."""
        if self._server is not None:
            raise RuntimeError("metrics are already being served")
        try:
            server = _MetricsServer(addr, self)
        except OSError as err:
            raise RuntimeError(f"failed to start HTTP server on {addr}: {err}") from err
        self._server = server
        spawn("metrics", server.serve_forever)
        bound = server.server_address
        logger.info("serving Prometheus metrics on %s:%s", bound[0], bound[1])
        return bound[0], bound[1]

    def close(self) -> None:
        """Stop serving over HTTP, if serving."""
        server, self._server = self._server, None
        if server is not None:
            server.shutdown()
            server.server_close()

    def __enter__(self) -> Metrics:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

from .log import get_logger

logger = get_logger("aggregator")

LATENCY_BUCKETS_MS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


@dataclass(frozen=True)
class FrameEvent:
    thread_id: int
    frame_index: int
    status: int
    latency: Optional[float]
    fps: float
    cpu_utilization: float
    gpu_utilization: float


@dataclass(frozen=True)
class ThreadStats:
    thread_id: int
    elapsed_ms: float
    frame_count: int
    cpu_utilization: float = 0.0
    gpu_utilization: float = 0.0
    group: str = "primary"


@dataclass
class GlobalReport:
    threads: List[ThreadStats]
    total_threads: int
    total_streams: int
    pipeline_repeats: int
    total_time_ms: float
    total_frames: int
    mean_time_ms: float
    fps: float
    latency_sum: float
    latency_count: int
    mean_latency: Optional[float]
    failures: List[str] = field(default_factory=list)


def compute_fps(total_frames: int, pipeline_repeats: int, total_streams: int, mean_elapsed_ms: float) -> float:
    """Per-stream frames/second: ((frames - repeats) / streams) / mean seconds.

    One handshake reply per repeat is not a data frame, hence ``- pipeline_repeats``.
    """
    if mean_elapsed_ms <= 0 or total_streams <= 0:
        return 0.0
    return ((total_frames - pipeline_repeats) / total_streams) / (mean_elapsed_ms / 1000.0)


class MetricsAggregator:
    """The only cross-driver mutable state; every update holds ``_lock``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latency_sum = 0.0
        self._latency_count = 0
        self._threads: List[ThreadStats] = []

        self.registry = CollectorRegistry()
        self.frames_total = Counter(
            "pipebench_frames_total", "Frames processed", ["thread"], registry=self.registry
        )
        self.frame_errors_total = Counter(
            "pipebench_frame_errors_total", "Frames answered with a non-zero status", ["thread"], registry=self.registry
        )
        self.thread_fps = Gauge(
            "pipebench_thread_fps", "Instantaneous per-thread throughput", ["thread"], registry=self.registry
        )
        self.frame_latency_ms = Histogram(
            "pipebench_frame_latency_ms",
            "Service-reported frame latency in milliseconds",
            buckets=LATENCY_BUCKETS_MS,
            registry=self.registry,
        )

    def record_latency(self, value: float) -> None:
        with self._lock:
            self._latency_sum += value
            self._latency_count += 1
        self.frame_latency_ms.observe(value)

    def record_frame(self, event: FrameEvent) -> None:
        thread = str(event.thread_id)
        self.frames_total.labels(thread=thread).inc()
        if event.status != 0:
            self.frame_errors_total.labels(thread=thread).inc()
        self.thread_fps.labels(thread=thread).set(event.fps)

    def record_thread_total(self, stats: ThreadStats) -> None:
        with self._lock:
            self._threads.append(stats)

    @property
    def latency(self):
        with self._lock:
            return self._latency_sum, self._latency_count

    def thread_totals(self) -> List[ThreadStats]:
        with self._lock:
            return sorted(self._threads, key=lambda s: s.thread_id)

    def write_snapshot(self, path: str) -> None:
        write_to_textfile(path, self.registry)
        logger.debug(f"Wrote metrics snapshot to {path}")

    def finalize(self, total_threads: int, total_streams: int, pipeline_repeats: int) -> GlobalReport:
        """Derive the report; call only after every driver has returned."""
        with self._lock:
            threads = sorted(self._threads, key=lambda s: s.thread_id)
            latency_sum = self._latency_sum
            latency_count = self._latency_count

        total_time = sum(s.elapsed_ms for s in threads)
        total_frames = sum(s.frame_count for s in threads)
        mean_time = total_time / len(threads) if threads else 0.0
        return GlobalReport(
            threads=threads,
            total_threads=total_threads,
            total_streams=total_streams,
            pipeline_repeats=pipeline_repeats,
            total_time_ms=total_time,
            total_frames=total_frames,
            mean_time_ms=mean_time,
            fps=compute_fps(total_frames, pipeline_repeats, total_streams, mean_time),
            latency_sum=latency_sum,
            latency_count=latency_count,
            mean_latency=latency_sum / latency_count if latency_count else None,
        )

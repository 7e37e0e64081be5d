import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .aggregator import GlobalReport, MetricsAggregator
from .config import RunParameters, Settings
from .driver import WorkloadDriver
from .errors import InvalidPartitionError
from .inputs import expand_inputs
from .log import get_logger
from .sampler import NullSampler, ResourceSampler

logger = get_logger("orchestrator")

PRIMARY = "primary"
SECONDARY = "secondary"
# secondary-group drivers always carry a single stream
SECONDARY_STREAM_NUM = 1


@dataclass(frozen=True)
class StreamPartition:
    primary_threads: int
    secondary_threads: int
    cross_stream_num: int

    @property
    def total_threads(self) -> int:
        return self.primary_threads + self.secondary_threads


def partition_streams(total_stream_num: int, cross_stream_num: int) -> StreamPartition:
    if cross_stream_num < 1 or total_stream_num < 1:
        raise InvalidPartitionError("stream counts must be positive")
    if total_stream_num < cross_stream_num:
        raise InvalidPartitionError("total-stream-number should be no less than cross-stream-number!")
    return StreamPartition(
        primary_threads=total_stream_num // cross_stream_num,
        secondary_threads=total_stream_num % cross_stream_num,
        cross_stream_num=cross_stream_num,
    )


def report_name(group: str, index: int) -> str:
    if group == PRIMARY:
        return f"performance_data_{index}.json"
    return f"performance_data_additional_{index}.json"


@dataclass
class RunOutcome:
    report: GlobalReport
    partition: StreamPartition
    failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class Orchestrator:
    def __init__(
        self,
        params: RunParameters,
        settings: Settings,
        primary_config: str,
        secondary_config: str = "",
        aggregator: Optional[MetricsAggregator] = None,
        cpu_sampler: Optional[ResourceSampler] = None,
        gpu_sampler: Optional[ResourceSampler] = None,
    ) -> None:
        self.params = params
        self.settings = settings
        self.primary_config = primary_config
        self.secondary_config = secondary_config
        self.aggregator = aggregator or MetricsAggregator()
        self.cpu_sampler = cpu_sampler or NullSampler()
        self.gpu_sampler = gpu_sampler or NullSampler()
        # fails fast, before any driver exists
        self.partition = partition_streams(params.total_stream_num, params.cross_stream_num)

    def build_drivers(self, media: Sequence[str]) -> List[WorkloadDriver]:
        report_dir = Path(self.settings.report_dir)
        drivers = []
        groups = [
            (PRIMARY, self.partition.primary_threads, self.primary_config, self.partition.cross_stream_num),
            (SECONDARY, self.partition.secondary_threads, self.secondary_config, SECONDARY_STREAM_NUM),
        ]
        for group, count, config, stream_num in groups:
            inputs = expand_inputs(media, self.params.repeats, stream_num)
            for i in range(count):
                drivers.append(
                    WorkloadDriver(
                        host=self.params.host,
                        port=self.params.port,
                        pipeline_config=config,
                        inputs=inputs,
                        pipeline_repeats=self.params.pipeline_repeats,
                        thread_id=len(drivers),
                        stream_num=stream_num,
                        warmup=self.params.warmup,
                        report_path=report_dir / report_name(group, i),
                        aggregator=self.aggregator,
                        cpu_sampler=self.cpu_sampler,
                        gpu_sampler=self.gpu_sampler,
                        settings=self.settings,
                        group=group,
                    )
                )
        return drivers

    def _write_snapshot(self, path: str) -> None:
        try:
            self.aggregator.write_snapshot(path)
        except OSError as e:
            logger.warning(
                f"failed to write metrics snapshot to {path}: {e}",
                extra={"event": "orchestrator.snapshot_failed", "path": path},
            )

    async def _snapshot_loop(self, path: str, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self._write_snapshot(path)

    async def run(self, media: Sequence[str], drivers: Optional[List[WorkloadDriver]] = None) -> RunOutcome:
        drivers = drivers if drivers is not None else self.build_drivers(media)
        logger.info(
            f"Start processing with {self.partition.total_threads} threads: total-stream = "
            f"{self.params.total_stream_num}, each thread will process {self.partition.cross_stream_num} streams",
            extra={
                "event": "orchestrator.start",
                "primary_threads": self.partition.primary_threads,
                "secondary_threads": self.partition.secondary_threads,
            },
        )

        snapshot_path = self.settings.snapshot_path
        snapshots = None
        if snapshot_path and self.settings.snapshot_interval_s > 0:
            snapshots = asyncio.create_task(self._snapshot_loop(snapshot_path, self.settings.snapshot_interval_s))
        try:
            results = await asyncio.gather(*(d.run() for d in drivers), return_exceptions=True)
        finally:
            if snapshots is not None:
                snapshots.cancel()
                try:
                    await snapshots
                except asyncio.CancelledError:
                    pass

        failures = []
        for driver, result in zip(drivers, results):
            if isinstance(result, BaseException):
                failures.append(f"thread {driver.thread_id}: {result}")
                logger.error(
                    f"[thread {driver.thread_id}] driver failed: {result!r}",
                    extra={"event": "orchestrator.driver_failed", "thread_id": driver.thread_id},
                )

        if snapshot_path:
            self._write_snapshot(snapshot_path)

        report = self.aggregator.finalize(
            total_threads=self.partition.total_threads,
            total_streams=self.params.total_stream_num,
            pipeline_repeats=self.params.pipeline_repeats,
        )
        report.failures = failures
        return RunOutcome(report=report, partition=self.partition, failures=failures)

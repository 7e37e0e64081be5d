import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import async_timeout
import grpc

from .aggregator import FrameEvent, MetricsAggregator, ThreadStats
from .config import Settings
from .log import get_logger
from .messages import FrameResult, PerformanceSummary, describe_artifacts
from .sampler import NullSampler, ResourceSampler
from .session import PipelineSession, Reply
from .transport import PipelineClient

logger = get_logger("driver")

# progress cadence, in frames
PROGRESS_EVERY = 100

REPEAT_ERRORS = (grpc.aio.AioRpcError, asyncio.InvalidStateError, asyncio.TimeoutError)


def save_report(path: Path, payload: Dict[str, Any]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(payload, f, indent=4)
    return path


class WorkloadDriver:
    """Runs ``pipeline_repeats`` sessions back to back for one logical worker.

    ``inputs`` is already expanded by the data-repeat factor and the stream count.
    """

    def __init__(
        self,
        host: str,
        port: int,
        pipeline_config: str,
        inputs: List[str],
        pipeline_repeats: int,
        thread_id: int,
        stream_num: int,
        warmup: bool,
        report_path: Path,
        aggregator: MetricsAggregator,
        cpu_sampler: Optional[ResourceSampler] = None,
        gpu_sampler: Optional[ResourceSampler] = None,
        settings: Optional[Settings] = None,
        group: str = "primary",
        client: Optional[PipelineClient] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.host = host
        self.port = port
        self.pipeline_config = pipeline_config
        self.inputs = inputs
        self.pipeline_repeats = pipeline_repeats
        self.thread_id = thread_id
        self.stream_num = stream_num
        self.warmup = warmup
        self.report_path = Path(report_path)
        self.aggregator = aggregator
        self.cpu_sampler = cpu_sampler or NullSampler()
        self.gpu_sampler = gpu_sampler or NullSampler()
        self.group = group
        self.client = client or PipelineClient(
            host,
            port,
            connect_timeout_s=self.settings.connect_timeout_s,
            max_message_mb=self.settings.max_message_mb,
        )

        self.job_handle = 0
        self.handshake_attempted = False
        self.frame_count = 0
        self.elapsed_ms = 0.0
        self.failed_repeats = 0
        self._first_index = 0
        self._cpu_sum = 0.0
        self._gpu_sum = 0.0

    @property
    def repeat_timeout(self) -> Optional[float]:
        return self.settings.repeat_timeout_s or None

    async def run(self) -> ThreadStats:
        logger.info(
            f"[thread {self.thread_id}] Input media size is: {len(self.inputs)}",
            extra={"event": "driver.start", "thread_id": self.thread_id, "group": self.group},
        )
        # a channel that never becomes ready is fatal to this driver
        await self.client.connect()
        try:
            for repeat in range(self.pipeline_repeats):
                await self._run_repeat(repeat)
        finally:
            await self.client.close()
            # latencies are already in the aggregator, so totals go in on every exit path
            stats = self._publish_totals()
        return stats

    def _publish_totals(self) -> ThreadStats:
        stats = ThreadStats(
            thread_id=self.thread_id,
            elapsed_ms=self.elapsed_ms,
            frame_count=self.frame_count,
            cpu_utilization=self._cpu_sum / self.frame_count if self.frame_count else 0.0,
            gpu_utilization=self._gpu_sum / self.frame_count if self.frame_count else 0.0,
            group=self.group,
        )
        logger.info(
            f"[thread {self.thread_id}] done: cpu {stats.cpu_utilization:.1f}%, gpu {stats.gpu_utilization:.1f}%",
            extra={
                "event": "driver.done",
                "thread_id": self.thread_id,
                "frames": stats.frame_count,
                "elapsed_ms": stats.elapsed_ms,
            },
        )
        self.aggregator.record_thread_total(stats)
        return stats

    async def _run_repeat(self, repeat: int) -> None:
        session = PipelineSession(
            self.client.open_stream(),
            pipeline_config=self.pipeline_config,
            stream_num=self.stream_num,
            media_uris=self.inputs,
            job_handle=self.job_handle,
            thread_id=self.thread_id,
        )
        self._first_index = self.frame_count
        try:
            async with async_timeout.timeout(self.repeat_timeout):
                if self.warmup and not self.handshake_attempted:
                    # a failed handshake is not retried; later repeats resend the config
                    self.handshake_attempted = True
                    self.job_handle = await session.negotiate()
                await session.run()
                async for reply in session.replies():
                    self._on_reply(session, reply)
                await session.close()
        except REPEAT_ERRORS as e:
            session.abort()
            self.failed_repeats += 1
            logger.error(
                f"[thread {self.thread_id}] repeat {repeat} failed: {e!r}",
                extra={"event": "driver.repeat_failed", "thread_id": self.thread_id, "repeat": repeat},
            )

        self.elapsed_ms += session.elapsed_ms()
        logger.info(
            f"request done with {self.frame_count} frames",
            extra={"event": "driver.repeat_done", "thread_id": self.thread_id, "repeat": repeat},
        )

    def _on_reply(self, session: PipelineSession, reply: Reply) -> None:
        response = reply.response
        content = reply.content
        if response.ok and isinstance(content, PerformanceSummary):
            try:
                save_report(self.report_path, content.payload)
            except OSError as e:
                logger.error(
                    f"[thread {self.thread_id}] failed to save report to {self.report_path}: {e}",
                    extra={"event": "driver.report_failed", "thread_id": self.thread_id},
                )
                return
            logger.info(
                f"save report to {self.report_path}",
                extra={"event": "driver.report_saved", "thread_id": self.thread_id},
            )
            return

        latency = None
        if response.ok and isinstance(content, FrameResult):
            latency = content.latency
            self.aggregator.record_latency(latency)
        elif not response.ok:
            # still one processed input on the service side
            logger.warning(
                "driver.frame_failed",
                extra={
                    "event": "driver.frame_failed",
                    "thread_id": self.thread_id,
                    "frame_index": self.frame_count,
                    "status": response.status,
                    "reply": response.message,
                },
            )

        cpu = self.cpu_sampler.sample()
        gpu = self.gpu_sampler.sample()
        self._cpu_sum += cpu
        self._gpu_sum += gpu

        fps_count = self.frame_count - self._first_index
        index = self.frame_count
        self.frame_count += 1
        elapsed_s = reply.received_at - session.first_response_at
        fps = fps_count / elapsed_s if fps_count and elapsed_s > 0 else 0.0

        self.aggregator.record_frame(
            FrameEvent(
                thread_id=self.thread_id,
                frame_index=index,
                status=response.status,
                latency=latency,
                fps=fps,
                cpu_utilization=cpu,
                gpu_utilization=gpu,
            )
        )
        logger.debug(
            f"frame index: {index}, reply_status: {response.status}, curFPS: {fps:.2f}",
            extra={"event": "driver.frame", "thread_id": self.thread_id, "frame_index": index},
        )
        for artifact in describe_artifacts(response):
            logger.debug(
                f"received binary data, frameId: {artifact.frame_id}, color: {artifact.format}, "
                f"height: {artifact.height}, width: {artifact.width}, content size: {artifact.size}",
                extra={"event": "driver.artifact", "thread_id": self.thread_id},
            )

        if self.frame_count % PROGRESS_EVERY == 0:
            logger.info(
                f"[thread {self.thread_id}] {self.frame_count} frames have been processed.",
                extra={"event": "driver.progress", "thread_id": self.thread_id, "frames": self.frame_count},
            )

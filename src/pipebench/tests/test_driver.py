import asyncio
import json
import logging
import socket
import tempfile
from pathlib import Path

import pytest

from pipebench.aggregator import MetricsAggregator
from pipebench.config import Settings
from pipebench.driver import WorkloadDriver
from pipebench.errors import ChannelUnavailableError
from pipebench.messages import Response
from pipebench.mock_service import MockPipelineService, MockScript, start_server

from .fakes import FakeCall, FakeClient, frame, handshake

CONFIG = '{"pipeline": "fusion"}'


def make_driver(aggregator, report_path, client=None, port=0, repeats=1, warmup=True, settings=None):
    return WorkloadDriver(
        host="127.0.0.1",
        port=port,
        pipeline_config=CONFIG,
        inputs=["a.bin", "b.bin"],
        pipeline_repeats=repeats,
        thread_id=0,
        stream_num=1,
        warmup=warmup,
        report_path=report_path,
        aggregator=aggregator,
        settings=settings,
        client=client,
    )


def run_against_mock(script, repeats=1, warmup=True, settings=None):
    service = MockPipelineService(script)
    aggregator = MetricsAggregator()

    async def go(report_path):
        server, port = await start_server(service)
        try:
            driver = make_driver(aggregator, report_path, port=port, repeats=repeats, warmup=warmup, settings=settings)
            stats = await driver.run()
        finally:
            await server.stop(None)
        return driver, stats

    with tempfile.TemporaryDirectory() as td:
        report_path = Path(td) / "performance_data_0.json"
        driver, stats = asyncio.run(go(report_path))
        report = json.loads(report_path.read_text()) if report_path.exists() else None
    return service, aggregator, driver, stats, report


def test_end_to_end_handshake_and_three_frames():
    service, aggregator, driver, stats, _ = run_against_mock(MockScript(handle=42, latencies=[10, 20, 30]))
    assert stats.frame_count == 3
    assert aggregator.latency == (60.0, 3)
    assert [r.target for r in service.requests] == ["load_pipeline", "run"]
    assert all(r.pipeline_config is None for r in service.requests[1:])
    assert service.requests[1].job_handle == 42
    assert aggregator.thread_totals() == [stats]


def test_handle_reused_across_repeats():
    service, aggregator, driver, stats, _ = run_against_mock(MockScript(handle=42, latencies=[1, 2]), repeats=3)
    targets = [r.target for r in service.requests]
    assert targets == ["load_pipeline", "run", "run", "run"]
    runs = service.requests[1:]
    assert all(r.job_handle == 42 and r.pipeline_config is None for r in runs)
    assert stats.frame_count == 6
    assert aggregator.latency == (9.0, 6)


def test_failed_handshake_is_not_retried():
    service, aggregator, driver, stats, _ = run_against_mock(MockScript(handle=0, latencies=[5]), repeats=3)
    assert [r.target for r in service.requests] == ["load_pipeline", "run", "run", "run"]
    assert all(r.pipeline_config == CONFIG and r.job_handle == 0 for r in service.requests[1:])
    assert driver.job_handle == 0
    assert stats.frame_count == 3


def test_without_warmup_config_sent_every_repeat():
    service, _, _, stats, _ = run_against_mock(MockScript(latencies=[5]), repeats=2, warmup=False)
    assert [r.target for r in service.requests] == ["run", "run"]
    assert all(r.pipeline_config == CONFIG for r in service.requests)
    assert stats.frame_count == 2


def test_performance_summary_saved_and_not_counted():
    script = MockScript(latencies=[10, 20], performance_summary=True, artifact=True)
    _, aggregator, _, stats, report = run_against_mock(script)
    assert stats.frame_count == 2
    assert aggregator.latency == (30.0, 2)
    assert report == {"Type": "PerformanceData", "frames": 2}


def test_failed_frames_counted_without_latency():
    script = MockScript(latencies=[10, 20, 30], frame_statuses=[0, 5, 0])
    _, aggregator, _, stats, _ = run_against_mock(script)
    assert stats.frame_count == 3
    assert aggregator.latency == (40.0, 2)
    assert aggregator.registry.get_sample_value("pipebench_frame_errors_total", {"thread": "0"}) == 1


def test_stalled_repeat_times_out_and_driver_continues():
    settings = Settings(repeat_timeout_s=0.5)
    service, aggregator, driver, stats, _ = run_against_mock(
        MockScript(latencies=[1], stall_s=30), repeats=2, settings=settings
    )
    assert driver.failed_repeats == 2
    assert stats.frame_count == 0
    assert aggregator.thread_totals() == [stats]


def test_progress_logged_every_hundred_frames(caplog):
    caplog.set_level(logging.INFO, logger="pipebench")
    _, _, _, stats, _ = run_against_mock(MockScript(latencies=[1.0] * 205))
    assert stats.frame_count == 205
    progress = [r.getMessage() for r in caplog.records if getattr(r, "event", None) == "driver.progress"]
    assert progress == [
        "[thread 0] 100 frames have been processed.",
        "[thread 0] 200 frames have been processed.",
    ]


def test_undecodable_replies_count_as_frames():
    calls = [FakeCall([handshake(9), Response(status=0, message="<<not json>>"), frame(4.0)])]
    aggregator = MetricsAggregator()
    with tempfile.TemporaryDirectory() as td:
        driver = make_driver(aggregator, Path(td) / "r.json", client=FakeClient(calls))
        stats = asyncio.run(driver.run())
    assert stats.frame_count == 2
    assert aggregator.latency == (4.0, 1)
    assert driver.job_handle == 9


def test_utilization_means_use_samplers():
    class Fixed:
        def __init__(self, value):
            self.value = value

        def sample(self):
            return self.value

    calls = [FakeCall([frame(1.0), frame(2.0)])]
    aggregator = MetricsAggregator()
    with tempfile.TemporaryDirectory() as td:
        driver = make_driver(aggregator, Path(td) / "r.json", client=FakeClient(calls), warmup=False)
        driver.cpu_sampler = Fixed(40.0)
        driver.gpu_sampler = Fixed(10.0)
        stats = asyncio.run(driver.run())
    assert stats.cpu_utilization == 40.0
    assert stats.gpu_utilization == 10.0


def test_unreachable_service_is_fatal_to_driver():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    aggregator = MetricsAggregator()
    with tempfile.TemporaryDirectory() as td:
        driver = make_driver(aggregator, Path(td) / "r.json", port=port, settings=Settings(connect_timeout_s=0.5))
        with pytest.raises(ChannelUnavailableError):
            asyncio.run(driver.run())
    assert aggregator.thread_totals() == []


def test_unwritable_report_keeps_driver_counting(caplog):
    caplog.set_level(logging.ERROR, logger="pipebench")
    service = MockPipelineService(MockScript(latencies=[10, 20, 30], performance_summary=True))
    aggregator = MetricsAggregator()

    async def go(report_path):
        server, port = await start_server(service)
        try:
            return await make_driver(aggregator, report_path, port=port).run()
        finally:
            await server.stop(None)

    with tempfile.TemporaryDirectory() as td:
        blocker = Path(td) / "blocker"
        blocker.write_text("")
        stats = asyncio.run(go(blocker / "sub" / "performance_data_0.json"))

    assert stats.frame_count == 3
    assert aggregator.latency == (60.0, 3)
    assert aggregator.thread_totals() == [stats]
    assert [r.event for r in caplog.records if getattr(r, "event", None) == "driver.report_failed"] == ["driver.report_failed"]


def test_totals_published_when_a_repeat_escapes():
    # one prepared call for two repeats: the second open_stream raises
    client = FakeClient([FakeCall([frame(5.0), frame(7.0)])])
    aggregator = MetricsAggregator()
    with tempfile.TemporaryDirectory() as td:
        driver = make_driver(aggregator, Path(td) / "r.json", client=client, repeats=2, warmup=False)
        with pytest.raises(IndexError):
            asyncio.run(driver.run())
    assert client.closed
    assert [s.frame_count for s in aggregator.thread_totals()] == [2]
    assert aggregator.latency == (12.0, 2)

import asyncio
import logging
import socket
import tempfile
from pathlib import Path

import pytest

from pipebench.config import RunParameters, Settings
from pipebench.driver import WorkloadDriver
from pipebench.errors import InvalidPartitionError
from pipebench.mock_service import MockPipelineService, MockScript, start_server
from pipebench.orchestrator import Orchestrator, partition_streams, report_name

from .fakes import FakeCall, FakeClient, StalledCall, frame, handshake


def params(total, cross, port=0, pipeline_repeats=1, repeats=1):
    return RunParameters(
        host="127.0.0.1",
        port=port,
        primary_config="primary.json",
        secondary_config="secondary.json",
        total_stream_num=total,
        repeats=repeats,
        data_path=Path("."),
        pipeline_repeats=pipeline_repeats,
        cross_stream_num=cross,
        warmup=True,
    )


def fake_driver(orch, thread_id, client, report_dir):
    return WorkloadDriver(
        host="127.0.0.1",
        port=0,
        pipeline_config="P",
        inputs=["a.bin"],
        pipeline_repeats=1,
        thread_id=thread_id,
        stream_num=1,
        warmup=True,
        report_path=Path(report_dir) / report_name("primary", thread_id),
        aggregator=orch.aggregator,
        settings=orch.settings,
        client=client,
    )


def test_partition_primary_and_remainder():
    p = partition_streams(10, 4)
    assert (p.primary_threads, p.secondary_threads, p.total_threads) == (2, 2, 4)
    assert partition_streams(4, 4).secondary_threads == 0


def test_partition_rejects_too_few_streams():
    with pytest.raises(InvalidPartitionError):
        partition_streams(2, 4)
    with pytest.raises(InvalidPartitionError):
        partition_streams(3, 0)


def test_orchestrator_rejects_before_building_drivers():
    with pytest.raises(InvalidPartitionError):
        Orchestrator(params(2, 4), Settings(), primary_config="{}")


def test_build_drivers_groups():
    orch = Orchestrator(params(10, 4, repeats=2), Settings(report_dir="out"), primary_config="P", secondary_config="S")
    drivers = orch.build_drivers(["a", "b"])
    assert [d.group for d in drivers] == ["primary", "primary", "secondary", "secondary"]
    assert [d.thread_id for d in drivers] == [0, 1, 2, 3]
    assert [d.stream_num for d in drivers] == [4, 4, 1, 1]
    assert [d.pipeline_config for d in drivers] == ["P", "P", "S", "S"]
    assert len(drivers[0].inputs) == 2 * 2 * 4
    assert len(drivers[2].inputs) == 2 * 2
    names = [d.report_path for d in drivers]
    assert names == [
        Path("out") / "performance_data_0.json",
        Path("out") / "performance_data_1.json",
        Path("out") / "performance_data_additional_0.json",
        Path("out") / "performance_data_additional_1.json",
    ]
    assert len(set(names)) == len(names)
    assert report_name("secondary", 3) == "performance_data_additional_3.json"


def test_run_two_groups_against_mock():
    service = MockPipelineService(MockScript(handle=42, latencies=[10, 20, 30], performance_summary=True))

    async def go(td):
        server, port = await start_server(service)
        try:
            settings = Settings(report_dir=td, snapshot_path=str(Path(td) / "metrics.prom"), snapshot_interval_s=0.05)
            orch = Orchestrator(params(5, 2, port=port, pipeline_repeats=2), settings, primary_config="P", secondary_config="S")
            return await orch.run(["a.bin"])
        finally:
            await server.stop(None)

    with tempfile.TemporaryDirectory() as td:
        outcome = asyncio.run(go(td))
        reports = sorted(p.name for p in Path(td).glob("performance_data_*.json"))
        snapshot = (Path(td) / "metrics.prom").read_text()

    assert outcome.ok
    report = outcome.report
    assert (outcome.partition.primary_threads, outcome.partition.secondary_threads) == (2, 1)
    assert [s.thread_id for s in report.threads] == [0, 1, 2]
    assert [s.group for s in report.threads] == ["primary", "primary", "secondary"]
    # 3 drivers x 2 repeats x 3 frames
    assert report.total_frames == 18
    assert (report.latency_sum, report.latency_count) == (360.0, 18)
    assert report.mean_latency == pytest.approx(20.0)
    assert reports == ["performance_data_0.json", "performance_data_1.json", "performance_data_additional_0.json"]
    assert "pipebench_frames_total" in snapshot

    loads = [r for r in service.requests if r.target == "load_pipeline"]
    assert len(loads) == 3
    assert sorted(r.stream_num for r in loads) == [1, 2, 2]


def test_failed_driver_reported_as_failure():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    orch = Orchestrator(params(2, 1, port=port), Settings(connect_timeout_s=0.3), primary_config="P")
    outcome = asyncio.run(orch.run(["a.bin"]))
    assert not outcome.ok
    assert len(outcome.failures) == 2
    assert outcome.report.threads == []
    assert outcome.report.fps == 0.0


def test_stalled_driver_leaves_other_drivers_untouched():
    orch = Orchestrator(params(2, 1), Settings(repeat_timeout_s=0.3), primary_config="P")
    stalled = StalledCall([])
    with tempfile.TemporaryDirectory() as td:
        drivers = [
            fake_driver(orch, 0, FakeClient([FakeCall([handshake(7), frame(10.0), frame(20.0)])]), td),
            fake_driver(orch, 1, FakeClient([stalled]), td),
        ]
        outcome = asyncio.run(orch.run(["a.bin"], drivers=drivers))

    assert outcome.ok
    report = outcome.report
    assert [(s.thread_id, s.frame_count) for s in report.threads] == [(0, 2), (1, 0)]
    assert (report.latency_sum, report.latency_count) == (30.0, 2)
    assert report.total_frames == 2
    assert drivers[0].job_handle == 7
    assert drivers[0].failed_repeats == 0
    assert drivers[1].failed_repeats == 1
    assert stalled.cancelled


def test_unwritable_snapshot_does_not_lose_report(caplog):
    caplog.set_level(logging.WARNING, logger="pipebench")
    with tempfile.TemporaryDirectory() as td:
        settings = Settings(
            report_dir=td,
            snapshot_path=str(Path(td) / "nodir" / "metrics.prom"),
            snapshot_interval_s=0.01,
            repeat_timeout_s=0.2,
        )
        orch = Orchestrator(params(2, 1), settings, primary_config="P")
        drivers = [
            fake_driver(orch, 0, FakeClient([FakeCall([handshake(7), frame(10.0)])]), td),
            fake_driver(orch, 1, FakeClient([StalledCall([])]), td),
        ]
        outcome = asyncio.run(orch.run(["a.bin"], drivers=drivers))

    assert outcome.ok
    assert outcome.report.total_frames == 1
    assert outcome.report.latency_count == 1
    failed = [r for r in caplog.records if getattr(r, "event", None) == "orchestrator.snapshot_failed"]
    # periodic writes during the stall plus the final one
    assert len(failed) >= 2

import asyncio
import sys
from pathlib import Path

import click
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .aggregator import GlobalReport
from .config import RunParameters, load_pipeline_config, load_settings
from .errors import ConfigError, InputPathError, InvalidPartitionError, SamplerInitError
from .inputs import parse_inputs
from .log import configure_logging
from .orchestrator import Orchestrator, RunOutcome, partition_streams
from .sampler import build_samplers

EXIT_FAILURE = 1

app = typer.Typer(help="pipebench: streaming pipeline load generator", add_completion=False)
console = Console()


def _fail(message: str) -> None:
    console.print(f"[bold red]{message}[/]")
    raise typer.Exit(code=EXIT_FAILURE)


def render_report(report: GlobalReport) -> Table:
    table = Table(title="Time used by each thread", expand=False)
    table.add_column("thread", justify="right")
    table.add_column("group")
    table.add_column("frames", justify="right")
    table.add_column("ms", justify="right")
    table.add_column("cpu %", justify="right")
    table.add_column("gpu %", justify="right")
    for s in report.threads:
        table.add_row(
            str(s.thread_id),
            s.group,
            str(s.frame_count),
            f"{s.elapsed_ms:.0f}",
            f"{s.cpu_utilization:.1f}",
            f"{s.gpu_utilization:.1f}",
        )
    return table


def print_report(outcome: RunOutcome, params: RunParameters) -> None:
    report = outcome.report
    console.print(render_report(report))
    console.print(f"Total time: {report.total_time_ms:.0f} ms")
    console.print(f"Mean time: {report.mean_time_ms:.0f} ms")

    latency = f"{report.mean_latency:.3f}" if report.mean_latency is not None else "n/a"
    grid = Table.grid(expand=True)
    grid.add_column(justify="center", ratio=1)
    grid.add_column(justify="center", ratio=1)
    grid.add_column(justify="center", ratio=1)
    grid.add_column(justify="center", ratio=1)
    grid.add_row(
        Panel(f"[bold white]{int(params.warmup)}[/]", title="WARMUP", border_style="white"),
        Panel(f"[bold green]{report.fps:.4f}[/]", title="fps", border_style="green"),
        Panel(f"[bold blue]{latency}[/]", title="average latency", border_style="blue"),
        Panel(f"[bold yellow]{len(outcome.failures)}[/]", title="failed threads", border_style="yellow"),
    )
    console.print(grid)
    console.print(
        f"For each repeat: {report.total_threads} threads have been processed, total-stream = "
        f"{report.total_streams}, each thread processed {outcome.partition.cross_stream_num} streams"
    )
    console.print(f"fps per stream: {report.fps:.4f}, including {report.total_frames} frames")
    for failure in outcome.failures:
        console.print(f"[red]{failure}[/red]")


@app.command()
def run(
    host: str = typer.Argument(..., help="Pipeline service host"),
    port: int = typer.Argument(..., help="Pipeline service port"),
    primary_config: Path = typer.Argument(..., help="Pipeline config for the primary thread group"),
    secondary_config: Path = typer.Argument(..., help="Pipeline config for the remainder threads"),
    total_stream_num: int = typer.Argument(..., help="Total number of streams"),
    repeats: int = typer.Argument(..., help="Times the input media is repeated per request"),
    data_path: Path = typer.Argument(..., help="Dataset folder holding bgr/*.bin"),
    pipeline_repeats: int = typer.Argument(1, help="Sessions run back to back by each thread"),
    cross_stream_num: int = typer.Argument(1, help="Streams handled per primary thread"),
    warmup_flag: int = typer.Argument(1, min=0, max=1, help="Load the pipeline before the timed run (0 | 1)"),
):
    """Drive the pipeline service with concurrent streaming sessions and report fps/latency."""
    try:
        settings = load_settings()
    except ConfigError as e:
        _fail(str(e))
    configure_logging(settings.log_level)

    # sanity check
    try:
        partition = partition_streams(total_stream_num, cross_stream_num)
    except InvalidPartitionError as e:
        _fail(str(e))

    params = RunParameters(
        host=host,
        port=port,
        primary_config=str(primary_config),
        secondary_config=str(secondary_config),
        total_stream_num=total_stream_num,
        repeats=repeats,
        data_path=data_path,
        pipeline_repeats=pipeline_repeats,
        cross_stream_num=cross_stream_num,
        warmup=bool(warmup_flag),
    )

    try:
        primary = load_pipeline_config(primary_config, repeats)
        if partition.secondary_threads:
            secondary = load_pipeline_config(secondary_config, repeats)
        else:
            secondary = load_pipeline_config(secondary_config, repeats) if secondary_config.is_file() else ""
    except ConfigError as e:
        _fail(str(e))

    try:
        media, media_type = parse_inputs(data_path)
    except InputPathError as e:
        _fail(str(e))

    if params.warmup:
        console.print(f"Warmup workloads with {partition.total_threads} threads...")
    console.print(Panel(f"[bold blue]pipebench: {len(media)} {media_type} inputs -> {params.target}[/]", border_style="blue"))

    cpu_sampler, gpu_sampler = build_samplers(settings.cpu_process_name, settings.gpu_monitor)
    try:
        cpu_sampler.start()
        gpu_sampler.start()
    except SamplerInitError as e:
        _fail(f"Error: {e}")

    orchestrator = Orchestrator(
        params,
        settings,
        primary_config=primary,
        secondary_config=secondary,
        cpu_sampler=cpu_sampler,
        gpu_sampler=gpu_sampler,
    )
    try:
        outcome = asyncio.run(orchestrator.run(media))
    finally:
        gpu_sampler.stop()
        cpu_sampler.stop()

    print_report(outcome, params)
    if not outcome.ok:
        raise typer.Exit(code=EXIT_FAILURE)


def main() -> None:
    # usage errors exit 1, like every other fatal condition
    try:
        code = app(standalone_mode=False)
    except click.exceptions.UsageError as e:
        e.show()
        code = EXIT_FAILURE
    except click.exceptions.Abort:
        code = EXIT_FAILURE
    sys.exit(code or 0)


if __name__ == "__main__":
    main()

"""CLI application — Click-based commands for running and inspecting batches.

  hive run BATCH_FILE       execute a batch with the scripted runner
  hive validate BATCH_FILE  report every violation without running anything
  hive plan BATCH_FILE      show dependency tiers
  hive config               print the effective configuration
"""

from __future__ import annotations

import asyncio
import functools
import json as json_mod
from pathlib import Path
from typing import Any, Optional

import click
import structlog

from hive.cli.formatters import (
    format_duration,
    get_console,
    plan_table,
    report_table,
    state_indicator,
    violations_table,
)
from hive.config import HiveConfig, LoggingConfig
from hive.events import HiveEvent, create_event_bus
from hive.orchestration.errors import BatchRejection
from hive.orchestration.graph import DependencyGraph
from hive.orchestration.loader import BatchFileError, load_batch
from hive.orchestration.models import Batch, BatchStatus
from hive.orchestration.orchestrator import Orchestrator
from hive.orchestration.policy import CapabilityRegistry
from hive.orchestration.runners import ScriptedRunner
from hive.orchestration.validator import validate_batch

logger = structlog.get_logger(__name__)


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Log orchestration events")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool) -> None:
    """Hive - sub-agent orchestration engine."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    if verbose:
        from hive.main import configure_logging

        configure_logging(LoggingConfig(level="INFO"), force=True)


def _capabilities_option(func):
    return click.option(
        "--capabilities",
        "capabilities_file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="JSON file mapping capability -> operations (overrides HIVE_CAPABILITIES_FILE)",
    )(func)


def _load(batch_file: Path) -> Batch:
    try:
        return load_batch(batch_file)
    except BatchFileError as exc:
        raise click.ClickException(str(exc))


def _registry(config: HiveConfig, capabilities_file: Optional[Path]) -> CapabilityRegistry:
    path = capabilities_file or config.orchestration.capabilities_file
    if path is None:
        return CapabilityRegistry()
    try:
        return CapabilityRegistry.from_file(path)
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Cannot load capabilities from {path}: {exc}")


def _dry_run_operations(registry: CapabilityRegistry) -> dict[str, Any]:
    """A handler for every granted operation that just echoes the call."""

    def make(operation: str):
        async def handler(**kwargs: Any) -> dict[str, Any]:
            return {"operation": operation, "args": kwargs, "dry_run": True}

        return handler

    operations = {op for name in registry.names() for op in registry.operations_for(name)}
    return {op: make(op) for op in sorted(operations)}


def _log_event(event: HiveEvent) -> None:
    fields = event.model_dump(exclude={"event_type", "timestamp"})
    logger.info(event.event_type, **fields)


def _print_rejection(ctx: click.Context, exc: BatchRejection) -> None:
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps({
            "batch_id": exc.batch_id,
            "status": "rejected",
            "violations": [v.model_dump(mode="json") for v in exc.violations],
        }, indent=2))
    else:
        get_console(ctx.obj.get("no_color", False)).print(
            violations_table(exc.batch_id, exc.violations)
        )


@cli.command("run")
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_capabilities_option
@click.option("--max-concurrent", type=int, default=None, help="Worker slot ceiling")
@click.option("--timeout", type=float, default=None, help="Default per-task timeout (seconds)")
@click.pass_context
@async_cmd
async def run_cmd(
    ctx: click.Context,
    batch_file: Path,
    capabilities_file: Optional[Path],
    max_concurrent: Optional[int],
    timeout: Optional[float],
) -> None:
    """Execute a batch file with the scripted runner."""
    overrides: dict[str, Any] = {}
    if max_concurrent is not None:
        overrides["max_concurrent_tasks"] = max_concurrent
    if timeout is not None:
        overrides["default_timeout"] = timeout
    config = HiveConfig(**overrides)
    registry = _registry(config, capabilities_file)
    batch = _load(batch_file)

    event_bus = create_event_bus(config.orchestration.event_queue_size)
    event_bus.subscribe("*", _log_event)
    await event_bus.start()
    orchestrator = Orchestrator(
        config.orchestration,
        ScriptedRunner(),
        registry=registry,
        operations=_dry_run_operations(registry),
        event_bus=event_bus,
    )
    console = get_console(ctx.obj.get("no_color", False))
    json_output = ctx.obj.get("json", False)

    try:
        handle = await orchestrator.submit(batch)
    except BatchRejection as exc:
        await event_bus.stop()
        _print_rejection(ctx, exc)
        ctx.exit(1)

    try:
        async for result in orchestrator.stream(handle):
            if not json_output:
                line = state_indicator(result.state.value)
                line.append(f"  {result.task_id}  {format_duration(result.elapsed_seconds)}")
                console.print(line)
        report = await orchestrator.collect(handle)
    finally:
        await orchestrator.shutdown()
        await event_bus.stop()

    if json_output:
        click.echo(json_mod.dumps(report.model_dump(mode="json"), indent=2))
    else:
        console.print(report_table(report))
    if report.status != BatchStatus.SUCCEEDED:
        ctx.exit(1)


@cli.command("validate")
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_capabilities_option
@click.pass_context
def validate_cmd(ctx: click.Context, batch_file: Path, capabilities_file: Optional[Path]) -> None:
    """Check a batch file and list every violation."""
    config = HiveConfig()
    batch = _load(batch_file)
    try:
        descriptors = validate_batch(batch, _registry(config, capabilities_file))
    except BatchRejection as exc:
        _print_rejection(ctx, exc)
        ctx.exit(1)

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps({
            "batch_id": batch.batch_id,
            "status": "valid",
            "tasks": len(descriptors),
        }, indent=2))
    else:
        click.echo(f"{batch.batch_id}: {len(descriptors)} task(s) valid")


@cli.command("plan")
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def plan_cmd(ctx: click.Context, batch_file: Path) -> None:
    """Show the dependency tiers of a batch file."""
    batch = _load(batch_file)
    try:
        graph = DependencyGraph.build(batch.tasks, batch_id=batch.batch_id)
    except BatchRejection as exc:
        _print_rejection(ctx, exc)
        ctx.exit(1)

    levels = graph.levels()
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps({
            "batch_id": batch.batch_id,
            "levels": levels,
            "order": graph.topological_order(),
        }, indent=2))
    else:
        get_console(ctx.obj.get("no_color", False)).print(plan_table(batch.batch_id, levels))


@cli.command("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Print the effective configuration."""
    data = HiveConfig().to_dict()
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(data, indent=2))
        return
    for section, values in data.items():
        click.echo(f"[{section}]")
        for key, value in values.items():
            click.echo(f"  {key} = {value!r}")

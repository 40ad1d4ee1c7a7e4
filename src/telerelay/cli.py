# src/telerelay/cli.py
"""telerelay Command Line Interface.

Entry point for the telerelay CLI tool: run the job loop, drive single
ticks by hand, and inspect or adjust relay state in the store.
"""

from __future__ import annotations

import json
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from telerelay import __version__
from telerelay.contracts.enums import PulseLevel
from telerelay.contracts.errors import BackendError, OrchestratorError
from telerelay.core.config import RelaySettings, apply_override, load_settings, parse_override_value
from telerelay.runtime import RelayRuntime

__all__ = ["app"]

app = typer.Typer(
    name="telerelay",
    help="telerelay: durable OTLP/HTTP telemetry relay with failover.",
    no_args_is_help=True,
)

_CONFIG_OPTION_HELP = "Path to settings YAML file."

# Logging flags from the top-level callback, applied once settings are loaded
_cli_state: dict[str, bool] = {"verbose": False, "json_logs": False}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"telerelay version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Path to .env file (skips automatic search)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs."),
) -> None:
    """telerelay: durable OTLP/HTTP telemetry relay with failover."""
    _cli_state["verbose"] = verbose
    _cli_state["json_logs"] = json_logs
    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


def _load(config: Path | None) -> RelaySettings:
    """Load settings and configure logging, exiting with a readable message on error."""
    from telerelay.core.logging import configure_logging

    config_path = config.expanduser() if config is not None else None
    try:
        settings = load_settings(config_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {config}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {config}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    level = "DEBUG" if _cli_state["verbose"] else settings.logging.level
    configure_logging(
        json_output=_cli_state["json_logs"] or settings.logging.json_output,
        level=level,
        identity={"service": settings.service.name, "environment": settings.service.environment},
    )
    return settings


def _open_runtime(config: Path | None) -> RelayRuntime:
    settings = _load(config)
    try:
        return RelayRuntime.from_settings(settings)
    except BackendError as e:
        typer.echo(f"Backend error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def run(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    poll_seconds: float = typer.Option(1.0, "--poll", help="Seconds between job schedule checks.", min=0.05),
) -> None:
    """Run the failover monitor and local delivery jobs until interrupted."""
    runtime = _open_runtime(config)
    runner = runtime.job_runner()
    runner.start(poll_seconds=poll_seconds)
    typer.echo(f"telerelay running (store: {runtime.config.current().store.url}). Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        typer.echo("Stopping...")
    finally:
        runner.stop()
        runtime.close()


@app.command("worker-tick")
def worker_tick(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run one delivery worker cycle."""
    with _open_runtime(config) as runtime:
        result = runtime.worker.run_once()
    if result.skipped:
        typer.echo(f"Skipped: {result.skipped_reason}")
        return
    typer.echo(
        f"Batch size {result.batch_size}: drained {result.drained}, delivered {result.delivered}, "
        f"failed {result.failed}, lost claims {result.lost_claims}"
    )


@app.command("failover-tick")
def failover_tick(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run one failover assessment."""
    with _open_runtime(config) as runtime:
        try:
            result = runtime.orchestrator.tick()
        except OrchestratorError as e:
            typer.echo(f"Failover error: {e}", err=True)
            raise typer.Exit(1) from None
    if result.transitioned:
        typer.echo(f"Mode changed: {result.previous_mode.value} -> {result.mode.value} ({result.reason.value})")
    else:
        typer.echo(f"Mode unchanged: {result.mode.value} ({result.reason.value})")
    typer.echo(f"  Agent health: {result.health.value}")
    typer.echo(f"  Queue depth: {result.queue_depth}")


def _status(runtime: RelayRuntime) -> dict[str, Any]:
    stats = runtime.queue.stats()
    circuit = runtime.breaker.snapshot()
    health = runtime.monitor.assess()
    return {
        "mode": runtime.orchestrator.current_mode().value,
        "agent_health": health.health.value,
        "agent_missed_runs": health.missed_runs,
        "circuit": circuit.state.value,
        "circuit_error_rate": round(circuit.window.error_rate, 4),
        "pulse_level": runtime.pulse.current().value,
        "backend": runtime.config.current().failover.fallback_backend,
        "queue": {
            "pending": stats.pending,
            "processed": stats.processed,
            "exhausted": stats.exhausted,
            "leased": stats.leased,
        },
        "jobs": {job.name: job.enabled for job in runtime.scheduler.list_jobs()},
    }


@app.command()
def status(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show processing mode, circuit, pulse level, queue counts and jobs."""
    with _open_runtime(config) as runtime:
        report = _status(runtime)
    if json_output:
        typer.echo(json.dumps(report, indent=2))
        return
    typer.echo(f"Mode: {report['mode']} (agent {report['agent_health']}, missed runs {report['agent_missed_runs']})")
    typer.echo(f"Circuit: {report['circuit']} (error rate {report['circuit_error_rate']})")
    typer.echo(f"Pulse: {report['pulse_level']}")
    typer.echo(f"Backend: {report['backend']}")
    queue = report["queue"]
    typer.echo(
        f"Queue: {queue['pending']} pending, {queue['leased']} leased, "
        f"{queue['exhausted']} exhausted, {queue['processed']} processed"
    )
    for name, enabled in report["jobs"].items():
        typer.echo(f"  Job {name}: {'enabled' if enabled else 'disabled'}")


@app.command()
def heartbeat(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    planned: int = typer.Option(0, "--planned", min=0, help="Items the agent planned to process."),
    processed: int = typer.Option(0, "--processed", min=0, help="Items the agent processed."),
    interval: int | None = typer.Option(None, "--interval", min=1, help="Agent check interval in seconds."),
) -> None:
    """Record a heartbeat on behalf of the primary agent."""
    with _open_runtime(config) as runtime:
        runtime.orchestrator.record_agent_heartbeat(
            items_planned=planned,
            items_processed=processed,
            check_interval_seconds=interval,
        )
        agent = runtime.config.current().failover.agent_name
    typer.echo(f"Heartbeat recorded for {agent}")


@app.command()
def pulse(
    level: PulseLevel | None = typer.Argument(None, help="New pulse level; omit to show the current one."),
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show or set the pulse throttle level."""
    with _open_runtime(config) as runtime:
        if level is None:
            typer.echo(f"Pulse level: {runtime.pulse.current().value}")
            return
        previous = runtime.pulse.set_level(level)
    typer.echo(f"Pulse level: {previous.value} -> {level.value}")


@app.command("config-set")
def config_set(
    key: str = typer.Argument(..., help="Dotted settings key, e.g. failover.queue_threshold."),
    value: str | None = typer.Argument(None, help="New value (YAML scalar or collection)."),
    delete: bool = typer.Option(False, "--delete", help="Remove the override instead of setting it."),
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Store a hot-reloadable settings override (picked up on the next tick)."""
    with _open_runtime(config) as runtime:
        if delete:
            removed = runtime.config_entries.delete(key)
            typer.echo(f"Override {key} {'removed' if removed else 'was not set'}")
            return
        if value is None:
            typer.echo("Error: VALUE is required unless --delete is given", err=True)
            raise typer.Exit(1)

        candidate = runtime.config.current().model_dump(mode="python")
        try:
            RelaySettings.model_validate(apply_override(candidate, key, parse_override_value(value)))
        except KeyError:
            typer.echo(f"Error: unknown settings key: {key}", err=True)
            raise typer.Exit(1) from None
        except ValidationError as e:
            typer.echo(f"Error: invalid value for {key}:", err=True)
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                typer.echo(f"  - {loc}: {error['msg']}", err=True)
            raise typer.Exit(1) from None

        runtime.config_entries.set(key, value, now=runtime.clock.now())
    typer.echo(f"Override {key} = {value}")


@app.command()
def purge(
    config: Path | None = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    days: int | None = typer.Option(None, "--days", min=1, help="Retention in days (default: queue.retention_days)."),
) -> None:
    """Delete processed queue items, delivery attempts and diagnostics past retention."""
    with _open_runtime(config) as runtime:
        retention = timedelta(days=days if days is not None else runtime.config.current().queue.retention_days)
        cutoff = runtime.clock.now() - retention
        items = runtime.queue.purge_processed(retention)
        attempts = runtime.delivery_log.purge_before(cutoff)
        diagnostics = runtime.diagnostics.purge_before(cutoff)
    typer.echo(f"Purged {items} queue items, {attempts} delivery attempts, {diagnostics} diagnostics")


if __name__ == "__main__":
    app()

# src/kubestrap/cli/app.py
from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import List, Optional

import typer

from kubestrap.config.loader import load_config
from kubestrap.config.models import KubestrapConfig
from kubestrap.deploy.orchestrator import Orchestrator, RunOptions, RunReport, build_orchestrator
from kubestrap.deploy.phases import resolve_phase_selection
from kubestrap.errors import KubestrapError
from kubestrap.inventory.registry import Host, HostRegistry
from kubestrap.deploy.planner import PhasePlanner
from kubestrap.remote.ssh import ParamikoChannel
from kubestrap.state.tracker import OutcomeKind, StateTracker
from kubestrap.steps.catalog import load_catalog
from kubestrap.utils.readiness import port_open

from kubestrap.logging.log import init_logging
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver
from kubestrap.observers.events import new_ctx


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Kubestrap: bootstrap a kubeadm cluster on existing hosts")


def split_csv(value: Optional[str]) -> Optional[List[str]]:
    """``"a, b"`` -> ``["a", "b"]``; ``None``/empty -> ``None`` (everything)."""
    if not value:
        return None
    items = [i.strip() for i in value.split(",") if i.strip()]
    return items or None


def ssh_port_open(host: Host) -> bool:
    return port_open(host.address, host.connection.port, timeout=host.connection.connect_timeout)


def make_bus(cfg: KubestrapConfig, logger, run_id: str) -> EventBus:
    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".kubestrap/logs" / f"{run_id}.jsonl"),
    ]
    return EventBus(observers=observers, ctx=new_ctx(cluster=cfg.cluster.name, run_id=run_id))


def fail(exc: KubestrapError) -> typer.Exit:
    typer.secho(f"error: {exc}", fg=typer.colors.RED, err=True)
    return typer.Exit(code=exc.exit_code)


_COLORS = {
    OutcomeKind.SUCCESS: typer.colors.GREEN,
    OutcomeKind.SKIPPED_ALREADY_SATISFIED: typer.colors.GREEN,
    OutcomeKind.FAILED: typer.colors.RED,
    OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY: typer.colors.YELLOW,
    OutcomeKind.CANCELLED: typer.colors.YELLOW,
}


def print_report(report: RunReport) -> None:
    typer.echo("")
    typer.secho("Run report", bold=True)
    for e in report.entries:
        line = f"  {e.phase:<20} {e.host:<20} {e.step:<28} {e.status}"
        if e.outcome.reason and not e.outcome.ok:
            line += f"  ({e.outcome.reason})"
        typer.secho(line, fg=_COLORS.get(e.outcome.kind))
    typer.echo("")
    typer.echo(f"  {report.summary()}")
    if report.fatal_error:
        typer.secho(f"  aborted: {report.fatal_error}", fg=typer.colors.RED)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def run(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    phases: Optional[str] = typer.Option(
        None,
        "--phases",
        help="Phases to run: dependencies,control-plane-init,network,worker-join or all",
    ),
    host: Optional[List[str]] = typer.Option(None, "--host", help="Limit the run to this host (repeatable)"),
    force: bool = typer.Option(False, "--force", help="Re-apply steps even if already satisfied"),
    retries: Optional[int] = typer.Option(None, "--retries", min=0),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-step timeout in seconds"),
    max_parallel: Optional[int] = typer.Option(None, "--max-parallel", min=1),
    auto_reset: bool = typer.Option(False, "--auto-reset", help="Reset workers with stale join state before joining"),
    probe: bool = typer.Option(False, "--probe", help="Check SSH reachability of every host first"),
    debug: bool = typer.Option(False, "--debug"),
):
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho("Kubestrap Run Started", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    channel = ParamikoChannel()
    try:
        cfg = load_config(config)
        bus = make_bus(cfg, logger, run_id)
        orch = build_orchestrator(cfg, channel, bus=bus, auto_reset=auto_reset, prober=ssh_port_open)

        options = RunOptions(
            force=force,
            retries=cfg.run.retries if retries is None else retries,
            backoff_seconds=cfg.run.backoff_seconds,
            step_timeout=timeout,
            max_parallel=max_parallel or cfg.run.max_parallel,
            probe_hosts=probe,
        )
        logger.debug("run options: %s", options)

        def _on_sigint(signum, frame):
            typer.secho("\ninterrupt received, finishing in-flight steps...", fg=typer.colors.YELLOW, err=True)
            orch.cancel()

        previous = signal.signal(signal.SIGINT, _on_sigint)
        try:
            report = orch.run(split_csv(phases), host or None, options)
        finally:
            signal.signal(signal.SIGINT, previous)
    except KubestrapError as e:
        logger.error("run aborted: %s", e)
        raise fail(e)
    finally:
        channel.close()

    print_report(report)
    raise typer.Exit(code=report.exit_code)


@app.command()
def plan(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    phases: Optional[str] = typer.Option(None, "--phases"),
    host: Optional[List[str]] = typer.Option(None, "--host"),
):
    """Show the (host, step) pairs a run would visit, with their recorded status."""
    try:
        cfg = load_config(config)
        registry = HostRegistry.load(cfg.inventory, default_connection=cfg.connection)
        planner = PhasePlanner(load_catalog(cfg.steps_file), registry, cfg.variables())
        tracker = StateTracker(cfg.state_file)
        targets = registry.select(host or None)
        selected = resolve_phase_selection(split_csv(phases))
        for phase in selected:
            typer.secho(f"[{phase.value}]", bold=True)
            pairs = planner.resolve(phase, targets)
            if not pairs:
                typer.echo("  (nothing to do)")
            for p in pairs:
                status = tracker.get(p.host.id, p.step.id).status.value
                typer.echo(f"  {p.host.id:<20} {p.step.id:<28} {p.step.kind:<20} {status}")
    except KubestrapError as e:
        raise fail(e)


@app.command()
def status(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    as_json: bool = typer.Option(False, "--json", help="Dump raw state as JSON"),
):
    """Print the persisted execution records."""
    try:
        cfg = load_config(config)
        snapshot = StateTracker(cfg.state_file).snapshot()
    except KubestrapError as e:
        raise fail(e)

    if as_json:
        typer.echo(json.dumps(snapshot, indent=2, sort_keys=True))
        return
    if not snapshot:
        typer.echo(f"No state recorded yet in {cfg.state_file}")
        return
    for host_id in sorted(snapshot):
        typer.secho(host_id, bold=True)
        for step_id, rec in snapshot[host_id].items():
            line = f"  {step_id:<28} {rec['status']:<8} attempts={rec.get('attempts', 0)}"
            if rec.get("error"):
                line += f"  ({rec['error']})"
            typer.echo(line)


@app.command()
def reset(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    host: Optional[List[str]] = typer.Option(None, "--host", help="Worker to reset (repeatable, default all workers)"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Wipe join state on workers so the next run joins them again."""
    logger, run_id, _ = init_logging(verbose=debug)
    channel = ParamikoChannel()
    try:
        cfg = load_config(config)
        orch: Orchestrator = build_orchestrator(cfg, channel, bus=make_bus(cfg, logger, run_id))
        results = orch.reset_workers(host or None)
    except KubestrapError as e:
        raise fail(e)
    finally:
        channel.close()

    for host_id, ok in results.items():
        typer.secho(f"  {host_id:<20} {'reset' if ok else 'reset failed'}",
                    fg=typer.colors.GREEN if ok else typer.colors.RED)
    if not all(results.values()):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()

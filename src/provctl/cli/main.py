"""provctl CLI: command-line interface for provctl.

Commands:
    plan                Show the changes needed to reach the desired state
    apply               Apply the desired state
    create              Add or update resources from a file
    delete              Delete clusters by id
    list                Show managed clusters and node pools
    reconcile           Run the periodic reconciliation loop
    drift detect        Compare desired state against live provider state
    drift remediate     Detect and remediate drift
    drift watch         Detect drift on an interval
    snapshot create     Snapshot the persisted state
    snapshot list       List snapshots, newest first
    snapshot show       Show one snapshot
    snapshot restore    Restore the persisted state from a snapshot
    snapshot prune      Delete snapshots outside a retention policy
    snapshot verify     Verify a snapshot's checksum
    snapshot delete     Delete one snapshot
    events show         Show recent events
    events verify       Verify event log chain integrity
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, NoReturn

import click

from provctl import __version__
from provctl.config import ProvctlConfig, load_config
from provctl.drift.detector import format_remediation, format_report
from provctl.errors import ApplyError, ProvctlError
from provctl.events.log import EventLog, verify_log
from provctl.loader import load_desired_state
from provctl.models import (
    ApplyResult,
    EventType,
    Phase,
    ResourceKind,
    RetentionPolicy,
    Severity,
    State,
)
from provctl.planner.planner import format_plan
from provctl.sdk.client import Provctl
from provctl.snapshot.manager import format_restore_result

# --- Helpers ---


def _fail(message: Any) -> NoReturn:
    click.echo(click.style("Error:", fg="red", bold=True) + f" {message}", err=True)
    sys.exit(1)


def _cfg(ctx: click.Context) -> ProvctlConfig:
    return ctx.obj["config"]


def _open(ctx: click.Context) -> Provctl:
    """Build the SDK facade from the loaded config."""
    try:
        ctl = Provctl.from_config(_cfg(ctx))
    except (ProvctlError, ImportError) as e:
        _fail(e)
    ctx.call_on_close(ctl.close)
    return ctl


def _desired_path(ctx: click.Context, file: str | None) -> str:
    path = file or _cfg(ctx).desired
    if path is None:
        _fail("No desired state file. Pass --file or set 'desired' in provctl.yaml")
    return path


def _desired(ctx: click.Context, file: str | None) -> State:
    path = _desired_path(ctx, file)
    try:
        return load_desired_state(path)
    except ProvctlError as e:
        _fail(e)


_PHASE_COLORS = {
    Phase.RUNNING: "green",
    Phase.PENDING: "white",
    Phase.PROVISIONING: "cyan",
    Phase.UPDATING: "cyan",
    Phase.DELETING: "yellow",
    Phase.FAILED: "red",
}

_EVENT_COLORS = {
    EventType.CREATED: "green",
    EventType.UPDATED: "cyan",
    EventType.DELETED: "yellow",
    EventType.FAILED: "red",
}

_SEVERITY_COLORS = {
    Severity.CRITICAL: "magenta",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "green",
}


def _echo_apply(result: ApplyResult, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return
    if not result.applied:
        click.echo("No changes. Infrastructure matches the desired state.")
        return
    for event in result.events:
        click.echo(
            "  "
            + click.style(f"{event.type.value:<8}", fg=_EVENT_COLORS[event.type])
            + f" {event.resource.kind.value}/{event.resource.id}"
        )
    click.echo(
        click.style("\nApply complete!", fg="green", bold=True)
        + f" {result.applied} action(s) applied."
    )


def _run_apply(fn: Any, *args: Any) -> ApplyResult:
    try:
        return fn(*args)
    except ApplyError as e:
        _fail(f"Apply failed, no state was committed. {e}")
    except ProvctlError as e:
        _fail(e)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None,
    help="Path to provctl.yaml (default: auto-discover)",
)
@click.option(
    "--log-level", default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: config log_level or WARNING)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """provctl: declarative provisioning and reconciliation for clusters."""
    try:
        cfg = load_config(config_path)
    except ProvctlError as e:
        _fail(e)
    logging.basicConfig(
        level=(log_level or cfg.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# --- plan / apply / create / delete / list ---


@cli.command()
@click.option("--file", "-f", default=None, help="Desired state file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def plan(ctx: click.Context, file: str | None, json_output: bool) -> None:
    """Show the changes needed to reach the desired state."""
    desired = _desired(ctx, file)
    ctl = _open(ctx)
    try:
        result = ctl.plan(desired)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(format_plan(result))


@cli.command()
@click.option("--file", "-f", default=None, help="Desired state file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def apply(ctx: click.Context, file: str | None, json_output: bool) -> None:
    """Apply the desired state."""
    desired = _desired(ctx, file)
    ctl = _open(ctx)
    _echo_apply(_run_apply(ctl.apply, desired), json_output)


@cli.command()
@click.option("--file", "-f", required=True, help="File with the resources to create")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def create(ctx: click.Context, file: str, json_output: bool) -> None:
    """Add or update resources without touching anything else."""
    resources = _desired(ctx, file)
    ctl = _open(ctx)
    _echo_apply(_run_apply(ctl.create, resources), json_output)


@cli.command()
@click.argument("cluster_ids", nargs=-1, required=True)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def delete(ctx: click.Context, cluster_ids: tuple[str, ...], json_output: bool) -> None:
    """Delete clusters (and their node pools) by id."""
    ctl = _open(ctx)
    _echo_apply(_run_apply(ctl.delete, list(cluster_ids)), json_output)


@cli.command("list")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def list_resources(ctx: click.Context, json_output: bool) -> None:
    """Show managed clusters and node pools."""
    ctl = _open(ctx)
    try:
        state = ctl.state.get_state()
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        return
    if state.is_empty():
        click.echo("No managed resources.")
        return

    for cid in sorted(state.clusters):
        cluster = state.clusters[cid]
        phase = cluster.status.phase
        click.echo(
            f"  {cid:<30} "
            + click.style(f"[{phase.value}]", fg=_PHASE_COLORS[phase])
            + f"  {cluster.spec.provider}  v{cluster.spec.control_plane.version or '?'}"
        )
        for pool in state.pools_for(cid):
            click.echo(
                f"    {pool.spec.name:<28} "
                + click.style(f"[{pool.status.phase.value}]", fg=_PHASE_COLORS[pool.status.phase])
                + f"  size={pool.spec.desired_size} ({pool.spec.min_size}-{pool.spec.max_size})"
            )
    click.echo(
        f"\n{len(state.clusters)} cluster(s), {len(state.node_pools)} node pool(s)."
    )


# --- reconcile command ---


@cli.command()
@click.option("--file", "-f", default=None, help="Desired state file, re-read every cycle")
@click.option("--interval", type=float, default=None, help="Seconds between cycles")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--drift/--no-drift", "detect_drift", default=False,
              help="Run a drift pass after each cycle")
@click.option("--auto-remediate", is_flag=True, help="Remediate drift found by the drift pass")
@click.pass_context
def reconcile(
    ctx: click.Context,
    file: str | None,
    interval: float | None,
    once: bool,
    detect_drift: bool,
    auto_remediate: bool,
) -> None:
    """Run the periodic reconciliation loop until interrupted."""
    cfg = _cfg(ctx)
    path = _desired_path(ctx, file)
    _desired(ctx, file)
    ctl = _open(ctx)
    reconciler = ctl.reconciler(
        lambda: load_desired_state(path),
        interval=interval or cfg.reconcile_interval,
        auto_remediate=auto_remediate or cfg.drift_auto_remediate,
        detect_drift=detect_drift,
    )

    if once:
        _echo_apply(_run_apply(reconciler.reconcile_once), False)
        return

    stop = threading.Event()
    click.echo(f"Reconciling every {interval or cfg.reconcile_interval:.0f}s (Ctrl-C to stop)")
    try:
        reconciler.run(stop)
    except KeyboardInterrupt:
        stop.set()
    click.echo(f"Stopped after {reconciler.cycles} cycle(s), {reconciler.failures} failure(s).")


# --- drift commands ---


@cli.group()
def drift() -> None:
    """Drift detection commands."""


@drift.command("detect")
@click.option("--file", "-f", default=None, help="Desired state file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.option("--exit-code", is_flag=True, help="Exit with status 2 when drift is found")
@click.pass_context
def drift_detect(ctx: click.Context, file: str | None, json_output: bool, exit_code: bool) -> None:
    """Compare desired state against live provider state."""
    desired = _desired(ctx, file)
    ctl = _open(ctx)
    try:
        report = ctl.detect_drift(desired)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    else:
        _echo_report(report)

    if exit_code and report.has_drift:
        sys.exit(2)


def _echo_report(report: Any) -> None:
    if not report.has_drift:
        click.echo(click.style("NO DRIFT", fg="green", bold=True))
    else:
        worst = report.max_severity
        click.echo(click.style("DRIFT", fg=_SEVERITY_COLORS[worst], bold=True))
    click.echo(format_report(report))


@drift.command("remediate")
@click.option("--file", "-f", default=None, help="Desired state file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def drift_remediate(ctx: click.Context, file: str | None, json_output: bool) -> None:
    """Detect drift, then remediate every remediatable item."""
    desired = _desired(ctx, file)
    ctl = _open(ctx)
    try:
        report = ctl.detect_drift(desired)
        result = ctl.remediate(report)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(format_report(report))
        click.echo("")
        click.echo(format_remediation(result))

    if not result.success:
        sys.exit(1)


@drift.command("watch")
@click.option("--file", "-f", default=None, help="Desired state file, re-read every cycle")
@click.option("--interval", type=float, default=None, help="Seconds between checks")
@click.option("--auto-remediate", is_flag=True, help="Remediate drift as it is found")
@click.option("--cycles", type=int, default=None, help="Stop after this many checks")
@click.pass_context
def drift_watch(
    ctx: click.Context,
    file: str | None,
    interval: float | None,
    auto_remediate: bool,
    cycles: int | None,
) -> None:
    """Detect drift on an interval until interrupted."""
    cfg = _cfg(ctx)
    path = _desired_path(ctx, file)
    _desired(ctx, file)
    ctl = _open(ctx)
    stop = threading.Event()
    seen = 0

    def on_report(report: Any) -> None:
        nonlocal seen
        seen += 1
        _echo_report(report)
        if cycles is not None and seen >= cycles:
            stop.set()

    try:
        ctl.detector.watch(
            lambda: load_desired_state(path),
            interval if interval is not None else cfg.drift_interval,
            stop,
            on_report=on_report,
            auto_remediate=auto_remediate or cfg.drift_auto_remediate,
        )
    except KeyboardInterrupt:
        stop.set()


# --- snapshot commands ---


@cli.group()
def snapshot() -> None:
    """Snapshot commands."""


@snapshot.command("create")
@click.option("--description", "-d", default="", help="Snapshot description")
@click.option("--tag", "tags", multiple=True, help="Tag as key=value (repeatable)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshot_create(
    ctx: click.Context,
    description: str,
    tags: tuple[str, ...],
    json_output: bool,
) -> None:
    """Snapshot the persisted state."""
    parsed: dict[str, str] = {}
    for tag in tags:
        key, sep, value = tag.partition("=")
        if not sep or not key:
            _fail(f"Invalid tag {tag!r}, expected key=value")
        parsed[key] = value

    ctl = _open(ctx)
    try:
        snap = ctl.snapshots.create_snapshot(description, tags=parsed)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(snap.model_dump(mode="json"), indent=2))
    else:
        click.echo(click.style("Created:", fg="green", bold=True) + f" {snap.id}")
        click.echo(
            f"  {snap.metadata.cluster_count} cluster(s), "
            f"{snap.metadata.node_pool_count} node pool(s)"
        )
        click.echo(f"  checksum: {snap.checksum}")


@snapshot.command("list")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshot_list(ctx: click.Context, json_output: bool) -> None:
    """List snapshots, newest first."""
    ctl = _open(ctx)
    infos = ctl.snapshots.list_snapshots()

    if json_output:
        click.echo(json.dumps([i.model_dump(mode="json") for i in infos], indent=2))
        return
    if not infos:
        click.echo("No snapshots found.")
        return
    for info in infos:
        badge = click.style("OK", fg="green") if info.intact else click.style("CORRUPT", fg="red")
        click.echo(
            f"  {info.id:<36} {info.created_at.isoformat()[:19]}  "
            f"{info.trigger_reason.value:<16} {badge}  {info.description}"
        )
    click.echo(f"\n{len(infos)} snapshot(s).")


@snapshot.command("show")
@click.argument("snapshot_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshot_show(ctx: click.Context, snapshot_id: str, json_output: bool) -> None:
    """Show one snapshot."""
    ctl = _open(ctx)
    try:
        snap = ctl.snapshots.load_snapshot(snapshot_id)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(snap.model_dump(mode="json"), indent=2))
        return
    click.echo(f"  id:          {snap.id}")
    click.echo(f"  created:     {snap.created_at.isoformat()}")
    click.echo(f"  description: {snap.description}")
    click.echo(f"  trigger:     {snap.metadata.trigger_reason.value}")
    click.echo(f"  created by:  {snap.metadata.created_by}")
    click.echo(f"  clusters:    {', '.join(sorted(snap.state.clusters)) or '-'}")
    click.echo(f"  node pools:  {', '.join(sorted(snap.state.node_pools)) or '-'}")
    click.echo(f"  checksum:    {snap.checksum}")


@snapshot.command("restore")
@click.argument("snapshot_id")
@click.option("--dry-run", is_flag=True, help="Show the changes without restoring")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshot_restore(
    ctx: click.Context,
    snapshot_id: str,
    dry_run: bool,
    json_output: bool,
) -> None:
    """Restore the persisted state from a snapshot."""
    ctl = _open(ctx)
    try:
        result = ctl.snapshots.restore_snapshot(snapshot_id, dry_run=dry_run)
    except ProvctlError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(format_restore_result(result))


@snapshot.command("prune")
@click.option("--max-age", type=float, default=None, help="Delete snapshots older than N seconds")
@click.option("--max-count", type=int, default=None, help="Keep at most N snapshots")
@click.pass_context
def snapshot_prune(ctx: click.Context, max_age: float | None, max_count: int | None) -> None:
    """Delete snapshots outside a retention policy (default: config retention)."""
    ctl = _open(ctx)
    policy = None
    if max_age is not None or max_count is not None:
        policy = RetentionPolicy(
            max_age=timedelta(seconds=max_age) if max_age is not None else None,
            max_count=max_count,
        )
    try:
        deleted = ctl.prune_snapshots(policy)
    except ProvctlError as e:
        _fail(e)

    for snapshot_id in deleted:
        click.echo(click.style("  Deleted:", fg="yellow") + f" {snapshot_id}")
    click.echo(f"Pruned {len(deleted)} snapshot(s).")


@snapshot.command("verify")
@click.argument("snapshot_id")
@click.pass_context
def snapshot_verify(ctx: click.Context, snapshot_id: str) -> None:
    """Verify a snapshot's checksum."""
    ctl = _open(ctx)
    try:
        intact = ctl.snapshots.verify_snapshot(snapshot_id)
    except ProvctlError as e:
        _fail(e)

    if intact:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f" checksum matches ({snapshot_id})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f" checksum mismatch ({snapshot_id})")
        sys.exit(1)


@snapshot.command("delete")
@click.argument("snapshot_id")
@click.pass_context
def snapshot_delete(ctx: click.Context, snapshot_id: str) -> None:
    """Delete one snapshot."""
    ctl = _open(ctx)
    try:
        ctl.snapshots.delete_snapshot(snapshot_id)
    except ProvctlError as e:
        _fail(e)
    click.echo(f"Deleted snapshot {snapshot_id}")


# --- events commands ---


@cli.group()
def events() -> None:
    """Event log commands."""


def _event_log_path(ctx: click.Context, log_file: str | None) -> Path:
    path = Path(log_file or _cfg(ctx).event_log)
    if not path.exists():
        _fail(f"Event log not found: {path}")
    return path


@events.command("show")
@click.argument("log_file", required=False)
@click.option("--resource", default=None, help="Filter by resource, as Kind/id")
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def events_show(
    ctx: click.Context,
    log_file: str | None,
    resource: str | None,
    count: int,
    json_output: bool,
) -> None:
    """Show recent events."""
    log = EventLog(_event_log_path(ctx, log_file))
    try:
        entries = log.read_events()
    except ProvctlError as e:
        _fail(e)

    if resource is not None:
        kind, sep, rid = resource.partition("/")
        if not sep or kind not in {k.value for k in ResourceKind}:
            _fail(f"Invalid --resource {resource!r}, expected Cluster/<id> or NodePool/<id>")
        entries = [e for e in entries if e.resource.key == (kind, rid)]

    entries = entries[-count:] if count > 0 else []

    if json_output:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        click.echo("No events found.")
        return
    for event in entries:
        click.echo(
            f"  {event.timestamp.isoformat()[:19]}  "
            + click.style(f"{event.type.value:<8}", fg=_EVENT_COLORS[event.type])
            + f" {event.resource.kind.value}/{event.resource.id:<30} actor={event.actor}"
        )
    click.echo(f"\n{len(entries)} event(s) shown.")


@events.command("verify")
@click.argument("log_file", required=False)
@click.pass_context
def events_verify(ctx: click.Context, log_file: str | None) -> None:
    """Verify event log chain integrity."""
    path = _event_log_path(ctx, log_file)
    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f" event log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f" {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)

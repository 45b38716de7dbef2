"""AssemblyQC CLI.

Commands:
- init: Initialize database schema
- calibration: add/deactivate points, show status, convert coordinates
- element: create elements, remap GUIDs, show history
- review: start/complete/approve/reject/return/unlock one element or group
- bulk: apply one review action to many targets
- queue: replay or inspect the offline upload queue
- stats: lifecycle statistics for a project
- web serve: run the HTTP API
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from assemblyqc.bulk.engine import BulkParams, apply_bulk
from assemblyqc.calibration.store import CalibrationStore
from assemblyqc.config import get_config
from assemblyqc.core.errors import AssemblyQCError
from assemblyqc.core.logging import bind_actor, configure_logging
from assemblyqc.db.connection import close_db, get_engine, get_session, init_db
from assemblyqc.db.models import Base
from assemblyqc.lifecycle.history import get_history
from assemblyqc.lifecycle.identity import create_element, remap_guid
from assemblyqc.models import (
    Actor,
    BulkActionType,
    CoordinateMode,
    ElementDescriptors,
    EntityType,
    GpsCoord,
    InspectionStatus,
    ModelCoord,
    ModelUnits,
    NewCalibrationPoint,
    UploadStatus,
)
from assemblyqc.reporting.lifecycle_metrics import compute_lifecycle_stats
from assemblyqc.sync.offline_queue import OfflineQueue
from assemblyqc.workflow.rules import Transition
from assemblyqc.workflow.service import InspectionWorkflow

app = typer.Typer(
    name="assemblyqc",
    help="AssemblyQC - assembly inspection, calibration and review",
    no_args_is_help=True,
)
calibration_cli = typer.Typer(help="GPS calibration", no_args_is_help=True)
app.add_typer(calibration_cli, name="calibration")
element_cli = typer.Typer(help="Element identity and history", no_args_is_help=True)
app.add_typer(element_cli, name="element")
review_cli = typer.Typer(help="Inspection workflow", no_args_is_help=True)
app.add_typer(review_cli, name="review")
queue_cli = typer.Typer(help="Offline upload queue", no_args_is_help=True)
app.add_typer(queue_cli, name="queue")
web_cli = typer.Typer(help="Web API", no_args_is_help=True)
app.add_typer(web_cli, name="web")

console = Console()

ProjectOption = typer.Option("default", "--project", "-p", help="Project ID")
ActorOption = typer.Option(..., "--actor", envvar="ASSEMBLYQC_ACTOR", help="Acting user email")
RoleOption = typer.Option("inspector", "--role", envvar="ASSEMBLYQC_ROLE", help="Acting user role")


def _actor(email: str, role: str, name: str | None = None) -> Actor:
    return Actor(email=email, role=role, name=name)


def _run(func: Callable[[], Awaitable[None]]) -> None:
    """Run an async command body, printing domain errors instead of tracebacks."""

    async def _wrapped():
        try:
            await func()
        finally:
            await close_db()

    configure_logging()
    try:
        asyncio.run(_wrapped())
    except AssemblyQCError as exc:
        console.print(f"[bold red]✗[/bold red] {exc.message} [dim]({exc.code})[/dim]")
        raise typer.Exit(code=1)


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        if drop:
            console.print("[yellow]Dropping existing tables...[/yellow]")
            async with get_engine().begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        console.print("[green]Creating tables...[/green]")
        await init_db()

    _run(_init)
    console.print("[bold green]✓[/bold green] Database initialized")


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


@calibration_cli.command("configure")
def calibration_configure(
    mode: CoordinateMode = typer.Option(CoordinateMode.LOCAL, "--mode"),
    units: ModelUnits = typer.Option(ModelUnits.MILLIMETERS, "--units"),
    crs: str | None = typer.Option(None, "--crs", help="Named CRS, e.g. EPSG:3301"),
    planar_crs: str | None = typer.Option(None, "--planar-crs", help="Planar frame for local fits"),
    project_id: str = ProjectOption,
):
    """Select the coordinate pathway for a project."""

    async def _configure():
        async with get_session() as session:
            settings = await CalibrationStore(session).configure(
                project_id, mode, units, coordinate_system=crs, planar_crs=planar_crs
            )
            console.print(
                f"[bold green]✓[/bold green] {project_id}: mode={settings.mode}, "
                f"units={settings.model_units}, crs={settings.coordinate_system}"
            )

    _run(_configure)


@calibration_cli.command("add-point")
def calibration_add_point(
    model_x: float = typer.Option(..., "--x", help="Model X (native units)"),
    model_y: float = typer.Option(..., "--y", help="Model Y (native units)"),
    lat: float = typer.Option(..., "--lat"),
    lon: float = typer.Option(..., "--lon"),
    accuracy: float | None = typer.Option(None, "--accuracy", help="GPS accuracy in meters"),
    name: str | None = typer.Option(None, "--name"),
    reference_guid: str | None = typer.Option(None, "--ref-guid"),
    project_id: str = ProjectOption,
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Record a surveyed calibration point."""
    user = _actor(actor, role)
    bind_actor(user.email, project_id)

    async def _add():
        async with get_session() as session:
            point = await CalibrationStore(session).add_point(
                project_id,
                NewCalibrationPoint(
                    model=ModelCoord(x=model_x, y=model_y),
                    gps=GpsCoord(lat=lat, lon=lon, accuracy_m=accuracy),
                    name=name,
                    reference_guid=reference_guid,
                ),
                user,
            )
            console.print(f"[bold green]✓[/bold green] Point {point.id} added")
            if point.accuracy_warning:
                console.print(f"[yellow]⚠[/yellow] GPS accuracy {accuracy} m is above the warning threshold")

    _run(_add)


@calibration_cli.command("deactivate")
def calibration_deactivate(
    point_id: UUID = typer.Argument(..., help="Calibration point ID"),
    project_id: str = ProjectOption,
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Soft-disable a calibration point."""
    user = _actor(actor, role)

    async def _deactivate():
        async with get_session() as session:
            await CalibrationStore(session).deactivate_point(project_id, point_id, user)
            console.print(f"[bold green]✓[/bold green] Point {point_id} inactive")

    _run(_deactivate)


@calibration_cli.command("status")
def calibration_status(project_id: str = ProjectOption):
    """Show calibration quality and per-point residuals."""

    async def _status():
        async with get_session() as session:
            status = await CalibrationStore(session).calibration_status(project_id)

        state = "[green]calibrated[/green]" if status.is_calibrated else "[yellow]not calibrated[/yellow]"
        console.print(
            f"[bold]{project_id}[/bold] ({status.mode.value}): {state}, "
            f"{status.active_point_count} active point(s)"
        )
        if status.message:
            console.print(f"  {status.message}", style="dim")
        if status.transform and status.accuracy:
            t = status.transform
            console.print(
                f"  {t.type.value}: rotation {t.rotation_deg:.4f}°, scale {t.scale:.6f}, "
                f"RMSE {status.accuracy.rmse_m:.3f} m ({status.accuracy.quality.value})"
            )

        if status.residuals:
            table = Table(title="Calibration Points")
            table.add_column("Point", style="cyan")
            table.add_column("Name")
            table.add_column("Residual (m)", justify="right")
            table.add_column("Flags", style="yellow")
            for r in status.residuals:
                flags = []
                if r.is_outlier:
                    flags.append("outlier")
                if r.accuracy_warning:
                    flags.append("low GPS accuracy")
                table.add_row(str(r.point_id)[:8], r.name or "-", f"{r.residual_m:.3f}", ", ".join(flags))
            console.print(table)

    _run(_status)


@calibration_cli.command("convert")
def calibration_convert(
    x: float | None = typer.Option(None, "--x"),
    y: float | None = typer.Option(None, "--y"),
    lat: float | None = typer.Option(None, "--lat"),
    lon: float | None = typer.Option(None, "--lon"),
    project_id: str = ProjectOption,
):
    """Convert a model coordinate to GPS, or GPS to model with --lat/--lon."""
    if (x is None or y is None) and (lat is None or lon is None):
        console.print("[red]Give either --x/--y or --lat/--lon[/red]")
        raise typer.Exit(code=2)

    async def _convert():
        async with get_session() as session:
            store = CalibrationStore(session)
            if x is not None and y is not None:
                gps = await store.convert_model_to_gps(project_id, ModelCoord(x=x, y=y))
                console.print(f"({x}, {y}) -> lat {gps.lat:.8f}, lon {gps.lon:.8f}")
            else:
                model = await store.convert_gps_to_model(project_id, GpsCoord(lat=lat, lon=lon))
                console.print(f"lat {lat}, lon {lon} -> ({model.x:.3f}, {model.y:.3f})")

    _run(_convert)


# ---------------------------------------------------------------------------
# Elements
# ---------------------------------------------------------------------------


@element_cli.command("create")
def element_create(
    guid: str = typer.Argument(..., help="Model GUID"),
    assembly_mark: str | None = typer.Option(None, "--mark"),
    product_name: str | None = typer.Option(None, "--product"),
    object_type: str | None = typer.Option(None, "--type"),
    project_id: str = ProjectOption,
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Register an element under its model GUID."""
    user = _actor(actor, role)

    async def _create():
        async with get_session() as session:
            element = await create_element(
                session,
                project_id,
                guid,
                ElementDescriptors(
                    assembly_mark=assembly_mark, product_name=product_name, object_type=object_type
                ),
                user,
            )
            console.print(f"[bold green]✓[/bold green] Element {element.id} ({guid})")

    _run(_create)


@element_cli.command("remap")
def element_remap(
    old_guid: str = typer.Argument(...),
    new_guid: str = typer.Argument(...),
    project_id: str = ProjectOption,
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Move an element to a new model GUID, updating every reference."""
    user = _actor(actor, role)
    bind_actor(user.email, project_id)

    async def _remap():
        async with get_session() as session:
            element_id = await remap_guid(session, project_id, old_guid, new_guid, user)
            console.print(f"[bold green]✓[/bold green] {old_guid} -> {new_guid} (element {element_id})")

    _run(_remap)


@element_cli.command("history")
def element_history(
    element_id: UUID = typer.Argument(...),
    limit: int = typer.Option(50, "--limit"),
):
    """Show an element's audit trail, newest first."""

    async def _history():
        async with get_session() as session:
            history = await get_history(session, element_id)
            table = Table(title=f"History {element_id}")
            table.add_column("#", justify="right", style="dim")
            table.add_column("When", style="cyan")
            table.add_column("Action", style="green")
            table.add_column("By")
            table.add_column("Changes")
            shown = 0
            async for entry in history:
                changes = ", ".join(
                    f"{k}: {(entry.old_values or {}).get(k)} -> {v}"
                    for k, v in (entry.new_values or {}).items()
                    if entry.action.value != "created"
                )
                bulk = " [dim](bulk)[/dim]" if entry.is_bulk else ""
                table.add_row(
                    str(entry.id),
                    entry.at.strftime("%Y-%m-%d %H:%M"),
                    entry.action.value + bulk,
                    entry.actor,
                    changes[:80],
                )
                shown += 1
                if shown >= limit:
                    break
            console.print(table)

    _run(_history)


# ---------------------------------------------------------------------------
# Review workflow
# ---------------------------------------------------------------------------


def _review(transition: Transition, target_id: UUID, group: bool, comment: str | None, actor: Actor):
    target_type = EntityType.GROUP if group else EntityType.ELEMENT

    async def _apply():
        async with get_session() as session:
            target = await InspectionWorkflow(session).transition(
                target_type, target_id, transition, actor, comment=comment
            )
            console.print(
                f"[bold green]✓[/bold green] {target_type.value} {target_id}: {target.inspection_status}"
            )

    _run(_apply)


@review_cli.command("start")
def review_start(
    target_id: UUID = typer.Argument(...),
    group: bool = typer.Option(False, "--group", help="Target is a checkpoint group"),
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Start inspecting an element or group."""
    _review(Transition.START, target_id, group, None, _actor(actor, role))


@review_cli.command("complete")
def review_complete(
    target_id: UUID = typer.Argument(...),
    group: bool = typer.Option(False, "--group"),
    actor: str = ActorOption,
    role: str = RoleOption,
):
    """Mark an inspection as completed and ready for review."""
    _review(Transition.COMPLETE, target_id, group, None, _actor(actor, role))


@review_cli.command("approve")
def review_approve(
    target_id: UUID = typer.Argument(...),
    comment: str | None = typer.Option(None, "--comment"),
    group: bool = typer.Option(False, "--group"),
    actor: str = ActorOption,
    role: str = typer.Option("reviewer", "--role", envvar="ASSEMBLYQC_ROLE"),
):
    """Approve and lock a completed inspection."""
    _review(Transition.APPROVE, target_id, group, comment, _actor(actor, role))


@review_cli.command("reject")
def review_reject(
    target_id: UUID = typer.Argument(...),
    comment: str = typer.Option(..., "--comment"),
    group: bool = typer.Option(False, "--group"),
    actor: str = ActorOption,
    role: str = typer.Option("reviewer", "--role", envvar="ASSEMBLYQC_ROLE"),
):
    """Reject a completed inspection."""
    _review(Transition.REJECT, target_id, group, comment, _actor(actor, role))


@review_cli.command("return")
def review_return(
    target_id: UUID = typer.Argument(...),
    comment: str = typer.Option(..., "--comment"),
    group: bool = typer.Option(False, "--group"),
    actor: str = ActorOption,
    role: str = typer.Option("reviewer", "--role", envvar="ASSEMBLYQC_ROLE"),
):
    """Return a completed inspection to the inspector for rework."""
    _review(Transition.RETURN, target_id, group, comment, _actor(actor, role))


@review_cli.command("unlock")
def review_unlock(
    target_id: UUID = typer.Argument(...),
    reason: str = typer.Option(..., "--reason"),
    group: bool = typer.Option(False, "--group"),
    actor: str = ActorOption,
    role: str = typer.Option("admin", "--role", envvar="ASSEMBLYQC_ROLE"),
):
    """Reopen an approved item (admin only)."""
    user = _actor(actor, role)
    target_type = EntityType.GROUP if group else EntityType.ELEMENT

    async def _unlock():
        async with get_session() as session:
            await InspectionWorkflow(session).unlock(target_type, target_id, user, reason)
            console.print(f"[bold yellow]![/bold yellow] {target_type.value} {target_id} unlocked")

    _run(_unlock)


@app.command("bulk")
def bulk_cmd(
    action: BulkActionType = typer.Argument(...),
    target_ids: list[UUID] = typer.Argument(..., help="Element or group IDs"),
    comment: str | None = typer.Option(None, "--comment"),
    status: InspectionStatus | None = typer.Option(None, "--status"),
    assignee: str | None = typer.Option(None, "--assignee"),
    group: bool = typer.Option(False, "--group"),
    project_id: str = ProjectOption,
    actor: str = ActorOption,
    role: str = typer.Option("reviewer", "--role", envvar="ASSEMBLYQC_ROLE"),
):
    """Apply one action to many elements or groups."""
    user = _actor(actor, role)

    async def _bulk():
        async with get_session() as session:
            result = await apply_bulk(
                session,
                project_id,
                action,
                target_ids,
                user,
                BulkParams(comment=comment, status=status, assignee=assignee),
                target_type=EntityType.GROUP if group else EntityType.ELEMENT,
            )

        console.print(f"[bold]{result.summary()}[/bold] (batch {result.bulk_action_id})")
        if result.failures:
            table = Table(title="Failures")
            table.add_column("Target", style="cyan")
            table.add_column("Error", style="red")
            for failure in result.failures:
                table.add_row(str(failure.id), f"{failure.error_code}: {failure.error}")
            console.print(table)

    _run(_bulk)


# ---------------------------------------------------------------------------
# Offline queue
# ---------------------------------------------------------------------------


@queue_cli.command("process")
def queue_process(project_id: str | None = typer.Option(None, "--project", "-p")):
    """Replay pending offline uploads."""

    async def _process():
        async with get_session() as session:
            summary = await OfflineQueue(session).process_pending(project_id)
        console.print(
            f"[bold green]✓[/bold green] {summary.processed} processed: {summary.completed} completed, "
            f"{summary.retried} retrying, {summary.failed} failed"
        )

    _run(_process)


@queue_cli.command("list")
def queue_list(
    status: UploadStatus | None = typer.Option(None, "--status"),
    project_id: str | None = typer.Option(None, "--project", "-p"),
):
    """List queued uploads."""

    async def _list():
        async with get_session() as session:
            uploads = await OfflineQueue(session).list_uploads(project_id, status)
        table = Table(title="Offline Uploads")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Status", style="green")
        table.add_column("Retries", justify="right")
        table.add_column("Error", style="red")
        for upload in uploads:
            table.add_row(
                str(upload.id)[:8],
                upload.upload_type,
                upload.status,
                str(upload.retry_count),
                (upload.error_message or "")[:60],
            )
        console.print(table)

    _run(_list)


@queue_cli.command("requeue")
def queue_requeue(project_id: str | None = typer.Option(None, "--project", "-p")):
    """Send failed uploads back to pending."""

    async def _requeue():
        async with get_session() as session:
            count = await OfflineQueue(session).requeue_failed(project_id)
        console.print(f"[bold green]✓[/bold green] {count} upload(s) re-queued")

    _run(_requeue)


@app.command()
def stats(project_id: str = ProjectOption):
    """Show element lifecycle statistics."""

    async def _stats():
        async with get_session() as session:
            lifecycle = await compute_lifecycle_stats(session, project_id)

        table = Table(title=f"Lifecycle {project_id}")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right", style="green")
        table.add_row("Elements", str(lifecycle.total_elements))
        table.add_row("Arrived", str(lifecycle.arrived_count))
        table.add_row("Installed", str(lifecycle.installed_count))
        for status, count in lifecycle.status_counts.items():
            table.add_row(status.replace("_", " ").title(), str(count))
        table.add_row("Approval rate", f"{lifecycle.approval_rate:.0%}")
        console.print(table)

    _run(_stats)


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI web API."""
    import uvicorn

    typer.echo(f"Starting AssemblyQC API on http://{host}:{port}")
    uvicorn.run("assemblyqc.web.app:app", host=host, port=port, reload=reload, workers=1)

def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()

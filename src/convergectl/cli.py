"""Typer-powered command line interface for ``convergectl``.

Commands load the tool settings once (see :func:`_ensure_runtime`), wrap
their work in a structured logging operation and translate domain errors
into Rich messages and documented exit codes.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import (
    BackupError,
    BackupManager,
    BackupManifest,
    BackupRegistryError,
    BackupsRegistry,
    IntegrityError,
)
from .config import AppConfig, ConfigError, load_config
from .executor import ActionExecutor
from .exit_codes import SETTINGS_EXIT, BackupExit, ReconcileExit, RestoreExit
from .health import HealthVerifier, VerificationResult
from .inspector import StateInspector
from .locking import LockError, LockManager, RunInProgressError
from .logging import OperationScope, StructuredLogger
from .model import ResourceKind, TargetModel, load_target
from .orchestrator import Orchestrator, RunReport, RunState
from .planner import ReconciliationPlan
from .providers import FirewallProvider, NginxProvider, Pm2Provider, SystemdProvider
from .templates import TemplateEngine

console = Console()

SETTINGS_FILE_OPTION = typer.Option(
    None,
    "--settings-file",
    dir_okay=False,
    help="Override the path to convergectl's YAML settings file.",
)

TARGET_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    dir_okay=False,
    help="Target document describing the desired state (defaults to the target_file setting).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Apply the plan. Without it the plan is only shown.",
)

_STATE_STYLE: dict[RunState, str] = {
    RunState.DONE: "[green]Done[/green]",
    RunState.PLANNED: "[yellow]Planned[/yellow]",
    RunState.ROLLED_BACK: "[yellow]RolledBack[/yellow]",
    RunState.FAILED: "[red]Failed[/red]",
}

_RECONCILE_EXIT: dict[RunState, ReconcileExit] = {
    RunState.DONE: ReconcileExit.DONE,
    RunState.PLANNED: ReconcileExit.DONE,
    RunState.ROLLED_BACK: ReconcileExit.ROLLED_BACK,
    RunState.FAILED: ReconcileExit.FAILED,
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative configuration reconciliation and health verification.

        Converges reverse proxy sites, systemd units, environment files and
        firewall rules onto a target document, then confirms the services
        answer their health probes.
        """
    ).strip(),
)
backups_app = typer.Typer(help="List and prune backup archives.")
app.add_typer(backups_app, name="backups")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    pm2_provider: Pm2Provider
    nginx_provider: NginxProvider
    firewall_provider: FirewallProvider
    backups: BackupsRegistry


def _ensure_runtime(ctx: typer.Context, settings_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=settings_file)
    except ConfigError as exc:
        console.print(f"[red]Invalid settings: {exc}[/red]")
        command = ctx.find_root().invoked_subcommand or ""
        raise typer.Exit(code=SETTINGS_EXIT.get(command, ReconcileExit.CONFIG)) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        systemd_provider=SystemdProvider(systemctl_bin=config.systemd.systemctl_bin),
        pm2_provider=Pm2Provider(pm2_bin=config.pm2.pm2_bin),
        nginx_provider=NginxProvider(
            nginx_bin=config.nginx.nginx_bin,
            service=config.nginx.service or None,
            systemctl_bin=config.systemd.systemctl_bin,
        ),
        firewall_provider=FirewallProvider(ufw_bin=config.firewall.ufw_bin),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the convergectl version and exit.",
    ),
    settings_file: Path | None = SETTINGS_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, settings_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"convergectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, settings_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


# Wiring helpers -----------------------------------------------------
def _load_target(runtime: RuntimeContext, target_file: Path | None) -> TargetModel:
    """Load the target document, dropping firewall rules when ufw is not managed."""
    path = target_file or runtime.config.target_file
    target = load_target(path, templates=runtime.templates)
    if not runtime.config.firewall.enabled:
        target = replace(
            target,
            resources=tuple(
                spec for spec in target.resources if spec.kind is not ResourceKind.FIREWALL_RULE
            ),
        )
    return target


def _backup_manager(runtime: RuntimeContext, target: TargetModel | None) -> BackupManager:
    settings = runtime.config.backups
    return BackupManager(
        runtime.backups,
        compression=settings.compression,
        compression_level=settings.compression_level,
        extra_paths=settings.extra_paths,
        target_name=target.name if target else None,
    )


def _verifier(runtime: RuntimeContext) -> HealthVerifier:
    return HealthVerifier(max_concurrency=runtime.config.concurrency.probe_workers)


def _orchestrator(
    runtime: RuntimeContext,
    target: TargetModel,
    backups: BackupManager | None = None,
) -> Orchestrator:
    return Orchestrator(
        inspector=StateInspector(
            systemd=runtime.systemd_provider,
            pm2=runtime.pm2_provider,
            nginx=runtime.nginx_provider,
            firewall=runtime.firewall_provider,
            max_workers=runtime.config.concurrency.inspect_workers,
        ),
        executor=ActionExecutor(
            systemd=runtime.systemd_provider,
            pm2=runtime.pm2_provider,
            nginx=runtime.nginx_provider,
            firewall=runtime.firewall_provider,
        ),
        verifier=_verifier(runtime),
        locks=runtime.locks,
        backups=backups or _backup_manager(runtime, target),
    )


def _record_states(op: OperationScope, report: RunReport) -> None:
    for state in report.states[1:]:
        status = "info"
        if state is RunState.FAILED:
            status = "error"
        elif state is RunState.ROLLED_BACK:
            status = "warning"
        op.add_step(f"state.{state.value}", status=status)
    if report.lock_wait_ms is not None:
        op.set_lock_wait_ms(report.lock_wait_ms)


# Rendering ----------------------------------------------------------
def _render_plan(plan: ReconciliationPlan) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Operation", style="bold")
    table.add_column("Subject")
    table.add_column("Reason")
    for index, action in enumerate(plan.actions, start=1):
        style = "dim" if action.is_noop else ""
        table.add_row(
            str(index),
            action.operation.value,
            action.subject,
            action.reason,
            style=style,
        )
    console.print(table)
    if plan.is_empty:
        console.print("[green]Nothing to change.[/green]")
    else:
        console.print(f"{len(plan.pending)} change(s) pending.")


def _render_probes(result: VerificationResult) -> None:
    if not result.outcomes:
        console.print("No health probes declared.")
        return
    for outcome in result.outcomes:
        label = "[green]PASS[/green]" if outcome.passed else "[red]FAIL[/red]"
        line = (
            f"{label} {outcome.name} {outcome.url} "
            f"(attempts={outcome.attempts}, last_status={outcome.last_status})"
        )
        console.print(line)
        if outcome.error and not outcome.passed:
            console.print(f"  {outcome.error}")


def _render_report(report: RunReport) -> None:
    if report.plan is not None:
        _render_plan(report.plan)
    for error in report.inspection_errors:
        console.print(f"[yellow]Inspection warning:[/yellow] {error}")
    if report.execution is not None:
        for result in report.execution.results:
            if result.status == "skipped":
                continue
            colour = "green" if result.status == "applied" else "red"
            console.print(
                f"[{colour}]{result.status}[/{colour}] {result.action.describe()}"
                + (f": {result.message}" if result.message else "")
            )
    if report.rollback:
        console.print("[yellow]Rollback:[/yellow]")
        for step in report.rollback:
            colour = "red" if step.status == "failed" else "yellow"
            console.print(
                f"  [{colour}]{step.status}[/{colour}] {step.operation} {step.subject}"
                + (f" - {step.detail}" if step.detail else "")
            )
    if report.verification is not None:
        _render_probes(report.verification)
    if report.touched:
        console.print(f"Touched: {', '.join(report.touched)}")
    suffix = ""
    if report.dry_run:
        suffix = " (dry run)"
    elif report.declined:
        suffix = " (not applied)"
    console.print(f"Result: {_STATE_STYLE.get(report.state, report.state.value)}{suffix}")
    if report.error:
        console.print(f"[red]{report.error}[/red]")


def _render_manifest(manifest: BackupManifest) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="bold")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("sha256")
    for entry in manifest.entries:
        table.add_row(entry.kind, entry.path, str(entry.size), entry.sha256[:12])
    console.print(table)


# Commands -----------------------------------------------------------
@app.command("reconcile")
def reconcile(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Inspect and print the plan without changing anything.",
    ),
    yes: bool = YES_OPTION,
    target_file: Path | None = TARGET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge the system onto the target document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reconcile",
        args={
            "dry_run": dry_run,
            "yes": yes,
            "config": str(target_file) if target_file else None,
            "json": json_output,
        },
        target={"kind": "target", "path": str(target_file or runtime.config.target_file)},
    ) as op:
        try:
            target = _load_target(runtime, target_file)
        except ConfigError as exc:
            _command_error(op, f"Invalid target: {exc}", rc=ReconcileExit.CONFIG)
        op.add_step("target.loaded", status="success", detail=target.name)

        try:
            report = _orchestrator(runtime, target).reconcile(
                target, dry_run=dry_run, confirm=lambda plan: yes
            )
        except RunInProgressError as exc:
            _command_error(op, str(exc), rc=ReconcileExit.LOCKED)
        except LockError as exc:
            _command_error(op, str(exc), rc=ReconcileExit.FAILED)

        _record_states(op, report)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_report(report)
            if report.declined:
                console.print("Re-run with --yes to apply these changes.")

        context = report.to_dict()
        if report.failure == "cycle":
            op.error(report.error or "Dependency cycle.", rc=ReconcileExit.CONFIG, context=context)
            raise typer.Exit(code=ReconcileExit.CONFIG)
        rc = _RECONCILE_EXIT.get(report.state, ReconcileExit.FAILED)
        if rc is not ReconcileExit.DONE:
            op.error(report.error or f"Run ended in {report.state.value}.", rc=rc, context=context)
            raise typer.Exit(code=rc)
        if report.declined:
            op.warning(
                "Plan shown without --yes; nothing applied.",
                warnings=["declined"],
                context=context,
            )
            return
        changed = len(report.plan.pending) if report.plan and not report.dry_run else 0
        op.success(f"Run ended in {report.state.value}.", changed=changed, context=context)


@app.command("backup")
def backup(
    ctx: typer.Context,
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Archive file (or directory) to write instead of the backup root.",
    ),
    target_file: Path | None = TARGET_OPTION,
    label: str | None = typer.Option(
        None,
        "--label",
        help="Label recorded in the manifest and backup index.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot every managed file into a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={
            "output": str(output) if output else None,
            "config": str(target_file) if target_file else None,
            "label": label,
            "json": json_output,
        },
        target={"kind": "backup", "root": str(runtime.config.backups.root)},
    ) as op:
        try:
            target = _load_target(runtime, target_file)
        except ConfigError as exc:
            _command_error(op, f"Invalid target: {exc}", rc=BackupExit.FAILED)

        manager = _backup_manager(runtime, target)
        try:
            with runtime.locks.run_lock(target.name) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = manager.backup(target.resources, label=label, output=output)
        except (LockError, BackupError, OSError) as exc:
            _command_error(op, f"Failed to create backup: {exc}", rc=BackupExit.FAILED)

        payload = result.to_dict()
        retention = runtime.config.backups.keep
        if retention is not None:
            try:
                pruned = manager.prune(retention)
            except (BackupError, OSError) as exc:
                op.add_step("backup.retention", status="warning", detail=str(exc))
            else:
                payload["pruned"] = [str(item["id"]) for item in pruned]
                op.add_step("backup.retention", status="success", detail=f"keep={retention}")
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Created backup '{result.backup_id}'.[/green]")
            console.print(f"Archive: {result.archive}")
            console.print(f"Checksum (sha256): {result.checksum}")
            console.print(f"Files: {len(result.manifest.entries)}")
            console.print(f"Size: {result.size_bytes} bytes")
        op.success(
            "Backup created.",
            changed=1,
            backups=[result.backup_id],
            context=payload,
        )


@app.command("restore")
def restore(
    ctx: typer.Context,
    archive: Path = typer.Option(
        ...,
        "--archive",
        "-a",
        dir_okay=False,
        help="Backup archive to restore.",
    ),
    yes: bool = YES_OPTION,
    target_file: Path | None = TARGET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a backup archive, then reconcile and verify health."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={
            "archive": str(archive),
            "yes": yes,
            "config": str(target_file) if target_file else None,
            "json": json_output,
        },
        target={"kind": "backup", "archive": str(archive)},
    ) as op:
        try:
            target = _load_target(runtime, target_file)
        except ConfigError as exc:
            _command_error(op, f"Invalid target: {exc}", rc=RestoreExit.FAILED)

        manager = _backup_manager(runtime, target)
        orchestrator = _orchestrator(runtime, target, manager)
        try:
            manifest = manager.verify_archive(archive)
        except IntegrityError as exc:
            _command_error(op, f"Archive failed verification: {exc}", rc=RestoreExit.FAILED)
        op.add_step("archive.verified", status="success", detail=str(archive))

        if not yes:
            payload = {"archive": str(archive), "applied": False, "manifest": manifest.to_dict()}
            if json_output:
                console.print_json(data=payload)
            else:
                _render_manifest(manifest)
                console.print(
                    f"{len(manifest.entries)} file(s) would be restored from {archive.name}. "
                    "Re-run with --yes to restore."
                )
            op.warning("Restore shown without --yes; nothing written.", warnings=["declined"])
            return

        try:
            report = orchestrator.restore(target, archive)
        except IntegrityError as exc:
            _command_error(op, f"Archive failed verification: {exc}", rc=RestoreExit.FAILED)
        except (LockError, BackupError) as exc:
            _command_error(op, f"Restore failed: {exc}", rc=RestoreExit.FAILED)

        _record_states(op, report)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            restored = report.restore.restored if report.restore else ()
            console.print(f"[green]Restored {len(restored)} file(s) from {archive}.[/green]")
            if report.restore and report.restore.pre_restore:
                console.print(f"Pre-restore backup: {report.restore.pre_restore.archive}")
            _render_report(report)

        context = report.to_dict()
        backups_made = (
            [report.restore.pre_restore.backup_id]
            if report.restore and report.restore.pre_restore
            else None
        )
        if report.state is not RunState.DONE:
            op.error(
                report.error or f"Reconciliation after restore ended in {report.state.value}.",
                rc=RestoreExit.RECONCILE,
                context=context,
            )
            raise typer.Exit(code=RestoreExit.RECONCILE)
        op.success(
            "Restore completed.",
            changed=len(report.restore.restored) if report.restore else 0,
            backups=backups_made,
            context=context,
        )


@app.command("verify")
def verify(
    ctx: typer.Context,
    target_file: Path | None = TARGET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the target's health probes without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "verify",
        args={"config": str(target_file) if target_file else None, "json": json_output},
        target={"kind": "probes"},
    ) as op:
        try:
            target = _load_target(runtime, target_file)
        except ConfigError as exc:
            _command_error(op, f"Invalid target: {exc}", rc=ReconcileExit.CONFIG)

        result = _verifier(runtime).verify(target.probes)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_probes(result)

        if not result.passed:
            names = [outcome.name for outcome in result.failed]
            op.error(
                "Health probes failed.",
                errors=names,
                rc=ReconcileExit.FAILED,
                context=result.to_dict(),
            )
            raise typer.Exit(code=ReconcileExit.FAILED)
        op.success("Health probes passed.", changed=0, context=result.to_dict())


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List known backups from the index, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "index"},
    ) as op:
        try:
            entries = _backup_manager(runtime, None).list_backups()
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}", rc=BackupExit.FAILED)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created At")
        table.add_column("Label")
        table.add_column("Files", justify="right")
        table.add_column("Archive")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("created_at", "")),
                str(entry.get("label") or ""),
                str(entry.get("entries", "")),
                str(entry.get("path", "")),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("prune")
def backups_prune(
    ctx: typer.Context,
    keep: int = typer.Option(
        ...,
        "--keep",
        "-k",
        help="Retain the most recent N backups.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview which archives would be removed.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove all but the newest backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups prune",
        args={"keep": keep, "dry_run": dry_run, "json": json_output},
        target={"kind": "backup", "scope": "prune"},
    ) as op:
        if keep < 0:
            _command_error(op, "--keep must be zero or a positive integer.", rc=BackupExit.FAILED)
        try:
            results = _backup_manager(runtime, None).prune(keep, dry_run=dry_run)
        except (BackupError, OSError) as exc:
            _command_error(op, f"Failed to prune backups: {exc}", rc=BackupExit.FAILED)

        if json_output:
            console.print_json(data={"results": results})
        elif not results:
            console.print("[yellow]No backups matched prune criteria.[/yellow]")
        else:
            verb = "Would remove" if dry_run else "Removed"
            for result in results:
                console.print(f"{verb} {result['id']} ({result.get('status')})")

        if dry_run:
            op.success("Prune dry-run completed.", changed=0, context={"results": results})
        else:
            op.success(
                "Backups pruned.",
                changed=len(results),
                backups=[str(result["id"]) for result in results],
                context={"results": results},
            )


def main() -> None:
    """Console script entry point."""
    app()

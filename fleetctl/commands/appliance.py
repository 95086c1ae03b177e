"""Appliance commands: list, backup, backup-api, maintenance, files."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional, Tuple

import click

from fleetctl import cli_helpers
from fleetctl.backup import (
    DEFAULT_BACKUP_DESTINATION,
    DEFAULT_BACKUP_TIMEOUT,
    BackupOptions,
    BackupOrchestrator,
    prepare_backup,
)
from fleetctl.errors import AggregateError, FleetError, PreconditionError
from fleetctl.filters import filter_appliances
from fleetctl.functions import active_functions
from fleetctl.tasks import gather_settled


def register(cli: click.Group) -> None:
    cli.add_command(appliance)


@click.group()
def appliance() -> None:
    """Inspect and back up appliances."""


@appliance.command("list")
@cli_helpers.filter_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON.")
def list_cmd(filters: Tuple[str, ...], excludes: Tuple[str, ...], as_json: bool) -> None:
    """List appliances in the collective."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            return filter_appliances(await api.list_appliances(), spec)

    try:
        appliances = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    if as_json:
        click.echo(json.dumps([a.to_dict() for a in appliances], indent=2))
        return
    click.echo(
        cli_helpers.appliance_table(
            appliances,
            [
                ("Name", lambda a: a.name),
                ("ID", lambda a: a.id),
                ("Hostname", lambda a: a.hostname),
                ("Site", lambda a: a.site),
                ("Activated", lambda a: str(a.activated).lower()),
                ("Functions", lambda a: ", ".join(active_functions(a))),
            ],
        )
    )


@appliance.command()
@click.argument("names", nargs=-1)
@click.option(
    "--destination",
    default=DEFAULT_BACKUP_DESTINATION,
    show_default=True,
    help="Directory the backup files are written to.",
)
@click.option("--audit", is_flag=True, default=False, help="Include audit logs.")
@click.option("--logs", is_flag=True, default=False, help="Include logs.")
@click.option("--all", "all_", is_flag=True, default=False, help="Back up every appliance.")
@click.option("--primary", is_flag=True, default=False, help="Back up the primary controller.")
@click.option("--current", is_flag=True, default=False, help="Back up the current controller.")
@click.option("--no-interactive", is_flag=True, default=False, help="Never prompt.")
@click.option(
    "--timeout",
    type=cli_helpers.DURATION,
    default=DEFAULT_BACKUP_TIMEOUT,
    help="Overall time limit, e.g. 30m.",
)
@cli_helpers.filter_options
def backup(
    names: Tuple[str, ...],
    destination: str,
    audit: bool,
    logs: bool,
    all_: bool,
    primary: bool,
    current: bool,
    no_interactive: bool,
    timeout: float,
    filters: Tuple[str, ...],
    excludes: Tuple[str, ...],
) -> None:
    """Back up appliances and download the backup files."""
    cfg = cli_helpers._get_config()
    options = BackupOptions(
        destination=destination,
        include_audit=audit,
        include_logs=logs,
        all=all_,
        primary=primary,
        current=current,
        filter_spec=cli_helpers.build_filter(filters, excludes),
        names=names,
        no_interactive=no_interactive,
        timeout=timeout,
    )
    try:
        prepare_backup(options)
    except (FleetError, OSError) as exc:
        cli_helpers.exit_on_error(FleetError(str(exc)))

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            orchestrator = BackupOrchestrator(
                api,
                cfg,
                options,
                confirm=lambda msg: click.confirm(msg, default=False),
                passphrase=lambda msg: click.prompt(msg, hide_input=True, confirmation_prompt=True),
                select=cli_helpers.prompt_select,
            )
            result = await orchestrator.run()
            cleanup_error = None
            if result.backup_ids:
                try:
                    await orchestrator.cleanup(result.backup_ids)
                except FleetError as exc:
                    cleanup_error = exc
            return result, cleanup_error

    try:
        result, cleanup_error = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    for record in result.records:
        click.echo(click.style(f"  {record.destination}", fg="green"))
    if cleanup_error is not None:
        click.echo("Some remote backups could not be deleted:", err=True)
        cli_helpers.report_error(cleanup_error)
    if result.error is not None:
        cli_helpers.report_error(result.error)
        sys.exit(1)
    click.echo(f"Backup complete. {len(result.records)} file(s) written to {options.destination}")


@appliance.command("backup-api")
@click.option("--enable/--disable", default=True, help="Enable or disable the backup API.")
@click.option("--passphrase", default=None, help="Passphrase used to encrypt backups.")
def backup_api(enable: bool, passphrase: Optional[str]) -> None:
    """Enable or disable the backup API of the collective."""
    cfg = cli_helpers._get_config()
    if enable and passphrase is None:
        passphrase = click.prompt(
            "The passphrase to encrypt Appliance Backups when backup API is used",
            hide_input=True,
            confirmation_prompt=True,
        )

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            await api.set_global_backup_setting(enable, passphrase or "")

    try:
        asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)
    state = "enabled" if enable else "disabled"
    click.echo(click.style(f"Backup API {state}.", fg="green"))


@appliance.command()
@click.argument("names", nargs=-1)
@click.option("--enable/--disable", default=True, help="Enter or leave maintenance mode.")
@click.option("--no-interactive", is_flag=True, default=False, help="Never prompt; assume yes.")
@cli_helpers.filter_options
def maintenance(
    names: Tuple[str, ...],
    enable: bool,
    no_interactive: bool,
    filters: Tuple[str, ...],
    excludes: Tuple[str, ...],
) -> None:
    """Toggle maintenance mode on the selected controllers."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)
    if names:
        spec = spec.with_names(names)

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            selected = [a for a in filter_appliances(await api.list_appliances(), spec) if a.is_controller]
            if not selected:
                raise PreconditionError("No controllers selected.")
            if not no_interactive:
                verb = "Enable" if enable else "Disable"
                targets = ", ".join(a.name for a in selected)
                if not click.confirm(f"{verb} maintenance mode on {targets}?", default=False):
                    raise click.Abort()
            outcomes = await gather_settled(
                api.update_maintenance_mode(a.id, enable) for a in selected
            )
            return selected, outcomes

    try:
        selected, outcomes = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    errors = []
    for a, (change_id, err) in zip(selected, outcomes):
        if err is None:
            click.echo(f"  {a.name}: change {change_id}")
        else:
            errors.append(FleetError(f"{a.name}: {err}"))
    aggregate = AggregateError.from_errors(errors)
    if aggregate is not None:
        cli_helpers.exit_on_error(aggregate)


@appliance.group()
def files() -> None:
    """Manage the file repository of the current controller."""


@files.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON.")
def files_list(as_json: bool) -> None:
    """List the files stored on the current controller."""
    cfg = cli_helpers._get_config()

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            return await api.list_files()

    try:
        entries = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    if as_json:
        click.echo(json.dumps([f.to_dict() for f in entries], indent=2))
        return
    click.echo(
        cli_helpers.appliance_table(
            entries,
            [
                ("Name", lambda f: f.name),
                ("Status", lambda f: f.status),
                ("Created", lambda f: f.created_at),
                ("Modified", lambda f: f.modified_at),
                ("Failure Reason", lambda f: f.failure_reason),
            ],
        )
    )


@files.command("delete")
@click.argument("filenames", nargs=-1)
@click.option("--all", "all_", is_flag=True, default=False, help="Delete every file in the repository.")
@click.option("--no-interactive", is_flag=True, default=False, help="Never prompt.")
def files_delete(filenames: Tuple[str, ...], all_: bool, no_interactive: bool) -> None:
    """Delete files from the repository of the current controller."""
    cfg = cli_helpers._get_config()

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            targets = list(filenames)
            if not targets:
                entries = await api.list_files()
                if all_:
                    targets = [f.name for f in entries]
                elif not no_interactive:
                    targets = [f.name for f in cli_helpers.prompt_select(entries, "Select files to delete:")]
                    if not targets:
                        raise PreconditionError("No files were selected for deletion")
                else:
                    raise PreconditionError("No files were deleted")
            outcomes = await gather_settled(api.delete_file(name) for name in targets)
            return targets, outcomes

    try:
        targets, outcomes = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    errors = []
    for name, (_, err) in zip(targets, outcomes):
        if err is None:
            click.echo(f"{name}: deleted")
        else:
            errors.append(FleetError(f"{name}: {err}"))
    aggregate = AggregateError.from_errors(errors)
    if aggregate is not None:
        cli_helpers.exit_on_error(aggregate)

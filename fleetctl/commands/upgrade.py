"""Upgrade commands: status, prepare, complete, cancel."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Optional, Tuple

import click

from fleetctl import cli_helpers
from fleetctl.appliance import ApplianceAPI
from fleetctl.checks import (
    autoscaling_warning_message,
    disk_space_warning_message,
    has_low_disk_space,
    peer_interface_warning_message,
)
from fleetctl.errors import FleetError, PreconditionError
from fleetctl.files import (
    check_image_filename,
    ensure_uploaded,
    is_remote_image,
    local_image,
    repository_image_url,
)
from fleetctl.filters import filter_appliances
from fleetctl.functions import (
    active_sites,
    autoscaling_gateways,
    filter_available,
    find_primary_controller,
    with_admin_on_peer_interface,
)
from fleetctl.scheduler import DEFAULT_CHUNK_SIZE, appliance_group_description
from fleetctl.upgrade import UpgradeDriver, UpgradeReport
from fleetctl.waiters import ApplianceStateWaiter, UpgradeStatusWaiter

DEFAULT_UPGRADE_TIMEOUT = 60 * 60.0


def register(cli: click.Group) -> None:
    cli.add_command(upgrade)


@click.group()
def upgrade() -> None:
    """Prepare, complete and monitor appliance upgrades."""


def _timeout_option(func):
    return click.option(
        "--timeout",
        type=cli_helpers.DURATION,
        default=DEFAULT_UPGRADE_TIMEOUT,
        help="Overall time limit, e.g. 90m.",
    )(func)


def _no_interactive_option(func):
    return click.option(
        "--no-interactive", is_flag=True, default=False, help="Never prompt; assume yes."
    )(func)


def _driver(api: ApplianceAPI) -> UpgradeDriver:
    return UpgradeDriver(api, UpgradeStatusWaiter(api), ApplianceStateWaiter(api))


async def _online_selection(api: ApplianceAPI, spec):
    """List, filter and keep online appliances; an offline controller or log server aborts."""
    appliances = await api.list_appliances()
    selected = filter_appliances(appliances, spec)
    stats = await api.get_stats()
    online, offline, severe = filter_available(selected, stats)
    for a in offline:
        click.echo(f"Skipping {a.name}: appliance is offline.", err=True)
    if severe is not None:
        raise severe
    return appliances, online, stats


def _print_report(report: UpgradeReport, verb: str) -> None:
    for a in report.succeeded:
        click.echo(click.style(f"  {a.name}: {verb}", fg="green"))
    for a in report.skipped:
        click.echo(click.style(f"  {a.name}: skipped", fg="yellow"))
    if report.error is not None:
        cli_helpers.report_error(report.error)
        sys.exit(1)


@upgrade.command()
@cli_helpers.filter_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON.")
def status(filters: Tuple[str, ...], excludes: Tuple[str, ...], as_json: bool) -> None:
    """Show the upgrade status of every selected appliance."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            selected = filter_appliances(await api.list_appliances(), spec)
            return selected, await api.upgrade_status_map(selected)

    try:
        selected, statuses = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    if as_json:
        click.echo(json.dumps({k: v.status for k, v in statuses.items()}, indent=2))
        return
    click.echo(
        cli_helpers.appliance_table(
            selected,
            [
                ("Name", lambda a: a.name),
                ("ID", lambda a: a.id),
                ("Upgrade status", lambda a: statuses[a.id].status if a.id in statuses else ""),
            ],
        )
    )


@upgrade.command()
@click.option(
    "--image",
    required=True,
    help="URL of the upgrade image, or a local .img.zip file to upload to the controller first.",
)
@click.option("--dev-keyring", is_flag=True, default=False, help="Use the development keyring.")
@_no_interactive_option
@_timeout_option
@cli_helpers.filter_options
def prepare(
    image: str,
    dev_keyring: bool,
    no_interactive: bool,
    timeout: float,
    filters: Tuple[str, ...],
    excludes: Tuple[str, ...],
) -> None:
    """Download and verify the upgrade image on the selected appliances."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)
    try:
        check_image_filename(image)
        path = None if is_remote_image(image) else local_image(image)
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            appliances, online, stats = await _online_selection(api, spec)
            if not online:
                raise PreconditionError("No online appliances selected for upgrade.")
            low = has_low_disk_space(stats)
            if low:
                click.echo(disk_space_warning_message(low), err=True)
            if not no_interactive:
                names = ", ".join(a.name for a in online)
                if not click.confirm(f"Prepare upgrade on {names}?", default=True):
                    raise click.Abort()
            deadline = time.monotonic() + timeout
            image_url = image
            if path is not None:
                primary = find_primary_controller(appliances, cfg.hostname)
                filename = await ensure_uploaded(api, path, deadline=deadline)
                image_url = repository_image_url(primary, filename)
            return await _driver(api).prepare(online, image_url, dev_keyring, deadline=deadline)

    try:
        report = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)
    _print_report(report, "ready")


@upgrade.command()
@click.option(
    "--batch-size",
    type=int,
    default=DEFAULT_CHUNK_SIZE,
    show_default=True,
    help="Number of batches the non-controller appliances are split into.",
)
@click.option("--switch-partition", is_flag=True, default=False, help="Switch partition after upgrade.")
@_no_interactive_option
@_timeout_option
@cli_helpers.filter_options
def complete(
    batch_size: int,
    switch_partition: bool,
    no_interactive: bool,
    timeout: float,
    filters: Tuple[str, ...],
    excludes: Tuple[str, ...],
) -> None:
    """Complete prepared upgrades, primary controller first."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)

    async def _run():
        async with cli_helpers.open_api(cfg) as api:
            appliances, online, stats = await _online_selection(api, spec)
            if not online:
                raise PreconditionError("No online appliances selected for upgrade.")
            primary = find_primary_controller(appliances, cfg.hostname)

            warnings = [
                disk_space_warning_message(has_low_disk_space(stats)),
                peer_interface_warning_message(
                    [a for a in with_admin_on_peer_interface(online) if a.is_controller]
                ),
                autoscaling_warning_message(*autoscaling_gateways(appliances)),
            ]
            for message in warnings:
                if message:
                    click.echo(message, err=True)

            driver = _driver(api)
            head, stages = driver.plan(online, primary, batch_size)
            click.echo(f"Upgrade plan ({len(online)} appliances, {active_sites(online)} sites):")
            if head:
                click.echo(f"  primary controller: {primary.name}")
            for i, stage in enumerate(stages, start=1):
                names = ", ".join(a.name for a in stage)
                click.echo(f"  {i}: {names} ({appliance_group_description(stage)})")
            if not no_interactive and not click.confirm("Continue?", default=True):
                raise click.Abort()

            deadline = time.monotonic() + timeout
            return await driver.complete(
                online,
                primary,
                chunk_size=batch_size,
                switch_partition=switch_partition,
                deadline=deadline,
                stats=stats,
            )

    try:
        report = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)
    _print_report(report, "upgraded")


@upgrade.command()
@_no_interactive_option
@cli_helpers.filter_options
def cancel(no_interactive: bool, filters: Tuple[str, ...], excludes: Tuple[str, ...]) -> None:
    """Cancel prepared upgrades."""
    cfg = cli_helpers._get_config()
    spec = cli_helpers.build_filter(filters, excludes)

    async def _run() -> Optional[UpgradeReport]:
        async with cli_helpers.open_api(cfg) as api:
            selected = filter_appliances(await api.list_appliances(), spec)
            if not selected:
                return None
            if not no_interactive:
                names = ", ".join(a.name for a in selected)
                if not click.confirm(f"Cancel upgrade on {names}?", default=False):
                    raise click.Abort()
            return await _driver(api).cancel(selected)

    try:
        report = asyncio.run(_run())
    except FleetError as exc:
        cli_helpers.exit_on_error(exc)
    if report is None:
        click.echo("No appliances selected.")
        return
    _print_report(report, "cancelled")

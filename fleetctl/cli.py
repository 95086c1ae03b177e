"""
fleetctl command-line interface.

Usage::

    fleetctl configure --url controller.example.com
    fleetctl appliance list -f function=gateway
    fleetctl appliance backup --primary --destination ~/backups
    fleetctl appliance backup-api --enable
    fleetctl upgrade status
    fleetctl upgrade prepare --image https://cdn.example.com/appgate-6.2.1.img.zip
    fleetctl upgrade complete --batch-size 2 -e site=lab
    fleetctl upgrade cancel -f name=gateway-1
"""

from __future__ import annotations

import click

from fleetctl import __version__
from fleetctl.cli_helpers import setup_logging


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="fleetctl")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, debug: bool) -> None:
    """fleetctl: orchestrate upgrades and backups across an appliance fleet."""
    setup_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# ---------------------------------------------------------------------------
# Register command modules
# ---------------------------------------------------------------------------

from fleetctl.commands import appliance, configure, upgrade  # noqa: E402

for _mod in [configure, appliance, upgrade]:
    _mod.register(main)

"""Shared helpers for CLI commands.

Command modules import from here rather than from each other so the
configuration, API construction and option handling stay in one place.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, NoReturn, Optional, Sequence

import click

from fleetctl.api_client import _ApiClient
from fleetctl.appliance import ApplianceAPI
from fleetctl.config import Config, load_config
from fleetctl.errors import AggregateError, FleetError
from fleetctl.filters import DEFAULT_COMMAND_FILTER, FilterSpec, parse_filter_flags

_logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def setup_logging(debug: bool = False) -> None:
    """Configure the root logger once for the whole CLI run."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


class Duration(click.ParamType):
    """``90``, ``90s``, ``30m`` or ``1h``, converted to seconds."""

    name = "duration"

    def convert(self, value: Any, param: Optional[click.Parameter], ctx: Optional[click.Context]) -> float:
        if isinstance(value, (int, float)):
            return float(value)
        match = _DURATION_RE.match(str(value).strip())
        if match is None:
            self.fail(f"{value!r} is not a valid duration (e.g. 90s, 30m, 1h)", param, ctx)
        amount, unit = match.groups()
        return float(amount) * _DURATION_UNITS[unit or "s"]


DURATION = Duration()


def filter_options(func: Callable) -> Callable:
    """Add the repeatable ``--filter``/``--exclude`` options to a command."""
    func = click.option(
        "--exclude",
        "-e",
        "excludes",
        multiple=True,
        help="Exclude appliances matching key=value (repeatable). "
        "Keys: name, id, tags, version, hostname, site, function, active.",
    )(func)
    func = click.option(
        "--filter",
        "-f",
        "filters",
        multiple=True,
        help="Select appliances matching key=value (repeatable). "
        "Multiple patterns are joined with '&'.",
    )(func)
    return func


def build_filter(
    filters: Sequence[str], excludes: Sequence[str], default: FilterSpec = DEFAULT_COMMAND_FILTER
) -> FilterSpec:
    return parse_filter_flags(filters, excludes, default)


def _fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _get_config() -> Config:
    """Load the configuration and require a usable login."""
    cfg = load_config()
    if not cfg.url:
        _fail("No controller configured. Run 'fleetctl configure' first.")
    if not cfg.bearer_token:
        _fail("No credentials found. Run 'fleetctl configure' or set FLEETCTL_BEARER.")
    return cfg


@asynccontextmanager
async def open_api(cfg: Config) -> AsyncIterator[ApplianceAPI]:
    """Yield an :class:`ApplianceAPI` bound to *cfg*; the HTTP client is closed on exit."""
    client = _ApiClient(
        auth_token_provider=lambda: cfg.bearer_token,
        api_base=cfg.url,
        api_version=cfg.api_version,
        timeout=cfg.timeout,
        verify=not cfg.insecure,
    )
    try:
        yield ApplianceAPI(client)
    finally:
        await client.close()


def report_error(exc: BaseException) -> None:
    """Print *exc* to stderr, one line per constituent error of an aggregate."""
    if isinstance(exc, AggregateError):
        click.echo(click.style(f"{len(exc)} error(s) occurred:", fg="red"), err=True)
        for err in exc.errors:
            click.echo(f"  * {err}", err=True)
    else:
        click.echo(click.style(f"Error: {exc}", fg="red"), err=True)


def exit_on_error(exc: FleetError) -> NoReturn:
    report_error(exc)
    sys.exit(1)


def appliance_table(appliances: Sequence[Any], columns: Sequence[tuple]) -> str:
    """Render *appliances* as a left-aligned text table.

    ``columns`` is a sequence of ``(header, getter)`` pairs.
    """
    rows: List[List[str]] = [[header for header, _ in columns]]
    rows.extend([str(getter(a)) for _, getter in columns] for a in appliances)
    widths = [max(len(row[i]) for row in rows) for i in range(len(columns))]
    lines = ["  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip() for row in rows]
    return "\n".join(lines)


def prompt_select(candidates: Sequence[Any], title: str = "Select appliances:") -> List[Any]:
    """Interactive multi-select over anything with a ``name``: comma separated numbers from a numbered list."""
    if not candidates:
        return []
    click.echo(title)
    for i, appliance in enumerate(candidates, start=1):
        click.echo(f"  {i}) {appliance.name}")
    raw = click.prompt("Numbers (comma separated)", default="", show_default=False)
    chosen: List[Any] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 1 <= int(part) <= len(candidates):
            _fail(f"invalid selection {part!r}")
        appliance = candidates[int(part) - 1]
        if appliance not in chosen:
            chosen.append(appliance)
    return chosen

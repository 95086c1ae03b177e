"""Appliance function helpers and topology resolution.

Resolves the primary controller (the one the CLI is configured against) and
the controller currently serving the admin API, and splits a selection into
online and offline appliances.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Tuple

from packaging.version import InvalidVersion, Version

from .errors import AggregateError, FleetError, TopologyError
from .models import (
    ALL_FUNCTIONS,
    FUNCTION_GATEWAY,
    Appliance,
    ApplianceStat,
)

logger = logging.getLogger(__name__)

AUTOSCALE_PREFIX = "Autoscaling Instance"

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+([-|+]?\d+)?")


def active_functions(appliance: Appliance) -> List[str]:
    """Enabled functions of *appliance*, in canonical order."""
    return [fn for fn in ALL_FUNCTIONS if appliance.function_enabled(fn)]


def with_admin_on_peer_interface(appliances: Sequence[Appliance]) -> List[Appliance]:
    """Appliances still serving the admin API on the deprecated peer interface."""
    return [a for a in appliances if a.admin_hostname is None]


def active_sites(appliances: Sequence[Appliance]) -> int:
    return len({a.site for a in appliances if a.site})


def autoscaling_gateways(
    appliances: Sequence[Appliance],
) -> Tuple[Optional[Appliance], List[Appliance]]:
    """Return the autoscale template appliance (if any) and the auto-scaled gateways."""
    template: Optional[Appliance] = None
    gateways: List[Appliance] = []
    for appliance in appliances:
        if "template" in appliance.tags and not appliance.activated:
            template = appliance
        if appliance.function_enabled(FUNCTION_GATEWAY) and appliance.name.startswith(AUTOSCALE_PREFIX):
            gateways.append(appliance)
    return template, gateways


def filter_available(
    appliances: Sequence[Appliance], stats: Sequence[ApplianceStat]
) -> Tuple[List[Appliance], List[Appliance], Optional[AggregateError]]:
    """Split *appliances* into online and offline according to *stats*.

    Appliances without a stats entry are in neither list.  An offline
    controller or log server yields an error in the third element: the rest
    of the fleet cannot report its health without them.
    """
    by_id = {s.id: s for s in stats}
    online: List[Appliance] = []
    offline: List[Appliance] = []
    for appliance in appliances:
        stat = by_id.get(appliance.id)
        if stat is None:
            continue
        if stat.online:
            online.append(appliance)
        else:
            offline.append(appliance)

    errors: List[Exception] = []
    for appliance in offline:
        if appliance.is_controller:
            errors.append(
                FleetError(f"cannot start the operation since a controller {appliance.name!r} is offline.")
            )
        if appliance.is_logserver:
            errors.append(
                FleetError(f"cannot start the operation since a logserver {appliance.name!r} is offline.")
            )
    return online, offline, AggregateError.from_errors(errors)


def parse_version(value: str) -> Version:
    """Parse the first ``x.y.z[-build]`` occurrence in *value*; ``-build`` becomes a local label."""
    match = _VERSION_RE.search(value or "")
    if match is None:
        raise InvalidVersion(f"no version found in {value!r}")
    return Version(match.group(0).replace("-", "+"))


def appliance_version(appliance: Appliance, stats: Sequence[ApplianceStat]) -> Version:
    for stat in stats:
        if stat.id == appliance.id:
            return parse_version(stat.version)
    raise FleetError(f"could not determine appliance version of {appliance.name}")


def find_primary_controller(appliances: Sequence[Appliance], hostname: str) -> Appliance:
    """Return the controller whose admin or peer hostname is *hostname*.

    Hostnames are compared case-insensitively.  Exactly one controller must
    match; anything else raises :class:`TopologyError`.
    """
    wanted = hostname.lower()
    matches: List[Appliance] = []
    for appliance in appliances:
        if not appliance.is_controller:
            continue
        hostnames = set()
        if appliance.peer_hostname:
            hostnames.add(appliance.peer_hostname.lower())
        if appliance.admin_hostname:
            hostnames.add(appliance.admin_hostname.lower())
        if wanted in hostnames:
            matches.append(appliance)

    if len(matches) > 1:
        raise TopologyError(
            f"The given Controller hostname {hostname} is used by more than one appliance. "
            "A unique Controller admin (or peer) hostname is required to perform the upgrade."
        )
    if not matches:
        raise TopologyError(
            f"Unable to match the given Controller hostname {hostname!r} "
            "with the actual Controller admin (or peer) hostname"
        )
    return matches[0]


def find_current_controller(appliances: Sequence[Appliance], hostname: str) -> Appliance:
    for appliance in appliances:
        if appliance.hostname == hostname:
            return appliance
    raise TopologyError("No host controller found")


def split_controllers(
    appliances: Sequence[Appliance], primary: Appliance
) -> Tuple[List[Appliance], List[Appliance]]:
    """Split *appliances* into the non-primary controllers and everything else."""
    controllers: List[Appliance] = []
    others: List[Appliance] = []
    for appliance in appliances:
        if appliance.id == primary.id:
            continue
        if appliance.is_controller:
            controllers.append(appliance)
        else:
            others.append(appliance)
    return controllers, others

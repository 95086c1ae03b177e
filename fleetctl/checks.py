"""Pre-flight checks run before an upgrade or backup starts.

The ``*_message`` helpers return the text to show the operator, or an empty
string when there is nothing to warn about.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from packaging.version import Version

from .models import Appliance, ApplianceStat

LOW_DISK_THRESHOLD = 75.0

# Releases older than this run the admin API on the peer interface by default.
_ADMIN_INTERFACE_VERSION = Version("5.4")


def has_low_disk_space(
    stats: Sequence[ApplianceStat], threshold: float = LOW_DISK_THRESHOLD
) -> List[ApplianceStat]:
    """Stats of the appliances whose disk usage is at or above *threshold* percent."""
    return [s for s in stats if s.disk >= threshold]


def disk_space_warning_message(stats: Sequence[ApplianceStat]) -> str:
    if not stats:
        return ""
    width = max([len("Name")] + [len(s.name) for s in stats]) + 2
    rows = [f"{'Name'.ljust(width)}Disk Usage", f"{'----'.ljust(width)}----------"]
    rows.extend(f"{s.name.ljust(width)}{s.disk:g}%" for s in stats)
    return (
        "\nWARNING: Some appliances have very little space available\n\n"
        + "\n".join(rows)
        + "\n\nUpgrading requires the upload and decompression of big images.\n"
        "To avoid problems during the upgrade process it's recommended to\n"
        "increase the space on those appliances.\n"
    )


def peer_interface_warning_message(appliances: Sequence[Appliance]) -> str:
    if not appliances:
        return ""
    if len(appliances) == 1:
        subject = "controller is"
    else:
        subject = "controllers are"
    names = "\n".join(f"  - {a.name}" for a in appliances)
    return (
        "\nVersion 5.4 and later are designed to operate with the admin port (default 8443)\n"
        "separate from the deprecated peer port (set to 443).\n"
        "It is recommended to switch to port 8443 before continuing\n"
        f"The following {subject} still configured without the Admin/API TLS Connection:\n\n"
        f"{names}\n"
    )


def autoscaling_warning_message(
    template: Optional[Appliance], gateways: Sequence[Appliance]
) -> str:
    out = ""
    if template is not None:
        out += f"\n\nThere is an auto-scale template configured: {template.name}\n\n"
    if gateways:
        noun = "gateway" if len(gateways) == 1 else "gateways"
        names = "\n".join(f"  - {g.name}" for g in gateways)
        out += (
            f"\nFound {len(gateways)} auto-scaled {noun} running version < 16:\n\n"
            f"{names}\n\n"
            "Make sure that the health check for those auto-scaled gateways is disabled.\n"
            "Not disabling the health checks in those auto-scaled gateways could cause them "
            "to be deleted, breaking all the connections established with them.\n"
        )
    return out


def should_disable_controller(from_version: Version, to_version: Version) -> bool:
    """True when upgrading from a pre-5.4 release across a major or minor version."""
    if from_version < _ADMIN_INTERFACE_VERSION:
        return from_version.major < to_version.major or from_version.minor < to_version.minor
    return False

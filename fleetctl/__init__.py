"""
fleetctl.

Orchestrate upgrades and backups across a fleet of network appliances
through the Appliance Control admin API.
"""

from __future__ import annotations

__version__ = "1.0.0"

from .appliance import ApplianceAPI
from .backup import BackupOptions, BackupOrchestrator, BackupResult, prepare_backup
from .config import Config, load_config, save_config
from .errors import (
    AggregateError,
    ConflictError,
    FleetClientError,
    FleetError,
    PermanentError,
    PreconditionError,
    TopologyError,
    ValidationError,
    WaitTimeoutError,
)
from .filters import FilterSpec, filter_appliances, parse_filter_flags
from .functions import filter_available, find_current_controller, find_primary_controller
from .models import Appliance, ApplianceStat, BackupRecord, UpgradeState, UpgradeStatus
from .scheduler import appliance_group_hash, chunk_appliance_group, plan_rollout, split_appliances_by_group
from .upgrade import UpgradeDriver, UpgradeReport
from .waiters import ApplianceStateWaiter, UpgradeStatusWaiter

__all__ = [
    "__version__",
    "AggregateError",
    "Appliance",
    "ApplianceAPI",
    "ApplianceStat",
    "ApplianceStateWaiter",
    "BackupOptions",
    "BackupOrchestrator",
    "BackupRecord",
    "BackupResult",
    "Config",
    "ConflictError",
    "FilterSpec",
    "FleetClientError",
    "FleetError",
    "PermanentError",
    "PreconditionError",
    "TopologyError",
    "UpgradeDriver",
    "UpgradeReport",
    "UpgradeState",
    "UpgradeStatus",
    "UpgradeStatusWaiter",
    "ValidationError",
    "WaitTimeoutError",
    "appliance_group_hash",
    "chunk_appliance_group",
    "filter_appliances",
    "filter_available",
    "find_current_controller",
    "find_primary_controller",
    "load_config",
    "parse_filter_flags",
    "plan_rollout",
    "prepare_backup",
    "save_config",
    "split_appliances_by_group",
]

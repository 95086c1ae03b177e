"""Concurrent appliance backups.

For every selected online appliance the orchestrator runs, independently of
the others: initiate the backup, poll its status until ``done``, stream the
artifact to ``<destination>/fleetctl_backup_<name>_<timestamp>.bkp``.  A
failing appliance never stops its siblings; :meth:`BackupOrchestrator.run`
returns the completed backups together with an aggregate of the failures.

Remote copies are only deleted by :meth:`BackupOrchestrator.cleanup`, which
the caller invokes after ``run`` has written (and fsynced) the local files.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .appliance import ApplianceAPI
from .backoff import BACKUP_STATUS_BACKOFF, ExponentialBackOff, retry
from .config import Config, is_on_appliance
from .errors import (
    AggregateError,
    FleetClientError,
    FleetError,
    PermanentError,
    PreconditionError,
    TopologyError,
)
from .filters import DEFAULT_COMMAND_FILTER, FILTER_DELIMITER, FilterSpec, filter_appliances
from .functions import filter_available, find_current_controller, find_primary_controller
from .models import (
    FUNCTION_CONTROLLER,
    FUNCTION_LOGSERVER,
    FUNCTION_PORTAL,
    Appliance,
    ApplianceStat,
    BackupRecord,
    BackupState,
)
from .tasks import gather_settled

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DESTINATION = str(Path.home() / "Downloads" / "fleetctl" / "backup")
DEFAULT_BACKUP_TIMEOUT = 30 * 60.0

# Only these functions hold state worth backing up.
BACKUP_FUNCTIONS = (FUNCTION_CONTROLLER, FUNCTION_LOGSERVER, FUNCTION_PORTAL)


@dataclass
class BackupOptions:
    destination: str = DEFAULT_BACKUP_DESTINATION
    include_audit: bool = False
    include_logs: bool = False
    all: bool = False
    primary: bool = False
    current: bool = False
    filter_spec: FilterSpec = DEFAULT_COMMAND_FILTER
    names: Tuple[str, ...] = ()
    no_interactive: bool = False
    timeout: float = DEFAULT_BACKUP_TIMEOUT


@dataclass
class BackupResult:
    """Outcome of :meth:`BackupOrchestrator.backup`.

    ``backup_ids`` maps appliance id to remote backup id for every backup
    written locally; ``error`` aggregates the failed appliances.
    """

    backup_ids: Dict[str, str] = field(default_factory=dict)
    records: List[BackupRecord] = field(default_factory=list)
    error: Optional[AggregateError] = None


def prepare_backup(options: BackupOptions) -> str:
    """Validate the environment and create the destination directory (mode 0700)."""
    logger.info("Preparing backup to %s", options.destination)
    if is_on_appliance():
        raise PreconditionError("This should not be executed on an appliance")
    destination = Path(options.destination).expanduser().resolve()
    destination.mkdir(mode=0o700, parents=True, exist_ok=True)
    options.destination = str(destination)
    return options.destination


def backup_candidates(appliances: Sequence[Appliance]) -> List[Appliance]:
    """Appliances running a function that holds state worth backing up."""
    spec = FilterSpec.from_dict({"include": {"function": FILTER_DELIMITER.join(BACKUP_FUNCTIONS)}})
    return filter_appliances(appliances, spec)


def backup_filename(appliance: Appliance, now: datetime) -> str:
    name = appliance.name.replace(" ", "_")
    return f"fleetctl_backup_{name}_{now:%Y%m%d_%H%M%S}.bkp"


def backup_summary(destination: str, appliances: Sequence[Appliance]) -> str:
    lines = ["", "Will perform backup on the following appliances:"]
    lines.extend(f" - {a.name}" for a in appliances)
    lines.extend(["", f"Backup destination is {destination}", ""])
    return "\n".join(lines)


class BackupOrchestrator:
    """Select appliances, back them up concurrently and clean up remote copies.

    Args:
        api: Appliance Control API wrapper.
        config: CLI configuration; its hostname identifies the primary and
            current controller.
        options: What to back up and where.
        confirm: Interactive yes/no prompt. ``None`` disables prompting.
        passphrase: Prompt for the backup encryption passphrase.
        select: Interactive multi-select used when no appliance matched.
    """

    def __init__(
        self,
        api: ApplianceAPI,
        config: Config,
        options: BackupOptions,
        confirm: Optional[Callable[[str], bool]] = None,
        passphrase: Optional[Callable[[str], str]] = None,
        select: Optional[Callable[[List[Appliance]], List[Appliance]]] = None,
        policy: ExponentialBackOff = BACKUP_STATUS_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.api = api
        self.config = config
        self.options = options
        self._confirm = confirm
        self._passphrase = passphrase
        self._select = select
        self.policy = policy
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self.diagnostics: List[BaseException] = []

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    async def ensure_backup_enabled(self) -> None:
        """Fail fast unless the backup API is enabled on the collective.

        In interactive mode the user is offered to enable it.
        """
        no_interactive = self.options.no_interactive
        try:
            settings = await self.api.get_global_settings()
        except FleetClientError as exc:
            if no_interactive:
                raise PreconditionError(
                    "Backup failed due to error while --no-interactive flag is set"
                ) from exc
            raise PreconditionError(f"Failed to determine backup option: {exc}") from exc

        if settings.backup_api_enabled:
            return

        if not no_interactive and self._confirm is not None:
            logger.warning("Backup API is disabled on the appliance.")
            if self._confirm("Backup API is disabled on the appliance. Do you want to enable it now?"):
                if self._passphrase is None:
                    raise PreconditionError("A passphrase is required to enable the backup API")
                secret = self._passphrase(
                    "The passphrase to encrypt Appliance Backups when backup API is used:"
                )
                await self.api.set_global_backup_setting(True, secret)
                settings = await self.api.get_global_settings()
                if settings.backup_api_enabled:
                    return

        if no_interactive:
            raise PreconditionError(
                "Using '--no-interactive' flag while backup API is disabled. "
                "Use the 'fleetctl appliance backup-api' command to enable it before trying again."
            )
        raise PreconditionError(
            "Backup API is disabled in the collective. "
            "Use the 'fleetctl appliance backup-api' command to enable it."
        )

    def select_targets(self, appliances: Sequence[Appliance]) -> List[Appliance]:
        """Apply the ``all``/``primary``/``current``/names/filter options."""
        opts = self.options
        if opts.all:
            return list(appliances)

        spec = opts.filter_spec
        hostname = self.config.hostname
        if opts.primary or opts.no_interactive:
            try:
                primary = find_primary_controller(appliances, hostname)
            except TopologyError as exc:
                logger.warning("failed to determine primary controller: %s", exc)
            else:
                spec = spec.with_ids([primary.id])
        if opts.current:
            try:
                current = find_current_controller(appliances, hostname)
            except TopologyError as exc:
                logger.warning("failed to determine current controller: %s", exc)
            else:
                spec = spec.with_ids([current.id])
        if opts.names:
            spec = spec.with_names(opts.names)

        if spec.is_empty():
            selected: List[Appliance] = []
        else:
            selected = filter_appliances(appliances, spec)

        if not selected and self._select is not None and not opts.no_interactive:
            selected = self._select(backup_candidates(appliances))
            logger.info("selected appliances for backup: %s", [a.name for a in selected])
        return selected

    def exclude_offline(
        self, targets: Sequence[Appliance], stats: Sequence[ApplianceStat]
    ) -> List[Appliance]:
        online, offline, severe = filter_available(targets, stats)
        for appliance in offline:
            logger.info("[%s] Skipping appliance. Appliance is offline.", appliance.name)
        if severe is not None:
            for err in severe.errors:
                logger.error("%s", err)
            self.diagnostics.extend(severe.errors)
        return online

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _poll_status(self, appliance: Appliance, backup_id: str) -> None:
        status = await self.api.get_backup_status(appliance.id, backup_id)
        if status == BackupState.FAILED.value:
            raise PermanentError(f"Backup failed for appliance {appliance.name}")
        if status != BackupState.DONE.value:
            raise FleetError(f"Backup not done for appliance {appliance.id}, got {status}")

    async def _download(self, appliance: Appliance, backup_id: str, destination: Path) -> None:
        partial = destination.with_name(destination.name + ".part")
        try:
            async with self.api.download_backup(appliance.id, backup_id) as chunks:
                with open(partial, "wb") as out:
                    async for chunk in chunks:
                        out.write(chunk)
                    out.flush()
                    os.fsync(out.fileno())
            os.replace(partial, destination)
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise

    async def _backup_one(self, appliance: Appliance, deadline: Optional[float]) -> BackupRecord:
        record = BackupRecord(appliance_id=appliance.id)
        try:
            record.backup_id = await self.api.initiate_backup(
                appliance.id,
                audit=self.options.include_audit,
                logs=self.options.include_logs,
            )
            await retry(
                lambda: self._poll_status(appliance, record.backup_id),
                self.policy,
                deadline=deadline,
                sleep=self._sleep,
                clock=self._clock,
            )
            destination = Path(self.options.destination) / backup_filename(appliance, self._now())
            await self._download(appliance, record.backup_id, destination)
        except FleetError as exc:
            record.status = BackupState.FAILED.value
            raise FleetError(f"could not backup {appliance.name}: {exc}") from exc
        except OSError as exc:
            record.status = BackupState.FAILED.value
            raise FleetError(f"could not write backup of {appliance.name}: {exc}") from exc
        except Exception as exc:
            record.status = BackupState.FAILED.value
            raise FleetError(f"could not backup {appliance.name}: {exc}") from exc
        record.destination = str(destination)
        record.status = BackupState.DONE.value
        logger.info("[%s] Wrote backup file %s", appliance.name, destination)
        return record

    async def backup(self, targets: Sequence[Appliance], deadline: Optional[float] = None) -> BackupResult:
        """Back up *targets* concurrently; failures are isolated per appliance."""
        outcomes = await gather_settled(self._backup_one(a, deadline) for a in targets)
        result = BackupResult()
        errors = []
        for appliance, (record, err) in zip(targets, outcomes):
            if err is not None:
                logger.error("%s", err)
                errors.append(err)
                continue
            result.records.append(record)
            result.backup_ids[appliance.id] = record.backup_id
        result.error = AggregateError.from_errors(errors)
        return result

    async def run(self) -> BackupResult:
        """Full flow: pre-flight, selection, offline exclusion and backup."""
        await self.ensure_backup_enabled()
        deadline = self._clock() + self.options.timeout

        appliances = await self.api.list_appliances()
        targets = self.select_targets(appliances)
        stats = await self.api.get_stats()
        targets = self.exclude_offline(targets, stats)
        if not targets:
            raise PreconditionError(
                "No appliances to backup. Either no appliance was selected "
                "or the selected appliances are offline."
            )
        logger.info(backup_summary(self.options.destination, targets))
        return await self.backup(targets, deadline=deadline)

    async def cleanup(self, backup_ids: Dict[str, str]) -> None:
        """Delete the remote copies of completed backups.

        Raises:
            PreconditionError: when nothing was backed up.
            AggregateError: when some remote copies could not be deleted.
        """
        if not backup_ids:
            raise PreconditionError(
                "Command finished, but no appliances were backed up. See log for more details"
            )
        logger.info("Cleaning up backups %s", backup_ids)
        items = list(backup_ids.items())
        outcomes = await gather_settled(
            self.api.delete_backup(appliance_id, backup_id) for appliance_id, backup_id in items
        )
        errors = []
        for (appliance_id, backup_id), (_, err) in zip(items, outcomes):
            if err is not None:
                logger.warning("failed to delete backup %s on %s: %s", backup_id, appliance_id, err)
                errors.append(err)
        aggregate = AggregateError.from_errors(errors)
        if aggregate is not None:
            raise aggregate
        logger.info("Finished cleanup")

"""Drive prepare/complete/cancel upgrade calls across the fleet.

``complete`` upgrades the primary controller first, then the remaining
controllers one at a time, then the rest of the fleet in the chunks computed
by :func:`fleetctl.scheduler.plan_rollout`.  A chunk is finished (every
appliance upgraded or recorded as failed) before the next one is started.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from packaging.version import InvalidVersion

from .appliance import ApplianceAPI
from .checks import should_disable_controller
from .errors import AggregateError, FleetError
from .functions import appliance_version, parse_version, split_controllers
from .models import Appliance, ApplianceStat, UpgradeState
from .scheduler import DEFAULT_CHUNK_SIZE, appliance_group_description, plan_rollout
from .tasks import gather_settled
from .waiters import WaitForApplianceState, WaitForUpgradeStatus

logger = logging.getLogger(__name__)

APPLIANCE_READY = "appliance_ready"


@dataclass
class UpgradeReport:
    """Per-appliance outcome of a driver operation."""

    succeeded: List[Appliance] = field(default_factory=list)
    failed: Dict[str, BaseException] = field(default_factory=dict)
    skipped: List[Appliance] = field(default_factory=list)

    def fail(self, appliance: Appliance, err: BaseException) -> None:
        # A single-appliance wait reports through a one-element aggregate.
        if isinstance(err, AggregateError) and len(err) == 1:
            err = err.errors[0]
        logger.error("[%s] %s", appliance.name, err)
        previous = self.failed.get(appliance.id)
        if previous is not None:
            err = AggregateError.from_errors([previous, err])
        self.failed[appliance.id] = err
        self.succeeded = [a for a in self.succeeded if a.id != appliance.id]

    @property
    def error(self) -> Optional[AggregateError]:
        return AggregateError.from_errors(self.failed.values())

    def to_dict(self) -> Dict[str, object]:
        return {
            "succeeded": [a.id for a in self.succeeded],
            "failed": {k: str(v) for k, v in self.failed.items()},
            "skipped": [a.id for a in self.skipped],
        }


class UpgradeDriver:
    """Issue upgrade calls and wait for convergence, chunk by chunk."""

    def __init__(
        self,
        api: ApplianceAPI,
        upgrade_waiter: WaitForUpgradeStatus,
        state_waiter: WaitForApplianceState,
    ):
        self.api = api
        self.upgrade_waiter = upgrade_waiter
        self.state_waiter = state_waiter

    async def _wait_each(
        self,
        appliances: Sequence[Appliance],
        desired,
        report: UpgradeReport,
        undesired=None,
        deadline: Optional[float] = None,
    ) -> List[Appliance]:
        """Wait for every appliance separately; return the ones that converged."""
        outcomes = await gather_settled(
            self.upgrade_waiter.wait([a], desired, undesired, deadline) for a in appliances
        )
        ok: List[Appliance] = []
        for appliance, (_, err) in zip(appliances, outcomes):
            if err is None:
                ok.append(appliance)
            else:
                report.fail(appliance, err)
        return ok

    async def prepare(
        self,
        appliances: Sequence[Appliance],
        image_url: str,
        dev_keyring: bool = False,
        deadline: Optional[float] = None,
    ) -> UpgradeReport:
        """Start the image download everywhere, then wait for ``ready``."""
        report = UpgradeReport()
        outcomes = await gather_settled(
            self.api.prepare_upgrade(a.id, image_url, dev_keyring) for a in appliances
        )
        started: List[Appliance] = []
        for appliance, (_, err) in zip(appliances, outcomes):
            if err is None:
                logger.info("[%s] prepare upgrade started", appliance.name)
                started.append(appliance)
            else:
                report.fail(appliance, err)

        report.succeeded = await self._wait_each(
            started,
            UpgradeState.READY.value,
            report,
            deadline=deadline,
        )
        return report

    async def _run_chunk(
        self,
        chunk: Sequence[Appliance],
        report: UpgradeReport,
        switch_partition: bool,
        deadline: Optional[float],
    ) -> bool:
        logger.info(
            "upgrading %s (%s)",
            ", ".join(a.name for a in chunk),
            appliance_group_description(chunk),
        )
        outcomes = await gather_settled(
            self.api.complete_upgrade(a.id, switch_partition) for a in chunk
        )
        started: List[Appliance] = []
        for appliance, (_, err) in zip(chunk, outcomes):
            if err is None:
                started.append(appliance)
            else:
                report.fail(appliance, err)

        upgraded = await self._wait_each(
            started,
            (UpgradeState.IDLE.value, UpgradeState.SUCCESS.value),
            report,
            deadline=deadline,
        )
        if upgraded:
            try:
                await self.state_waiter.wait_for_state(upgraded, APPLIANCE_READY, deadline)
            except FleetError as exc:
                for appliance in upgraded:
                    report.fail(appliance, exc)
                return False
            report.succeeded.extend(upgraded)
        return len(upgraded) == len(chunk)

    def plan(
        self,
        appliances: Sequence[Appliance],
        primary: Optional[Appliance],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Tuple[Optional[List[Appliance]], List[List[Appliance]]]:
        """Return the primary stage (if the primary is selected) and the ordered remaining stages."""
        ids = {a.id for a in appliances}
        if primary is None:
            controllers = [a for a in appliances if a.is_controller]
            others = [a for a in appliances if not a.is_controller]
            head = None
        else:
            controllers, others = split_controllers(appliances, primary)
            head = [primary] if primary.id in ids else None
        stages = [[c] for c in sorted(controllers, key=lambda a: a.name)]
        stages.extend(plan_rollout(others, chunk_size))
        return head, stages

    async def controllers_to_disable(
        self,
        primary: Appliance,
        controllers: Sequence[Appliance],
        stats: Sequence[ApplianceStat],
    ) -> List[Appliance]:
        """Controllers to switch off while the primary crosses a major or minor version from below 5.4.

        The target version is read from the image name the primary was prepared with.
        """
        if not controllers:
            return []
        try:
            current = appliance_version(primary, stats)
            status = await self.api.get_upgrade_status(primary.id)
            target = parse_version(status.details)
        except (FleetError, InvalidVersion) as exc:
            logger.warning("could not compare controller versions: %s", exc)
            return []
        if should_disable_controller(current, target):
            logger.info("upgrading %s to %s requires disabling the other controllers", current, target)
            return list(controllers)
        return []

    async def _set_controllers(
        self, controllers: Sequence[Appliance], enabled: bool, report: UpgradeReport
    ) -> List[Appliance]:
        """Enable or disable the controller function; return the appliances that changed."""
        toggle = self.api.enable_controller if enabled else self.api.disable_controller
        outcomes = await gather_settled(toggle(a.id) for a in controllers)
        changed: List[Appliance] = []
        for appliance, (_, err) in zip(controllers, outcomes):
            if err is None:
                logger.info("[%s] controller %s", appliance.name, "enabled" if enabled else "disabled")
                changed.append(appliance)
            else:
                report.fail(appliance, err)
        return changed

    async def complete(
        self,
        appliances: Sequence[Appliance],
        primary: Optional[Appliance],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        switch_partition: bool = False,
        deadline: Optional[float] = None,
        stats: Optional[Sequence[ApplianceStat]] = None,
    ) -> UpgradeReport:
        """Complete the upgrade on *appliances*.

        A failing chunk is recorded and the next chunk still runs, except
        when the primary controller fails: then nothing else is touched and
        the remaining appliances are reported as skipped.

        With *stats*, controllers that must not run next to an upgraded
        primary (see :func:`fleetctl.checks.should_disable_controller`) are
        disabled first and enabled again once the controllers are done, or
        when the run stops early.
        """
        report = UpgradeReport()
        head, stages = self.plan(appliances, primary, chunk_size)

        disabled: List[Appliance] = []
        if head is not None and stats is not None:
            controllers = [a for stage in stages for a in stage if a.is_controller]
            wanted = await self.controllers_to_disable(head[0], controllers, stats)
            disabled = await self._set_controllers(wanted, False, report)
            if len(disabled) != len(wanted):
                report.skipped = [
                    a for a in head + [a for stage in stages for a in stage] if a.id not in report.failed
                ]
                logger.error("could not disable every controller, skipping the upgrade")
                await self._set_controllers(disabled, True, report)
                return report

        try:
            if head is not None:
                if not await self._run_chunk(head, report, switch_partition, deadline):
                    report.skipped = [a for stage in stages for a in stage]
                    logger.error(
                        "primary controller upgrade failed, skipping %d appliances",
                        len(report.skipped),
                    )
                    return report

            for i, stage in enumerate(stages, start=1):
                if disabled and not any(a.is_controller for a in stage):
                    await self._set_controllers(disabled, True, report)
                    disabled = []
                logger.info("chunk %d/%d", i, len(stages))
                await self._run_chunk(stage, report, switch_partition, deadline)
        finally:
            if disabled:
                await self._set_controllers(disabled, True, report)
        return report

    async def cancel(self, appliances: Sequence[Appliance]) -> UpgradeReport:
        report = UpgradeReport()
        outcomes = await gather_settled(self.api.cancel_upgrade(a.id) for a in appliances)
        for appliance, (_, err) in zip(appliances, outcomes):
            if err is None:
                logger.info("[%s] upgrade cancelled", appliance.name)
                report.succeeded.append(appliance)
            else:
                report.fail(appliance, err)
        return report

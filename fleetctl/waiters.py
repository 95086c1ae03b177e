"""Wait for appliances to converge on an upgrade status or a lifecycle state.

Both waiters poll the remote API with :func:`fleetctl.backoff.retry`.
:class:`UpgradeStatusWaiter` runs one polling loop per appliance and lets
every loop finish, so a stuck appliance never hides the outcome of the
others.  :class:`ApplianceStateWaiter` polls the fleet-wide stats endpoint
and succeeds only when every target reports the state in the same snapshot.

They are chosen once and handed to :class:`fleetctl.upgrade.UpgradeDriver`;
tests substitute anything implementing :class:`WaitForUpgradeStatus` /
:class:`WaitForApplianceState`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Collection, Optional, Protocol, Sequence, Union

from .appliance import ApplianceAPI
from .backoff import APPLIANCE_STATE_BACKOFF, UPGRADE_STATUS_BACKOFF, ExponentialBackOff, retry
from .errors import AggregateError, FleetError, PermanentError
from .models import Appliance, UpgradeState, UpgradeStatus
from .tasks import gather_settled

logger = logging.getLogger(__name__)

Statuses = Union[str, Collection[str]]

# Delay before the first fleet-state poll so a just-issued transition is visible.
DEFAULT_SETTLE_DELAY = 5.0


def _as_set(statuses: Optional[Statuses]) -> frozenset:
    if statuses is None:
        return frozenset()
    if isinstance(statuses, str):
        statuses = [statuses]
    return frozenset(s.value if isinstance(s, UpgradeState) else str(s) for s in statuses)


class WaitForUpgradeStatus(Protocol):
    async def wait(
        self,
        appliances: Sequence[Appliance],
        desired: Statuses,
        undesired: Optional[Statuses] = None,
        deadline: Optional[float] = None,
    ) -> None: ...


class WaitForApplianceState(Protocol):
    async def wait_for_state(
        self,
        appliances: Sequence[Appliance],
        expected_state: str,
        deadline: Optional[float] = None,
    ) -> None: ...


class UpgradeStatusWaiter:
    """Poll ``GET /appliances/{id}/upgrade`` until each appliance reaches a desired status."""

    def __init__(
        self,
        api: ApplianceAPI,
        policy: ExponentialBackOff = UPGRADE_STATUS_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    async def _poll(
        self,
        appliance: Appliance,
        desired: frozenset,
        undesired: frozenset,
    ) -> UpgradeStatus:
        status = await self.api.get_upgrade_status(appliance.id)
        if status.status == UpgradeState.FAILED.value:
            logger.error("[%s] %s", appliance.name, status.details)
            raise PermanentError(f"Upgrade failed on {appliance.name} - {status.details}")
        if status.status in undesired:
            raise PermanentError(
                f"{appliance.name} reached undesired status {status.status!r} {status.details}"
            )
        logger.info(
            "[%s] upgrade status %r %s waiting for %s",
            appliance.name,
            status.status,
            status.details,
            ", ".join(sorted(desired)),
        )
        if status.status in desired:
            return status
        raise FleetError(
            f"{appliance.name} never reached {', '.join(sorted(desired))}, "
            f"got {status.status!r} {status.details}"
        )

    async def wait_one(
        self,
        appliance: Appliance,
        desired: Statuses,
        undesired: Optional[Statuses] = None,
        deadline: Optional[float] = None,
    ) -> UpgradeStatus:
        wanted = _as_set(desired)
        unwanted = _as_set(undesired)
        return await retry(
            lambda: self._poll(appliance, wanted, unwanted),
            self.policy,
            deadline=deadline,
            sleep=self._sleep,
            clock=self._clock,
        )

    async def wait(
        self,
        appliances: Sequence[Appliance],
        desired: Statuses,
        undesired: Optional[Statuses] = None,
        deadline: Optional[float] = None,
    ) -> None:
        """Wait for every appliance independently.

        Raises:
            AggregateError: holding one error per appliance that failed,
                timed out or reported ``failed``.
        """
        outcomes = await gather_settled(
            self.wait_one(a, desired, undesired, deadline) for a in appliances
        )
        errors = []
        for appliance, (_, err) in zip(appliances, outcomes):
            if err is not None:
                logger.warning("[%s] never got %s: %s", appliance.name, desired, err)
                errors.append(err)
        aggregate = AggregateError.from_errors(errors)
        if aggregate is not None:
            raise aggregate


class ApplianceStateWaiter:
    """Poll ``GET /stats/appliances`` until all targets report the expected state."""

    def __init__(
        self,
        api: ApplianceAPI,
        policy: ExponentialBackOff = APPLIANCE_STATE_BACKOFF,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.policy = policy
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._clock = clock

    async def _poll(self, targets: frozenset, expected_state: str) -> None:
        stats = await self.api.get_stats()
        matched = set()
        for stat in stats:
            if stat.id not in targets:
                continue
            logger.info(
                "[%s] got status %s state %r expects %r",
                stat.name,
                stat.status,
                stat.state,
                expected_state,
            )
            if stat.state == expected_state:
                matched.add(stat.id)
        if matched == targets:
            logger.info("reached desired %r on %d appliances", expected_state, len(targets))
            return
        raise FleetError(
            f"never reached expected state {expected_state} "
            f"({len(matched)}/{len(targets)} appliances)"
        )

    async def wait_for_state(
        self,
        appliances: Sequence[Appliance],
        expected_state: str,
        deadline: Optional[float] = None,
    ) -> None:
        targets = frozenset(a.id for a in appliances)
        if not targets:
            return
        if self.settle_delay > 0:
            await self._sleep(self.settle_delay)
        await retry(
            lambda: self._poll(targets, expected_state),
            self.policy,
            deadline=deadline,
            sleep=self._sleep,
            clock=self._clock,
        )

"""Tests for the upgrade driver (fleetctl.upgrade)."""

from __future__ import annotations

import asyncio

import pytest

from fleetctl.errors import AggregateError, ConflictError, PermanentError, WaitTimeoutError
from fleetctl.upgrade import UpgradeDriver, UpgradeReport
from fleetctl.waiters import ApplianceStateWaiter, UpgradeStatusWaiter
from fleetctl.models import ApplianceStat
from helpers import FakeApplianceAPI, FakeClock, make_appliance


class _RecordingUpgradeWaiter:
    def __init__(self, events, failing=()):
        self.events = events
        self.failing = set(failing)

    async def wait(self, appliances, desired, undesired=None, deadline=None):
        await asyncio.sleep(0)
        ids = [a.id for a in appliances]
        self.events.append(("wait", ids, desired))
        bad = [a for a in appliances if a.id in self.failing]
        if bad:
            raise AggregateError([PermanentError(f"Upgrade failed on {a.name}") for a in bad])


class _RecordingStateWaiter:
    def __init__(self, events, fail=False):
        self.events = events
        self.fail = fail

    async def wait_for_state(self, appliances, expected_state, deadline=None):
        self.events.append(("state", sorted(a.id for a in appliances), expected_state))
        if self.fail:
            raise WaitTimeoutError("never reached expected state")


@pytest.fixture
def fleet():
    return [
        make_appliance("c1", functions=["controller"], admin_hostname="ctrl.example.com"),
        make_appliance("c2", functions=["controller"]),
        make_appliance("g1", functions=["gateway"], site="s1"),
        make_appliance("g2", functions=["gateway"], site="s1"),
        make_appliance("p1", functions=["portal"], site="s1"),
        make_appliance("p2", functions=["portal"], site="s1"),
    ]


def _driver(fleet, failing=(), state_fail=False):
    events = []
    api = FakeApplianceAPI(fleet)
    driver = UpgradeDriver(
        api,
        _RecordingUpgradeWaiter(events, failing),
        _RecordingStateWaiter(events, state_fail),
    )
    return driver, api, events


class TestPlan:
    def test_primary_then_controllers_then_chunks(self, fleet):
        driver, _, _ = _driver(fleet)
        head, stages = driver.plan(fleet, fleet[0], chunk_size=2)
        assert [a.id for a in head] == ["c1"]
        assert [a.id for a in stages[0]] == ["c2"]
        rest = [sorted(a.id for a in s) for s in stages[1:]]
        assert rest == [["g2", "p2"], ["g1", "p1"]] or rest == [["g1", "p1"], ["g2", "p2"]]

    def test_primary_not_selected(self, fleet):
        driver, _, _ = _driver(fleet)
        head, stages = driver.plan(fleet[2:], fleet[0])
        assert head is None
        assert sorted(a.id for s in stages for a in s) == ["g1", "g2", "p1", "p2"]


class TestComplete:
    def test_chunks_run_sequentially(self, fleet):
        driver, api, events = _driver(fleet)

        report = asyncio.run(driver.complete(fleet, fleet[0], chunk_size=2))

        assert report.error is None
        assert sorted(a.id for a in report.succeeded) == ["c1", "c2", "g1", "g2", "p1", "p2"]
        state_events = [e for e in events if e[0] == "state"]
        assert [e[1] for e in state_events][:2] == [["c1"], ["c2"]]
        assert len(state_events) == 4
        # Every chunk's waits and state check finish before the next chunk starts.
        completes = api.called("complete_upgrade")
        assert completes[:2] == ["c1", "c2"]
        for i, event in enumerate(events):
            if event[0] == "state":
                later_waits = [e for e in events[i + 1 :] if e[0] == "wait"]
                assert not any(set(e[1]) & set(event[1]) for e in later_waits)

    def test_failing_chunk_does_not_stop_the_rest(self, fleet):
        driver, api, _ = _driver(fleet, failing={"g1"})

        report = asyncio.run(driver.complete(fleet, fleet[0]))

        assert set(report.failed) == {"g1"}
        assert isinstance(report.failed["g1"], PermanentError)
        assert sorted(api.called("complete_upgrade")) == ["c1", "c2", "g1", "g2", "p1", "p2"]
        assert len(report.error) == 1

    def test_primary_failure_skips_everything_else(self, fleet):
        driver, api, _ = _driver(fleet, failing={"c1"})

        report = asyncio.run(driver.complete(fleet, fleet[0]))

        assert api.called("complete_upgrade") == ["c1"]
        assert sorted(a.id for a in report.skipped) == ["c2", "g1", "g2", "p1", "p2"]
        assert list(report.failed) == ["c1"]

    def test_state_timeout_fails_whole_chunk(self, fleet):
        driver, _, _ = _driver(fleet[2:4], state_fail=True)
        report = asyncio.run(driver.complete(fleet[2:4], None))
        assert set(report.failed) == {"g1", "g2"}
        assert report.succeeded == []

    def test_complete_call_error_is_recorded(self, fleet):
        driver, api, events = _driver(fleet[2:4])
        api.failures["complete_upgrade"] = {"g2": ConflictError("busy", 409)}
        report = asyncio.run(driver.complete(fleet[2:4], None))
        assert [a.id for a in report.succeeded] == ["g1"]
        assert isinstance(report.failed["g2"], ConflictError)


def _stats(primary_version):
    return [ApplianceStat(id="c1", name="c1", online=True, version=primary_version)]


class TestControllerDisable:
    def _upgrade(self, fleet, from_version, image, failing=()):
        driver, api, _ = _driver(fleet, failing=failing)
        api.upgrade_details["c1"] = image
        report = asyncio.run(driver.complete(fleet, fleet[0], stats=_stats(from_version)))
        return report, api

    def test_other_controllers_disabled_across_5_4(self, fleet):
        report, api = self._upgrade(fleet, "5.3.4+24950", "appgate-5.4.0-26000-release.img.zip")

        assert report.error is None
        assert api.called("disable_controller") == ["c2"]
        assert api.called("enable_controller") == ["c2"]
        order = [(c[0], c[1]) for c in api.calls if c[0] != "get_upgrade_status"]
        disable = order.index(("disable_controller", "c2"))
        enable = order.index(("enable_controller", "c2"))
        assert disable < order.index(("complete_upgrade", "c1"))
        assert order.index(("complete_upgrade", "c2")) < enable
        assert enable < order.index(("complete_upgrade", "g1"))

    def test_patch_release_keeps_controllers_enabled(self, fleet):
        report, api = self._upgrade(fleet, "5.3.4", "appgate-5.3.5-1-release.img.zip")
        assert report.error is None
        assert api.called("disable_controller") == []

    def test_unreadable_target_version_keeps_controllers_enabled(self, fleet):
        report, api = self._upgrade(fleet, "5.3.4", "")
        assert api.called("disable_controller") == []
        assert len(report.succeeded) == 6

    def test_primary_failure_re_enables_controllers(self, fleet):
        report, api = self._upgrade(
            fleet, "5.3.4", "appgate-6.0.0-1-release.img.zip", failing={"c1"}
        )
        assert api.called("complete_upgrade") == ["c1"]
        assert api.called("enable_controller") == ["c2"]
        assert "c2" in [a.id for a in report.skipped]

    def test_disable_failure_stops_before_upgrading(self, fleet):
        driver, api, _ = _driver(fleet)
        api.upgrade_details["c1"] = "appgate-5.4.0-1-release.img.zip"
        api.failures["disable_controller"] = {"c2": ConflictError("locked", 409)}

        report = asyncio.run(driver.complete(fleet, fleet[0], stats=_stats("5.3.4")))

        assert api.called("complete_upgrade") == []
        assert list(report.failed) == ["c2"]
        assert sorted(a.id for a in report.skipped) == ["c1", "g1", "g2", "p1", "p2"]

    def test_re_enable_failure_is_reported(self, fleet):
        driver, api, _ = _driver(fleet)
        api.upgrade_details["c1"] = "appgate-5.4.0-1-release.img.zip"
        api.failures["enable_controller"] = {"c2": ConflictError("locked", 409)}

        report = asyncio.run(driver.complete(fleet, fleet[0], stats=_stats("5.3.4")))

        assert isinstance(report.failed["c2"], ConflictError)
        assert "c2" not in [a.id for a in report.succeeded]


class TestReport:
    def test_second_failure_is_merged(self):
        a = make_appliance("a")
        report = UpgradeReport(succeeded=[a])
        report.fail(a, PermanentError("upgrade failed"))
        report.fail(a, ConflictError("locked", 409))
        assert report.succeeded == []
        assert [str(e) for e in report.failed["a"]] == ["upgrade failed", "locked"]


class TestPrepare:
    def test_conflict_reported_per_appliance(self, fleet):
        driver, api, events = _driver(fleet)
        api.failures["prepare_upgrade"] = {"g1": ConflictError("Upgrade in progress on g1", 409)}

        report = asyncio.run(driver.prepare(fleet, "https://img/appgate-6.2.1.img.zip"))

        assert "g1" in report.failed
        assert len(report.succeeded) == 5
        waited = sorted(e[1][0] for e in events if e[0] == "wait")
        assert waited == ["c1", "c2", "g2", "p1", "p2"]
        assert all(e[2] == "ready" for e in events if e[0] == "wait")

    def test_with_real_waiter(self):
        a = make_appliance("a")
        api = FakeApplianceAPI([a])
        api.upgrade_script["a"] = ["downloading", "verifying", "ready"]
        clock = FakeClock()
        driver = UpgradeDriver(
            api,
            UpgradeStatusWaiter(api, sleep=clock.sleep, clock=clock),
            ApplianceStateWaiter(api, sleep=clock.sleep, clock=clock),
        )
        report = asyncio.run(driver.prepare([a], "https://img"))
        assert report.succeeded == [a]
        assert report.error is None


class TestCancel:
    def test_cancel_aggregates(self, fleet):
        driver, api, _ = _driver(fleet)
        api.failures["cancel_upgrade"] = {"p1": ConflictError("nothing to cancel", 409)}
        report = asyncio.run(driver.cancel(fleet))
        assert len(report.succeeded) == 5
        assert report.to_dict()["failed"] == {"p1": "nothing to cancel"}


def test_complete_with_real_waiters():
    fleet = [make_appliance("g1", functions=["gateway"]), make_appliance("g2", functions=["gateway"])]
    api = FakeApplianceAPI(fleet)
    api.upgrade_script = {"g1": ["installing", "success"], "g2": ["idle"]}
    api.stats_script = [
        [ApplianceStat(id="g1", state="upgrading"), ApplianceStat(id="g2", state="appliance_ready")],
        [ApplianceStat(id="g1", state="appliance_ready"), ApplianceStat(id="g2", state="appliance_ready")],
    ]
    clock = FakeClock()
    driver = UpgradeDriver(
        api,
        UpgradeStatusWaiter(api, sleep=clock.sleep, clock=clock),
        ApplianceStateWaiter(api, sleep=clock.sleep, clock=clock),
    )
    report = asyncio.run(driver.complete(fleet, None, chunk_size=1))
    assert sorted(a.id for a in report.succeeded) == ["g1", "g2"]

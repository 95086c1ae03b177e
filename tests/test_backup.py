"""Tests for the backup orchestrator (fleetctl.backup)."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime

import pytest

from fleetctl import backup as backup_mod
from fleetctl.backup import (
    BackupOptions,
    BackupOrchestrator,
    backup_candidates,
    backup_filename,
    backup_summary,
    prepare_backup,
)
from fleetctl.config import Config
from fleetctl.errors import (
    AggregateError,
    ConflictError,
    FleetClientError,
    PreconditionError,
)
from fleetctl.filters import FilterSpec
from fleetctl.models import ApplianceStat, GlobalSettings
from helpers import FakeApplianceAPI, FakeClock, make_appliance

NOW = datetime(2024, 3, 1, 12, 30, 45)


@pytest.fixture
def fleet():
    return [
        make_appliance(
            "c1", "primary ctrl", functions=["controller"], admin_hostname="ctrl.example.com"
        ),
        make_appliance("c2", "second ctrl", functions=["controller"], hostname="ctrl2.local"),
        make_appliance("g1", "gateway one", functions=["gateway"]),
        make_appliance("p1", "portal one", functions=["portal"]),
    ]


@pytest.fixture
def api(fleet):
    return FakeApplianceAPI(fleet, [ApplianceStat(id=a.id, name=a.name, online=True) for a in fleet])


def _orchestrator(api, tmp_path, clock=None, **option_kwargs):
    option_kwargs.setdefault("destination", str(tmp_path))
    clock = clock or FakeClock()
    return BackupOrchestrator(
        api,
        Config(url="https://ctrl.example.com:8443/admin"),
        BackupOptions(**option_kwargs),
        sleep=clock.sleep,
        clock=clock,
        now=lambda: NOW,
    )


class TestPrepareBackup:
    def test_creates_private_directory(self, tmp_path, monkeypatch):
        monkeypatch.setattr(backup_mod, "is_on_appliance", lambda: False)
        target = tmp_path / "nested" / "backups"
        options = BackupOptions(destination=str(target))
        assert prepare_backup(options) == str(target.resolve())
        assert target.is_dir()
        assert (target.stat().st_mode & 0o777) == 0o700

    def test_refuses_on_appliance(self, tmp_path, monkeypatch):
        monkeypatch.setattr(backup_mod, "is_on_appliance", lambda: True)
        with pytest.raises(PreconditionError, match="appliance"):
            prepare_backup(BackupOptions(destination=str(tmp_path)))


class TestHelpers:
    def test_backup_filename(self):
        a = make_appliance("x", "my gateway 1")
        assert backup_filename(a, NOW) == "fleetctl_backup_my_gateway_1_20240301_123045.bkp"

    def test_candidates(self, fleet):
        assert [a.id for a in backup_candidates(fleet)] == ["p1", "c1", "c2"]

    def test_summary(self, fleet):
        text = backup_summary("/tmp/out", fleet[:2])
        assert " - primary ctrl" in text
        assert "Backup destination is /tmp/out" in text


class TestEnsureBackupEnabled:
    def test_enabled(self, api, tmp_path):
        asyncio.run(_orchestrator(api, tmp_path).ensure_backup_enabled())

    def test_disabled_non_interactive(self, api, tmp_path):
        api.settings = GlobalSettings(backup_api_enabled=False)
        orch = _orchestrator(api, tmp_path, no_interactive=True)
        with pytest.raises(PreconditionError, match="--no-interactive"):
            asyncio.run(orch.ensure_backup_enabled())

    def test_disabled_interactive_enables(self, api, tmp_path):
        api.settings = GlobalSettings(backup_api_enabled=False)
        orch = _orchestrator(api, tmp_path)
        orch._confirm = lambda message: True
        orch._passphrase = lambda message: "s3cret"

        asyncio.run(orch.ensure_backup_enabled())

        assert ("set_global_backup_setting", "", True, "s3cret") in api.calls

    def test_disabled_interactive_declined(self, api, tmp_path):
        api.settings = GlobalSettings(backup_api_enabled=False)
        orch = _orchestrator(api, tmp_path)
        orch._confirm = lambda message: False
        with pytest.raises(PreconditionError, match="disabled"):
            asyncio.run(orch.ensure_backup_enabled())

    def test_settings_error(self, api, tmp_path):
        api.failures["get_global_settings"] = {"": FleetClientError("forbidden", 403)}
        with pytest.raises(PreconditionError, match="Failed to determine backup option"):
            asyncio.run(_orchestrator(api, tmp_path).ensure_backup_enabled())


class TestSelectTargets:
    def test_all(self, fleet, api, tmp_path):
        assert len(_orchestrator(api, tmp_path, all=True).select_targets(fleet)) == 4

    def test_primary(self, fleet, api, tmp_path):
        targets = _orchestrator(api, tmp_path, primary=True).select_targets(fleet)
        assert [a.id for a in targets] == ["c1"]

    def test_no_interactive_implies_primary(self, fleet, api, tmp_path):
        targets = _orchestrator(api, tmp_path, no_interactive=True).select_targets(fleet)
        assert [a.id for a in targets] == ["c1"]

    def test_names_and_filter(self, fleet, api, tmp_path):
        spec = FilterSpec.from_dict({"include": {"function": "portal"}})
        orch = _orchestrator(api, tmp_path, names=("gateway one",), filter_spec=spec)
        assert [a.id for a in orch.select_targets(fleet)] == ["g1", "p1"]

    def test_interactive_select_when_nothing_matched(self, fleet, api, tmp_path):
        orch = _orchestrator(api, tmp_path)
        offered = []

        def select(candidates):
            offered.extend(candidates)
            return candidates[:1]

        orch._select = select
        assert [a.id for a in orch.select_targets(fleet)] == ["p1"]
        assert {a.id for a in offered} == {"c1", "c2", "p1"}

    def test_exclude_offline(self, fleet, api, tmp_path):
        orch = _orchestrator(api, tmp_path)
        stats = [
            ApplianceStat(id="c1", online=True),
            ApplianceStat(id="c2", online=False),
            ApplianceStat(id="g1", online=False),
        ]
        online = orch.exclude_offline(fleet[:3], stats)
        assert [a.id for a in online] == ["c1"]
        assert len(orch.diagnostics) == 1
        assert "second ctrl" in str(orch.diagnostics[0])


class TestRun:
    def test_backs_up_and_writes_files(self, api, tmp_path):
        api.backup_script["c1"] = ["processing", "processing", "done"]
        orch = _orchestrator(api, tmp_path, all=True)

        result = asyncio.run(orch.run())

        assert result.error is None
        assert result.backup_ids == {a: f"bkp-{a}" for a in ("c1", "c2", "g1", "p1")}
        path = tmp_path / "fleetctl_backup_primary_ctrl_20240301_123045.bkp"
        assert path.read_bytes() == b"backup-c1"
        assert not list(tmp_path.glob("*.part"))
        assert all(r.status == "done" for r in result.records)

    def test_partial_failure_is_isolated(self, api, tmp_path):
        api.failures["initiate_backup"] = {"g1": ConflictError("Backup already in progress", 409)}
        api.backup_script["p1"] = ["failed"]
        orch = _orchestrator(api, tmp_path, all=True)

        result = asyncio.run(orch.run())

        assert set(result.backup_ids) == {"c1", "c2"}
        assert isinstance(result.error, AggregateError)
        assert len(result.error) == 2
        assert isinstance(result.error.errors[0].__cause__, ConflictError)
        assert "portal one" in str(result.error)
        assert sorted(os.listdir(tmp_path)) == [
            "fleetctl_backup_primary_ctrl_20240301_123045.bkp",
            "fleetctl_backup_second_ctrl_20240301_123045.bkp",
        ]

    def test_unexpected_error_names_the_appliance(self, api, tmp_path):
        api.failures["download_backup"] = {"g1": ValueError("unexpected payload")}
        orch = _orchestrator(api, tmp_path, all=True)

        result = asyncio.run(orch.run())

        assert set(result.backup_ids) == {"c1", "c2", "p1"}
        assert len(result.error) == 1
        assert str(result.error.errors[0]) == "could not backup gateway one: unexpected payload"
        assert isinstance(result.error.errors[0].__cause__, ValueError)
        assert "g1" not in [r.appliance_id for r in result.records]

    def test_status_never_done_times_out(self, api, tmp_path):
        api.backup_script["g1"] = ["processing"]
        orch = _orchestrator(api, tmp_path, names=("gateway one",), timeout=60)

        result = asyncio.run(orch.run())

        assert result.backup_ids == {}
        assert "could not backup gateway one" in str(result.error)

    def test_no_online_targets_aborts_before_work(self, api, tmp_path):
        api.stats_script = [[ApplianceStat(id="g1", online=False)]]
        orch = _orchestrator(api, tmp_path, names=("gateway one",))
        with pytest.raises(PreconditionError, match="No appliances to backup"):
            asyncio.run(orch.run())
        assert api.called("initiate_backup") == []

    def test_backup_disabled_aborts_before_work(self, api, tmp_path):
        api.settings = GlobalSettings(backup_api_enabled=False)
        orch = _orchestrator(api, tmp_path, all=True, no_interactive=True)
        with pytest.raises(PreconditionError):
            asyncio.run(orch.run())
        assert api.called("list_appliances") == []


class TestCleanup:
    def test_deletes_each_backup(self, api, tmp_path):
        orch = _orchestrator(api, tmp_path)
        asyncio.run(orch.cleanup({"c1": "bkp-c1", "g1": "bkp-g1"}))
        assert sorted(api.called("delete_backup")) == ["c1", "g1"]

    def test_empty_ids(self, api, tmp_path):
        with pytest.raises(PreconditionError, match="no appliances were backed up"):
            asyncio.run(_orchestrator(api, tmp_path).cleanup({}))

    def test_failures_are_aggregated(self, api, tmp_path):
        api.failures["delete_backup"] = {"g1": FleetClientError("gone", 404)}
        orch = _orchestrator(api, tmp_path)
        with pytest.raises(AggregateError) as exc_info:
            asyncio.run(orch.cleanup({"c1": "bkp-c1", "g1": "bkp-g1"}))
        assert len(exc_info.value) == 1
        assert sorted(api.called("delete_backup")) == ["c1", "g1"]

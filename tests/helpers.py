"""Fakes and builders shared by the fleetctl tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fleetctl.appliance import UpgradeStatusResult
from fleetctl.models import Appliance, ApplianceStat, GlobalSettings, RepositoryFile, UpgradeStatus


def make_appliance(
    id: str,
    name: Optional[str] = None,
    functions=(),
    disabled=(),
    site: str = "",
    hostname: str = "",
    **kwargs,
) -> Appliance:
    fns = {fn: True for fn in functions}
    fns.update({fn: False for fn in disabled})
    return Appliance(
        id=id,
        name=name or id,
        hostname=hostname or f"{id}.example.com",
        site=site,
        functions=fns,
        **kwargs,
    )


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeApplianceAPI:
    """In-memory stand-in for :class:`fleetctl.appliance.ApplianceAPI`.

    Scripted responses are lists; each call consumes the first entry and the
    last one repeats.  ``failures`` maps a method name to ``{appliance_id:
    exception}``.
    """

    def __init__(self, appliances=(), stats=()):
        self.appliances: List[Appliance] = list(appliances)
        self.stats_script: List[List[ApplianceStat]] = [list(stats)]
        self.upgrade_script: Dict[str, List[str]] = {}
        self.upgrade_details: Dict[str, str] = {}
        self.backup_script: Dict[str, List[str]] = {}
        self.artifacts: Dict[str, bytes] = {}
        self.files: Dict[str, RepositoryFile] = {}
        self.settings = GlobalSettings(backup_api_enabled=True, raw={"backupApiEnabled": True})
        self.failures: Dict[str, Dict[str, Exception]] = {}
        self.calls: List[tuple] = []

    def _record(self, method: str, appliance_id: str = "", *args) -> None:
        self.calls.append((method, appliance_id) + args)
        err = self.failures.get(method, {}).get(appliance_id)
        if err is not None:
            raise err

    def called(self, method: str) -> List[str]:
        return [c[1] for c in self.calls if c[0] == method]

    @staticmethod
    def _next(script: List):
        return script.pop(0) if len(script) > 1 else script[0]

    async def list_appliances(self) -> List[Appliance]:
        self._record("list_appliances")
        return list(self.appliances)

    async def get_stats(self) -> List[ApplianceStat]:
        self._record("get_stats")
        return list(self._next(self.stats_script))

    async def get_upgrade_status(self, appliance_id: str) -> UpgradeStatus:
        self._record("get_upgrade_status", appliance_id)
        script = self.upgrade_script.get(appliance_id, ["idle"])
        return UpgradeStatus(
            appliance_id=appliance_id,
            status=self._next(script),
            details=self.upgrade_details.get(appliance_id, ""),
        )

    async def upgrade_status_map(self, appliances) -> Dict[str, UpgradeStatusResult]:
        out = {}
        for a in appliances:
            status = await self.get_upgrade_status(a.id)
            out[a.id] = UpgradeStatusResult(name=a.name, status=status.status)
        return out

    async def prepare_upgrade(self, appliance_id: str, image_url: str, dev_keyring: bool = False) -> None:
        self._record("prepare_upgrade", appliance_id, image_url)

    async def complete_upgrade(self, appliance_id: str, switch_partition: bool = False) -> None:
        self._record("complete_upgrade", appliance_id)

    async def cancel_upgrade(self, appliance_id: str) -> None:
        self._record("cancel_upgrade", appliance_id)

    async def get_global_settings(self) -> GlobalSettings:
        self._record("get_global_settings")
        return self.settings

    async def set_global_backup_setting(self, enabled: bool, passphrase: str) -> None:
        self._record("set_global_backup_setting", "", enabled, passphrase)
        self.settings = GlobalSettings(backup_api_enabled=enabled, raw={"backupApiEnabled": enabled})

    async def initiate_backup(self, appliance_id: str, audit: bool = False, logs: bool = False) -> str:
        self._record("initiate_backup", appliance_id)
        return f"bkp-{appliance_id}"

    async def get_backup_status(self, appliance_id: str, backup_id: str) -> str:
        self._record("get_backup_status", appliance_id)
        return self._next(self.backup_script.get(appliance_id, ["done"]))

    @asynccontextmanager
    async def download_backup(self, appliance_id: str, backup_id: str):
        self._record("download_backup", appliance_id)
        data = self.artifacts.get(appliance_id, b"backup-" + appliance_id.encode())

        async def _chunks():
            yield data[: len(data) // 2]
            yield data[len(data) // 2 :]

        yield _chunks()

    async def delete_backup(self, appliance_id: str, backup_id: str) -> None:
        self._record("delete_backup", appliance_id)

    async def update_maintenance_mode(self, appliance_id: str, enabled: bool) -> str:
        self._record("update_maintenance_mode", appliance_id, enabled)
        return f"change-{appliance_id}"

    async def disable_controller(self, appliance_id: str) -> None:
        self._record("disable_controller", appliance_id)

    async def enable_controller(self, appliance_id: str) -> None:
        self._record("enable_controller", appliance_id)

    async def list_files(self) -> List[RepositoryFile]:
        self._record("list_files")
        return list(self.files.values())

    async def file_status(self, filename: str) -> Optional[RepositoryFile]:
        self._record("file_status", filename)
        return self.files.get(filename)

    async def upload_file(self, path, filename: Optional[str] = None) -> str:
        name = filename or path.name
        self._record("upload_file", name)
        self.files[name] = RepositoryFile(name=name, status="Ready")
        return name

    async def delete_file(self, filename: str) -> None:
        self._record("delete_file", filename)
        self.files.pop(filename, None)

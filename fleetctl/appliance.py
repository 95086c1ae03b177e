"""Appliance Control API wrapper.

Thin async facade over :class:`~fleetctl.api_client._ApiClient` that turns
JSON payloads into :mod:`fleetctl.models` objects.  Filtering happens
client-side after listing, see :mod:`fleetctl.filters`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

from .api_client import _ApiClient, iter_body
from .errors import ConflictError, FleetClientError
from .models import Appliance, ApplianceStat, GlobalSettings, RepositoryFile, UpgradeStatus
from .tasks import gather_or_cancel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpgradeStatusResult:
    name: str
    status: str


class ApplianceAPI:
    """Appliance, stats, upgrade and backup endpoints of the admin API."""

    def __init__(self, api: _ApiClient):
        self.api = api

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    async def list_appliances(self) -> List[Appliance]:
        data = await self.api.get("/appliances", params={"orderBy": "name"})
        return [Appliance.from_dict(item) for item in data.get("data", [])]

    async def get_stats(self) -> List[ApplianceStat]:
        data = await self.api.get("/stats/appliances")
        return [ApplianceStat.from_dict(item) for item in data.get("data", [])]

    async def update_maintenance_mode(self, appliance_id: str, enabled: bool) -> str:
        data = await self.api.post(
            f"/appliances/{appliance_id}/maintenance", {"enabled": enabled}
        )
        return str(data.get("id", ""))

    async def set_controller_enabled(self, appliance_id: str, enabled: bool) -> None:
        """Toggle the controller function, keeping the rest of the appliance configuration."""
        try:
            data = await self.api.get(f"/appliances/{appliance_id}")
            data.setdefault("controller", {})["enabled"] = enabled
            await self.api.put(f"/appliances/{appliance_id}", data)
        except FleetClientError as exc:
            raise FleetClientError(f"Could not update appliance {appliance_id} {exc}", exc.status_code) from exc

    async def disable_controller(self, appliance_id: str) -> None:
        await self.set_controller_enabled(appliance_id, False)

    async def enable_controller(self, appliance_id: str) -> None:
        await self.set_controller_enabled(appliance_id, True)

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def get_upgrade_status(self, appliance_id: str) -> UpgradeStatus:
        data = await self.api.get(f"/appliances/{appliance_id}/upgrade")
        return UpgradeStatus.from_dict(appliance_id, data)

    async def upgrade_status_map(
        self, appliances: Sequence[Appliance]
    ) -> Dict[str, UpgradeStatusResult]:
        """Read the upgrade status of every appliance concurrently.

        The first failing read cancels the others.
        """

        async def _read(appliance: Appliance) -> tuple:
            try:
                status = await self.get_upgrade_status(appliance.id)
            except FleetClientError as exc:
                raise FleetClientError(
                    f"Could not read status of {appliance.id} {exc}", exc.status_code
                ) from exc
            return appliance.id, UpgradeStatusResult(name=appliance.name, status=status.status)

        results = await gather_or_cancel(_read(a) for a in appliances)
        return dict(results)

    async def prepare_upgrade(
        self, appliance_id: str, image_url: str, dev_keyring: bool = False
    ) -> None:
        try:
            await self.api.post(
                f"/appliances/{appliance_id}/upgrade/prepare",
                {"imageUrl": image_url, "devKeyring": dev_keyring},
            )
        except ConflictError as exc:
            raise ConflictError(
                f"Upgrade in progress on {appliance_id} {exc}", exc.status_code
            ) from exc

    async def complete_upgrade(self, appliance_id: str, switch_partition: bool = False) -> None:
        await self.api.post(
            f"/appliances/{appliance_id}/upgrade/complete",
            {"switchPartition": switch_partition},
        )

    async def cancel_upgrade(self, appliance_id: str) -> None:
        await self.api.delete(f"/appliances/{appliance_id}/upgrade")

    # ------------------------------------------------------------------
    # File repository
    # ------------------------------------------------------------------
    # Files live on the controller the CLI talks to; they are not synced
    # between controllers.

    async def list_files(self) -> List[RepositoryFile]:
        data = await self.api.get("/files")
        return [RepositoryFile.from_dict(item) for item in data.get("data", [])]

    async def file_status(self, filename: str) -> Optional[RepositoryFile]:
        """Return the repository entry for *filename*, ``None`` if there is none."""
        try:
            data = await self.api.get(f"/files/{filename}")
        except FleetClientError as exc:
            if exc.status_code == 404:
                return None
            raise
        return RepositoryFile.from_dict(data)

    async def upload_file(self, path: Union[str, Path], filename: Optional[str] = None) -> str:
        """Upload the local file *path*; returns the name it is stored under."""
        path = Path(path)
        name = filename or path.name
        try:
            with open(path, "rb") as fh:
                await self.api.upload("/files", name, fh)
        except ConflictError as exc:
            raise ConflictError(f"{name} already exists {exc}", exc.status_code) from exc
        return name

    async def delete_file(self, filename: str) -> None:
        await self.api.delete(f"/files/{filename}")

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def get_global_settings(self) -> GlobalSettings:
        data = await self.api.get("/global-settings")
        return GlobalSettings.from_dict(data)

    async def set_global_backup_setting(self, enabled: bool, passphrase: str) -> None:
        settings = await self.get_global_settings()
        payload = dict(settings.raw)
        payload["backupApiEnabled"] = enabled
        payload["backupPassphrase"] = passphrase
        await self.api.put("/global-settings", payload)

    async def initiate_backup(self, appliance_id: str, audit: bool = False, logs: bool = False) -> str:
        try:
            data = await self.api.post(
                f"/appliances/{appliance_id}/backup", {"audit": audit, "logs": logs}
            )
        except ConflictError as exc:
            raise ConflictError(
                f"Backup already in progress on {appliance_id} {exc}", exc.status_code
            ) from exc
        if not isinstance(data, dict) or not data.get("id"):
            raise FleetClientError(f"no backup id returned for {appliance_id}")
        return str(data["id"])

    async def get_backup_status(self, appliance_id: str, backup_id: str) -> str:
        data = await self.api.get(f"/appliances/{appliance_id}/backup/{backup_id}/status")
        return str(data.get("status", ""))

    @asynccontextmanager
    async def download_backup(self, appliance_id: str, backup_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """Stream the backup artifact; yields an async iterator of byte chunks."""
        async with self.api.stream(f"/appliances/{appliance_id}/backup/{backup_id}") as res:
            yield iter_body(res)

    async def delete_backup(self, appliance_id: str, backup_id: str) -> None:
        await self.api.delete(f"/appliances/{appliance_id}/backup/{backup_id}")

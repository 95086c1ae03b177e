"""Data classes for appliances, runtime stats, upgrade status and backups.

Instances are snapshots of the remote state taken for one orchestration run.
They are re-fetched rather than mutated.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

FUNCTION_CONTROLLER = "controller"
FUNCTION_GATEWAY = "gateway"
FUNCTION_PORTAL = "portal"
FUNCTION_CONNECTOR = "connector"
FUNCTION_LOGSERVER = "logserver"
FUNCTION_LOGFORWARDER = "logforwarder"

ALL_FUNCTIONS = (
    FUNCTION_CONTROLLER,
    FUNCTION_GATEWAY,
    FUNCTION_PORTAL,
    FUNCTION_CONNECTOR,
    FUNCTION_LOGSERVER,
    FUNCTION_LOGFORWARDER,
)

# Function name -> key used in the appliance JSON payload.
_FUNCTION_KEYS = {
    FUNCTION_CONTROLLER: "controller",
    FUNCTION_GATEWAY: "gateway",
    FUNCTION_PORTAL: "portal",
    FUNCTION_CONNECTOR: "connector",
    FUNCTION_LOGSERVER: "logServer",
    FUNCTION_LOGFORWARDER: "logForwarder",
}


class UpgradeState(str, Enum):
    """Upgrade lifecycle reported by ``GET /appliances/{id}/upgrade``."""

    IDLE = "idle"
    STARTED = "started"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    READY = "ready"
    INSTALLING = "installing"
    SUCCESS = "success"
    FAILED = "failed"


class BackupState(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class FileState(str, Enum):
    IN_PROGRESS = "InProgress"
    VERIFYING = "Verifying"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class Appliance:
    """A fleet node and the functions it hosts.

    ``functions`` only holds the functions present in the payload, mapped to
    their enabled flag. A function can be present but disabled.
    """

    id: str
    name: str
    hostname: str = ""
    site: str = ""
    functions: Dict[str, bool] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    activated: bool = True
    admin_hostname: Optional[str] = None
    peer_hostname: Optional[str] = None
    peer_https_port: Optional[int] = None
    version: int = 0

    def has_function(self, function: str) -> bool:
        return function in self.functions

    def function_enabled(self, function: str) -> bool:
        return bool(self.functions.get(function, False))

    @property
    def is_controller(self) -> bool:
        return self.function_enabled(FUNCTION_CONTROLLER)

    @property
    def is_logserver(self) -> bool:
        return self.function_enabled(FUNCTION_LOGSERVER)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Appliance":
        functions: Dict[str, bool] = {}
        for name, key in _FUNCTION_KEYS.items():
            value = data.get(key)
            if isinstance(value, dict):
                functions[name] = bool(value.get("enabled", False))
        admin = data.get("adminInterface")
        peer = data.get("peerInterface") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            hostname=str(data.get("hostname", "")),
            site=str(data.get("site") or ""),
            functions=functions,
            tags=tuple(str(t) for t in data.get("tags") or ()),
            activated=bool(data.get("activated", False)),
            admin_hostname=admin.get("hostname") if admin else None,
            peer_hostname=peer.get("hostname"),
            peer_https_port=peer.get("httpsPort"),
            version=int(data.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ApplianceStat:
    """Runtime facts for one appliance, joined to :class:`Appliance` by id."""

    id: str
    name: str = ""
    online: bool = False
    state: str = ""
    status: str = ""
    disk: float = 0.0
    version: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplianceStat":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            online=bool(data.get("online", False)),
            state=str(data.get("state") or ""),
            status=str(data.get("status") or ""),
            disk=float(data.get("disk") or 0.0),
            version=str(data.get("version") or ""),
        )


@dataclass(frozen=True)
class UpgradeStatus:
    appliance_id: str
    status: str
    details: str = ""

    @classmethod
    def from_dict(cls, appliance_id: str, data: Dict[str, Any]) -> "UpgradeStatus":
        return cls(
            appliance_id=appliance_id,
            status=str(data.get("status") or ""),
            details=str(data.get("details") or ""),
        )


@dataclass
class BackupRecord:
    """Book-keeping for one appliance backup.

    ``destination`` is filled in once the artifact is written locally.
    """

    appliance_id: str
    backup_id: str = ""
    destination: Optional[str] = None
    status: str = BackupState.PROCESSING.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RepositoryFile:
    """An image stored in the file repository of the controller it was uploaded to."""

    name: str
    status: str = ""
    checksum: str = ""
    created_at: str = ""
    modified_at: str = ""
    failure_reason: str = ""

    @property
    def ready(self) -> bool:
        return self.status == FileState.READY.value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryFile":
        return cls(
            name=str(data.get("name") or ""),
            status=str(data.get("status") or ""),
            checksum=str(data.get("checksum") or ""),
            created_at=str(data.get("creationTime") or ""),
            modified_at=str(data.get("lastModifiedTime") or ""),
            failure_reason=str(data.get("failureReason") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GlobalSettings:
    backup_api_enabled: bool
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalSettings":
        return cls(
            backup_api_enabled=bool(data.get("backupApiEnabled", False)),
            raw=dict(data),
        )

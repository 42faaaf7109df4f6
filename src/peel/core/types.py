"""Runtime, probe and configuration types."""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class RuntimeKind(str, Enum):
    """Container runtimes the probe knows about, in default priority order."""

    DOCKER = "docker"
    PODMAN = "podman"
    CONTAINERD = "containerd"

    @property
    def priority(self) -> int:
        return list(RuntimeKind).index(self)


class StorageDriver(str, Enum):
    OVERLAY2 = "overlay2"
    FUSE = "fuse"
    BTRFS = "btrfs"
    ZFS = "zfs"
    VFS = "vfs"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> "StorageDriver":
        """Map a driver name as reported by a runtime to a StorageDriver."""
        name = name.strip().lower()
        if name in ("overlay", "overlay2", "overlayfs"):
            return cls.OVERLAY2
        if name in ("fuse-overlayfs", "fuse", "fuse-overlay"):
            return cls.FUSE
        for driver in cls:
            if driver.value == name:
                return driver
        return cls.UNKNOWN


WALKABLE_DRIVERS = frozenset(
    {StorageDriver.OVERLAY2, StorageDriver.FUSE, StorageDriver.VFS}
)


class Backend(str, Enum):
    OVERLAY = "overlay"
    EXPORT = "export"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class RuntimeInfo:
    """What the probe learned about one container runtime."""

    kind: RuntimeKind
    binary_path: Optional[Path] = None
    storage_driver: StorageDriver = StorageDriver.UNKNOWN
    storage_root: Optional[Path] = None
    can_read: bool = False
    is_running: bool = False
    incomplete: tuple[str, ...] = ()

    @property
    def supports_direct_walk(self) -> bool:
        """True if the overlay reader understands this runtime's storage."""
        return (
            self.kind in (RuntimeKind.DOCKER, RuntimeKind.PODMAN)
            and self.storage_driver in WALKABLE_DRIVERS
        )


@dataclass(frozen=True)
class ProbeResult:
    """All runtimes detected during one invocation."""

    runtimes: tuple[RuntimeInfo, ...] = ()
    default: Optional[int] = None

    @classmethod
    def from_runtimes(cls, runtimes: list[RuntimeInfo]) -> "ProbeResult":
        """Build a result, choosing the default by fixed kind priority."""
        ordered = tuple(runtimes)
        readable = [i for i, rt in enumerate(ordered) if rt.can_read]
        default = min(readable, key=lambda i: ordered[i].kind.priority, default=None)
        return cls(runtimes=ordered, default=default)

    @property
    def default_runtime(self) -> Optional[RuntimeInfo]:
        if self.default is None:
            return None
        return self.runtimes[self.default]

    def get(self, kind: RuntimeKind) -> Optional[RuntimeInfo]:
        for runtime in self.runtimes:
            if runtime.kind == kind:
                return runtime
        return None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


@dataclass(frozen=True)
class InspectConfig:
    """Advisory inputs to probing and backend selection."""

    backend: Optional[Backend] = None
    runtime: Optional[RuntimeKind] = None
    storage_root: Optional[Path] = None
    export_timeout: float = 600.0
    probe_timeout: float = 5.0
    containerd_namespace: str = "default"

    @classmethod
    def from_env(cls) -> "InspectConfig":
        """Build a configuration from PEEL_* environment variables."""
        backend = os.getenv("PEEL_BACKEND")
        runtime = os.getenv("PEEL_RUNTIME")
        storage_root = os.getenv("PEEL_STORAGE_ROOT")
        return cls(
            backend=Backend(backend.lower()) if backend else None,
            runtime=RuntimeKind(runtime.lower()) if runtime else None,
            storage_root=Path(storage_root) if storage_root else None,
            export_timeout=_env_float("PEEL_EXPORT_TIMEOUT", 600.0),
            containerd_namespace=os.getenv("PEEL_CONTAINERD_NAMESPACE", "default"),
        )

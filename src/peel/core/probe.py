"""Detection of installed container runtimes and their storage.

Every runtime kind is probed concurrently and independently. Probing is
best-effort: a runtime that is found but cannot be fully characterised is
still reported, with what could not be determined listed in `incomplete`.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

from ..exceptions import ProbeIncomplete
from .connectivity import check_daemon, socket_exists
from .types import InspectConfig, ProbeResult, RuntimeInfo, RuntimeKind, StorageDriver

logger = logging.getLogger(__name__)


def is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


def _data_home() -> Path:
    return Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")


def _runtime_dir() -> Optional[Path]:
    value = os.getenv("XDG_RUNTIME_DIR")
    return Path(value) if value else None


def _docker_sockets() -> list[Path]:
    docker_host = os.getenv("DOCKER_HOST", "")
    if docker_host.startswith("unix://"):
        return [Path(docker_host[len("unix://"):])]
    sockets = []
    runtime_dir = _runtime_dir()
    if not is_root() and runtime_dir:
        sockets.append(runtime_dir / "docker.sock")
    sockets.append(Path("/var/run/docker.sock"))
    return sockets


def _podman_sockets() -> list[Path]:
    sockets = []
    runtime_dir = _runtime_dir()
    if not is_root() and runtime_dir:
        sockets.append(runtime_dir / "podman" / "podman.sock")
    sockets.append(Path("/run/podman/podman.sock"))
    return sockets


def _containerd_sockets() -> list[Path]:
    return [Path("/run/containerd/containerd.sock")]


def _docker_roots() -> list[Path]:
    roots = [Path("/var/lib/docker")]
    if not is_root():
        roots.insert(0, _data_home() / "docker")
    return roots


def _podman_roots() -> list[Path]:
    roots = [Path("/var/lib/containers/storage")]
    if not is_root():
        roots.insert(0, _data_home() / "containers" / "storage")
    return roots


def _containerd_roots() -> list[Path]:
    roots = [Path("/var/lib/containerd")]
    if not is_root():
        roots.insert(0, _data_home() / "containerd")
    return roots


@dataclass(frozen=True)
class RuntimeSpec:
    """Where to look for one runtime kind."""

    kind: RuntimeKind
    binary: str
    sockets: Callable[[], list[Path]]
    roots: Callable[[], list[Path]]
    # Sub-directory of the storage root -> driver it implies
    layout: dict[str, StorageDriver] = field(default_factory=dict)
    driver_query: Optional[list[str]] = None
    http_api: bool = True


RUNTIME_SPECS = (
    RuntimeSpec(
        kind=RuntimeKind.DOCKER,
        binary="docker",
        sockets=_docker_sockets,
        roots=_docker_roots,
        layout={
            "image/overlay2": StorageDriver.OVERLAY2,
            "image/fuse-overlayfs": StorageDriver.FUSE,
            "image/btrfs": StorageDriver.BTRFS,
            "image/zfs": StorageDriver.ZFS,
            "image/vfs": StorageDriver.VFS,
        },
        driver_query=["info", "--format", "{{.Driver}}"],
    ),
    RuntimeSpec(
        kind=RuntimeKind.PODMAN,
        binary="podman",
        sockets=_podman_sockets,
        roots=_podman_roots,
        layout={
            "overlay-images": StorageDriver.OVERLAY2,
            "btrfs-images": StorageDriver.BTRFS,
            "zfs-images": StorageDriver.ZFS,
            "vfs-images": StorageDriver.VFS,
        },
        driver_query=["info", "--format", "{{.Store.GraphDriverName}}"],
    ),
    RuntimeSpec(
        kind=RuntimeKind.CONTAINERD,
        binary="ctr",
        sockets=_containerd_sockets,
        roots=_containerd_roots,
        layout={
            "io.containerd.snapshotter.v1.overlayfs": StorageDriver.OVERLAY2,
            "io.containerd.snapshotter.v1.fuse-overlayfs": StorageDriver.FUSE,
            "io.containerd.snapshotter.v1.btrfs": StorageDriver.BTRFS,
            "io.containerd.snapshotter.v1.zfs": StorageDriver.ZFS,
            "io.containerd.snapshotter.v1.native": StorageDriver.VFS,
        },
        http_api=False,
    ),
)


async def run_command(args: list[str], timeout: float) -> str:
    """Run a short query command and return its stdout.

    Raises:
        ProbeIncomplete: If the command cannot run, fails or times out
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProbeIncomplete(f"cannot run {args[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError as e:
        raise ProbeIncomplete(f"{' '.join(args)} timed out after {timeout}s") from e
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()

    if process.returncode != 0:
        detail = stderr.decode("utf-8", "replace").strip().splitlines()
        raise ProbeIncomplete(
            f"{' '.join(args)} exited with status {process.returncode}"
            + (f": {detail[-1]}" if detail else "")
        )
    return stdout.decode("utf-8", "replace").strip()


async def query_driver(spec: RuntimeSpec, binary: Path, timeout: float) -> StorageDriver:
    """Ask the runtime which storage driver it uses.

    Raises:
        ProbeIncomplete: If the runtime cannot be asked or the answer is unknown
    """
    if spec.driver_query is None:
        raise ProbeIncomplete(f"{spec.kind.value} cannot report its storage driver")
    output = await run_command([str(binary), *spec.driver_query], timeout)
    driver = StorageDriver.parse(output)
    if driver == StorageDriver.UNKNOWN:
        raise ProbeIncomplete(f"unrecognised storage driver {output!r}")
    return driver


def driver_from_layout(spec: RuntimeSpec, root: Optional[Path]) -> StorageDriver:
    """Guess the storage driver from which driver directories exist."""
    if root is None:
        return StorageDriver.UNKNOWN
    for relative, driver in spec.layout.items():
        try:
            if (root / relative).is_dir():
                return driver
        except OSError:
            break
    return StorageDriver.UNKNOWN


def check_readable(root: Optional[Path]) -> bool:
    """Try to list the storage root; permission failures are expected."""
    if root is None:
        return False
    try:
        with os.scandir(root) as entries:
            next(entries, None)
    except OSError as e:
        logger.debug("Storage root %s is not readable: %s", root, e)
        return False
    return True


def resolve_storage_root(spec: RuntimeSpec) -> Optional[Path]:
    """First default storage root that exists (None if none does)."""
    for root in spec.roots():
        try:
            if root.exists():
                return root
        except OSError:
            continue
    return None


async def probe_runtime(spec: RuntimeSpec, config: InspectConfig) -> Optional[RuntimeInfo]:
    """Characterise one runtime kind; None if it is not installed at all."""
    binary = shutil.which(spec.binary)
    binary_path = Path(binary) if binary else None
    storage_root = resolve_storage_root(spec)
    if binary_path is None and storage_root is None:
        logger.debug("%s not found", spec.kind.value)
        return None

    incomplete: list[str] = []
    if binary_path is None:
        incomplete.append(f"{spec.binary} executable not found on PATH")
    if storage_root is None:
        incomplete.append("storage root not found")

    socket = next((s for s in spec.sockets() if s.exists()), None)
    if spec.http_api:
        is_running = await check_daemon(str(socket) if socket else None, config.probe_timeout)
    else:
        is_running = socket_exists(str(socket) if socket else None)

    driver = StorageDriver.UNKNOWN
    if binary_path is not None and spec.driver_query is not None:
        try:
            driver = await query_driver(spec, binary_path, config.probe_timeout)
        except ProbeIncomplete as e:
            incomplete.append(f"driver query failed: {e}")
    if driver == StorageDriver.UNKNOWN:
        driver = driver_from_layout(spec, storage_root)
        if driver == StorageDriver.UNKNOWN:
            incomplete.append("storage driver could not be determined")

    runtime = RuntimeInfo(
        kind=spec.kind,
        binary_path=binary_path,
        storage_driver=driver,
        storage_root=storage_root,
        can_read=check_readable(storage_root),
        is_running=is_running,
        incomplete=tuple(incomplete),
    )
    for note in runtime.incomplete:
        logger.warning("%s: %s", spec.kind.value, note)
    return runtime


async def probe_runtimes(config: Optional[InspectConfig] = None) -> ProbeResult:
    """Detect every known container runtime.

    All kinds are checked concurrently; the result is assembled only once
    every check has finished.

    Returns:
        ProbeResult listing each detected runtime, default chosen by priority
    """
    config = config or InspectConfig()
    results = await asyncio.gather(*(probe_runtime(spec, config) for spec in RUNTIME_SPECS))
    return ProbeResult.from_runtimes([runtime for runtime in results if runtime is not None])


def spec_for(kind: RuntimeKind) -> RuntimeSpec:
    for spec in RUNTIME_SPECS:
        if spec.kind == kind:
            return spec
    raise KeyError(kind)


def with_storage_root(runtime: RuntimeInfo, storage_root: Path) -> RuntimeInfo:
    """Point a probed runtime at another storage root and re-check access."""
    driver = runtime.storage_driver
    if driver == StorageDriver.UNKNOWN:
        driver = driver_from_layout(spec_for(runtime.kind), storage_root)
    return replace(
        runtime,
        storage_root=storage_root,
        storage_driver=driver,
        can_read=check_readable(storage_root),
    )

"""Export backend: materialise an archive with the runtime CLI, then parse it.

Cross-platform and needs no access to the storage root, but slower: the
runtime has to assemble and stream the whole image.
"""

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..core.types import RuntimeInfo, RuntimeKind
from ..exceptions import FormatError, SourceError, SubprocessFailure
from ..models import ImageInfo, LayerInfo
from ..tar.tags import parse_repository_tag
from .archive import parse_archive

logger = logging.getLogger(__name__)

BACKEND = "export"
STDERR_TAIL = 2000
DRAIN_CHUNK = 1024 * 1024


def export_command(
    runtime: RuntimeInfo, image: str, namespace: str = "default"
) -> list[str]:
    """Command line that writes `image` as a tar archive to stdout."""
    binary = str(runtime.binary_path or runtime.kind.value)
    if runtime.kind == RuntimeKind.CONTAINERD:
        return [binary, "--namespace", namespace, "images", "export", "-", image]
    return [binary, "image", "save", image]


class ExportInspector:
    """Reads layers through the runtime's export subcommand."""

    name = BACKEND

    def __init__(
        self,
        runtime: RuntimeInfo,
        timeout: Optional[float] = 600.0,
        namespace: str = "default",
    ) -> None:
        if runtime.binary_path is None:
            raise SourceError(
                f"No {runtime.kind.value} executable found for export", backend=BACKEND
            )
        self.runtime = runtime
        self.timeout = timeout
        self.namespace = namespace

    def _stop(self, process: subprocess.Popen) -> None:
        if process.poll() is None:
            logger.debug("Killing export process %d", process.pid)
            process.kill()
        process.wait()
        if process.stdout is not None:
            process.stdout.close()

    @staticmethod
    def _drain_and_wait(process: subprocess.Popen) -> int:
        """Read whatever the parser left unconsumed, then reap the process."""
        if process.stdout is not None:
            while process.stdout.read(DRAIN_CHUNK):
                pass
        return process.wait()

    async def inspect(self, image: str) -> ImageInfo:
        """Run the export and parse its output as it streams.

        Raises:
            SubprocessFailure: If the command exits non-zero, writes nothing, or
                runs past the timeout (the process is killed first)
            FormatError: If the exported stream is not a valid image archive
        """
        command = export_command(self.runtime, image, self.namespace)
        name, tag = parse_repository_tag(image)
        logger.info("Exporting %s with %s", image, " ".join(command))

        loop = asyncio.get_running_loop()
        deadline = None if self.timeout is None else loop.time() + self.timeout

        def remaining() -> Optional[float]:
            return None if deadline is None else max(deadline - loop.time(), 0.0)

        with tempfile.TemporaryFile() as stderr:
            # Popen rather than create_subprocess_exec: the archive parser reads
            # stdout as a blocking file object in an executor thread
            try:
                process = subprocess.Popen(
                    command, stdout=subprocess.PIPE, stderr=stderr, stdin=subprocess.DEVNULL
                )
            except OSError as e:
                raise SubprocessFailure(
                    f"Cannot run {command[0]}: {e}", backend=BACKEND
                ) from e

            parse_error: Optional[FormatError] = None
            timed_out: Optional[asyncio.TimeoutError] = None
            info: Optional[ImageInfo] = None
            try:
                parsing = loop.run_in_executor(
                    None, parse_archive, process.stdout, name, tag, BACKEND
                )
                try:
                    info = await asyncio.wait_for(parsing, remaining())
                except FormatError as e:
                    parse_error = e
                await asyncio.wait_for(
                    loop.run_in_executor(None, self._drain_and_wait, process), remaining()
                )
            except asyncio.TimeoutError as e:
                timed_out = e
            finally:
                # Only kills on timeout or cancellation; otherwise already reaped
                self._stop(process)

            stderr.seek(0)
            message = stderr.read().decode("utf-8", "replace").strip()[-STDERR_TAIL:]

        if timed_out is not None:
            raise SubprocessFailure(
                f"{Path(command[0]).name} timed out after {self.timeout}s",
                backend=BACKEND,
                returncode=process.returncode,
                stderr=message,
            ) from timed_out
        if process.returncode != 0:
            raise SubprocessFailure(
                f"{Path(command[0]).name} exited with status {process.returncode}: {message}",
                backend=BACKEND,
                returncode=process.returncode,
                stderr=message,
            ) from parse_error
        if parse_error is not None:
            if parse_error.path == "<stream>" and "empty file" in parse_error.message:
                raise SubprocessFailure(
                    f"{Path(command[0]).name} produced no output",
                    backend=BACKEND,
                    returncode=process.returncode,
                    stderr=message,
                ) from parse_error
            raise parse_error
        return info

    async def list_layers(self, image: str) -> list[LayerInfo]:
        info = await self.inspect(image)
        return list(info.layers)

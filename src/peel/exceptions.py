"""Custom exceptions for the layer inspection engine."""

from typing import Optional


class PeelError(Exception):
    """Base exception for all inspection errors."""

    pass


class ProbeIncomplete(PeelError):
    """Raised when a runtime attribute cannot be determined.

    The probe catches it and records the message on the runtime instead of
    propagating it.
    """

    pass


class SourceError(PeelError):
    """Raised when a source backend cannot produce a layer listing."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        layer: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.layer = layer
        self.path = path

    def __str__(self) -> str:
        context = []
        if self.backend:
            context.append(f"backend={self.backend}")
        if self.layer:
            context.append(f"layer={self.layer}")
        if self.path:
            context.append(f"path={self.path}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class PermissionDenied(SourceError):
    """Raised when storage cannot be read with the current privileges."""

    pass


class FormatError(SourceError):
    """Raised when an archive or manifest does not match a known layout."""

    pass


class ChainResolutionError(SourceError):
    """Raised when overlay metadata references a layer that cannot be found."""

    pass


class SubprocessFailure(SourceError):
    """Raised when an export command fails or produces no output."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, backend=backend)
        self.returncode = returncode
        self.stderr = stderr


class LayerReadError(SourceError):
    """Raised on a generic read failure during a walk or stream."""

    pass


class InconsistentLayerError(PeelError, AssertionError):
    """Raised when merge input violates the backend contract."""

    pass

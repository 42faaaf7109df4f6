"""The capability every source backend provides."""

from typing import Protocol, runtime_checkable

from ..models import ImageInfo, LayerInfo


@runtime_checkable
class Inspector(Protocol):
    """Produces an ordered (oldest first) layer listing for an image.

    Implementations raise SourceError subclasses naming themselves as the
    backend. They share no state or behavior beyond this contract.
    """

    name: str

    async def inspect(self, image: str) -> ImageInfo:
        """Return image metadata together with every layer's raw entries."""
        ...

    async def list_layers(self, image: str) -> list[LayerInfo]:
        """Return the layers of an image, oldest first."""
        ...

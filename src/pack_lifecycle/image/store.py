"""Image store interface and backend selection."""

from typing import Protocol

from ..core.types import LifecycleConfig
from ..engine.base import Engine
from .local import LocalImageStore
from .models import Image, Layer
from .remote import RemoteImageStore


class ImageStore(Protocol):
    """Where images are read from and written to.

    ``append_layer`` and ``set_label`` only touch memory; ``write`` is the
    single operation with an external side effect.
    """

    async def read_existing(self, name: str) -> Image:
        """Read an image.

        Raises:
            ImageNotFound: If the image does not exist
            ImageAccessError: If the store cannot be reached or read
        """
        ...

    def append_layer(self, image: Image, layer: Layer) -> Image: ...

    def set_label(self, image: Image, key: str, value: str) -> Image: ...

    async def write(self, image: Image) -> str:
        """Persist the image under its name and return its digest."""
        ...

    async def close(self) -> None: ...


def open_image_store(
    publish: bool, engine: Engine, config: LifecycleConfig | None = None
) -> ImageStore:
    """Pick the backend once for a whole session.

    Args:
        publish: Use the remote registry backend instead of the daemon
        engine: Engine handle used by the local backend
        config: Lifecycle settings (registry access, layer compression)
    """
    config = config or LifecycleConfig()
    if publish:
        return RemoteImageStore(config)
    return LocalImageStore(engine)

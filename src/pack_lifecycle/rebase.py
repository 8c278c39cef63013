"""Rebase: swapping an image's run image layers without rebuilding."""

import logging
from contextlib import AsyncExitStack
from dataclasses import replace
from typing import Optional

from .core.types import METADATA_LABEL, LifecycleConfig
from .engine.base import Engine
from .engine.docker import DockerEngine
from .image.lister import LayerLister
from .image.models import Image, set_label, with_layers
from .image.store import ImageStore, open_image_store
from .metadata import BuildMetadata, RunImageMetadata

logger = logging.getLogger(__name__)


class Rebaser:
    """Moves an image's app layers onto a new run image, in memory."""

    def __init__(self, label_key: str = METADATA_LABEL) -> None:
        self.label_key = label_key

    def read_metadata(self, image: Image) -> BuildMetadata:
        """Decode the metadata label, treating a missing or bad label as empty."""
        label = image.label(self.label_key)
        if not label:
            logger.info("Image %s has no '%s' label", image.name, self.label_key)
            return BuildMetadata()
        try:
            return BuildMetadata.from_json(label)
        except ValueError as e:
            logger.warning("Ignoring unreadable metadata on %s: %s", image.name, e)
            return BuildMetadata()

    def rebase(self, image: Image, new_base: Image) -> Image:
        """Replace the layers below the recorded run image boundary.

        Args:
            image: Image built on the old run image
            new_base: The new run image; its name is recorded in the metadata

        Returns:
            The rebased image, named like ``image``

        Raises:
            RebaseBoundaryNotFound: If the recorded run image layer is not
                part of ``image``
        """
        metadata = self.read_metadata(image)
        boundary = LayerLister(image.layers, metadata.run_image.sha).boundary_index()
        upper = image.layers[boundary + 1 :]

        top = new_base.top_layer
        metadata = replace(
            metadata,
            run_image=RunImageMetadata(name=new_base.name, sha=top.diff_id if top else ""),
        )
        rebased = with_layers(image, new_base.layers + upper)
        return set_label(rebased, self.label_key, metadata.to_json())


async def run_rebase(
    repo_name: str,
    new_base_name: str,
    publish: bool,
    *,
    engine: Optional[Engine] = None,
    config: Optional[LifecycleConfig] = None,
    store: Optional[ImageStore] = None,
    pull: bool = True,
) -> str:
    """Rebase repo_name onto new_base_name and write it back.

    Args:
        repo_name: Image to rebase
        new_base_name: Run image to move it onto
        publish: Work against the registry instead of the local daemon
        engine: Engine handle (default: a DockerEngine from the environment)
        config: Lifecycle settings (default: from environment)
        store: Image store override (default: picked by publish)
        pull: Pull the new run image into the daemon first (local only)

    Returns:
        Digest of the rebased image

    Raises:
        ImageNotFound: If either image does not exist
        RebaseBoundaryNotFound: If the image does not record a run image
            layer it contains; nothing is written
    """
    config = config or LifecycleConfig.from_env()
    async with AsyncExitStack() as stack:
        needs_engine = not publish and (store is None or (pull and config.pull))
        if engine is None and needs_engine:
            engine = await stack.enter_async_context(DockerEngine())
        if store is None:
            store = open_image_store(publish, engine, config)
            stack.push_async_callback(store.close)

        if not publish and pull and config.pull:
            await engine.pull_image(new_base_name)

        image = await store.read_existing(repo_name)
        new_base = await store.read_existing(new_base_name)
        rebased = Rebaser(config.metadata_label).rebase(image, new_base)
        digest = await store.write(rebased)

    logger.info("Successfully replaced %s with %s", repo_name, digest)
    return digest

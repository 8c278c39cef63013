"""Export: turning a populated launch volume into an image.

The launch volume holds one directory per layer:

    /launch/app                 the application
    /launch/config              launch configuration written by the builder
    /launch/<bp-id>/<name>      an artifact contributed by a buildpack
    /launch/<bp-id>/<name>.toml descriptor for that artifact

Each directory becomes one content-addressed layer on top of the run image,
and the build metadata label records which layer is which.
"""

import asyncio
import logging
import tempfile
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from .core.types import LifecycleConfig
from .engine.base import Engine
from .engine.containers import ephemeral_container
from .exceptions import LayerConstructionError
from .image.models import Image, Layer, renamed
from .image.store import ImageStore
from .metadata import (
    BuildMetadata,
    BuildpackMetadata,
    LayerMetadata,
    LayerRef,
    RunImageMetadata,
)
from .models import BuildpackGroup, BuildSession
from .tar.archive import extract_archive
from .tar.layer import LayerBuilder

logger = logging.getLogger(__name__)

LAUNCH_DIR = "/launch"
APP_DIR = "/launch/app"
CONFIG_DIR = "/launch/config"
LAUNCH_DESCRIPTOR = "launch.toml"


@dataclass(frozen=True)
class PreviousBuild:
    """The image a build replaces, with its decoded metadata."""

    image: Image
    metadata: BuildMetadata


@dataclass
class ExportPlan:
    """Layers to append to the run image, in order, and their metadata."""

    layers: list[Layer] = field(default_factory=list)
    metadata: BuildMetadata = field(default_factory=BuildMetadata)


def accumulate(
    launch_dir: str | Path,
    group: BuildpackGroup,
    previous: Optional[PreviousBuild] = None,
    builder: Optional[LayerBuilder] = None,
) -> ExportPlan:
    """Build the app, config and buildpack layers of a launch directory.

    Buildpack artifacts whose directory is gone are carried forward from
    the previous image when its metadata records them.

    Args:
        launch_dir: Local copy of the launch volume
        group: Buildpacks that ran, in order
        previous: Image being replaced, if any
        builder: Layer builder (default: uncompressed)

    Returns:
        ExportPlan with the app layer, the config layer, then buildpack layers

    Raises:
        LayerConstructionError: If a directory cannot be archived or a
            descriptor cannot be parsed
    """
    launch = Path(launch_dir)
    builder = builder or LayerBuilder()
    plan = ExportPlan()

    app_layer = builder.build_layer(launch / "app", APP_DIR)
    plan.layers.append(app_layer)
    plan.metadata.app = LayerRef(sha=app_layer.digest)

    config_dir = launch / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_layer = builder.build_layer(config_dir, CONFIG_DIR)
    plan.layers.append(config_layer)
    plan.metadata.config = LayerRef(sha=config_layer.digest)

    for buildpack in group.buildpacks:
        recorded = previous.metadata.buildpack(buildpack.id) if previous else None
        bp_metadata = BuildpackMetadata(key=buildpack.id)
        bp_dir = launch / buildpack.id

        for descriptor in _descriptors(bp_dir):
            name = descriptor.stem
            layer_dir = bp_dir / name
            if layer_dir.is_dir():
                layer = builder.build_layer(layer_dir, f"{LAUNCH_DIR}/{buildpack.id}/{name}")
                plan.layers.append(layer)
                bp_metadata.layers[name] = LayerMetadata(
                    sha=layer.digest, data=_read_descriptor(descriptor)
                )
                continue

            previous_layer = recorded.layers.get(name) if recorded else None
            if previous_layer is None:
                continue
            reused = previous.image.find_layer(previous_layer.sha)
            if reused is None:
                logger.warning(
                    "Layer '%s/%s' is recorded as %s but missing from the previous image",
                    buildpack.id,
                    name,
                    previous_layer.sha,
                )
                continue
            logger.info("Reusing layer '%s/%s' (%s)", buildpack.id, name, previous_layer.sha)
            plan.layers.append(reused)
            bp_metadata.layers[name] = LayerMetadata(
                sha=previous_layer.sha, data=previous_layer.data
            )

        plan.metadata.buildpacks.append(bp_metadata)

    return plan


def _descriptors(bp_dir: Path) -> list[Path]:
    if not bp_dir.is_dir():
        return []
    return sorted(
        path
        for path in bp_dir.glob("*.toml")
        if path.name != LAUNCH_DESCRIPTOR and path.is_file()
    )


def _read_descriptor(path: Path) -> dict:
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise LayerConstructionError(f"Failed to read layer descriptor {path}: {e}") from e


def assemble(
    store: ImageStore,
    run_image: Image,
    plan: ExportPlan,
    repo_name: str,
    run_image_name: str,
    config: LifecycleConfig,
) -> Image:
    """Stack the planned layers on the run image and label the result.

    Nothing is written; the returned image only exists in memory.

    Raises:
        LayerConstructionError: If the metadata references a layer the
            image does not contain
    """
    top = run_image.top_layer
    metadata = replace(
        plan.metadata,
        run_image=RunImageMetadata(name=run_image_name, sha=top.diff_id if top else ""),
    )

    image = renamed(run_image, repo_name)
    for layer in plan.layers:
        image = store.append_layer(image, layer)
    image = store.set_label(image, config.metadata_label, metadata.to_json())
    image = replace(
        image,
        config=replace(
            image.config,
            entrypoint=(config.launcher,),
            cmd=(),
            working_dir=APP_DIR,
        ),
    )

    known = {layer.digest for layer in image.layers} | set(image.diff_ids)
    missing = [sha for sha in metadata.layer_shas() if sha not in known]
    if missing:
        raise LayerConstructionError(
            f"Metadata references layers missing from the image: {', '.join(missing)}"
        )
    return image


class Exporter:
    """Runs the export step of a build."""

    def __init__(self, engine: Engine, store: ImageStore, config: LifecycleConfig) -> None:
        self.engine = engine
        self.store = store
        self.config = config

    async def export(
        self,
        session: BuildSession,
        group: BuildpackGroup,
        previous: Optional[PreviousBuild] = None,
    ) -> str:
        """Export the launch volume as session.repo_name.

        Returns:
            Digest of the written image
        """
        builder = LayerBuilder(compress=session.publish and self.config.compress_layers)
        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix="pack-export-") as tmp_dir:
            launch_dir = await self.download_launch(session, group, Path(tmp_dir))
            plan = await loop.run_in_executor(
                None, accumulate, launch_dir, group, previous, builder
            )

        run_image = await self.store.read_existing(session.run_image)
        image = assemble(
            self.store, run_image, plan, session.repo_name, session.run_image, self.config
        )
        digest = await self.store.write(image)
        logger.info("*** Image: %s@%s", session.repo_name, digest)
        return digest

    async def download_launch(
        self, session: BuildSession, group: BuildpackGroup, dest: Path
    ) -> Path:
        """Copy the launch volume out through a container that never starts."""
        async with ephemeral_container(
            self.engine,
            group.build_image,
            binds=[f"{session.launch_volume}:{LAUNCH_DIR}"],
            cmd=["true"],
            entrypoint=[],
            name=session.container_name("export"),
        ) as container_id:
            data = await self.engine.download_tar(container_id, LAUNCH_DIR)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, extract_archive, data, dest)
        return dest / Path(LAUNCH_DIR).name

"""The build pipeline: detect, analyze, build and export in containers."""

import asyncio
import enum
import io
import logging
from contextlib import AsyncExitStack
from typing import Optional

from .core.types import LifecycleConfig
from .engine.base import Engine, LogStream
from .engine.containers import ephemeral_container, remove_volume
from .engine.logs import iter_lines
from .exceptions import DetectionError, EngineError, ImageNotFound, PhaseFailed, TarReadError
from .exporter import Exporter, PreviousBuild
from .image.store import ImageStore, open_image_store
from .metadata import BuildMetadata
from .models import BuildpackGroup, BuildSession
from .tar.archive import first_file_content, single_file_tar
from .tar.layer import write_tar

logger = logging.getLogger(__name__)
container_logger = logging.getLogger(__name__ + ".container")

METADATA_DIR = "/tmp"
METADATA_FILE = "metadata.json"
METADATA_PATH = f"{METADATA_DIR}/{METADATA_FILE}"


class Phase(str, enum.Enum):
    INIT = "init"
    COPY_APP = "copy-app"
    DETECT = "detect"
    ANALYZE = "analyze"
    BUILD = "build"
    PULL_RUN_IMAGE = "pull-run-image"
    EXPORT = "export"
    DONE = "done"
    FAILED = "failed"


class PhaseOrchestrator:
    """Runs the lifecycle phases of one build session in order.

    Every phase runs in its own container, which is force-removed when the
    phase ends. The session's launch and workspace volumes are removed when
    the run ends, however it ends; the cache volume is kept for the next
    build of the same app.

    Attributes:
        state: The phase currently running, or DONE/FAILED once finished
        failed_phase: The phase that was running when the build failed
    """

    def __init__(
        self,
        session: BuildSession,
        store: ImageStore,
        config: Optional[LifecycleConfig] = None,
    ) -> None:
        self.session = session
        self.engine: Engine = session.engine
        self.store = store
        self.config = config or LifecycleConfig()
        self.state = Phase.INIT
        self.failed_phase: Optional[Phase] = None

    def _enter(self, phase: Phase, banner: str | None = None) -> None:
        self.state = phase
        if banner:
            logger.info("*** %s:", banner)

    async def run(self) -> str:
        """Run every phase.

        Returns:
            Digest of the exported image

        Raises:
            PhaseFailed: If a lifecycle binary exits nonzero
            DetectionError: If detection selects no buildpacks
            EngineError: If a container or volume operation fails
        """
        try:
            async with AsyncExitStack() as stack:
                await self.init(stack)

                self._enter(Phase.COPY_APP)
                await self.copy_app()

                self._enter(Phase.DETECT, "DETECTING")
                group = await self.detect()

                self._enter(Phase.ANALYZE, "ANALYZING")
                previous = await self.analyze(group)

                self._enter(Phase.BUILD, "BUILDING")
                await self.build(group)

                if not self.session.publish:
                    self._enter(Phase.PULL_RUN_IMAGE, "PULLING RUN IMAGE LOCALLY")
                    await self.pull_run_image()

                self._enter(Phase.EXPORT, "EXPORTING")
                digest = await Exporter(self.engine, self.store, self.config).export(
                    self.session, group, previous
                )
        except BaseException:
            self.failed_phase = self.state
            self.state = Phase.FAILED
            raise

        self.state = Phase.DONE
        return digest

    async def init(self, stack: AsyncExitStack) -> None:
        """Create the session volumes and register their removal."""
        session = self.session
        for volume in (session.launch_volume, session.workspace_volume):
            await self.engine.create_volume(volume)
            stack.push_async_callback(remove_volume, self.engine, volume)
        await self.engine.create_volume(session.cache_volume)

        if self.config.pull:
            await self.engine.pull_image(session.build_image)

    async def copy_app(self) -> None:
        """Copy the app directory into the launch volume, owned by the app user."""
        session = self.session
        buffer = io.BytesIO()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, write_tar, buffer, session.app_dir, "app")

        async with ephemeral_container(
            self.engine,
            session.build_image,
            binds=[f"{session.launch_volume}:/launch"],
            cmd=["chown", "-R", self.config.app_user, "/launch"],
            entrypoint=[],
            user="0",
            name=session.container_name("copy-app"),
        ) as container_id:
            await self.engine.upload_tar(container_id, buffer.getvalue(), "/launch")
            await self._run_container(container_id, Phase.COPY_APP)

    async def detect(self) -> BuildpackGroup:
        """Run the detector and read back the group it selected.

        Raises:
            DetectionError: If the group descriptor is missing or unusable
        """
        session = self.session
        async with ephemeral_container(
            self.engine,
            session.build_image,
            binds=self._binds(cache=False),
            entrypoint=[self.config.detector],
            name=session.container_name("detect"),
        ) as container_id:
            await self._run_container(container_id, Phase.DETECT)
            try:
                data = await self.engine.download_tar(container_id, self.config.group_path)
            except EngineError as e:
                if e.status == 404:
                    raise DetectionError(
                        f"detection wrote no group descriptor at {self.config.group_path}"
                    ) from e
                raise

        try:
            content = first_file_content(data)
            group = BuildpackGroup.from_toml(content, session.build_image)
        except (TarReadError, ValueError, UnicodeDecodeError) as e:
            raise DetectionError(f"invalid group descriptor: {e}") from e

        logger.info(
            "Detected buildpacks: %s",
            ", ".join(f"{bp.id}@{bp.version}" if bp.version else bp.id for bp in group.buildpacks),
        )
        return group

    async def analyze(self, group: BuildpackGroup) -> Optional[PreviousBuild]:
        """Hand the previous image's metadata to the analyzer.

        Returns:
            The previous image and its metadata, or None when there is
            nothing to analyze
        """
        session = self.session
        try:
            image = await self.store.read_existing(session.repo_name)
        except ImageNotFound:
            logger.info("No previous image found")
            return None

        label = image.label(self.config.metadata_label)
        if not label:
            logger.info("Previous image is missing label '%s'", self.config.metadata_label)
            return None
        try:
            metadata = BuildMetadata.from_json(label)
        except ValueError as e:
            logger.warning("Ignoring unreadable metadata on previous image: %s", e)
            return None

        async with ephemeral_container(
            self.engine,
            group.build_image,
            binds=self._binds(cache=False),
            cmd=["-metadata", METADATA_PATH, session.repo_name],
            entrypoint=[self.config.analyzer],
            name=session.container_name("analyze"),
        ) as container_id:
            await self.engine.upload_tar(
                container_id, single_file_tar(METADATA_FILE, label), METADATA_DIR
            )
            await self._run_container(container_id, Phase.ANALYZE)

        return PreviousBuild(image=image, metadata=metadata)

    async def build(self, group: BuildpackGroup) -> None:
        """Run the builder from the group's build image."""
        async with ephemeral_container(
            self.engine,
            group.build_image,
            binds=self._binds(cache=True),
            entrypoint=[self.config.builder],
            name=self.session.container_name("build"),
        ) as container_id:
            await self._run_container(container_id, Phase.BUILD)

    async def pull_run_image(self) -> None:
        if self.config.pull:
            await self.engine.pull_image(self.session.run_image)

    def _binds(self, cache: bool) -> list[str]:
        session = self.session
        binds = [
            f"{session.launch_volume}:/launch",
            f"{session.workspace_volume}:/workspace",
        ]
        if cache:
            binds.append(f"{session.cache_volume}:/cache")
        return binds

    async def _run_container(self, container_id: str, phase: Phase) -> None:
        """Start a container, stream its output and wait for it to exit.

        Raises:
            PhaseFailed: If the container exits nonzero
        """
        await self.engine.start(container_id)
        drains = [
            asyncio.create_task(self._drain(container_id, stream))
            for stream in ("stdout", "stderr")
        ]
        try:
            exit_code = await self.engine.wait(container_id)
            await asyncio.gather(*drains)
        finally:
            for task in drains:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*drains, return_exceptions=True)

        if exit_code != 0:
            raise PhaseFailed(phase.value, exit_code)

    async def _drain(self, container_id: str, stream: LogStream) -> None:
        level = logging.INFO if stream == "stdout" else logging.WARNING
        async for line in iter_lines(self.engine.stream_logs(container_id, stream)):
            container_logger.log(level, "%s", line)


async def run_build(
    session: BuildSession,
    config: Optional[LifecycleConfig] = None,
    store: Optional[ImageStore] = None,
) -> str:
    """Build session.app_dir into session.repo_name.

    Args:
        session: What to build and where to put it
        config: Lifecycle settings (default: from environment)
        store: Image store override (default: picked by session.publish)

    Returns:
        Digest of the exported image
    """
    config = config or LifecycleConfig.from_env()
    async with AsyncExitStack() as stack:
        if store is None:
            store = open_image_store(session.publish, session.engine, config)
            stack.push_async_callback(store.close)
        return await PhaseOrchestrator(session, store, config).run()

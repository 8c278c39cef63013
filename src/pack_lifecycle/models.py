"""Data models for a build session."""

import hashlib
import tomllib
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from .engine.base import Engine


@dataclass(frozen=True)
class Buildpack:
    id: str
    version: str = ""


@dataclass(frozen=True)
class BuildpackGroup:
    """Buildpacks selected by detection, plus the image that builds with them."""

    buildpacks: tuple[Buildpack, ...]
    build_image: str

    @classmethod
    def from_toml(cls, content: str | bytes, default_build_image: str) -> "BuildpackGroup":
        """Decode a group descriptor written by the detector.

        Raises:
            ValueError: If the descriptor is unparseable or selects nothing
        """
        if isinstance(content, bytes):
            content = content.decode("utf-8")
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid group descriptor: {e}") from e

        entries = data.get("buildpacks")
        if not isinstance(entries, list) or not entries:
            raise ValueError("Group descriptor lists no buildpacks")

        buildpacks = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ValueError(f"Invalid buildpack entry: {entry!r}")
            buildpacks.append(
                Buildpack(id=str(entry["id"]), version=str(entry.get("version", "")))
            )
        return cls(
            buildpacks=tuple(buildpacks),
            build_image=data.get("repository") or default_build_image,
        )


@dataclass
class BuildSession:
    """One build invocation and the volumes it owns.

    The launch and workspace volumes are unique to the session. The cache
    volume is keyed by the app directory so sequential builds of the same
    app share it; concurrent builds of one app must not run.
    """

    app_dir: str
    build_image: str
    run_image: str
    repo_name: str
    publish: bool
    engine: Engine
    uid: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self.app_dir = str(Path(self.app_dir).resolve())

    @property
    def launch_volume(self) -> str:
        return f"pack-launch-{self.uid}"

    @property
    def workspace_volume(self) -> str:
        return f"pack-workspace-{self.uid}"

    @property
    def cache_volume(self) -> str:
        digest = hashlib.md5(self.app_dir.encode("utf-8")).hexdigest()
        return f"pack-cache-{digest}"

    def container_name(self, phase: str) -> str:
        return f"pack-{phase}-{self.uid}"

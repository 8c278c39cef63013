"""Configuration types shared across the lifecycle client."""

import os
from dataclasses import dataclass, field

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
METADATA_LABEL = "io.buildpacks.lifecycle.metadata"


@dataclass(frozen=True)
class RegistryConfig:
    """Connection settings for a single registry."""

    url: str
    timeout: int | None = 300
    username: str | None = None
    password: str | None = None


@dataclass(frozen=True)
class EngineConfig:
    """Connection settings for the container engine."""

    host: str = DEFAULT_DOCKER_HOST
    api_version: str | None = None
    # No timeout by default: phase containers run as long as buildpacks need.
    timeout: int | None = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            host=os.getenv("DOCKER_HOST") or DEFAULT_DOCKER_HOST,
            api_version=os.getenv("DOCKER_API_VERSION") or None,
        )


@dataclass(frozen=True)
class LifecycleConfig:
    """Settings for the lifecycle pipeline and the image stores.

    Attributes:
        detector: Entrypoint of the detection binary inside the build image
        analyzer: Entrypoint of the analysis binary inside the build image
        builder: Entrypoint of the build binary inside the build image
        launcher: Entrypoint written into the exported image
        metadata_label: Label holding the serialized build metadata
        group_path: Where detection writes the buildpack group descriptor
        app_user: Owner given to the launch volume before detection
        compress_layers: Gzip freshly built layers when publishing
        insecure_registries: Registries reached over plain http
        registry_username: Optional basic credentials for registries
        registry_password: Optional basic credentials for registries
        pull: Pull build and base images into the daemon before use
    """

    detector: str = "/packs/detector"
    analyzer: str = "/packs/analyzer"
    builder: str = "/packs/builder"
    launcher: str = "/packs/launcher"
    metadata_label: str = METADATA_LABEL
    group_path: str = "/workspace/group.toml"
    app_user: str = "packs:packs"
    compress_layers: bool = False
    insecure_registries: tuple[str, ...] = field(default_factory=tuple)
    registry_username: str | None = None
    registry_password: str | None = None
    registry_timeout: int | None = 300
    pull: bool = True

    @classmethod
    def from_env(cls) -> "LifecycleConfig":
        insecure = os.getenv("PACK_INSECURE_REGISTRIES", "")
        return cls(
            metadata_label=os.getenv("PACK_METADATA_LABEL", METADATA_LABEL),
            compress_layers=_env_flag("PACK_COMPRESS_LAYERS", False),
            insecure_registries=tuple(
                registry.strip() for registry in insecure.split(",") if registry.strip()
            ),
            registry_username=os.getenv("PACK_REGISTRY_USERNAME") or None,
            registry_password=os.getenv("PACK_REGISTRY_PASSWORD") or None,
            pull=_env_flag("PACK_PULL", True),
        )

    def registry_config(self, registry: str) -> RegistryConfig:
        """Build the connection settings for a registry host."""
        scheme = "http" if self.is_insecure(registry) else "https"
        return RegistryConfig(
            url=f"{scheme}://{registry}",
            timeout=self.registry_timeout,
            username=self.registry_username,
            password=self.registry_password,
        )

    def is_insecure(self, registry: str) -> bool:
        host = registry.split(":", 1)[0]
        return (
            registry in self.insecure_registries
            or host in ("localhost", "127.0.0.1")
        )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")

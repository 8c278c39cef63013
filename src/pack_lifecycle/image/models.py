"""In-memory image model: layers, config and the pure image operations."""

import copy
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

LAYER_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar"
LAYER_GZIP_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"
OCI_LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar"
OCI_LAYER_GZIP_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"

GZIP_MEDIA_TYPES = frozenset({LAYER_GZIP_MEDIA_TYPE, OCI_LAYER_GZIP_MEDIA_TYPE})


@dataclass(frozen=True)
class Layer:
    """An immutable filesystem layer.

    ``digest`` identifies the blob as stored, ``diff_id`` the uncompressed
    tar. ``blob`` is None for layers that still live in ``source``.
    """

    digest: str
    diff_id: str
    size: int
    media_type: str = LAYER_MEDIA_TYPE
    blob: bytes | None = field(default=None, repr=False, compare=False)
    source: str | None = None

    @property
    def compressed(self) -> bool:
        return self.media_type in GZIP_MEDIA_TYPES


@dataclass(frozen=True)
class ImageConfig:
    """Runtime configuration of an image.

    ``raw`` keeps the full config document so fields this package does not
    model (history, created, ports) survive a rewrite.
    """

    labels: Mapping[str, str] = field(default_factory=dict)
    env: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()
    cmd: tuple[str, ...] = ()
    working_dir: str = ""
    user: str = ""
    os: str = "linux"
    architecture: str = "amd64"
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ImageConfig":
        """Parse an image config JSON document."""
        runtime = document.get("config") or {}
        return cls(
            labels=runtime.get("Labels") or {},
            env=tuple(runtime.get("Env") or ()),
            entrypoint=tuple(runtime.get("Entrypoint") or ()),
            cmd=tuple(runtime.get("Cmd") or ()),
            working_dir=runtime.get("WorkingDir") or "",
            user=runtime.get("User") or "",
            os=document.get("os") or "linux",
            architecture=document.get("architecture") or "amd64",
            raw=copy.deepcopy(dict(document)),
        )

    def to_document(self, diff_ids: list[str]) -> dict[str, Any]:
        """Render the config document for a given layer stack."""
        document = copy.deepcopy(dict(self.raw))
        runtime = dict(document.get("config") or {})
        runtime.update(
            {
                "Labels": dict(self.labels),
                "Env": list(self.env),
                "Entrypoint": list(self.entrypoint) or None,
                "Cmd": list(self.cmd) or None,
                "WorkingDir": self.working_dir,
                "User": self.user,
            }
        )
        document["config"] = runtime
        document["os"] = self.os
        document["architecture"] = self.architecture
        document["rootfs"] = {"type": "layers", "diff_ids": list(diff_ids)}
        # History entries would no longer line up with the rewritten layers
        document.pop("history", None)
        document.pop("container_config", None)
        return document


@dataclass(frozen=True)
class Image:
    """An ordered layer stack plus its config.

    Instances are never mutated. ``digest`` is only known for images that
    were read back from a store.
    """

    name: str
    layers: tuple[Layer, ...] = ()
    config: ImageConfig = field(default_factory=ImageConfig)
    digest: str | None = None

    @property
    def labels(self) -> Mapping[str, str]:
        return self.config.labels

    def label(self, key: str) -> str:
        return self.config.labels.get(key, "")

    @property
    def top_layer(self) -> Layer | None:
        return self.layers[-1] if self.layers else None

    @property
    def diff_ids(self) -> list[str]:
        return [layer.diff_id for layer in self.layers]

    def find_layer(self, sha: str) -> Layer | None:
        """Find a layer by digest or diffID."""
        for layer in self.layers:
            if sha in (layer.digest, layer.diff_id):
                return layer
        return None


def append_layer(image: Image, layer: Layer) -> Image:
    return replace(image, layers=image.layers + (layer,), digest=None)


def set_label(image: Image, key: str, value: str) -> Image:
    labels = dict(image.config.labels)
    labels[key] = value
    return replace(image, config=replace(image.config, labels=labels), digest=None)


def with_layers(image: Image, layers: tuple[Layer, ...]) -> Image:
    return replace(image, layers=tuple(layers), digest=None)


def renamed(image: Image, name: str) -> Image:
    return replace(image, name=name, digest=None)

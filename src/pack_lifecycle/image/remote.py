"""Image store backed by a Docker Registry API v2 registry."""

import json
import logging
from typing import Any, Dict

from ..core.registry_client import (
    CONFIG_V1,
    MANIFEST_LIST_V2,
    MANIFEST_V2,
    OCI_INDEX,
    RegistryClient,
)
from ..core.types import LifecycleConfig
from ..exceptions import ImageAccessError
from ..utils.digest import calculate_digest
from . import models
from .models import (
    LAYER_GZIP_MEDIA_TYPE,
    LAYER_MEDIA_TYPE,
    OCI_LAYER_GZIP_MEDIA_TYPE,
    OCI_LAYER_MEDIA_TYPE,
    Image,
    ImageConfig,
    Layer,
)
from .reference import ImageReference, parse_reference

logger = logging.getLogger(__name__)

# Schema 2 manifests only list docker media types
_DOCKER_LAYER_TYPES = {
    OCI_LAYER_MEDIA_TYPE: LAYER_MEDIA_TYPE,
    OCI_LAYER_GZIP_MEDIA_TYPE: LAYER_GZIP_MEDIA_TYPE,
}

DEFAULT_PLATFORM = ("linux", "amd64")


class RemoteImageStore:
    """Reads and writes images directly against registries.

    Layers read from a registry carry no content; on write they are
    mounted from their source repository when it lives on the same
    registry, or streamed across otherwise.
    """

    def __init__(self, config: LifecycleConfig | None = None) -> None:
        self.config = config or LifecycleConfig()
        self._clients: Dict[str, RegistryClient] = {}

    async def _client(self, ref: ImageReference) -> RegistryClient:
        host = ref.registry_host
        client = self._clients.get(host)
        if client is None:
            client = RegistryClient(self.config.registry_config(host))
            await client.__aenter__()
            self._clients[host] = client
        return client

    async def close(self) -> None:
        """Close every registry session opened by this store."""
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()

    async def __aenter__(self) -> "RemoteImageStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def read_existing(self, name: str) -> Image:
        """Read an image's manifest and config from its registry.

        Raises:
            ImageNotFound: If the repository or tag does not exist
            ImageAccessError: If the registry cannot be read
        """
        ref = parse_reference(name)
        client = await self._client(ref)
        manifest, digest = await client.get_manifest(ref.repository, ref.reference)

        if manifest.get("mediaType") in (MANIFEST_LIST_V2, OCI_INDEX) or "manifests" in manifest:
            entry = _select_platform(manifest, name)
            manifest, digest = await client.get_manifest(ref.repository, entry["digest"])

        config_digest = (manifest.get("config") or {}).get("digest")
        if not config_digest:
            raise ImageAccessError(f"Manifest of {name} has no config")
        try:
            document = json.loads(await client.get_blob(ref.repository, config_digest))
        except json.JSONDecodeError as e:
            raise ImageAccessError(f"Config of {name} is not valid JSON: {e}") from e

        diff_ids = (document.get("rootfs") or {}).get("diff_ids") or []
        descriptors = manifest.get("layers") or []
        if len(diff_ids) != len(descriptors):
            raise ImageAccessError(
                f"{name}: manifest lists {len(descriptors)} layers but config has "
                f"{len(diff_ids)} diffIDs"
            )
        layers = tuple(
            Layer(
                digest=descriptor["digest"],
                diff_id=diff_id,
                size=int(descriptor.get("size", 0)),
                media_type=descriptor.get("mediaType", LAYER_GZIP_MEDIA_TYPE),
                source=str(ref),
            )
            for descriptor, diff_id in zip(descriptors, diff_ids)
        )
        return Image(
            name=name,
            layers=layers,
            config=ImageConfig.from_document(document),
            digest=digest,
        )

    def append_layer(self, image: Image, layer: Layer) -> Image:
        return models.append_layer(image, layer)

    def set_label(self, image: Image, key: str, value: str) -> Image:
        return models.set_label(image, key, value)

    async def write(self, image: Image) -> str:
        """Push every blob, then the manifest.

        Returns:
            Manifest digest

        Raises:
            ImageAccessError: If a blob or the manifest cannot be written
        """
        ref = parse_reference(image.name)
        client = await self._client(ref)

        pushed = set()
        for layer in image.layers:
            if layer.digest in pushed:
                continue
            await self._push_layer(client, ref, layer)
            pushed.add(layer.digest)

        config_bytes = json.dumps(
            image.config.to_document(image.diff_ids), sort_keys=True
        ).encode("utf-8")
        config_digest = calculate_digest(config_bytes)
        if not await client.check_blob_exists(ref.repository, config_digest):
            await client.upload_blob(ref.repository, config_bytes, config_digest)

        manifest: Dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": MANIFEST_V2,
            "config": {
                "mediaType": CONFIG_V1,
                "size": len(config_bytes),
                "digest": config_digest,
            },
            "layers": [
                {
                    "mediaType": _DOCKER_LAYER_TYPES.get(layer.media_type, layer.media_type),
                    "size": layer.size,
                    "digest": layer.digest,
                }
                for layer in image.layers
            ],
        }
        digest = await client.upload_manifest(ref.repository, ref.tag, manifest)
        logger.info("Pushed %s (%s)", ref, digest)
        return digest

    async def _push_layer(
        self, client: RegistryClient, ref: ImageReference, layer: Layer
    ) -> None:
        if await client.check_blob_exists(ref.repository, layer.digest):
            return
        if layer.blob is not None:
            await client.upload_blob(ref.repository, layer.blob, layer.digest)
            return
        if not layer.source:
            raise ImageAccessError(f"Layer {layer.digest} has no content and no source image")

        source = parse_reference(layer.source)
        if source.registry == ref.registry and await client.mount_blob(
            ref.repository, layer.digest, source.repository
        ):
            return
        source_client = await self._client(source)
        await client.upload_blob(
            ref.repository,
            source_client.stream_blob(source.repository, layer.digest),
            layer.digest,
        )


def _select_platform(index: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Pick the default platform's entry out of a manifest list."""
    entries = index.get("manifests") or []
    for entry in entries:
        platform = entry.get("platform") or {}
        if (platform.get("os"), platform.get("architecture")) == DEFAULT_PLATFORM:
            return entry
    raise ImageAccessError(
        f"{name} is a manifest list without a {'/'.join(DEFAULT_PLATFORM)} entry"
    )

"""Image store backed by the container engine's local image store."""

import gzip
import io
import json
import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, List

import aiofiles

from ..engine.base import Engine
from ..exceptions import ImageAccessError
from ..tar.reader import SavedImageReader
from ..utils.digest import calculate_digest, digest_hex
from . import models
from .models import LAYER_MEDIA_TYPE, Image, ImageConfig, Layer
from .reference import local_tag

logger = logging.getLogger(__name__)


class LocalImageStore:
    """Reads images by inspecting the daemon and writes them with `docker load`.

    Layers read from the daemon carry no content. When such a layer is
    written again, its tar is pulled out of a `docker save` of the image it
    came from.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def read_existing(self, name: str) -> Image:
        """Read an image's layer stack and config from the daemon.

        Raises:
            ImageNotFound: If the daemon does not have the image
            EngineError: If the daemon cannot be reached
        """
        inspect = await self.engine.inspect_image(name)
        image_id = inspect.get("Id", "")
        diff_ids = (inspect.get("RootFS") or {}).get("Layers") or []
        layers = tuple(
            Layer(
                digest=diff_id,
                diff_id=diff_id,
                size=0,
                media_type=LAYER_MEDIA_TYPE,
                source=image_id or name,
            )
            for diff_id in diff_ids
        )
        document = {
            "architecture": inspect.get("Architecture") or "amd64",
            "os": inspect.get("Os") or "linux",
            "config": inspect.get("Config") or {},
        }
        if inspect.get("Created"):
            document["created"] = inspect["Created"]
        return Image(
            name=name,
            layers=layers,
            config=ImageConfig.from_document(document),
            digest=image_id or None,
        )

    def append_layer(self, image: Image, layer: Layer) -> Image:
        return models.append_layer(image, layer)

    def set_label(self, image: Image, key: str, value: str) -> Image:
        return models.set_label(image, key, value)

    async def write(self, image: Image) -> str:
        """Load the image into the daemon under its name.

        Returns:
            Image ID (digest of the config document)

        Raises:
            ImageAccessError: If a layer's content cannot be found
            TarReadError: If a saved source image is malformed
            EngineError: If the daemon rejects the archive
        """
        contents = await self._layer_contents(image.layers)

        diff_ids = image.diff_ids
        config_bytes = json.dumps(
            image.config.to_document(diff_ids), sort_keys=True
        ).encode("utf-8")
        config_digest = calculate_digest(config_bytes)
        config_name = f"{digest_hex(config_digest)}.json"
        layer_paths = [f"{digest_hex(diff_id)}/layer.tar" for diff_id in diff_ids]
        manifest = [
            {
                "Config": config_name,
                "RepoTags": [local_tag(image.name)],
                "Layers": layer_paths,
            }
        ]

        archive = io.BytesIO()
        with tarfile.open(fileobj=archive, mode="w") as tar:
            _add_file(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))
            _add_file(tar, config_name, config_bytes)
            written = set()
            for diff_id, path in zip(diff_ids, layer_paths):
                if path in written:
                    continue
                written.add(path)
                _add_file(tar, path, contents[diff_id])

        await self.engine.load_image(archive.getvalue())
        logger.info("Loaded image %s (%s)", image.name, config_digest)
        return config_digest

    async def close(self) -> None:
        """Nothing to release; the engine is owned by the caller."""

    async def _layer_contents(self, layers: tuple[Layer, ...]) -> Dict[str, bytes]:
        """Uncompressed tar content for every layer, keyed by diffID."""
        contents: Dict[str, bytes] = {}
        missing: Dict[str, List[str]] = {}
        for layer in layers:
            if layer.blob is not None:
                contents[layer.diff_id] = (
                    gzip.decompress(layer.blob) if layer.compressed else layer.blob
                )
            elif layer.source:
                missing.setdefault(layer.source, []).append(layer.diff_id)
            else:
                raise ImageAccessError(
                    f"Layer {layer.digest} has no content and no source image"
                )

        if missing:
            with tempfile.TemporaryDirectory(prefix="pack-save-") as tmp_dir:
                for index, (source, diff_ids) in enumerate(missing.items()):
                    saved = Path(tmp_dir) / f"{index}.tar"
                    await self._save(source, saved)
                    async with SavedImageReader(saved) as reader:
                        contents.update(await reader.extract_layers(diff_ids))
        return contents

    async def _save(self, source: str, dest: Path) -> None:
        logger.debug("Saving %s to read its layers", source)
        async with aiofiles.open(dest, "wb") as fh:
            async for chunk in self.engine.save_image(source):
                await fh.write(chunk)


def _add_file(tar: tarfile.TarFile, name: str, content: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    tar.addfile(info, io.BytesIO(content))


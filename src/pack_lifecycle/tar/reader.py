"""Reader for `docker save` archives."""

import asyncio
import gzip
import json
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import TarReadError

GZIP_MAGIC = b"\x1f\x8b"


class SavedImageReader:
    """Async reader for archives produced by `docker save`.

    Both the legacy layout (``<id>/layer.tar``) and the OCI layout
    (``blobs/sha256/<hex>``) are understood; in each case ``manifest.json``
    lists layer paths in the same order as the config's diffIDs.
    """

    def __init__(self, tar_path: str | Path) -> None:
        """Initialize archive reader.

        Args:
            tar_path: Path to the saved image archive
        """
        self.tar_path = Path(tar_path)
        if not self.tar_path.exists():
            raise TarReadError(f"Tar file not found: {tar_path}")
        self._tar_file: Optional[tarfile.TarFile] = None

    async def __aenter__(self) -> "SavedImageReader":
        """Enter async context manager."""
        loop = asyncio.get_running_loop()
        try:
            self._tar_file = await loop.run_in_executor(
                None, tarfile.open, str(self.tar_path), "r"
            )
        except tarfile.TarError as e:
            raise TarReadError(f"Cannot read tar file: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the tar file."""
        if self._tar_file:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._tar_file.close)
            self._tar_file = None

    async def get_manifest(self) -> Dict[str, Any]:
        """Get the first manifest.json entry.

        Raises:
            TarReadError: If the manifest is missing or malformed
        """
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(
            None, self._extract_file_content, "manifest.json"
        )
        try:
            manifest = json.loads(content)
        except json.JSONDecodeError as e:
            raise TarReadError(f"Invalid JSON in manifest.json: {e}") from e
        if not isinstance(manifest, list) or not manifest:
            raise TarReadError("manifest.json must be a non-empty array")
        entry = manifest[0]
        if not isinstance(entry, dict) or "Config" not in entry or "Layers" not in entry:
            raise TarReadError("Invalid manifest entry structure")
        return entry

    async def get_config(self) -> Dict[str, Any]:
        """Get the image config document referenced by the manifest."""
        manifest = await self.get_manifest()
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(
            None, self._extract_file_content, manifest["Config"]
        )
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise TarReadError(f"Invalid JSON in {manifest['Config']}: {e}") from e

    async def layer_paths_by_diff_id(self) -> Dict[str, str]:
        """Map each diffID to the archive path of its layer tar."""
        manifest = await self.get_manifest()
        config = await self.get_config()
        diff_ids: List[str] = (config.get("rootfs") or {}).get("diff_ids") or []
        layer_paths: List[str] = manifest["Layers"]
        if len(diff_ids) != len(layer_paths):
            raise TarReadError(
                f"Manifest lists {len(layer_paths)} layers but config has "
                f"{len(diff_ids)} diffIDs"
            )
        return dict(zip(diff_ids, layer_paths))

    async def extract_layers(self, diff_ids: List[str]) -> Dict[str, bytes]:
        """Extract uncompressed layer tars for the requested diffIDs.

        Raises:
            TarReadError: If a requested layer is not in the archive
        """
        paths = await self.layer_paths_by_diff_id()
        loop = asyncio.get_running_loop()
        layers: Dict[str, bytes] = {}
        for diff_id in diff_ids:
            path = paths.get(diff_id)
            if path is None:
                raise TarReadError(f"Layer {diff_id} not found in saved image")
            content = await loop.run_in_executor(None, self._extract_file_content, path)
            if content[:2] == GZIP_MAGIC:
                content = await loop.run_in_executor(None, gzip.decompress, content)
            layers[diff_id] = content
        return layers

    def _extract_file_content(self, filename: str) -> bytes:
        """Extract file content from tar (sync helper).

        Raises:
            TarReadError: If file cannot be extracted
        """
        if not self._tar_file:
            raise TarReadError("Tar file not opened")

        try:
            file_obj = self._tar_file.extractfile(filename)
        except KeyError as e:
            raise TarReadError(f"File {filename} not found in tar") from e
        except tarfile.TarError as e:
            raise TarReadError(f"Failed to extract {filename}: {e}") from e
        if file_obj is None:
            raise TarReadError(f"Could not extract {filename}")
        with file_obj:
            return file_obj.read()

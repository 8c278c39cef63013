"""Tests for reading layers out of `docker save` archives."""

import gzip
import io
import json
import tarfile

import pytest

from pack_lifecycle.exceptions import TarReadError
from pack_lifecycle.tar.archive import first_file_content, single_file_tar
from pack_lifecycle.tar.reader import SavedImageReader
from pack_lifecycle.utils.digest import calculate_digest


def add_file(tar, name, content):
    info = tarfile.TarInfo(name)
    info.size = len(content)
    tar.addfile(info, io.BytesIO(content))


def create_saved_image(path, layers, oci=False, gzipped=False):
    """Write a saved image archive holding the given raw layer tars."""
    diff_ids = [calculate_digest(layer) for layer in layers]
    config = json.dumps({"rootfs": {"type": "layers", "diff_ids": diff_ids}}).encode()
    with tarfile.open(path, "w") as tar:
        paths = []
        for diff_id, layer in zip(diff_ids, layers):
            hex_id = diff_id.split(":", 1)[1]
            layer_path = f"blobs/sha256/{hex_id}" if oci else f"{hex_id}/layer.tar"
            add_file(tar, layer_path, gzip.compress(layer) if gzipped else layer)
            paths.append(layer_path)
        add_file(tar, "config.json", config)
        manifest = [{"Config": "config.json", "RepoTags": ["app:latest"], "Layers": paths}]
        add_file(tar, "manifest.json", json.dumps(manifest).encode())
    return diff_ids


@pytest.mark.asyncio
@pytest.mark.parametrize("oci,gzipped", [(False, False), (True, False), (True, True)])
async def test_extract_layers(tmp_path, oci, gzipped):
    path = tmp_path / "saved.tar"
    layers = [single_file_tar("a.txt", "a"), single_file_tar("b.txt", "b")]
    diff_ids = create_saved_image(path, layers, oci=oci, gzipped=gzipped)

    async with SavedImageReader(path) as reader:
        extracted = await reader.extract_layers([diff_ids[1]])

    assert extracted == {diff_ids[1]: layers[1]}


@pytest.mark.asyncio
async def test_missing_layer(tmp_path):
    path = tmp_path / "saved.tar"
    create_saved_image(path, [single_file_tar("a.txt", "a")])

    async with SavedImageReader(path) as reader:
        with pytest.raises(TarReadError, match="not found"):
            await reader.extract_layers(["sha256:" + "0" * 64])


@pytest.mark.asyncio
async def test_invalid_manifest(tmp_path):
    path = tmp_path / "saved.tar"
    with tarfile.open(path, "w") as tar:
        add_file(tar, "manifest.json", b"{}")

    async with SavedImageReader(path) as reader:
        with pytest.raises(TarReadError, match="non-empty array"):
            await reader.get_manifest()


def test_missing_archive(tmp_path):
    with pytest.raises(TarReadError, match="not found"):
        SavedImageReader(tmp_path / "missing.tar")


def test_first_file_content():
    assert first_file_content(single_file_tar("group.toml", "x = 1\n")) == b"x = 1\n"


def test_first_file_content_without_file():
    with pytest.raises(TarReadError):
        first_file_content(b"not a tar archive at all" * 40)

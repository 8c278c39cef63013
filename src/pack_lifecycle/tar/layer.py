"""Deterministic layer construction from a directory tree."""

import gzip
import io
import os
import stat
import tarfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from ..exceptions import LayerConstructionError
from ..image.models import LAYER_GZIP_MEDIA_TYPE, LAYER_MEDIA_TYPE, Layer
from ..utils.digest import calculate_digest

# 1980-01-01T00:00:01Z, the earliest timestamp every tar consumer accepts
NORMALIZED_MTIME = 315532801


def _raise_walk_error(error: OSError) -> None:
    raise LayerConstructionError(f"Failed to list {error.filename}: {error}") from error


def _walk_sorted(source_dir: Path) -> list[tuple[str, Path]]:
    """List (relative posix path, absolute path) pairs in lexicographic order."""
    entries: list[tuple[str, Path]] = []
    for root, dirs, files in os.walk(source_dir, onerror=_raise_walk_error, followlinks=False):
        root_path = Path(root)
        for name in dirs + files:
            path = root_path / name
            relative = path.relative_to(source_dir).as_posix()
            entries.append((relative, path))
    entries.sort(key=lambda entry: entry[0])
    return entries


def _tar_info(path: Path, arcname: str, uid: int, gid: int) -> tarfile.TarInfo:
    try:
        st = os.lstat(path)
    except OSError as e:
        raise LayerConstructionError(f"Failed to stat {path}: {e}") from e

    info = tarfile.TarInfo(arcname)
    info.mtime = NORMALIZED_MTIME
    info.uid = uid
    info.gid = gid
    info.uname = ""
    info.gname = ""
    info.mode = stat.S_IMODE(st.st_mode)

    if stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    elif stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    else:
        raise LayerConstructionError(f"Unsupported file type for layer entry: {path}")
    return info


def write_tar(
    fileobj: BinaryIO,
    source_dir: str | Path,
    dest_prefix: str,
    uid: int = 0,
    gid: int = 0,
) -> None:
    """Write source_dir as a tar stream with entries rooted at dest_prefix.

    Entries are written in lexicographic path order with normalized
    timestamps and ownership, so identical trees yield identical bytes.

    Args:
        fileobj: Binary stream receiving the tar
        source_dir: Directory to archive
        dest_prefix: Path prefix inside the archive (e.g. "/launch/app")
        uid: Owner written into every header
        gid: Group written into every header

    Raises:
        LayerConstructionError: If the directory is missing, contains an
            unsupported file type, or cannot be read
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise LayerConstructionError(f"Layer source is not a directory: {source}")

    prefix = PurePosixPath(dest_prefix.strip("/") or ".")
    try:
        with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT) as tar:
            tar.addfile(_tar_info(source, prefix.as_posix(), uid, gid))
            for relative, path in _walk_sorted(source):
                info = _tar_info(path, (prefix / relative).as_posix(), uid, gid)
                if info.isreg():
                    with open(path, "rb") as fh:
                        tar.addfile(info, fh)
                else:
                    tar.addfile(info)
    except OSError as e:
        raise LayerConstructionError(f"Failed to archive {source}: {e}") from e


class LayerBuilder:
    """Turns directory subtrees into content-addressed layers."""

    def __init__(self, compress: bool = False, uid: int = 0, gid: int = 0) -> None:
        """Initialize the builder.

        Args:
            compress: Gzip the blob; the diffID still covers the raw tar
            uid: Owner written into every entry
            gid: Group written into every entry
        """
        self.compress = compress
        self.uid = uid
        self.gid = gid

    def build_layer(self, source_dir: str | Path, dest_prefix: str) -> Layer:
        """Build one layer from a directory.

        Args:
            source_dir: Directory whose contents form the layer
            dest_prefix: Where the directory appears in the image filesystem

        Returns:
            Layer with blob, digest and diffID

        Raises:
            LayerConstructionError: If the directory cannot be archived
        """
        buffer = io.BytesIO()
        write_tar(buffer, source_dir, dest_prefix, self.uid, self.gid)
        raw = buffer.getvalue()
        diff_id = calculate_digest(raw)

        if not self.compress:
            return Layer(
                digest=diff_id,
                diff_id=diff_id,
                size=len(raw),
                media_type=LAYER_MEDIA_TYPE,
                blob=raw,
            )

        compressed = io.BytesIO()
        # mtime=0 and no filename keep the gzip header stable
        with gzip.GzipFile(filename="", fileobj=compressed, mode="wb", mtime=0) as gz:
            gz.write(raw)
        blob = compressed.getvalue()
        return Layer(
            digest=calculate_digest(blob),
            diff_id=diff_id,
            size=len(blob),
            media_type=LAYER_GZIP_MEDIA_TYPE,
            blob=blob,
        )

"""Small tar helpers for moving files in and out of containers."""

import io
import tarfile
from pathlib import Path

from ..exceptions import TarReadError
from .layer import NORMALIZED_MTIME


def single_file_tar(name: str, content: bytes | str, mode: int = 0o644) -> bytes:
    """Build an archive holding one regular file."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    info.mtime = NORMALIZED_MTIME
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def first_file_content(data: bytes) -> bytes:
    """Content of the first regular file in an archive.

    The engine answers a download of a single path with an archive whose
    first entry is that file.

    Raises:
        TarReadError: If the archive is malformed or holds no regular file
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar:
                if not member.isreg():
                    continue
                file_obj = tar.extractfile(member)
                if file_obj is None:
                    break
                with file_obj:
                    return file_obj.read()
    except tarfile.TarError as e:
        raise TarReadError(f"Cannot read archive: {e}") from e
    raise TarReadError("Archive holds no regular file")


def _keep_mode(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    # Path checks of the "tar" filter, without its mode stripping
    return tarfile.tar_filter(member, dest_path).replace(mode=member.mode, deep=False)


def extract_archive(data: bytes, dest: str | Path) -> None:
    """Extract an archive, refusing members that escape dest.

    Permission bits are kept as archived, including setuid, setgid and
    sticky bits.

    Raises:
        TarReadError: If the archive is malformed or unsafe
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            tar.extractall(dest, filter=_keep_mode)
    except (tarfile.TarError, OSError) as e:
        raise TarReadError(f"Cannot extract archive: {e}") from e

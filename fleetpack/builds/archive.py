"""Tar archive writing and merging.

Archives are written reproducibly: entries in sorted order, ownership
normalized to root, timestamps zeroed, and no timestamp in the gzip header.
Merging copies member entries without re-encoding their payloads.
"""

from __future__ import annotations

import gzip
import io
import logging
import tarfile
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class ArchiveConflictError(Exception):
    """Raised when two merged archives provide the same file path."""

    def __init__(self, name: str, first: str, second: str) -> None:
        super().__init__(
            f"Path '{name}' provided by both '{first}' and '{second}'"
        )
        self.name = name
        self.first = first
        self.second = second
        self.code = "path_conflict"


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = "root"
    info.gname = "root"
    info.mtime = 0
    return info


@contextmanager
def open_archive_writer(path: Path, compress: bool) -> Iterator[tarfile.TarFile]:
    """Open ``path`` for writing a tar archive, gzip-compressed if requested."""
    with ExitStack() as stack:
        fileobj: io.IOBase = stack.enter_context(path.open("wb"))
        if compress:
            fileobj = stack.enter_context(
                gzip.GzipFile(filename="", mode="wb", fileobj=fileobj, mtime=0)
            )
        tar = stack.enter_context(
            tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT)
        )
        yield tar


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    """Add an in-memory file to an archive."""
    info = _normalize(tarfile.TarInfo(name=name))
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def add_tree(tar: tarfile.TarFile, root: Path) -> int:
    """Add every entry under ``root`` to the archive, in sorted order.

    Returns:
        Number of entries added.
    """
    count = 0
    for path in sorted(root.rglob("*")):
        arcname = path.relative_to(root).as_posix()
        tar.add(path, arcname=arcname, recursive=False, filter=_normalize)
        count += 1
    return count


def merge_archives(
    tar: tarfile.TarFile,
    members: Iterable[tuple[str, Path]],
    skip_names: Iterable[str] = (),
) -> int:
    """Append the entries of each member archive to ``tar``.

    Regular file payloads are streamed unmodified from the member archive;
    only headers and the outer compression change. Directories shared by
    several members are written once.

    Args:
        tar: Open archive being written.
        members: (package name, archive path) pairs, in merge order.
        skip_names: Entry names dropped from every member.

    Returns:
        Number of entries written.

    Raises:
        ArchiveConflictError: If two members provide the same non-directory
            path, or one provides a directory where another has a file.
        tarfile.TarError: If a member archive is unreadable.
    """
    skip = set(skip_names)
    seen_dirs: dict[str, str] = {}
    seen_files: dict[str, str] = {}
    count = 0

    for package, path in members:
        logger.debug("Merging %s from %s", package, path)
        with tarfile.open(path, "r:*") as src:
            for info in src:
                name = info.name
                if name in skip:
                    continue
                if info.isdir():
                    if name in seen_files:
                        raise ArchiveConflictError(name, seen_files[name], package)
                    if name in seen_dirs:
                        continue
                    seen_dirs[name] = package
                    tar.addfile(info)
                elif name in seen_files:
                    raise ArchiveConflictError(name, seen_files[name], package)
                elif name in seen_dirs:
                    raise ArchiveConflictError(name, seen_dirs[name], package)
                else:
                    seen_files[name] = package
                    if info.isreg():
                        tar.addfile(info, src.extractfile(info))
                    else:
                        tar.addfile(info)
                count += 1
    return count


def is_tar_archive(path: Path) -> bool:
    """Return True if ``path`` is a readable (optionally compressed) tar archive."""
    try:
        return path.is_file() and tarfile.is_tarfile(path)
    except OSError:
        return False


__all__ = [
    "ArchiveConflictError",
    "add_bytes",
    "add_tree",
    "is_tar_archive",
    "merge_archives",
    "open_archive_writer",
]

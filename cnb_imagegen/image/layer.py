"""Image layer content generation.

This module handles:
- Writing deterministic layer tarballs (fixed mtime, explicit ownership)
- Implicit creation of parent directory entries
- Copying host directory trees into a layer under a container path
- Computing layer diff IDs (sha256 of the uncompressed tar)
"""

from __future__ import annotations

import hashlib
import io
import logging
import stat
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO

logger = logging.getLogger(__name__)

# 1980-01-01T00:00:01Z, the earliest timestamp zip-based tooling accepts
NORMALIZED_MTIME = 315532801

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755


class LayerContentError(Exception):
    """Raised when layer content cannot be written."""

    def __init__(self, message: str, code: str = "layer_content_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Owner:
    """Numeric user/group ownership applied to layer entries."""

    uid: int
    gid: int

    def __str__(self) -> str:
        return f"{self.uid}/{self.gid}"


ROOT = Owner(0, 0)


def _entry_name(name: str) -> str:
    path = PurePosixPath("/" + name.lstrip("/"))
    if ".." in path.parts:
        raise LayerContentError(
            f"Layer entry {name} escapes the layer root", code="path_traversal"
        )
    return str(path).lstrip("/")


class LayerWriter:
    """Writes entries into a layer tarball.

    Entry names are absolute container paths; leading slashes are stripped in
    the archive. Parent directories that were not written explicitly are
    added as root-owned 0755 directories.
    """

    def __init__(self, tar: tarfile.TarFile) -> None:
        self._tar = tar
        self._directories: set[str] = set()

    def directory(self, name: str, owner: Owner = ROOT, mode: int = DEFAULT_DIR_MODE) -> None:
        """Add a directory entry."""
        entry = _entry_name(name)
        if not entry or entry in self._directories:
            return
        self._parents(entry)
        info = self._info(entry + "/", owner, mode)
        info.type = tarfile.DIRTYPE
        self._tar.addfile(info)
        self._directories.add(entry)

    def file(
        self,
        name: str,
        content: bytes,
        owner: Owner = ROOT,
        mode: int = DEFAULT_FILE_MODE,
    ) -> None:
        """Add a regular file entry."""
        entry = _entry_name(name)
        self._parents(entry)
        info = self._info(entry, owner, mode)
        info.size = len(content)
        self._tar.addfile(info, io.BytesIO(content))

    def copy_member(
        self, prefix: str, member: tarfile.TarInfo, data: IO[bytes] | None
    ) -> None:
        """Re-root an entry from another archive under ``prefix``.

        Only directories, regular files and symbolic links are carried over.
        """
        name = member.name
        while name.startswith("./"):
            name = name[2:]
        name = name.lstrip("/")
        if name in ("", "."):
            target = prefix
        else:
            target = f"{prefix.rstrip('/')}/{name}".rstrip("/")
        owner = Owner(member.uid, member.gid)
        if member.isdir():
            self.directory(target, owner, stat.S_IMODE(member.mode))
        elif member.isfile() and data is not None:
            self.file(target, data.read(), owner, stat.S_IMODE(member.mode))
        elif member.issym():
            entry = _entry_name(target)
            self._parents(entry)
            info = self._info(entry, owner, stat.S_IMODE(member.mode))
            info.type = tarfile.SYMTYPE
            info.linkname = member.linkname
            self._tar.addfile(info)
        else:
            logger.debug("Skipping unsupported archive entry %s", member.name)

    def tree(self, source_dir: Path, prefix: str, owner: Owner) -> None:
        """Copy a host directory tree under ``prefix``.

        File modes are preserved; ownership is replaced by ``owner``.
        Symlinks are followed only when they stay within ``source_dir``.

        Raises:
            LayerContentError: If the tree cannot be read or a symlink escapes it.
        """
        source_resolved = source_dir.resolve()
        self.directory(prefix, owner)
        try:
            for item in sorted(source_dir.rglob("*")):
                rel_path = item.relative_to(source_dir).as_posix()
                target = f"{prefix.rstrip('/')}/{rel_path}"
                if item.is_symlink():
                    try:
                        item.resolve().relative_to(source_resolved)
                    except ValueError:
                        raise LayerContentError(
                            f"Symlink {item} points outside {source_dir}",
                            code="symlink_escape",
                        ) from None
                mode = stat.S_IMODE(item.stat().st_mode)
                if item.is_dir():
                    self.directory(target, owner, mode)
                elif item.is_file():
                    self.file(target, item.read_bytes(), owner, mode)
        except OSError as e:
            raise LayerContentError(
                f"Failed to read {source_dir}: {e}", code="read_error"
            ) from e

    def _parents(self, entry: str) -> None:
        parent = PurePosixPath(entry).parent
        if str(parent) not in ("", "."):
            self.directory(str(parent))

    @staticmethod
    def _info(name: str, owner: Owner, mode: int) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name)
        info.uid = owner.uid
        info.gid = owner.gid
        info.mode = mode
        info.mtime = NORMALIZED_MTIME
        return info


def write_tar(content: Callable[[LayerWriter], None]) -> bytes:
    """Write a tarball using a content callback and return its bytes."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        content(LayerWriter(tar))
    return buffer.getvalue()


@dataclass(frozen=True)
class Layer:
    """An uncompressed image layer and its diff ID."""

    diff_id: str
    content: bytes

    @classmethod
    def of(cls, content: Callable[[LayerWriter], None]) -> Layer:
        """Create a layer from a content callback."""
        return cls.from_tar(write_tar(content))

    @classmethod
    def from_tar(cls, data: bytes) -> Layer:
        """Wrap existing uncompressed tar bytes as a layer."""
        return cls(diff_id=f"sha256:{hashlib.sha256(data).hexdigest()}", content=data)


__all__ = [
    "NORMALIZED_MTIME",
    "ROOT",
    "Layer",
    "LayerContentError",
    "LayerWriter",
    "Owner",
    "write_tar",
]

"""Filesystem entries and their canonical serialization.

A tree is a flat mapping of absolute POSIX paths to entries. Like an
archive format built for content addressing, the serialization:
- sorts paths, so identical trees always serialize identically
- drops timestamps entirely
- keeps ownership only on request (content digests ignore it, state
  digests include it)

Every value is written as uint64_le(length) + raw bytes + zero padding to
an 8-byte boundary.
"""

import os
import posixpath
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping

from strata.digest import sha256_hex

FILE = "file"
DIR = "dir"


@dataclass(frozen=True)
class Entry:
    kind: str
    owner: str = "root"
    group: str = "root"
    data: bytes = b""
    mode: int = 0o644

    @property
    def is_dir(self) -> bool:
        return self.kind == DIR

    def chown(self, owner: str, group: str | None = None) -> "Entry":
        return Entry(self.kind, owner, group or owner, self.data, self.mode)


def directory(owner: str = "root", group: str | None = None) -> Entry:
    return Entry(DIR, owner, group or owner, b"", 0o755)


def file(data: bytes | str, owner: str = "root", group: str | None = None,
         mode: int = 0o644) -> Entry:
    if isinstance(data, str):
        data = data.encode()
    return Entry(FILE, owner, group or owner, data, mode)


def normalize(path: str) -> str:
    if not path.startswith("/"):
        raise ValueError(f"path must be absolute: {path!r}")
    return posixpath.normpath(path).replace("//", "/")


def is_under(path: str, root: str) -> bool:
    if root == "/":
        return True
    return path == root or path.startswith(root.rstrip("/") + "/")


def ancestors(path: str) -> Iterator[str]:
    """Yield the parents of path, nearest first, ending with "/"."""
    while path != "/":
        path = posixpath.dirname(path)
        yield path


def subtree(entries: Mapping[str, Entry], root: str) -> dict[str, Entry]:
    return {p: e for p, e in entries.items() if is_under(p, root)}


def _pad8(n: int) -> int:
    return (8 - n % 8) % 8


def _str(s: str | bytes) -> bytes:
    if isinstance(s, str):
        s = s.encode()
    return struct.pack("<Q", len(s)) + s + b"\0" * _pad8(len(s))


def serialize(entries: Mapping[str, Entry], root: str = "/",
              ownership: bool = False) -> bytes:
    """Serialize the part of ``entries`` under ``root``.

    Paths are written relative to root, so the same content copied to a
    different location serializes identically.
    """
    parts = [_str("strata-tree-1")]
    for path in sorted(subtree(entries, root)):
        e = entries[path]
        rel = posixpath.relpath(path, root) if path != root else "."
        parts.append(_str(rel))
        parts.append(_str(e.kind))
        parts.append(_str("x" if e.mode & 0o111 and not e.is_dir else "-"))
        if ownership:
            parts.append(_str(f"{e.owner}:{e.group}"))
        parts.append(_str(e.data))
    return b"".join(parts)


def tree_digest(entries: Mapping[str, Entry], root: str = "/",
                ownership: bool = False) -> str:
    return sha256_hex(serialize(entries, root, ownership))


def load_directory(path: str | Path, skip: tuple[str, ...] = (".git",)) -> dict[str, Entry]:
    """Read a real directory into a tree rooted at "/".

    Ownership is not read from disk; whoever copies the entries decides it.
    """
    base = Path(path)
    if not base.is_dir():
        raise NotADirectoryError(str(base))
    out: dict[str, Entry] = {"/": directory()}
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        rel = Path(dirpath).relative_to(base)
        for d in dirnames:
            out[normalize("/" + (rel / d).as_posix())] = directory()
        for f in sorted(filenames):
            full = Path(dirpath) / f
            if full.is_symlink():
                continue
            mode = 0o755 if os.access(full, os.X_OK) else 0o644
            out[normalize("/" + (rel / f).as_posix())] = file(full.read_bytes(), mode=mode)
    return out

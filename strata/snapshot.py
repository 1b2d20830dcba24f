"""Immutable environment state.

A Snapshot is everything a stage hands to its children: the filesystem,
environment variables, installed OS packages, accounts and the handful of
image settings (working directory, default user). Steps never mutate a
snapshot; they return a new one via ``evolve()``.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

from strata import tree
from strata.digest import sha256_hex
from strata.errors import PermissionMisalignmentError
from strata.tree import Entry

ROOT = "root"


@dataclass(frozen=True)
class Account:
    name: str
    uid: int
    gid: int
    home: str
    shell: str = "/bin/bash"
    comment: str = ""


@dataclass(frozen=True)
class ArtifactHandle:
    """Record of a promotion: where the artifacts came from and what they hashed to."""

    stage: str
    stage_key: str
    manifest_digest: str
    tree_digests: tuple[tuple[str, str], ...]


def _frozen(d: Mapping) -> Mapping:
    return MappingProxyType(dict(d))


def _check_writable(files: Mapping[str, Entry], path: str, identity: str) -> None:
    """Non-root identities may only write where the nearest existing entry is theirs."""
    if identity == ROOT:
        return
    target = path if path in files else next(
        (a for a in tree.ancestors(path) if a in files), "/",
    )
    owner = files[target].owner if target in files else ROOT
    if owner != identity:
        raise PermissionMisalignmentError(
            f"{identity} cannot write {path}: {target} is owned by {owner}"
        )


@dataclass(frozen=True)
class Snapshot:
    image: str
    files: Mapping[str, Entry] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    os_packages: frozenset[str] = frozenset()
    accounts: Mapping[str, Account] = field(default_factory=dict)
    build_account: str | None = None
    workdir: str = "/"
    user: str = ROOT
    guarded: frozenset[str] = frozenset()
    sudoers: frozenset[str] = frozenset()
    history: tuple[str, ...] = ()
    promotions: tuple[ArtifactHandle, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "files", _frozen(self.files))
        object.__setattr__(self, "env", _frozen(self.env))
        object.__setattr__(self, "accounts", _frozen(self.accounts))

    def evolve(self, **kw) -> Snapshot:
        return replace(self, **kw)

    # --- filesystem ---

    def exists(self, path: str) -> bool:
        return path in self.files

    def read(self, path: str) -> bytes:
        e = self.files.get(path)
        if e is None or e.is_dir:
            raise FileNotFoundError(path)
        return e.data

    def listdir(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return sorted(
            p[len(prefix):] for p in self.files
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def owner(self, path: str) -> str:
        return self.files[path].owner

    def write(self, path: str, entry: Entry, identity: str = ROOT) -> Snapshot:
        """Write an entry, creating missing parent directories.

        Parents are created with the entry's ownership. A non-root identity
        may only write beneath an entry it owns.
        """
        return self.write_many({path: entry}, identity)

    def write_many(self, entries: Mapping[str, Entry], identity: str = ROOT) -> Snapshot:
        files = dict(self.files)
        for path in sorted(entries):
            entry = entries[path]
            path = tree.normalize(path)
            _check_writable(files, path, identity)
            for parent in tree.ancestors(path):
                if parent in files:
                    break
                files[parent] = tree.directory(entry.owner, entry.group)
            files[path] = entry
        return self.evolve(files=files)

    def remove(self, root: str) -> Snapshot:
        files = {p: e for p, e in self.files.items() if not tree.is_under(p, root)}
        return self.evolve(files=files)

    def misowned(self, account: str) -> list[str]:
        """Entries under guarded roots that are not owned by ``account``."""
        return sorted(
            p for p, e in self.files.items()
            if e.owner != account and any(tree.is_under(p, g) for g in self.guarded)
        )

    def chown(self, paths: list[str], owner: str, group: str | None = None) -> Snapshot:
        files = dict(self.files)
        for p in paths:
            files[p] = files[p].chown(owner, group)
        return self.evolve(files=files)

    def chown_tree(self, root: str, owner: str, group: str | None = None) -> Snapshot:
        return self.chown(sorted(tree.subtree(self.files, root)), owner, group)

    # --- identity ---

    def account(self, name: str) -> Account:
        return self.accounts[name]

    def note(self, line: str) -> Snapshot:
        return self.evolve(history=self.history + (line,))

    def digest(self) -> str:
        """Deterministic hash of the whole state, ownership included."""
        return sha256_hex(json.dumps(self.to_dict(), sort_keys=True).encode())

    # --- JSON ---

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "files": {
                p: [e.kind, e.owner, e.group, base64.b64encode(e.data).decode(), e.mode]
                for p, e in sorted(self.files.items())
            },
            "env": dict(sorted(self.env.items())),
            "os_packages": sorted(self.os_packages),
            "accounts": {
                n: [a.uid, a.gid, a.home, a.shell, a.comment]
                for n, a in sorted(self.accounts.items())
            },
            "build_account": self.build_account,
            "workdir": self.workdir,
            "user": self.user,
            "guarded": sorted(self.guarded),
            "sudoers": sorted(self.sudoers),
            "history": list(self.history),
            "promotions": [
                [h.stage, h.stage_key, h.manifest_digest, [list(t) for t in h.tree_digests]]
                for h in self.promotions
            ],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Snapshot:
        return cls(
            image=d["image"],
            files={
                p: Entry(kind, owner, group, base64.b64decode(data), mode)
                for p, (kind, owner, group, data, mode) in d["files"].items()
            },
            env=d["env"],
            os_packages=frozenset(d["os_packages"]),
            accounts={
                n: Account(n, uid, gid, home, shell, comment)
                for n, (uid, gid, home, shell, comment) in d["accounts"].items()
            },
            build_account=d["build_account"],
            workdir=d["workdir"],
            user=d["user"],
            guarded=frozenset(d["guarded"]),
            sudoers=frozenset(d["sudoers"]),
            history=tuple(d["history"]),
            promotions=tuple(
                ArtifactHandle(s, k, m, tuple(tuple(t) for t in digests))
                for s, k, m, digests in d["promotions"]
            ),
        )

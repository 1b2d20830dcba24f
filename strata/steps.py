"""Build steps: pure functions from one snapshot to the next.

Each step is a frozen dataclass with an explicit privilege level. Steps at
``BUILD_USER`` run as the stage's build account and fail loudly if they
touch something that account does not own; steps at ``ROOT`` may write
anywhere, and the builder re-checks ownership of guarded paths after each
one.

A step's ``fingerprint()`` is the canonical JSON of its fields. It is what
makes two stages with the same steps share an address.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import posixpath
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Mapping

from strata import manifest as manifests
from strata import tree
from strata.errors import (
    BaseNotFoundError,
    BuildError,
    ManifestDriftError,
    ManifestError,
    PackageInstallError,
    PermissionMisalignmentError,
)
from strata.resolver import CONFIG_PATH, PACKAGES_DIR, PackageIndex, Resolver, ResolverConfig
from strata.snapshot import ROOT, Account, ArtifactHandle, Snapshot
from strata.tree import Entry

log = logging.getLogger(__name__)

APT_LISTS = "/var/lib/apt/lists"
DPKG_INFO = "/var/lib/dpkg/info"
SUDOERS_DIR = "/etc/sudoers.d"


class Privilege(str, Enum):
    ROOT = "root"
    BUILD_USER = "build-user"


@dataclass
class StepContext:
    """What a step may read besides the snapshot it transforms."""

    source: Mapping[str, Entry] = field(default_factory=dict)
    index: PackageIndex | None = None
    os_catalogue: frozenset[str] | None = None
    promoted: Mapping[str, tuple[str, Snapshot]] = field(default_factory=dict)
    check_manifest: bool = True


def identity(step: Step, snap: Snapshot) -> str:
    if step.privilege == Privilege.ROOT:
        return ROOT
    if snap.build_account is None:
        raise PermissionMisalignmentError(
            f"{type(step).__name__} runs as the build account, but none exists yet"
        )
    return snap.build_account


def _build_account(snap: Snapshot, what: str) -> Account:
    if snap.build_account is None:
        raise BuildError(f"{what} needs a build account")
    return snap.account(snap.build_account)


def _in_workdir(snap: Snapshot, rel: str) -> str:
    return tree.normalize(posixpath.join(snap.workdir, rel))


@dataclass(frozen=True)
class Step:
    privilege: Privilege = field(default=Privilege.ROOT, kw_only=True)

    def apply(self, snap: Snapshot, ctx: StepContext) -> Snapshot:
        raise NotImplementedError

    def fingerprint(self) -> str:
        return json.dumps({"step": type(self).__name__, **asdict(self)},
                          sort_keys=True, default=str)

    def describe(self) -> str:
        return type(self).__name__

    def targets(self) -> tuple[str, ...]:
        """Paths this step writes, as far as can be known without running it."""
        return ()


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SetEnv(Step):
    values: tuple[tuple[str, str], ...] = ()

    def apply(self, snap, ctx):
        return snap.evolve(env={**snap.env, **dict(self.values)})

    def describe(self):
        return "env " + " ".join(f"{k}={v}" for k, v in self.values)


@dataclass(frozen=True)
class ExtendPath(Step):
    directory: str = ""

    def apply(self, snap, ctx):
        current = snap.env.get("PATH", "")
        return snap.evolve(env={**snap.env, "PATH": f"{self.directory}:{current}".rstrip(":")})

    def describe(self):
        return f"path += {self.directory}"


@dataclass(frozen=True)
class SetWorkdir(Step):
    path: str = "/"

    def apply(self, snap, ctx):
        if not snap.exists(self.path):
            # Created as root, exactly like an image builder would.
            snap = snap.write(self.path, tree.directory(), identity(self, snap))
        return snap.evolve(workdir=self.path)

    def describe(self):
        return f"workdir {self.path}"

    def targets(self):
        return (self.path,)


# ---------------------------------------------------------------------------
# Package provisioning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InstallPackages(Step):
    packages: tuple[str, ...] = ()
    minimal: bool = True
    refresh_index: bool = True
    purge_index: bool = False

    def apply(self, snap, ctx):
        who = identity(self, snap)
        if self.refresh_index:
            snap = snap.write(f"{APT_LISTS}/index", tree.file("\n".join(sorted(
                ctx.os_catalogue or self.packages)) + "\n"), who)
        elif not snap.listdir(APT_LISTS):
            raise PackageInstallError(
                f"cannot install {', '.join(self.packages)}: package index is empty"
            )
        if ctx.os_catalogue is not None:
            missing = sorted(set(self.packages) - ctx.os_catalogue)
            if missing:
                raise PackageInstallError(f"unable to locate package(s): {', '.join(missing)}")
        snap = snap.write_many(
            {f"{DPKG_INFO}/{p}.list": tree.file(f"{p}\n") for p in self.packages}, who,
        )
        snap = snap.evolve(os_packages=snap.os_packages | set(self.packages))
        if self.purge_index:
            snap = snap.remove(APT_LISTS)
        return snap

    def describe(self):
        return "install " + " ".join(self.packages)


@dataclass(frozen=True)
class Run(Step):
    """An opaque command. ``writes`` lists the paths it is known to produce."""

    command: str = ""
    writes: tuple[str, ...] = ()

    def apply(self, snap, ctx):
        who = identity(self, snap)
        return snap.write_many(
            {p: tree.file(self.command + "\n", owner=who) for p in self.writes}, who,
        )

    def describe(self):
        return f"run {self.command}"

    def targets(self):
        return self.writes


@dataclass(frozen=True)
class InstallTools(Step):
    """Install language-runtime tools (``gem install`` and friends) into the cache."""

    tools: tuple[str, ...] = ()
    cache_dir: str = "/usr/local/bundle"
    privilege: Privilege = field(default=Privilege.BUILD_USER, kw_only=True)

    def apply(self, snap, ctx):
        who = identity(self, snap)
        return snap.write_many({
            f"{self.cache_dir}/bin/{t}": tree.file(f"{t}\n", owner=who, mode=0o755)
            for t in self.tools
        }, who)

    def describe(self):
        return "tools " + " ".join(self.tools)

    def targets(self):
        return tuple(f"{self.cache_dir}/bin/{t}" for t in self.tools)


# ---------------------------------------------------------------------------
# Accounts and ownership
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreateAccount(Step):
    name: str = ""
    uid: int = 1000
    gid: int | None = None
    shell: str = "/bin/bash"
    comment: str = ""

    @property
    def home(self) -> str:
        return f"/home/{self.name}"

    def apply(self, snap, ctx):
        if self.name in snap.accounts:
            raise BuildError(f"account {self.name!r} already exists")
        taken = {a.uid for a in snap.accounts.values()}
        if self.uid in taken:
            raise BuildError(f"uid {self.uid} is already taken")
        account = Account(self.name, self.uid, self.gid if self.gid is not None else self.uid,
                          self.home, self.shell, self.comment)
        snap = snap.write_many({
            self.home: tree.directory(self.name),
            f"{self.home}/.bashrc": tree.file("", owner=self.name),
        }, identity(self, snap))
        return snap.evolve(accounts={**snap.accounts, self.name: account},
                           build_account=self.name)

    def describe(self):
        return f"account {self.name} uid={self.uid}"

    def targets(self):
        return (self.home,)


@dataclass(frozen=True)
class GrantSudo(Step):
    """Passwordless elevation for an account."""

    name: str = ""

    def apply(self, snap, ctx):
        if self.name not in snap.accounts:
            raise BuildError(f"cannot grant sudo to unknown account {self.name!r}")
        rule = f"{self.name} ALL=(ALL) NOPASSWD:ALL\n"
        snap = snap.write(f"{SUDOERS_DIR}/{self.name}", tree.file(rule, mode=0o440),
                          identity(self, snap))
        return snap.evolve(sudoers=snap.sudoers | {self.name})

    def describe(self):
        return f"sudo {self.name}"

    def targets(self):
        return (f"{SUDOERS_DIR}/{self.name}",)


@dataclass(frozen=True)
class Claim(Step):
    """Create paths, hand them to the build account and keep them that way.

    Claimed paths are guarded: after every later root step, anything under
    them that is not owned by the build account gets reassigned.
    """

    paths: tuple[str, ...] = ()

    def apply(self, snap, ctx):
        account = _build_account(snap, "claiming paths")
        who = identity(self, snap)
        for p in self.paths:
            if not snap.exists(p):
                snap = snap.write(p, tree.directory(), who)
            snap = snap.chown_tree(p, account.name)
        return snap.evolve(guarded=snap.guarded | set(self.paths))

    def describe(self):
        return "claim " + " ".join(self.paths)

    def targets(self):
        return self.paths


@dataclass(frozen=True)
class MakeDirs(Step):
    paths: tuple[str, ...] = ()
    owner: str | None = None

    def apply(self, snap, ctx):
        who = identity(self, snap)
        for p in self.paths:
            if not snap.exists(p):
                snap = snap.write(p, tree.directory(who), who)
            if self.owner:
                if self.owner not in snap.accounts:
                    raise BuildError(f"unknown owner {self.owner!r}")
                snap = snap.chown_tree(p, self.owner)
        return snap

    def describe(self):
        return "mkdir " + " ".join(self.paths)

    def targets(self):
        return self.paths


@dataclass(frozen=True)
class Touch(Step):
    paths: tuple[str, ...] = ()
    owner: str | None = None

    def apply(self, snap, ctx):
        who = identity(self, snap)
        if self.owner and self.owner not in snap.accounts:
            raise BuildError(f"unknown owner {self.owner!r}")
        for p in self.paths:
            if not snap.exists(p):
                snap = snap.write(p, tree.file(b"", owner=who), who)
            if self.owner:
                snap = snap.chown([p], self.owner)
        return snap

    def describe(self):
        return "touch " + " ".join(self.paths)

    def targets(self):
        return self.paths


@dataclass(frozen=True)
class AppendLine(Step):
    path: str = ""
    line: str = ""
    owner: str | None = None

    def apply(self, snap, ctx):
        who = identity(self, snap)
        current = snap.files.get(self.path)
        if current is not None and current.is_dir:
            raise BuildError(f"{self.path} is a directory")
        owner = self.owner or (current.owner if current else who)
        data = (current.data if current else b"") + self.line.encode() + b"\n"
        return snap.write(self.path, tree.file(data, owner=owner), who)

    def describe(self):
        return f"append {self.path}"

    def targets(self):
        return (self.path,)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def read_resolver_config(snap: Snapshot) -> ResolverConfig:
    path = _in_workdir(snap, CONFIG_PATH)
    if not snap.exists(path):
        return ResolverConfig()
    return ResolverConfig.from_json(snap.read(path).decode())


def installed_packages(snap: Snapshot, cache_dir: str) -> dict[str, str]:
    """Read back ``{name: version}`` from a cache directory."""
    out = {}
    for key in snap.listdir(f"{cache_dir}/{PACKAGES_DIR}"):
        name, _, version = key.rpartition("-")
        out[name] = version
    return out


@dataclass(frozen=True)
class ConfigureResolver(Step):
    """Update the resolver settings stored in the working directory."""

    retry: int | None = None
    jobs: int | None = None
    without: tuple[str, ...] | None = None
    unset: tuple[str, ...] = ()
    privilege: Privilege = field(default=Privilege.BUILD_USER, kw_only=True)

    def apply(self, snap, ctx):
        for key in self.unset:
            if key not in ("retry", "jobs", "without"):
                raise BuildError(f"unknown resolver setting {key!r}")
        cfg = read_resolver_config(snap).updated(
            retry=self.retry, jobs=self.jobs, without=self.without, unset=self.unset,
        )
        who = identity(self, snap)
        return snap.write(_in_workdir(snap, CONFIG_PATH), tree.file(cfg.to_json(), owner=who), who)

    def describe(self):
        parts = []
        if self.retry is not None:
            parts.append(f"retry={self.retry}")
        if self.jobs is not None:
            parts.append(f"jobs={self.jobs}")
        if self.without is not None:
            parts.append(f"without={','.join(self.without)}")
        parts += [f"unset {k}" for k in self.unset]
        return "resolver " + " ".join(parts)


@dataclass(frozen=True)
class CopyManifest(Step):
    """Copy only the manifest files (glob patterns) from the source tree.

    Keeping the rest of the source out means editing a source file does not
    change the stage address, so the resolution stays cached.
    """

    files: tuple[str, ...] = ()
    privilege: Privilege = field(default=Privilege.BUILD_USER, kw_only=True)

    def select(self, source: Mapping[str, Entry]) -> dict[str, Entry]:
        picked = {}
        for pattern in self.files:
            hits = {
                p: e for p, e in source.items()
                if not e.is_dir and fnmatch.fnmatchcase(p.lstrip("/"), pattern)
            }
            if not hits:
                raise ManifestError(f"manifest file {pattern!r} not found in source tree")
            picked.update(hits)
        return picked

    def apply(self, snap, ctx):
        who = identity(self, snap)
        entries = {
            _in_workdir(snap, p.lstrip("/")): e.chown(who)
            for p, e in self.select(ctx.source).items()
        }
        return snap.write_many(entries, who)

    def describe(self):
        return "copy " + " ".join(self.files)


@dataclass(frozen=True)
class Resolve(Step):
    lockfile: str = manifests.LOCKFILE
    cache_dir: str = "/usr/local/bundle"
    privilege: Privilege = field(default=Privilege.BUILD_USER, kw_only=True)

    def apply(self, snap, ctx):
        path = _in_workdir(snap, self.lockfile)
        if not snap.exists(path):
            raise ManifestError(f"no lockfile at {path}")
        if ctx.index is None:
            raise PackageInstallError("no package index configured")
        manifest = manifests.parse(snap.read(path).decode())
        resolver = Resolver(ctx.index, read_resolver_config(snap))
        result = resolver.resolve(manifest, installed_packages(snap, self.cache_dir))

        who = identity(self, snap)
        pkg_dir = f"{self.cache_dir}/{PACKAGES_DIR}"
        entries = {f"{pkg_dir}/{key}": tree.file(data, owner=who)
                   for key, data in result.fetched.items()}
        if not snap.exists(pkg_dir):
            entries[pkg_dir] = tree.directory(who)
        return snap.write_many(entries, who)

    def describe(self):
        return f"resolve {self.lockfile}"

    def targets(self):
        return (f"{self.cache_dir}/{PACKAGES_DIR}",)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Promote(Step):
    """Copy finished artifacts out of another stage.

    Entries are written as-is and the digest of each copied subtree is
    recorded on the handle. Before copying, the manifest those artifacts
    were resolved against is compared with the current one so a stale
    dependency tree is refused instead of silently reused.
    """

    stage: str = ""
    paths: tuple[str, ...] = ()
    lockfile: str = manifests.LOCKFILE
    privilege: Privilege = field(default=Privilege.BUILD_USER, kw_only=True)

    def apply(self, snap, ctx):
        if self.stage not in ctx.promoted:
            raise BaseNotFoundError(f"stage {self.stage!r} is not a declared dependency")
        key, src = ctx.promoted[self.stage]

        lock_path = _in_workdir(src, self.lockfile)
        promoted_lock = src.read(lock_path) if src.exists(lock_path) else b""
        manifest_digest = manifests.digest({self.lockfile: promoted_lock})
        if ctx.check_manifest:
            current = ctx.source.get(tree.normalize("/" + self.lockfile))
            if current is not None and current.data != promoted_lock:
                raise ManifestDriftError(
                    f"{self.lockfile} changed since stage {self.stage!r} was built"
                )

        who = identity(self, snap)
        digests = []
        for p in self.paths:
            copied = tree.subtree(src.files, p)
            if not copied:
                raise BuildError(f"stage {self.stage!r} has nothing at {p}")
            snap = snap.write_many(copied, who)
            digests.append((p, tree.tree_digest(copied, p)))
            log.debug("promoted %s from %s (%d entries)", p, self.stage, len(copied))

        handle = ArtifactHandle(self.stage, key, manifest_digest, tuple(digests))
        return snap.evolve(promotions=snap.promotions + (handle,))

    def describe(self):
        return f"promote {' '.join(self.paths)} from {self.stage}"

    def targets(self):
        return self.paths

"""Materialize a manifest into an installed dependency set.

The resolver is the only concurrent part of a build. Independent packages
are fetched by a bounded pool of ``jobs`` threads; each fetch is retried
``retry`` times on transient errors. The result is all-or-nothing: if any
package fails, ``resolve`` raises and the caller writes nothing.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Protocol

from strata.digest import sha256_hex
from strata.errors import BuildError, ManifestDriftError, PackageInstallError
from strata.manifest import LockedPackage, Manifest

log = logging.getLogger(__name__)

CONFIG_PATH = ".strata/resolver.json"
PACKAGES_DIR = "packages"


class FetchError(Exception):
    pass


class TransientFetchError(FetchError):
    """Network-ish failure worth retrying."""


class PackageNotFoundError(FetchError):
    pass


class PackageIndex(Protocol):
    def fetch(self, name: str, version: str) -> bytes: ...


class MemoryIndex:
    """Index backed by a ``{(name, version): bytes}`` mapping."""

    def __init__(self, artifacts: Mapping[tuple[str, str], bytes]):
        self.artifacts = dict(artifacts)

    def fetch(self, name: str, version: str) -> bytes:
        try:
            return self.artifacts[(name, version)]
        except KeyError:
            raise PackageNotFoundError(f"{name} {version}") from None


class DirectoryIndex:
    """Index backed by ``<root>/<name>-<version>.pkg`` files."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def fetch(self, name: str, version: str) -> bytes:
        path = self.root / f"{name}-{version}.pkg"
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise PackageNotFoundError(f"{name} {version} not in {self.root}") from None
        except OSError as e:
            raise TransientFetchError(f"{name} {version}: {e}") from e


@dataclass(frozen=True)
class ResolverConfig:
    retry: int = 0
    jobs: int = 1
    without: tuple[str, ...] = ()

    def __post_init__(self):
        if self.retry < 0:
            raise BuildError(f"resolver retry must be >= 0, got {self.retry}")
        if self.jobs < 1:
            raise BuildError(f"resolver jobs must be >= 1, got {self.jobs}")

    def to_json(self) -> str:
        return json.dumps(
            {"retry": self.retry, "jobs": self.jobs, "without": list(self.without)},
            sort_keys=True,
        ) + "\n"

    @classmethod
    def from_json(cls, text: str) -> ResolverConfig:
        d = json.loads(text)
        return cls(retry=d.get("retry", 0), jobs=d.get("jobs", 1),
                   without=tuple(d.get("without") or ()))

    def updated(self, *, retry: int | None = None, jobs: int | None = None,
                without: tuple[str, ...] | None = None,
                unset: tuple[str, ...] = ()) -> ResolverConfig:
        cfg = self
        if retry is not None:
            cfg = replace(cfg, retry=retry)
        if jobs is not None:
            cfg = replace(cfg, jobs=jobs)
        if without is not None:
            cfg = replace(cfg, without=tuple(without))
        defaults = ResolverConfig()
        for key in unset:
            cfg = replace(cfg, **{key: getattr(defaults, key)})
        return cfg


@dataclass(frozen=True)
class Resolution:
    selected: dict[str, LockedPackage]
    fetched: dict[str, bytes]  # package key -> artifact
    reused: tuple[str, ...]


class Resolver:
    def __init__(self, index: PackageIndex, config: ResolverConfig):
        self.index = index
        self.config = config

    def _fetch(self, pkg: LockedPackage) -> bytes:
        attempts = self.config.retry + 1
        for attempt in range(1, attempts + 1):
            try:
                data = self.index.fetch(pkg.name, pkg.version)
            except TransientFetchError as e:
                if attempt == attempts:
                    raise PackageInstallError(
                        f"{pkg.key}: giving up after {attempts} attempts: {e}"
                    ) from e
                log.info("retrying %s (%d/%d): %s", pkg.key, attempt, self.config.retry, e)
                continue
            except PackageNotFoundError as e:
                raise PackageInstallError(f"{pkg.key}: not found: {e}") from e
            if pkg.checksum and sha256_hex(data) != pkg.checksum:
                raise PackageInstallError(f"{pkg.key}: checksum mismatch")
            return data
        raise AssertionError("unreachable")

    def resolve(self, manifest: Manifest,
                installed: Mapping[str, str] | None = None) -> Resolution:
        """Select packages under the exclusion policy and fetch the missing ones.

        ``installed`` maps package names to versions already present
        (for example, promoted from another stage). Those are reused as-is;
        a version that disagrees with the lock is drift, not something to
        silently re-resolve.
        """
        installed = dict(installed or {})
        selected = manifest.select(self.config.without)

        todo = []
        reused = []
        for name, pkg in selected.items():
            have = installed.get(name)
            if have is None:
                todo.append(pkg)
            elif have == pkg.version:
                reused.append(pkg.key)
            else:
                raise ManifestDriftError(
                    f"{name} {have} is installed but the lockfile pins {pkg.version}"
                )

        log.info("resolving %d packages (%d reused, jobs=%d, retry=%d, without=%s)",
                 len(todo), len(reused), self.config.jobs, self.config.retry,
                 ",".join(self.config.without) or "-")

        fetched: dict[str, bytes] = {}
        if todo:
            with ThreadPoolExecutor(max_workers=max(1, self.config.jobs)) as pool:
                results = list(pool.map(self._fetch, todo))
            fetched = {pkg.key: data for pkg, data in zip(todo, results)}
        return Resolution(selected=selected, fetched=fetched, reused=tuple(reused))

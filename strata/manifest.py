"""Dependency manifests: locked packages partitioned into groups.

The lockfile is JSON::

    {
      "version": 1,
      "groups": {"default": ["pg", "activerecord"], "development": ["rubocop"]},
      "packages": {
        "pg": {"version": "1.4.5", "dependencies": [], "checksum": "<sha256 hex>"},
        ...
      }
    }

Groups list root packages; everything a root depends on (transitively) is
installed with it. A package belongs to a group only if it is reachable
from that group's roots and from no other group, so excluding
"development" never drops something the default group still needs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from strata.digest import combine
from strata.errors import ManifestError

FORMAT_VERSION = 1
DEFAULT_GROUP = "default"
DEVELOPMENT_GROUP = "development"
LOCKFILE = "deps.lock"


@dataclass(frozen=True)
class LockedPackage:
    name: str
    version: str
    dependencies: tuple[str, ...] = ()
    checksum: str | None = None

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class Manifest:
    groups: Mapping[str, tuple[str, ...]]
    packages: Mapping[str, LockedPackage]

    def closure(self, groups: Iterable[str]) -> dict[str, LockedPackage]:
        """All packages reachable from the roots of ``groups``."""
        seen: dict[str, LockedPackage] = {}
        stack = [root for g in groups for root in self.groups.get(g, ())]
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            pkg = self.packages[name]
            seen[name] = pkg
            stack.extend(pkg.dependencies)
        return dict(sorted(seen.items()))

    def select(self, without: Iterable[str] = ()) -> dict[str, LockedPackage]:
        """Packages to install when the ``without`` groups are excluded."""
        skip = set(without)
        return self.closure(g for g in sorted(self.groups) if g not in skip)

    def group_only(self, group: str) -> dict[str, LockedPackage]:
        """Packages reachable from ``group`` and from no other group."""
        mine = self.closure([group])
        others = self.closure(g for g in self.groups if g != group)
        return {n: p for n, p in mine.items() if n not in others}


def parse(text: str) -> Manifest:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManifestError(f"lockfile is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise ManifestError("lockfile must be a JSON object")
    if doc.get("version") != FORMAT_VERSION:
        raise ManifestError(f"unsupported lockfile version: {doc.get('version')!r}")

    raw_packages = doc.get("packages") or {}
    raw_groups = doc.get("groups") or {}
    if not isinstance(raw_packages, dict):
        raise ManifestError("lockfile 'packages' must be an object")
    if not isinstance(raw_groups, dict):
        raise ManifestError("lockfile 'groups' must be an object")

    packages = {}
    for name, spec in raw_packages.items():
        if not isinstance(spec, dict):
            raise ManifestError(f"package {name!r} must be an object")
        if not isinstance(spec.get("dependencies") or [], list):
            raise ManifestError(f"package {name!r} dependencies must be a list")
        if "version" not in spec:
            raise ManifestError(f"package {name!r} has no version")
        # Installed packages are stored as "<name>-<version>"; the last dash splits them.
        if "/" in name or "-" in str(spec["version"]):
            raise ManifestError(f"invalid package name or version: {name} {spec['version']}")
        packages[name] = LockedPackage(
            name=name,
            version=str(spec["version"]),
            dependencies=tuple(spec.get("dependencies") or ()),
            checksum=spec.get("checksum"),
        )
    for g, roots in raw_groups.items():
        if not isinstance(roots, list):
            raise ManifestError(f"group {g!r} must be a list of package names")
    groups = {g: tuple(roots) for g, roots in raw_groups.items()}

    if DEFAULT_GROUP not in groups:
        raise ManifestError(f"lockfile has no {DEFAULT_GROUP!r} group")
    for g, roots in groups.items():
        for r in roots:
            if r not in packages:
                raise ManifestError(f"group {g!r} names unlocked package {r!r}")
    for pkg in packages.values():
        for dep in pkg.dependencies:
            if dep not in packages:
                raise ManifestError(f"{pkg.name} depends on unlocked package {dep!r}")
    return Manifest(groups=groups, packages=packages)


def load(path: str | Path) -> Manifest:
    return parse(Path(path).read_text())


def dump(manifest: Manifest) -> str:
    doc = {
        "version": FORMAT_VERSION,
        "groups": {g: list(r) for g, r in sorted(manifest.groups.items())},
        "packages": {
            n: {
                "version": p.version,
                "dependencies": list(p.dependencies),
                **({"checksum": p.checksum} if p.checksum else {}),
            }
            for n, p in sorted(manifest.packages.items())
        },
    }
    return json.dumps(doc, indent=2) + "\n"


def digest(files: Mapping[str, bytes]) -> str:
    """Digest of a set of manifest files, keyed by relative name."""
    parts = []
    for name in sorted(files):
        parts += [name, files[name].hex()]
    return combine(*parts).hex()

"""Realize stages into snapshots.

This is the build graph's equivalent of instantiate + realize: resolve the
parent (or base image), realize every promotion source, then apply the
stage's steps in order. Each finished stage is stored in the cache under
its build key; a stage that raises is never stored, so there is no such
thing as a half-built stage.
"""

import logging
from typing import Mapping

from strata import manifest as manifests
from strata.cache import StageCache
from strata.digest import combine, make_id
from strata.errors import BuildError, PermissionMisalignmentError
from strata.images import ImageRegistry, default_registry
from strata.resolver import PackageIndex
from strata.snapshot import ROOT, Snapshot
from strata.steps import CopyManifest, Privilege, Step, StepContext
from strata.tree import Entry
from stratapkgs.stage import Stage

log = logging.getLogger(__name__)


class Builder:
    """Builds stages against one source tree and one package index.

    Args:
        source:           Library source tree (paths rooted at "/").
        index:            Where locked dependencies are fetched from.
        registry:         External base images.
        cache:            Snapshot cache (in-memory by default).
        os_catalogue:     OS packages that can be installed; None allows any.
        repair_ownership: Reassign guarded paths to the build account after
                          root steps. When False, misowned entries are an error.
        check_manifest:   Refuse to promote artifacts resolved against a
                          different lockfile than the current source's.
    """

    def __init__(
        self,
        *,
        source: Mapping[str, Entry] | None = None,
        index: PackageIndex | None = None,
        registry: ImageRegistry | None = None,
        cache: StageCache | None = None,
        os_catalogue: frozenset[str] | None = None,
        repair_ownership: bool = True,
        check_manifest: bool = True,
    ):
        self.source = dict(source or {})
        self.index = index
        self.registry = registry or default_registry()
        self.cache = cache if cache is not None else StageCache()
        self.os_catalogue = os_catalogue
        self.repair_ownership = repair_ownership
        self.check_manifest = check_manifest
        self._keys: dict[str, str] = {}

    # --- addressing ---

    def _inputs_digest(self, stage: Stage) -> str:
        """Digest of the source files the stage copies in (manifests only)."""
        files: dict[str, bytes] = {}
        for step in stage.steps:
            if isinstance(step, CopyManifest):
                for path, entry in step.select(self.source).items():
                    files[path] = entry.data
        return manifests.digest(files) if files else ""

    def key(self, stage: Stage) -> str:
        """Build key: the definition id plus everything the build reads.

        Only manifest files enter the key, so an edit elsewhere in the
        source tree leaves every stage's key (and cached result) intact.
        """
        if stage.definition_id in self._keys:
            return self._keys[stage.definition_id]
        inner = combine(
            stage.definition_id,
            self.key(stage.parent) if stage.parent is not None else f"image:{stage.base}",
            *(self.key(d) for d in stage.deps),
            self._inputs_digest(stage),
            f"repair={int(self.repair_ownership)}",
            f"check={int(self.check_manifest)}",
        )
        k = make_id("build", inner, stage.name)
        self._keys[stage.definition_id] = k
        return k

    # --- realization ---

    def _ownership(self, stage: Stage, step: Step, snap: Snapshot) -> Snapshot:
        """Post-condition of every root step: guarded paths belong to the build account."""
        account = snap.build_account
        if account is None or not snap.guarded:
            return snap
        bad = snap.misowned(account)
        if not bad:
            return snap
        if not self.repair_ownership:
            raise PermissionMisalignmentError(
                f"{stage.name}: {step.describe()} left {len(bad)} entries not owned "
                f"by {account}: {', '.join(bad[:5])}"
            )
        log.info("%s: reassigning %d entries to %s after %s",
                 stage.name, len(bad), account, step.describe())
        return snap.chown(bad, account)

    def _start(self, stage: Stage) -> Snapshot:
        if stage.parent is not None:
            return self.build(stage.parent)
        return self.registry.resolve(stage.base)

    def build(self, stage: Stage) -> Snapshot:
        """Realize a stage (and everything it depends on). Returns its snapshot."""
        key = self.key(stage)
        hit = self.cache.get(key)
        if hit is not None:
            log.debug("%s: cached as %s", stage.name, key)
            return hit

        snap = self._start(stage)
        promoted = {d.name: (self.key(d), self.build(d)) for d in stage.deps}
        ctx = StepContext(
            source=self.source,
            index=self.index,
            os_catalogue=self.os_catalogue,
            promoted=promoted,
            check_manifest=self.check_manifest,
        )

        log.info("building %s (%d steps)", stage.name, len(stage.steps))
        total = len(stage.steps)
        for i, step in enumerate(stage.steps, 1):
            log.info("[%s %d/%d] %s", stage.name, i, total, step.describe())
            try:
                snap = step.apply(snap, ctx)
                if step.privilege == Privilege.ROOT:
                    snap = self._ownership(stage, step, snap)
            except BuildError as e:
                log.error("%s failed at step %d (%s): %s", stage.name, i, step.describe(), e)
                raise
            snap = snap.note(f"{stage.name}: {step.describe()}")

        if stage.user != ROOT and stage.user not in snap.accounts:
            raise PermissionMisalignmentError(
                f"{stage.name}: default user {stage.user!r} does not exist"
            )
        snap = snap.evolve(user=stage.user)
        self.cache.put(key, snap)
        log.info("built %s as %s", stage.name, key)
        return snap

    def build_all(self, stages: list[Stage]) -> dict[str, Snapshot]:
        return {s.name: self.build(s) for s in stages}

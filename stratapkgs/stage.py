"""High-level stage constructor.

Wraps strata's step and digest primitives into a single stage() call:

    stage("testing", parent=base, steps=[CopyManifest(("deps.lock",)), Resolve()])

This is the build graph's equivalent of a derivation: it takes readable
arguments and produces a Stage with a computed definition id, ready to be
built. Two stages declared with the same parent, arguments and steps get
the same id, whatever Python objects they came from.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from strata.digest import combine, make_id
from strata.steps import Step


@dataclass(frozen=True)
class Stage:
    """A node in the build graph.

    ``parent`` is the stage whose final state this one starts from; the
    root of the graph has ``base`` (an external image reference) instead.
    ``deps`` are stages whose artifacts get promoted into this one; they
    are ordering edges, never a second parent.
    """

    name: str
    parent: Stage | None
    base: str | None
    steps: tuple[Step, ...]
    deps: tuple[Stage, ...]
    user: str
    args: Mapping[str, str]
    definition_id: str
    _args: dict[str, Any]  # original stage() kwargs, for override()

    def __str__(self) -> str:
        return self.definition_id

    @property
    def lineage(self) -> list[Stage]:
        """This stage and its ancestors, root first."""
        chain = []
        s: Stage | None = self
        while s is not None:
            chain.append(s)
            s = s.parent
        return list(reversed(chain))

    def override(self, **kw) -> Stage:
        """Re-declare with changed arguments."""
        return stage(**{**self._args, **kw})


def stage(
    name: str,
    *,
    parent: Stage | None = None,
    base: str | None = None,
    steps: list[Step] | tuple[Step, ...] = (),
    deps: list[Stage] | tuple[Stage, ...] = (),
    user: str = "root",
    args: Mapping[str, Any] | None = None,
) -> Stage:
    """Create a Stage with its definition id.

    Args:
        name:   Stage name (also the Dockerfile target).
        parent: Stage to build on. Mutually exclusive with base.
        base:   External image reference for a root stage.
        steps:  Ordered, additive mutations.
        deps:   Stages whose artifacts are promoted into this one.
        user:   Default identity of the finished environment.
        args:   Build arguments the steps were rendered from (recorded only).
    """
    if (parent is None) == (base is None):
        raise ValueError(f"stage {name!r} needs exactly one of parent or base")
    steps = tuple(steps)
    deps = tuple(deps)
    args = {k: str(v) for k, v in sorted((args or {}).items())}

    orig_args = dict(name=name, parent=parent, base=base, steps=steps,
                     deps=deps, user=user, args=args)

    origin = parent.definition_id if parent is not None else f"image:{base}"
    inner = combine(
        origin,
        *(d.definition_id for d in deps),
        json.dumps(args, sort_keys=True),
        user,
        *(s.fingerprint() for s in steps),
    )
    return Stage(
        name=name,
        parent=parent,
        base=base,
        steps=steps,
        deps=deps,
        user=user,
        args=args,
        definition_id=make_id("stage", inner, name),
        _args=orig_args,
    )

"""Lazy stage set with auto-injection.

Define stages as @cached_property methods on a StageSet subclass;
dependencies can be resolved by parameter name via inspect.signature.

    class MyStages(StageSet):
        @cached_property
        def base(self):
            return stage("base", base="debian:bookworm")

        @cached_property
        def tools(self):
            return self.call(lambda base: stage("tools", parent=base, steps=[...]))

Each stage is computed at most once (@cached_property), and a subclass
extends the graph by adding properties, so a chain of classes reads like
the chain of stages it builds.
"""

import inspect
from functools import cached_property

from strata.errors import BaseNotFoundError
from stratapkgs.stage import Stage


class StageSet:
    """Base class for a lazily-evaluated set of stages."""

    def call(self, fn):
        """Resolve fn's parameters from this stage set and call it.

            self.call(lambda runtime, testing: stage(...))
            # equivalent to: fn(runtime=self.runtime, testing=self.testing)
        """
        sig = inspect.signature(fn)
        kwargs = {}
        for name in sig.parameters:
            if name == "self":
                continue
            if not hasattr(self, name):
                raise AttributeError(
                    f"stage set has no attribute {name!r} "
                    f"(required by {fn.__qualname__})"
                )
            kwargs[name] = getattr(self, name)
        return fn(**kwargs)

    def declared(self) -> list[Stage]:
        """Stages declared as cached properties, in attribute order."""
        out: dict[str, Stage] = {}
        for cls in reversed(type(self).__mro__):
            for attr, value in vars(cls).items():
                if isinstance(value, cached_property):
                    obj = getattr(self, attr)
                    if isinstance(obj, Stage):
                        out.setdefault(obj.definition_id, obj)
        return list(out.values())

    def stages(self) -> list[Stage]:
        """Every reachable stage, parents and promotion sources first."""
        order: list[Stage] = []
        seen: set[str] = set()

        def visit(s: Stage) -> None:
            if s.definition_id in seen:
                return
            if s.parent is not None:
                visit(s.parent)
            for d in s.deps:
                visit(d)
            seen.add(s.definition_id)
            order.append(s)

        for s in self.declared():
            visit(s)

        names = [s.name for s in order]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate stage names: {', '.join(dupes)}")
        return order

    def target(self, name: str) -> Stage:
        for s in self.stages():
            if s.name == name:
                return s
        raise BaseNotFoundError(f"no stage named {name!r}")

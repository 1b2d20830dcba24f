"""Stage 1: runtime.

The minimal image that can run the library: the language runtime plus the
shared libraries its native extension links against. The package index is
purged right after installing, since nothing downstream of runtime alone
installs anything else.
"""

from functools import cached_property

from strata.steps import InstallPackages, Run, SetEnv
from stratapkgs.devcontainer.helpers import RUNTIME_PACKAGES, BuildArgs
from stratapkgs.stage import Stage, stage
from stratapkgs.stage_set import StageSet


class Runtime(StageSet):
    """Runtime image only (1 stage)."""

    def __init__(self, args: BuildArgs | None = None):
        self.args = args or BuildArgs()

    @cached_property
    def runtime(self) -> Stage:
        return stage(
            "runtime",
            base=self.args.base_image,
            args={
                "runtime_version": self.args.runtime_version,
                "image_variant": self.args.image_variant,
            },
            steps=[
                # Caps malloc arenas; keeps long-running processes from bloating.
                SetEnv(values=(("MALLOC_ARENA_MAX", "2"),)),
                InstallPackages(packages=RUNTIME_PACKAGES, purge_index=True),
                # Newer rubygems avoids "uninitialized constant Gem::Source" in bundler.
                Run(command="gem update --system && gem cleanup",
                    writes=("/usr/local/bin/gem",)),
            ],
        )

"""Stage 3: testing.

The leanest image that can run the test suite. Only the manifest files
(gemspec, Gemfile, lockfile and the version file the gemspec reads) are
copied in, so the expensive resolve step is cached until the manifest
itself changes; the development group is excluded.
"""

from functools import cached_property

from strata.manifest import LOCKFILE
from strata.steps import ConfigureResolver, CopyManifest, Resolve
from stratapkgs.devcontainer.development_base import DevelopmentBase
from stratapkgs.devcontainer.helpers import EXCLUDED_IN_TESTING, GEM_HOME, MANIFEST_FILES
from stratapkgs.stage import Stage, stage


class Testing(DevelopmentBase):
    """Adds testing on top of development-base."""

    lockfile: str = LOCKFILE

    @property
    def manifest_files(self) -> tuple[str, ...]:
        return tuple(f.format(project=self.args.project) for f in MANIFEST_FILES)

    @cached_property
    def testing(self) -> Stage:
        return stage(
            "testing",
            parent=self.development_base,
            user=self.args.developer_username,
            steps=[
                CopyManifest(files=self.manifest_files),
                ConfigureResolver(without=EXCLUDED_IN_TESTING),
                Resolve(lockfile=self.lockfile, cache_dir=GEM_HOME),
            ],
        )

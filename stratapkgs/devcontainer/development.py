"""Stage 4: development.

The interactive image. It branches from development-base, not testing:
the interactive tooling goes in first, then testing's resolved gems and
working tree are promoted wholesale, and only the development group is
resolved on top.
"""

from functools import cached_property

from strata.steps import (
    AppendLine,
    ConfigureResolver,
    InstallPackages,
    InstallTools,
    MakeDirs,
    Promote,
    Resolve,
    Touch,
)
from stratapkgs.devcontainer.helpers import (
    DEVELOPMENT_PACKAGES,
    DEVELOPMENT_TOOLS,
    EDITOR_EXTENSION_DIRS,
    GEM_HOME,
    HISTORY_DIR,
    HISTORY_FILE,
    HISTORY_SNIPPET,
)
from stratapkgs.devcontainer.testing import Testing
from stratapkgs.stage import Stage, stage


class Development(Testing):
    """All four stages. Development depends on testing through promotion."""

    @cached_property
    def development(self) -> Stage:
        a = self.args
        return stage(
            "development",
            parent=self.development_base,
            deps=[self.testing],
            user=a.developer_username,
            steps=[
                # The index was kept by development-base; no refresh needed.
                InstallPackages(packages=DEVELOPMENT_PACKAGES, refresh_index=False),
                # Bash history survives container rebuilds via a mount here.
                MakeDirs(paths=(HISTORY_DIR,), owner=a.developer_username),
                Touch(paths=(HISTORY_FILE,), owner=a.developer_username),
                AppendLine(path=f"{a.home}/.bashrc", line=HISTORY_SNIPPET),
                MakeDirs(
                    paths=tuple(f"{a.home}/{d}" for d in EDITOR_EXTENSION_DIRS),
                    owner=a.developer_username,
                ),
                InstallTools(tools=DEVELOPMENT_TOOLS, cache_dir=GEM_HOME),
                Promote(stage="testing", paths=(GEM_HOME, a.workdir), lockfile=self.lockfile),
                ConfigureResolver(unset=("without",)),
                Resolve(lockfile=self.lockfile, cache_dir=GEM_HOME),
            ],
        )

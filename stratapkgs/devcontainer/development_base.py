"""Stage 2: development-base.

Everything the testing and development images share: the build toolchain,
the build account (with passwordless sudo), the working directory and the
resolver's retry/concurrency policy. From here on the package index is
kept, so later stages can install without refreshing it.
"""

from functools import cached_property

from strata.steps import (
    Claim,
    ConfigureResolver,
    CreateAccount,
    ExtendPath,
    GrantSudo,
    InstallPackages,
    SetWorkdir,
)
from stratapkgs.devcontainer.helpers import (
    BUILD_PACKAGES,
    GEM_HOME,
    RESOLVER_JOBS,
    RESOLVER_RETRY,
)
from stratapkgs.devcontainer.runtime import Runtime
from stratapkgs.stage import Stage, stage


class DevelopmentBase(Runtime):
    """Adds development-base on top of runtime."""

    @cached_property
    def development_base(self) -> Stage:
        a = self.args
        return stage(
            "development-base",
            parent=self.runtime,
            user=a.developer_username,
            args={
                "developer_uid": a.developer_uid,
                "developer_username": a.developer_username,
                "project": a.project,
            },
            steps=[
                InstallPackages(packages=BUILD_PACKAGES),
                CreateAccount(name=a.developer_username, uid=a.developer_uid,
                              comment="Developer User,,,"),
                GrantSudo(name=a.developer_username),
                # Home, working tree and gem home stay owned by the developer.
                Claim(paths=(a.home, a.workdir, GEM_HOME)),
                ExtendPath(directory=f"{a.workdir}/bin"),
                SetWorkdir(path=a.workdir),
                ConfigureResolver(retry=RESOLVER_RETRY),
                ConfigureResolver(jobs=RESOLVER_JOBS),
            ],
        )

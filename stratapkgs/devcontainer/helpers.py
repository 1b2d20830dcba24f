"""Shared settings for the development-container stages.

  - BuildArgs: the four build-time parameters plus the project name
  - package lists for each stage
  - paths every descendant of development-base agrees on
"""

from dataclasses import dataclass, fields

from strata.manifest import DEVELOPMENT_GROUP, LOCKFILE


# ---------------------------------------------------------------------------
# Build arguments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BuildArgs:
    runtime_version: str = "2.7.7"
    image_variant: str = "slim-bullseye"
    developer_uid: int = 1000
    developer_username: str = "you"
    project: str = "pg_ltree"

    @property
    def base_image(self) -> str:
        return f"ruby:{self.runtime_version}-{self.image_variant}"

    @property
    def workdir(self) -> str:
        return f"/workspaces/{self.project}"

    @property
    def home(self) -> str:
        return f"/home/{self.developer_username}"

    def as_dict(self) -> dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_strings(cls, values: dict[str, str]) -> "BuildArgs":
        """Build from ``--arg KEY=VALUE`` style strings, converting types."""
        known = {f.name: f for f in fields(cls)}
        kw = {}
        for key, raw in values.items():
            if key not in known:
                raise ValueError(f"unknown build argument {key!r}")
            kw[key] = int(raw) if known[key].type in (int, "int") else raw
        return cls(**kw)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

GEM_HOME = "/usr/local/bundle"
HISTORY_DIR = "/command-history"
HISTORY_FILE = f"{HISTORY_DIR}/.bash_history"
HISTORY_SNIPPET = (
    "export PROMPT_COMMAND='history -a' && export HISTFILE=" + HISTORY_FILE
)
EDITOR_EXTENSION_DIRS = (
    ".vscode-server/extensions",
    ".vscode-server-insiders/extensions",
)


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------

# Shared libraries needed to run the library; no compilers.
RUNTIME_PACKAGES = ("ca-certificates", "curl", "libpq5", "openssl", "tzdata")

# Toolchain for compiling the native extension and its dependencies.
BUILD_PACKAGES = ("build-essential", "git", "libpq-dev", "sudo")

DEVELOPMENT_PACKAGES = (
    "bash-completion",    # git without completion is a pain
    "gpg",                # commit signing inside the container
    "netcat",             # wait for ports
    "postgresql-client",
    "procps",             # ps, watch
    "vim",
)

DEVELOPMENT_TOOLS = ("rubocop", "solargraph")

# Files the resolver reads, as source-relative patterns. "{project}" is the
# project build argument.
MANIFEST_FILES = ("{project}.gemspec", "Gemfile*", LOCKFILE, "lib/{project}/version.rb")
EXCLUDED_IN_TESTING = (DEVELOPMENT_GROUP,)

RESOLVER_RETRY = 3
RESOLVER_JOBS = 2

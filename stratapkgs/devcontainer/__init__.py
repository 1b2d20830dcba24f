"""Development containers for a native-extension library: 4 stages.

Like a layered Dockerfile, the pipeline is a chain of stages. Each class
adds one stage to the set it inherits:

    Runtime → DevelopmentBase → Testing → Development

Development branches from development-base and promotes testing's
resolved dependencies instead of resolving them again.
"""

from stratapkgs.devcontainer.development import Development
from stratapkgs.devcontainer.development_base import DevelopmentBase
from stratapkgs.devcontainer.helpers import BuildArgs
from stratapkgs.devcontainer.runtime import Runtime
from stratapkgs.devcontainer.testing import Testing

STAGE_NAMES = ("runtime", "development-base", "testing", "development")

__all__ = [
    "Runtime", "DevelopmentBase", "Testing", "Development",
    "BuildArgs", "STAGE_NAMES",
]

"""Realize rendered stages with the Docker CLI.

The in-process builder simulates a stage graph; this module hands the
rendered Dockerfile to a real ``docker build`` instead. The Dockerfile is
fed on stdin so nothing is written into the build context.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field

from strata.errors import BuildError

log = logging.getLogger(__name__)


class DockerError(BuildError):
    pass


@dataclass
class DockerClient:
    executable: str = "docker"
    extra_args: list[str] = field(default_factory=list)

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def build_command(self, target: str, context: str, tag: str | None = None,
                      build_args: dict[str, str] | None = None) -> list[str]:
        cmd = [self.executable, "build", "--target", target, "--file", "-"]
        for k, v in sorted((build_args or {}).items()):
            cmd += ["--build-arg", f"{k}={v}"]
        if tag:
            cmd += ["--tag", tag]
        cmd += self.extra_args
        cmd.append(context)
        return cmd

    def build(self, target: str, dockerfile: str, context: str,
              tag: str | None = None, build_args: dict[str, str] | None = None) -> None:
        """Build one target. Raises DockerError on any failure; there is no partial image."""
        if not self.available():
            raise DockerError(f"{self.executable} not found on PATH")
        cmd = self.build_command(target, context, tag, build_args)
        log.info("running %s", " ".join(cmd))
        proc = subprocess.run(cmd, input=dockerfile.encode(), capture_output=True)
        if proc.returncode != 0:
            stderr = proc.stderr.decode(errors="replace").strip()
            raise DockerError(f"docker build --target {target} failed: {stderr}")
        log.debug("%s", proc.stdout.decode(errors="replace"))

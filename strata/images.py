"""External base images.

A build graph is rooted at images nobody in the graph builds. The registry
maps an image repository ("ruby", "debian") to a factory that produces the
initial snapshot for a given tag. An unknown repository is fatal.
"""

from __future__ import annotations

from typing import Callable

from strata import tree
from strata.errors import BaseNotFoundError
from strata.snapshot import Account, Snapshot

ImageFactory = Callable[[str, str], Snapshot]

SYSTEM_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEBIAN_PACKAGES = frozenset({"base-files", "bash", "coreutils", "dpkg", "apt", "libc6"})
ROOT_ACCOUNT = Account("root", 0, 0, "/root")


def split_ref(ref: str) -> tuple[str, str]:
    repo, _, tag = ref.partition(":")
    return repo, tag or "latest"


def debian_image(ref: str, tag: str) -> Snapshot:
    """A bare Debian root filesystem, apt lists already purged."""
    files = {p: tree.directory() for p in (
        "/", "/bin", "/etc", "/etc/sudoers.d", "/home", "/root", "/tmp",
        "/usr", "/usr/bin", "/usr/local", "/usr/local/bin", "/var", "/var/lib",
    )}
    files["/root/.bashrc"] = tree.file("")
    return Snapshot(
        image=ref,
        files=files,
        env={"PATH": SYSTEM_PATH},
        os_packages=DEBIAN_PACKAGES,
        accounts={"root": ROOT_ACCOUNT},
    )


def ruby_image(ref: str, tag: str) -> Snapshot:
    """Official-style Ruby image: Debian plus a root-owned gem home."""
    version = tag.split("-", 1)[0]
    base = debian_image(ref, tag)
    files = dict(base.files)
    for p in ("/usr/local/bundle", "/usr/local/bundle/bin", "/usr/local/lib/ruby"):
        files[p] = tree.directory()
    files["/usr/local/bin/ruby"] = tree.file(f"ruby {version}\n", mode=0o755)
    files["/usr/local/bin/gem"] = tree.file(f"rubygems for ruby {version}\n", mode=0o755)
    return base.evolve(
        files=files,
        env={
            "PATH": f"/usr/local/bundle/bin:{SYSTEM_PATH}",
            "RUBY_VERSION": version,
            "GEM_HOME": "/usr/local/bundle",
            "BUNDLE_SILENCE_ROOT_WARNING": "1",
            "BUNDLE_APP_CONFIG": "/usr/local/bundle",
        },
        os_packages=base.os_packages | {"ruby"},
    )


class ImageRegistry:
    def __init__(self, factories: dict[str, ImageFactory] | None = None):
        self.factories: dict[str, ImageFactory] = dict(factories or {})

    def register(self, repository: str, factory: ImageFactory) -> None:
        self.factories[repository] = factory

    def resolve(self, ref: str) -> Snapshot:
        repo, tag = split_ref(ref)
        factory = self.factories.get(repo)
        if factory is None:
            raise BaseNotFoundError(f"base image {ref!r} not found")
        return factory(ref, tag)


def default_registry() -> ImageRegistry:
    return ImageRegistry({"debian": debian_image, "ruby": ruby_image})

"""Tests for the four development-container stages.

Builds run in-process against a small lockfile and an in-memory package
index, so no container runtime is needed.
"""

import json

import pytest

from strata import manifest, tree
from strata.cache import StageCache
from strata.dockerfile import render
from strata.errors import ManifestDriftError, PackageInstallError, PermissionMisalignmentError
from strata.resolver import MemoryIndex, TransientFetchError
from strata.steps import Promote, StepContext, installed_packages, read_resolver_config
from stratapkgs import Builder
from stratapkgs.devcontainer import STAGE_NAMES, BuildArgs, Development, Runtime
from stratapkgs.devcontainer.helpers import (
    DEVELOPMENT_PACKAGES,
    DEVELOPMENT_TOOLS,
    GEM_HOME,
    HISTORY_FILE,
)

LOCK = manifest.parse(json.dumps({
    "version": 1,
    "groups": {
        "default": ["pg", "activerecord"],
        "development": ["rubocop", "pry"],
    },
    "packages": {
        "pg": {"version": "1.4.5"},
        "activerecord": {"version": "7.0.4", "dependencies": ["activesupport"]},
        "activesupport": {"version": "7.0.4", "dependencies": ["i18n"]},
        "i18n": {"version": "1.12.0"},
        "rubocop": {"version": "1.40.0", "dependencies": ["parser", "i18n"]},
        "parser": {"version": "3.1.3.0"},
        "pry": {"version": "0.14.1"},
    },
}))
LOCK_TEXT = manifest.dump(LOCK)
ARTIFACTS = {(p.name, p.version): p.key.encode() for p in LOCK.packages.values()}


def source(lock_text=LOCK_TEXT):
    return {
        "/": tree.directory(),
        "/deps.lock": tree.file(lock_text),
        "/Gemfile": tree.file("source \"https://rubygems.org\"\ngemspec\n"),
        "/Gemfile.lock": tree.file("GEM\n"),
        "/pg_ltree.gemspec": tree.file("Gem::Specification.new\n"),
        "/lib": tree.directory(),
        "/lib/pg_ltree.rb": tree.file("module PgLtree; end\n"),
        "/lib/pg_ltree/version.rb": tree.file("VERSION = \"1.0.0\"\n"),
        "/bin/console": tree.file("#!/usr/bin/env ruby\n", mode=0o755),
    }


class FlakyIndex:
    """Every fetch of one package fails transiently."""

    def __init__(self, broken):
        self.broken = broken
        self.attempts = 0

    def fetch(self, name, version):
        if name == self.broken:
            self.attempts += 1
            raise TransientFetchError("connection reset by peer")
        return ARTIFACTS[(name, version)]


@pytest.fixture
def pipeline():
    return Development()


@pytest.fixture
def builder():
    return Builder(source=source(), index=MemoryIndex(ARTIFACTS))


@pytest.fixture
def built(pipeline, builder):
    return builder.build_all(pipeline.stages())


def test_graph_shape(pipeline):
    stages = pipeline.stages()
    assert tuple(s.name for s in stages) == STAGE_NAMES
    by_name = {s.name: s for s in stages}
    assert by_name["runtime"].base == "ruby:2.7.7-slim-bullseye"
    assert by_name["development-base"].parent is by_name["runtime"]
    assert by_name["testing"].parent is by_name["development-base"]
    assert by_name["development"].parent is by_name["development-base"]
    assert by_name["development"].deps == (by_name["testing"],)


def test_build_args_keep_graph_shape():
    args = BuildArgs(runtime_version="3.2.2", developer_uid=1001,
                     developer_username="dev", project="other")
    a, b = Development().stages(), Development(args).stages()
    assert [s.name for s in a] == [s.name for s in b]
    assert [len(s.steps) for s in a] == [len(s.steps) for s in b]
    assert [[type(st) for st in s.steps] for s in a] == [[type(st) for st in s.steps] for s in b]
    assert b[0].base == "ruby:3.2.2-slim-bullseye"


def test_build_args_from_strings():
    args = BuildArgs.from_strings({"developer_uid": "1001", "project": "x"})
    assert args.developer_uid == 1001
    assert args.workdir == "/workspaces/x"
    with pytest.raises(ValueError):
        BuildArgs.from_strings({"nope": "1"})


class TestRuntime:
    def test_no_compiler_no_account(self, built):
        rt = built["runtime"]
        assert "build-essential" not in rt.os_packages
        assert rt.build_account is None
        assert set(rt.accounts) == {"root"}

    def test_index_purged(self, built):
        assert built["runtime"].listdir("/var/lib/apt/lists") == []

    def test_runtime_libraries(self, built):
        rt = built["runtime"]
        assert {"libpq5", "ca-certificates", "tzdata"} <= rt.os_packages
        assert rt.env["MALLOC_ARENA_MAX"] == "2"
        assert rt.user == "root"

    def test_runtime_alone(self):
        snaps = Builder().build_all(Runtime().stages())
        assert list(snaps) == ["runtime"]


class TestDevelopmentBase:
    def test_account_and_sudo(self, built):
        db = built["development-base"]
        acct = db.account("you")
        assert (acct.uid, acct.gid, acct.shell) == (1000, 1000, "/bin/bash")
        assert acct.comment == "Developer User,,,"
        assert "you" in db.sudoers
        assert db.user == "you"

    def test_workdir_and_path(self, built):
        db = built["development-base"]
        assert db.workdir == "/workspaces/pg_ltree"
        assert db.env["PATH"].startswith("/workspaces/pg_ltree/bin:")

    def test_resolver_policy(self, built):
        cfg = read_resolver_config(built["development-base"])
        assert (cfg.retry, cfg.jobs, cfg.without) == (3, 2, ())

    def test_index_kept(self, built):
        assert built["development-base"].listdir("/var/lib/apt/lists")


@pytest.mark.parametrize("name", ["development-base", "testing", "development"])
def test_ownership(built, name):
    """Working tree and dependency cache belong to the build account."""
    snap = built[name]
    for root in (snap.workdir, GEM_HOME, "/home/you"):
        owners = {snap.owner(p) for p in tree.subtree(snap.files, root)}
        assert owners == {"you"}, root


class TestTesting:
    def test_no_development_group(self, built):
        installed = installed_packages(built["testing"], GEM_HOME)
        assert not set(installed) & set(LOCK.group_only("development"))
        assert installed == {n: p.version for n, p in LOCK.select(["development"]).items()}

    def test_shared_dependency_kept(self, built):
        """i18n is also needed by rubocop; excluding development keeps it."""
        assert "i18n" in installed_packages(built["testing"], GEM_HOME)

    def test_only_manifest_copied(self, built):
        t = built["testing"]
        assert t.exists("/workspaces/pg_ltree/deps.lock")
        assert not t.exists("/workspaces/pg_ltree/lib/pg_ltree.rb")

    def test_gem_manifests_copied(self, built):
        """The gemspec and the version file it reads are needed to resolve."""
        t = built["testing"]
        for name in ("Gemfile", "Gemfile.lock", "pg_ltree.gemspec", "lib/pg_ltree/version.rb"):
            assert t.exists(f"/workspaces/pg_ltree/{name}"), name

    def test_no_development_tooling(self, built):
        t = built["testing"]
        assert not set(DEVELOPMENT_PACKAGES) & t.os_packages
        for tool in DEVELOPMENT_TOOLS:
            assert not t.exists(f"{GEM_HOME}/bin/{tool}")
        assert not t.exists(HISTORY_FILE)

    def test_without_recorded(self, built):
        assert read_resolver_config(built["testing"]).without == ("development",)


class TestDevelopment:
    def test_union_of_testing_and_development_group(self, built):
        testing = installed_packages(built["testing"], GEM_HOME)
        dev = installed_packages(built["development"], GEM_HOME)
        only_dev = {n: p.version for n, p in LOCK.group_only("development").items()}
        assert dev == {**testing, **only_dev}

    def test_promoted_artifacts_identical(self, built):
        testing, dev = built["testing"], built["development"]
        for name, version in installed_packages(testing, GEM_HOME).items():
            path = f"{GEM_HOME}/packages/{name}-{version}"
            assert dev.read(path) == testing.read(path)

    def test_promotion_recorded(self, built, builder, pipeline):
        (handle,) = built["development"].promotions
        assert handle.stage == "testing"
        assert handle.stage_key == builder.key(pipeline.testing)
        assert handle.manifest_digest == manifest.digest({"deps.lock": LOCK_TEXT.encode()})

    def test_promoted_digests_match_testing(self, built):
        testing = built["testing"]
        (handle,) = built["development"].promotions
        assert [p for p, _ in handle.tree_digests] == [GEM_HOME, "/workspaces/pg_ltree"]
        for p, d in handle.tree_digests:
            assert d == tree.tree_digest(tree.subtree(testing.files, p), p)

    def test_promoted_workdir(self, built):
        dev = built["development"]
        assert dev.read("/workspaces/pg_ltree/deps.lock") == LOCK_TEXT.encode()

    def test_resolver_exclusion_cleared(self, built):
        assert read_resolver_config(built["development"]).without == ()

    def test_interactive_tooling(self, built):
        dev = built["development"]
        assert {"vim", "postgresql-client", "build-essential"} <= dev.os_packages
        assert dev.exists(f"{GEM_HOME}/bin/rubocop")
        assert dev.owner(HISTORY_FILE) == "you"
        assert b"HISTFILE=/command-history/.bash_history" in dev.read("/home/you/.bashrc")
        assert dev.owner("/home/you/.vscode-server/extensions") == "you"
        assert dev.user == "you"

    def test_delta_only(self, pipeline):
        """Development fetches only what testing did not already install."""
        fetched = []

        class Recording(MemoryIndex):
            def fetch(self, name, version):
                fetched.append(name)
                return super().fetch(name, version)

        builder = Builder(source=source(), index=Recording(ARTIFACTS))
        builder.build(pipeline.testing)
        fetched.clear()
        builder.build(pipeline.development)
        assert sorted(fetched) == sorted(LOCK.group_only("development"))

    def test_strict_ownership_fails(self, pipeline):
        """Editor directories are created as root; only repair makes them usable."""
        b = Builder(source=source(), index=MemoryIndex(ARTIFACTS), repair_ownership=False)
        b.build(pipeline.testing)
        with pytest.raises(PermissionMisalignmentError):
            b.build(pipeline.development)


def test_deterministic(pipeline):
    a = Builder(source=source(), index=MemoryIndex(ARTIFACTS)).build_all(pipeline.stages())
    b = Builder(source=source(), index=MemoryIndex(ARTIFACTS)).build_all(Development().stages())
    assert {n: s.digest() for n, s in a.items()} == {n: s.digest() for n, s in b.items()}


def test_source_edit_keeps_cache(pipeline):
    cache = StageCache()
    first = Builder(source=source(), index=MemoryIndex(ARTIFACTS), cache=cache)
    first.build(pipeline.development)
    edited = source()
    edited["/lib/pg_ltree.rb"] = tree.file("module PgLtree; VERSION = 2; end\n")
    second = Builder(source=edited, index=MemoryIndex({}), cache=cache)
    assert second.key(pipeline.development) == first.key(pipeline.development)
    second.build(pipeline.development)


def test_resolution_failure_aborts_everything_after(pipeline):
    cache = StageCache()
    index = FlakyIndex("activesupport")
    b = Builder(source=source(), index=index, cache=cache)
    with pytest.raises(PackageInstallError, match="4 attempts"):
        b.build(pipeline.development)
    assert index.attempts == 4
    assert b.key(pipeline.testing) not in cache
    assert b.key(pipeline.development) not in cache
    assert b.key(pipeline.development_base) in cache


def test_manifest_drift_refused(pipeline):
    """Artifacts resolved against an older lockfile are not promoted."""
    b = Builder(source=source(), index=MemoryIndex(ARTIFACTS))
    testing = b.build(pipeline.testing)
    start = b.build(pipeline.development_base)
    changed = LOCK_TEXT.replace("0.14.1", "0.14.2")
    ctx = StepContext(source=source(changed), promoted={"testing": (b.key(pipeline.testing), testing)})
    with pytest.raises(ManifestDriftError):
        Promote(stage="testing", paths=(GEM_HOME,)).apply(start, ctx)


def test_render_matches_graph(pipeline):
    out = render(pipeline.stages())
    for name in STAGE_NAMES:
        assert f" AS {name}\n" in out
    assert "COPY --from=testing --chown=you /usr/local/bundle /usr/local/bundle" in out
    assert "RUN bundle config unset --local without" in out


def test_render_copies_gem_manifests_before_install(pipeline):
    block = render([pipeline.testing])
    copy = "COPY --chown=you pg_ltree.gemspec Gemfile* deps.lock /workspaces/pg_ltree/"
    version = "COPY --chown=you lib/pg_ltree/version.rb /workspaces/pg_ltree/lib/pg_ltree/"
    assert copy in block
    assert version in block
    assert block.index(copy) < block.index("RUN bundle install")
    assert block.index(version) < block.index("RUN bundle install")

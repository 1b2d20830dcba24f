"""Tests for strata.resolver: retries, bounded concurrency, delta resolution."""

import json
import threading
import time

import pytest

from strata import manifest
from strata.digest import sha256_hex
from strata.errors import BuildError, ManifestDriftError, PackageInstallError
from strata.resolver import (
    DirectoryIndex,
    MemoryIndex,
    PackageNotFoundError,
    Resolver,
    ResolverConfig,
    TransientFetchError,
)

LOCK = {
    "version": 1,
    "groups": {"default": ["pg", "rake"], "development": ["pry"]},
    "packages": {
        "pg": {"version": "1.4.5"},
        "rake": {"version": "13.0.6"},
        "pry": {"version": "0.14.1", "dependencies": ["coderay"]},
        "coderay": {"version": "1.1.3"},
    },
}

ARTIFACTS = {
    (name, spec["version"]): f"{name}-{spec['version']}".encode()
    for name, spec in LOCK["packages"].items()
}


def lock(doc=LOCK):
    return manifest.parse(json.dumps(doc))


class FlakyIndex:
    """Fails the first ``failures`` fetches of every package."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = {}
        self._lock = threading.Lock()

    def fetch(self, name, version):
        with self._lock:
            n = self.calls.get(name, 0) + 1
            self.calls[name] = n
        if n <= self.failures:
            raise TransientFetchError(f"connection reset ({n})")
        return ARTIFACTS[(name, version)]


class CountingIndex:
    def __init__(self):
        self.active = 0
        self.peak = 0
        self.threads = set()
        self._lock = threading.Lock()

    def fetch(self, name, version):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.threads.add(threading.get_ident())
        time.sleep(0.01)
        with self._lock:
            self.active -= 1
        return ARTIFACTS[(name, version)]


def test_resolves_everything_by_default():
    r = Resolver(MemoryIndex(ARTIFACTS), ResolverConfig())
    result = r.resolve(lock())
    assert set(result.fetched) == {"pg-1.4.5", "rake-13.0.6", "pry-0.14.1", "coderay-1.1.3"}
    assert result.fetched["pg-1.4.5"] == b"pg-1.4.5"


def test_without_excludes_group():
    r = Resolver(MemoryIndex(ARTIFACTS), ResolverConfig(without=("development",)))
    result = r.resolve(lock())
    assert set(result.fetched) == {"pg-1.4.5", "rake-13.0.6"}


def test_delta_only():
    """Packages already installed at the locked version are not fetched again."""
    index = FlakyIndex(0)
    r = Resolver(index, ResolverConfig())
    result = r.resolve(lock(), installed={"pg": "1.4.5", "rake": "13.0.6"})
    assert set(result.fetched) == {"pry-0.14.1", "coderay-1.1.3"}
    assert set(result.reused) == {"pg-1.4.5", "rake-13.0.6"}
    assert "pg" not in index.calls


def test_installed_version_drift():
    r = Resolver(MemoryIndex(ARTIFACTS), ResolverConfig())
    with pytest.raises(ManifestDriftError, match="pg"):
        r.resolve(lock(), installed={"pg": "1.3.0"})


class TestRetry:
    def test_retry_recovers(self):
        index = FlakyIndex(2)
        r = Resolver(index, ResolverConfig(retry=2))
        result = r.resolve(lock())
        assert len(result.fetched) == 4
        assert all(n == 3 for n in index.calls.values())

    def test_retry_exhausted(self):
        index = FlakyIndex(4)
        r = Resolver(index, ResolverConfig(retry=3))
        with pytest.raises(PackageInstallError, match="4 attempts"):
            r.resolve(lock())

    def test_not_found_is_not_retried(self):
        class Missing:
            calls = 0

            def fetch(self, name, version):
                Missing.calls += 1
                raise PackageNotFoundError(name)

        r = Resolver(Missing(), ResolverConfig(retry=5, without=("development",)))
        with pytest.raises(PackageInstallError, match="not found"):
            r.resolve(lock({**LOCK, "groups": {"default": ["pg"]}}))
        assert Missing.calls == 1


class TestJobs:
    def test_single_job_uses_one_thread(self):
        index = CountingIndex()
        Resolver(index, ResolverConfig(jobs=1)).resolve(lock())
        assert index.peak == 1
        assert len(index.threads) == 1

    def test_jobs_bound_concurrency(self):
        index = CountingIndex()
        Resolver(index, ResolverConfig(jobs=2)).resolve(lock())
        assert index.peak <= 2


def test_checksum_verified():
    doc = json.loads(json.dumps(LOCK))
    doc["packages"]["pg"]["checksum"] = sha256_hex(b"pg-1.4.5")
    Resolver(MemoryIndex(ARTIFACTS), ResolverConfig()).resolve(lock(doc))

    doc["packages"]["pg"]["checksum"] = sha256_hex(b"tampered")
    with pytest.raises(PackageInstallError, match="checksum"):
        Resolver(MemoryIndex(ARTIFACTS), ResolverConfig()).resolve(lock(doc))


def test_directory_index(tmp_path):
    (tmp_path / "pg-1.4.5.pkg").write_bytes(b"payload")
    index = DirectoryIndex(tmp_path)
    assert index.fetch("pg", "1.4.5") == b"payload"
    with pytest.raises(PackageNotFoundError):
        index.fetch("pg", "9.9.9")


class TestConfig:
    def test_json(self):
        cfg = ResolverConfig(retry=3, jobs=2, without=("development",))
        assert ResolverConfig.from_json(cfg.to_json()) == cfg

    def test_updated_keeps_unset_fields(self):
        cfg = ResolverConfig(retry=3).updated(jobs=2)
        assert (cfg.retry, cfg.jobs) == (3, 2)

    def test_unset_restores_default(self):
        cfg = ResolverConfig(retry=3, without=("development",)).updated(unset=("without",))
        assert cfg.without == ()
        assert cfg.retry == 3

    def test_negative_retry_rejected(self):
        """A negative retry count would skip fetching altogether."""
        with pytest.raises(BuildError, match="retry"):
            ResolverConfig(retry=-1)

    def test_zero_jobs_rejected(self):
        with pytest.raises(BuildError, match="jobs"):
            ResolverConfig(jobs=0)

"""Content-addressed snapshot cache.

Snapshots are keyed by build key, which already covers everything a stage
depends on, so a hit never needs revalidation. Only finished stages are
stored; a stage that failed leaves no trace.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from strata.snapshot import Snapshot

log = logging.getLogger(__name__)


class StageCache:
    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else None
        self._mem: dict[str, Snapshot] = {}

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def __contains__(self, key: str) -> bool:
        return key in self._mem or (self.root is not None and self._path(key).exists())

    def get(self, key: str) -> Snapshot | None:
        if key in self._mem:
            return self._mem[key]
        if self.root is None or not self._path(key).exists():
            return None
        snap = Snapshot.from_dict(json.loads(self._path(key).read_text()))
        self._mem[key] = snap
        log.debug("loaded %s from %s", key, self.root)
        return snap

    def put(self, key: str, snap: Snapshot) -> None:
        self._mem[key] = snap
        if self.root is None:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(snap.to_dict(), f, sort_keys=True)
            os.replace(tmp, self._path(key))
        except BaseException:
            os.unlink(tmp)
            raise

    def keys(self) -> list[str]:
        keys = set(self._mem)
        if self.root is not None and self.root.exists():
            keys |= {p.stem for p in self.root.glob("*.json")}
        return sorted(keys)

# cache.py
from __future__ import annotations

import io
import json
import os
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote, unquote

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A cache entry is stored under one primary key and never overwritten.
#
# restore(key, restore_keys):
#   1. exact match on the primary key
#   2. else, for each fallback prefix in order, the most recently written
#      entry whose key starts with that prefix
#   3. else miss (a miss never blocks the job)
#
# save(key, data):
#   create-only; saving an existing key is a no-op, so matrix points that
#   converge on one key (same lockfile hash) write it once.
#
# Cache artifact:
#   a tar.gz of the declared paths, relative to the workspace (or to ~).
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
    written_at: float


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    exact: bool
    key: str     # key of the restored entry ("" on a miss)
    reason: str  # human readable


def _newest(entries: Iterable[CacheEntry]) -> Optional[CacheEntry]:
    # identical timestamps: the lexicographically greatest key wins
    best: Optional[CacheEntry] = None
    for e in entries:
        if best is None or (e.written_at, e.key) > (best.written_at, best.key):
            best = e
    return best


# ---------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------

class MemoryCacheBackend:
    """In-process backend. The clock is injectable so tests can pin write times."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def fetch(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def fetch_by_prefix(self, prefix: str) -> Optional[CacheEntry]:
        with self._lock:
            return _newest(e for k, e in self._entries.items() if k.startswith(prefix))

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def store(self, key: str, data: bytes) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = CacheEntry(key, data, self._clock())
            return True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)


class FileCacheBackend:
    """
    File-based cache store:
      root/
        <quoted key>.tar.gz
        <quoted key>.manifest.json   {"key", "written_at", "size"}
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, clock: Callable[[], float] = time.time):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.manifest.json"

    def _written_at(self, key: str) -> float:
        try:
            return float(json.loads(self.manifest_path(key).read_text(encoding="utf-8"))["written_at"])
        except (OSError, ValueError, KeyError):
            return self.artifact_path(key).stat().st_mtime

    def fetch(self, key: str) -> Optional[CacheEntry]:
        art = self.artifact_path(key)
        if not art.exists():
            return None
        return CacheEntry(key, art.read_bytes(), self._written_at(key))

    def _keys(self) -> List[str]:
        return [unquote(p.name[: -len(".tar.gz")]) for p in self.root.glob("*.tar.gz")]

    def fetch_by_prefix(self, prefix: str) -> Optional[CacheEntry]:
        candidates = [k for k in self._keys() if k.startswith(prefix)]
        if not candidates:
            return None
        best = max(candidates, key=lambda k: (self._written_at(k), k))
        return self.fetch(best)

    def contains(self, key: str) -> bool:
        return self.artifact_path(key).exists()

    def store(self, key: str, data: bytes) -> bool:
        art = self.artifact_path(key)
        tmp = art.with_name(f"{art.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            tmp.write_bytes(data)
            try:
                # hard link is create-only: a concurrent writer of the same key loses
                os.link(tmp, art)
            except FileExistsError:
                return False
            manifest = {"key": key, "written_at": self._clock(), "size": len(data)}
            self.manifest_path(key).write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            return True
        finally:
            tmp.unlink(missing_ok=True)

    def keys(self) -> List[str]:
        return sorted(self._keys())


# ---------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------

_HOME_PREFIX = "~"


def _arcname(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        pass
    try:
        return f"{_HOME_PREFIX}/{path.relative_to(Path.home()).as_posix()}"
    except ValueError:
        raise ValueError(f"cache path {path} is outside the workspace and home directory")


def _destination(arcname: str, root: Path) -> Path:
    parts = Path(arcname).parts
    if ".." in parts or Path(arcname).is_absolute():
        raise ValueError(f"refusing to extract unsafe path: {arcname}")
    if parts and parts[0] == _HOME_PREFIX:
        return Path.home().joinpath(*parts[1:])
    return root.joinpath(*parts)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def pack_paths(paths: Sequence[str], root: str | Path = ".") -> bytes:
    """tar.gz of the given files/directories. Missing paths are skipped."""
    root_p = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = Path(entry).expanduser()
            if not src.is_absolute():
                src = root_p / src
            src = src.resolve()
            if not src.exists():
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                tar.add(str(f), arcname=_arcname(f, root_p), recursive=False)
    return buf.getvalue()


def unpack(data: bytes, root: str | Path = ".") -> List[Path]:
    """Extract a pack_paths() archive, overwriting existing files."""
    root_p = Path(root).resolve()
    written: List[Path] = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            dest = _destination(member.name, root_p)
            dest.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, dest.open("wb") as out:
                out.write(src.read())
            written.append(dest)
    return written


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

class CacheResolver:
    """
    Restore/save policy on top of a storage backend.

    Reads are lock-free; saves of the same primary key are serialised
    so the first write always wins.
    """

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def resolve(self, primary_key: str, fallback_prefixes: Sequence[str] = ()) -> Optional[CacheEntry]:
        exact = self.backend.fetch(primary_key)
        if exact is not None:
            return exact
        for prefix in fallback_prefixes:
            found = self.backend.fetch_by_prefix(prefix)
            if found is not None:
                return found
        return None

    def save(self, primary_key: str, data: bytes) -> bool:
        """Write under the primary key. Returns False when the key already existed."""
        with self._key_lock(primary_key):
            if self.backend.contains(primary_key):
                return False
            return self.backend.store(primary_key, data)

    def restore(
        self,
        primary_key: str,
        fallback_prefixes: Sequence[str] = (),
        *,
        root: str | Path = ".",
    ) -> CacheHit:
        entry = self.resolve(primary_key, fallback_prefixes)
        if entry is None:
            return CacheHit(hit=False, exact=False, key="", reason="cache miss")

        unpack(entry.data, root)
        if entry.key == primary_key:
            return CacheHit(hit=True, exact=True, key=entry.key, reason="cache hit: exact key")
        return CacheHit(hit=True, exact=False, key=entry.key, reason=f"cache hit: restored from {entry.key}")

    def save_paths(self, primary_key: str, paths: Sequence[str], *, root: str | Path = ".") -> bool:
        # skip packing entirely when the key is already present
        if self.backend.contains(primary_key):
            return False
        return self.save(primary_key, pack_paths(paths, root))

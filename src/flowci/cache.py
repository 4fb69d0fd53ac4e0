# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CacheBackendError
from .expressions import ExpressionContext, interpolate
from .globs import glob_matches

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A cache scope is a set of paths saved under a key:
#   key = template with ${{ runner.os }}, ${{ matrix.* }},
#         ${{ steps.<id>.outputs.* }} and ${{ hashFiles('**/Cargo.toml') }}
#         substituted.
#
# Restore: exact key first; otherwise the newest entry whose key starts with
# one of the restore-keys prefixes (tried in order). Save is create-once: an
# entry that already exists for a key is never rewritten.
#
# Backend layout (LocalCacheBackend):
#   root/
#     <sha256(key)>.tar.gz
#     <sha256(key)>.manifest.json   {"key", "paths", "created_at_unix"}
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".flowci/cache"
HASH_EXCLUDES = [".git/**", ".flowci/**"]


@dataclass(frozen=True)
class CacheKey:
    key: str
    paths: Tuple[str, ...]
    restore_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str           # key that was actually restored ("" on miss)
    exact: bool
    reason: str        # human readable


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.relative_to(root).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    for p in root.rglob("*"):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_files(root: str | Path, patterns: Sequence[str]) -> str:
    """
    SHA-256 over the contents of every file under `root` matching any
    pattern. Files are sorted by relative path first, so the result does not
    depend on filesystem enumeration order. No match -> "".
    """
    root = Path(root).resolve()
    matched: List[Tuple[str, Path]] = []
    for f in _iter_files_under(root):
        rel = _relpath(f, root)
        if glob_matches(rel, HASH_EXCLUDES):
            continue
        if glob_matches(rel, patterns):
            matched.append((rel, f))

    if not matched:
        return ""

    matched.sort(key=lambda t: t[0])
    h = hashlib.sha256()
    for _rel, f in matched:
        h.update(bytes.fromhex(_hash_file_contents(f)))
    return h.hexdigest()


def hash_files_function(root: str | Path) -> Callable[..., str]:
    """hashFiles('a', 'b') bound to a workspace, for expression contexts."""
    def _hash_files(*patterns: str) -> str:
        return hash_files(root, [str(p) for p in patterns])
    return _hash_files


def _split_lines(value: str) -> Tuple[str, ...]:
    return tuple(line.strip() for line in value.splitlines() if line.strip())


class CacheKeyResolver:
    """Turns a cache declaration (key template, path set, restore-keys) into a CacheKey."""

    def __init__(self, context: ExpressionContext):
        self.context = context

    def resolve(self, key_template: str, paths: str | Sequence[str], restore_keys: str | Sequence[str] = ()) -> CacheKey:
        key = str(interpolate(key_template, self.context)).strip()
        if not key:
            raise ValueError("cache key resolved to an empty string")
        if isinstance(paths, str):
            paths = _split_lines(paths)
        if isinstance(restore_keys, str):
            restore_keys = _split_lines(restore_keys)
        return CacheKey(
            key=key,
            paths=tuple(str(interpolate(p, self.context)) for p in paths),
            restore_keys=tuple(str(interpolate(r, self.context)) for r in restore_keys),
        )


def resolve_cache_paths(paths: Sequence[str], workspace: Path) -> List[Path]:
    """`~` expands to the user's home; relative paths are workspace-relative."""
    out: List[Path] = []
    for p in paths:
        expanded = Path(os.path.expanduser(p))
        out.append(expanded if expanded.is_absolute() else (workspace / expanded))
    return out


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------
# Members are stored as "<index>/<relative path>" where <index> is the
# position of the path in the cache scope; a single file is "<index>/__file__".

_FILE_MARK = "__file__"


def write_archive(fileobj, paths: Sequence[Path]) -> None:
    with tarfile.open(fileobj=fileobj, mode="w:gz") as tar:
        for idx, src in enumerate(paths):
            if not src.exists():
                continue
            if src.is_file():
                tar.add(str(src), arcname=f"{idx}/{_FILE_MARK}", recursive=False)
                continue
            for f in sorted(_iter_files_under(src)):
                tar.add(str(f), arcname=f"{idx}/{_relpath(f, src)}", recursive=False)


def extract_archive(data: bytes, paths: Sequence[Path]) -> int:
    """Unpack an archive produced by write_archive onto `paths`. Returns files written."""
    written = 0
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            idx_s, _, rest = member.name.partition("/")
            if not idx_s.isdigit() or int(idx_s) >= len(paths) or not rest:
                continue
            if ".." in Path(rest).parts or Path(rest).is_absolute():
                continue
            base = paths[int(idx_s)]
            target = base if rest == _FILE_MARK else base / rest
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, target.open("wb") as out:
                out.write(src.read())
            written += 1
    return written


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend(ABC):
    """Storage for cache archives. Implementations raise CacheBackendError on failure."""

    @abstractmethod
    def restore(self, key: str) -> Optional[bytes]:
        """Archive bytes for an exact key, or None on miss."""

    @abstractmethod
    def save(self, key: str, paths: Sequence[Path]) -> bool:
        """Store paths under key. Returns False when the key already exists."""

    @abstractmethod
    def find_by_prefix(self, prefix: str) -> Optional[str]:
        """Most recently created key starting with prefix, or None."""


class LocalCacheBackend(CacheBackend):
    """File-based cache store (see layout above)."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheBackendError(f"cannot create cache dir {self.root}: {e}") from e

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.manifest.json"

    def exists(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def restore(self, key: str) -> Optional[bytes]:
        if not self.exists(key):
            return None
        try:
            return self.artifact_path(key).read_bytes()
        except OSError as e:
            raise CacheBackendError(f"cannot read cache entry: {e}", key=key) from e

    def save(self, key: str, paths: Sequence[Path]) -> bool:
        self._ensure_root()
        if self.exists(key):
            return False

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        # unique temp names so concurrent savers never share a partial file
        suffix = f".{os.getpid()}.{time.monotonic_ns()}.tmp"
        tmp_art = art.with_name(art.name + suffix)
        tmp_man = man.with_name(man.name + suffix)
        manifest = {
            "key": key,
            "paths": [str(p) for p in paths],
            "created_at_unix": time.time(),
        }
        try:
            with tmp_art.open("wb") as f:
                write_archive(f, paths)
            tmp_man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            tmp_art.replace(art)
            tmp_man.replace(man)
        except (OSError, tarfile.TarError) as e:
            raise CacheBackendError(f"cannot write cache entry: {e}", key=key) from e
        finally:
            tmp_art.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)
        return True

    def entries(self) -> List[Dict]:
        """Manifests of every stored entry, newest first."""
        if not self.root.exists():
            return []
        out = []
        for man in self.root.glob("*.manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if isinstance(data, dict) and "key" in data:
                out.append(data)
        out.sort(key=lambda d: d.get("created_at_unix", 0), reverse=True)
        return out

    def find_by_prefix(self, prefix: str) -> Optional[str]:
        for entry in self.entries():
            if entry["key"].startswith(prefix) and self.exists(entry["key"]):
                return entry["key"]
        return None

    def prune(self, keep: int = 10) -> List[str]:
        """Keep only the newest N entries. Returns the removed keys."""
        removed = []
        for entry in self.entries()[keep:]:
            key = entry["key"]
            self.artifact_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed


# ---------------------------------------------------------------------
# Client used by the cache action
# ---------------------------------------------------------------------

class CacheClient:
    """
    Wraps a backend with the engine's cache policy:
      - exact key first, then restore-keys prefixes in order
      - transient backend errors are retried, then treated as a miss
      - a failed save is reported and ignored (never fails the job)
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        retries: int = 2,
        on_warning: Optional[Callable[[str], None]] = None,
    ):
        self.backend = backend
        self.retries = max(0, retries)
        self.on_warning = on_warning or (lambda msg: None)

    def _call(self, fn: Callable, *args):
        last: Optional[CacheBackendError] = None
        for _attempt in range(self.retries + 1):
            try:
                return fn(*args)
            except CacheBackendError as e:
                last = e
        assert last is not None
        raise last

    def restore(self, cache_key: CacheKey, workspace: Path) -> CacheHit:
        targets = resolve_cache_paths(cache_key.paths, workspace)
        try:
            data = self._call(self.backend.restore, cache_key.key)
            if data is not None:
                extract_archive(data, targets)
                return CacheHit(hit=True, key=cache_key.key, exact=True, reason="exact key match")

            for prefix in cache_key.restore_keys:
                found = self._call(self.backend.find_by_prefix, prefix)
                if found is None:
                    continue
                data = self._call(self.backend.restore, found)
                if data is not None:
                    extract_archive(data, targets)
                    return CacheHit(hit=True, key=found, exact=False, reason=f"restore-key prefix {prefix!r}")
        except (CacheBackendError, tarfile.TarError, OSError) as e:
            self.on_warning(f"cache restore failed for {cache_key.key!r}, continuing cold: {e}")
            return CacheHit(hit=False, key="", exact=False, reason=f"backend error: {e}")

        return CacheHit(hit=False, key="", exact=False, reason="cache miss")

    def save(self, cache_key: CacheKey, workspace: Path) -> bool:
        sources = resolve_cache_paths(cache_key.paths, workspace)
        try:
            return bool(self._call(self.backend.save, cache_key.key, sources))
        except CacheBackendError as e:
            self.on_warning(f"cache save failed for {cache_key.key!r}: {e}")
            return False

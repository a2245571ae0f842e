# cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tarfile
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CacheIOError
from .model import CacheEntry

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency cache shared by every job of a run:
#   cache_key = hash(toolchain version, digest of the dependency manifest)
#
# Layout:
#   root/
#     entries/<key>.json     {key, payload_ref, last_used_at}
#     blobs/<key>.tar.gz     archived build dirs (what payload_ref points at)
#
# Entries are content addressed, so concurrent writers of one key produce
# equivalent payloads; every write goes to a temp file and is os.replace'd.
# There is no size-based eviction: clear_all() wipes everything at run end.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand manifest patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "crates/"
      - glob:      "**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except (NotImplementedError, ValueError):
            # absolute or malformed patterns match nothing
            matches = []
        out.extend(m for m in matches if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def manifest_digest(root: str | Path, patterns: Iterable[str]) -> str:
    """
    Digest of the dependency manifest files (e.g. Cargo.lock):
      - file contents
      - relative paths
    Missing patterns contribute nothing, so an absent lockfile is still stable.
    """
    root_p = Path(root).resolve()
    fps: List[Tuple[str, str]] = []

    for p in _resolve_globs(root_p, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root_p)
            if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                continue
            fps.append((rel, _hash_file_contents(f)))

    fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    return _sha256_str(_json_dumps_stable({"files": fps}))


def cache_key(toolchain_version: str, digest: str) -> str:
    payload = {
        "v": 1,  # bump this if you change hashing format
        "toolchain": toolchain_version,
        "manifest": digest,
    }
    return _sha256_str(_json_dumps_stable(payload))


class DependencyCache:
    """
    File-based key -> payload_ref store shared across concurrently running jobs.

    get() returns None on a miss and raises CacheIOError when an entry exists
    but cannot be read; callers treat that as a miss.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        self._blobs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def _entries_dir(self) -> Path:
        return self.root / "entries"

    @property
    def _blobs_dir(self) -> Path:
        return self.root / "blobs"

    def entry_path(self, key: str) -> Path:
        return self._entries_dir / f"{key}.json"

    def blob_path(self, key: str) -> Path:
        return self._blobs_dir / f"{key}.tar.gz"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    # ---- key/value ----

    def entry(self, key: str) -> Optional[CacheEntry]:
        path = self.entry_path(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return CacheEntry(key=raw["key"], payload_ref=raw["payload_ref"], last_used_at=float(raw["last_used_at"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheIOError(job="", message=f"unreadable cache entry {key[:12]}...: {e}", details={"path": str(path)})

    def get(self, key: str) -> Optional[str]:
        found = self.entry(key)
        if found is None:
            return None
        # refresh last_used_at; readers never modify the payload itself
        self._store(CacheEntry(key=key, payload_ref=found.payload_ref, last_used_at=time.time()))
        return found.payload_ref

    def put(self, key: str, payload_ref: str) -> CacheEntry:
        e = CacheEntry(key=key, payload_ref=str(payload_ref), last_used_at=time.time())
        self._store(e)
        return e

    def _store(self, e: CacheEntry) -> None:
        data = json.dumps(
            {"key": e.key, "payload_ref": e.payload_ref, "last_used_at": e.last_used_at},
            sort_keys=True,
            indent=2,
        ).encode("utf-8")
        try:
            self._write_atomic(self.entry_path(e.key), data)
        except OSError as err:
            raise CacheIOError(job="", message=f"could not write cache entry {e.key[:12]}...: {err}")

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self._entries_dir.glob("*.json"))

    def clear_all(self) -> None:
        """Drop every entry and blob. Called once per run, after all jobs finish."""
        with self._lock:
            try:
                for d in (self._entries_dir, self._blobs_dir):
                    if d.exists():
                        shutil.rmtree(d)
                    d.mkdir(parents=True, exist_ok=True)
            except OSError as err:
                raise CacheIOError(job="", message=f"could not clear cache at {self.root}: {err}")

    # ---- payloads ----

    def archive(self, key: str, src_root: str | Path, dirs: Iterable[str]) -> Path:
        """
        Pack `dirs` (relative to src_root) into the blob for `key`.
        Built in a temp file, then atomically renamed into place.
        """
        root = Path(src_root).resolve()
        art = self.blob_path(key)
        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in dirs:
                    src = (root / entry).resolve()
                    if not src.exists():
                        continue
                    files = [src] if src.is_file() else list(_iter_files_under(src))
                    for f in files:
                        rel = _relpath(f, root)
                        if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                            continue
                        tar.add(str(f), arcname=rel, recursive=False)
            os.replace(tmp, art)
        except (OSError, tarfile.TarError) as err:
            raise CacheIOError(job="", message=f"could not archive cache payload {key[:12]}...: {err}")
        finally:
            tmp.unlink(missing_ok=True)
        return art

    def restore(self, payload_ref: str, dest: str | Path) -> None:
        """Extract a payload into dest ("overwrite by extraction")."""
        dest_p = Path(dest).resolve()
        dest_p.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(payload_ref, mode="r:gz") as tar:
                tar.extractall(path=str(dest_p), filter="data")
        except (OSError, tarfile.TarError) as err:
            raise CacheIOError(job="", message=f"cache exists but restore failed: {err}", details={"payload": payload_ref})

    def stats(self) -> Dict[str, int]:
        try:
            blobs = list(self._blobs_dir.glob("*.tar.gz"))
            return {
                "entries": len(self.keys()),
                "blobs": len(blobs),
                "bytes": sum(b.stat().st_size for b in blobs),
            }
        except OSError as err:
            raise CacheIOError(job="", message=f"could not read cache stats at {self.root}: {err}")

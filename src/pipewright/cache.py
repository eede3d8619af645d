# cache.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import re
import tarfile
import threading
import time
import zlib
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .actions import job_cache_config
from .environment import JobEnvironment
from .errors import CacheWriteError, CIError
from .expressions import ExpressionContext, hash_files, render
from .model import CacheConfig, CacheEntry, Job

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-level caching:
#   cache_key = <job id>.<rendered key template>
#
# The default template fingerprints:
#   runner os,
#   step definitions (uses/with/run/env),
#   contents of common dependency lock files.
#
# Cache artifact:
#   a tar.gz of the job's cache paths, relative to its workspace.
#   Storage backends only ever see (key, bytes).
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".pipewright/cache"
DEFAULT_LOCK_FILES = [
    "**/Cargo.lock",
    "**/poetry.lock",
    "**/uv.lock",
    "**/package-lock.json",
    "**/requirements*.txt",
]
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def steps_fingerprint(job: Job) -> str:
    steps = [
        {
            "uses": str(s.uses) if s.uses else None,
            "with": s.params,
            "run": s.run,
            "env": s.env,
            "cwd": s.working_directory or ".",
        }
        for s in job.steps
    ]
    payload = {"v": 1, "steps": steps, "env": job.env}  # bump v if the hashing format changes
    return _sha256_str(_json_dumps_stable(payload))


# ---------------------------------------------------------------------
# Storage backends: get(key) -> bytes | None, put(key, bytes)
# ---------------------------------------------------------------------

class CacheStorage(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, data: bytes) -> None: ...


class MemoryCacheStorage:
    """In-process store; shared between threads of one pipeline run."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class FileCacheStorage:
    """
    File-based cache store:
      root/
        <key>.tar.gz

    Writes go to a tmp file first, then an atomic rename.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.tar.gz"

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        art = self.path_for(key)
        tmp = art.with_name(f"{art.name}.{threading.get_ident()}.tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(art)
        finally:
            tmp.unlink(missing_ok=True)

    def prune(self, prefix: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts whose key starts with prefix.
        Uses file mtime as "newest".
        """
        safe = _UNSAFE_KEY_CHARS.sub("_", prefix)
        arts = sorted(
            (p for p in self.root.glob("*.tar.gz") if p.name.startswith(f"{safe}.")),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for p in arts[keep:]:
            logger.debug("pruning cache artifact %s", p.name)
            p.unlink(missing_ok=True)


class RedisCacheStorage:
    """Shared cache backed by Redis; entries expire after `ttl_s`."""

    def __init__(self, url: str, *, namespace: str = "pipewright:cache", ttl_s: int = 7 * 24 * 3600):
        import redis

        self.r = redis.Redis.from_url(url)
        self.namespace = namespace
        self.ttl_s = ttl_s

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[bytes]:
        return self.r.get(self._key(key))

    def put(self, key: str, data: bytes) -> None:
        self.r.set(self._key(key), data, ex=self.ttl_s)


# ---------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------

def _safe_relpath(path: str) -> Optional[str]:
    p = Path(path)
    if p.is_absolute() or ".." in p.parts or path.startswith("~"):
        return None
    return p.as_posix()


def pack_paths(workspace: Path, paths: Tuple[str, ...]) -> bytes:
    """
    tar.gz of the given workspace-relative paths. Members are sorted and
    carry a fixed mtime so the same tree packs to the same bytes.
    """
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz, tarfile.open(fileobj=gz, mode="w") as tar:
        for entry in paths:
            rel = _safe_relpath(entry)
            if rel is None:
                logger.warning("skipping cache path outside the workspace: %s", entry)
                continue
            src = workspace / rel
            if not src.exists():
                continue
            files = [src] if src.is_file() else sorted(p for p in src.rglob("*") if p.is_file())
            for f in files:
                arcname = f.relative_to(workspace).as_posix()
                info = tar.gettarinfo(str(f), arcname=arcname)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                with f.open("rb") as fh:
                    tar.addfile(info, fh)
    return buf.getvalue()


def unpack_into(workspace: Path, data: bytes) -> int:
    """Extract an archive into the workspace. Returns the number of files restored."""
    root = workspace.resolve()
    count = 0
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        members = []
        for m in tar.getmembers():
            if not (m.isfile() or m.isdir()):
                continue
            target = (root / m.name).resolve()
            if not target.is_relative_to(root):
                logger.warning("skipping cache member outside the workspace: %s", m.name)
                continue
            members.append(m)
            count += m.isfile()
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(root), members=members, filter="data")
        else:
            tar.extractall(path=str(root), members=members)
    return count


# ---------------------------------------------------------------------
# Cache Gate
# ---------------------------------------------------------------------

class CacheGate:
    """
    Restores a job's cache before its steps and saves it after they all succeed.

    restore() is best-effort (miss or corrupt entry -> None). save() raises
    CacheWriteError, which callers log and ignore.
    """

    def __init__(self, storage: CacheStorage, *, keep: int = 3):
        if keep < 1:
            raise ValueError(f"keep must be at least 1, got {keep}")
        self.storage = storage
        self.keep = keep
        self.save_attempts: List[str] = []
        self._lock = threading.Lock()

    def config_for(self, job: Job) -> Optional[CacheConfig]:
        return job_cache_config(job)

    def key_for(self, job: Job, env: JobEnvironment) -> str:
        config = self.config_for(job) or CacheConfig()
        ctx = ExpressionContext(
            root=env.source or env.workspace,
            runner_os=env.runner_os,
            job=job.id,
            event=env.event,
            env=env.vars,
        )
        if config.key:
            return f"{job.id}.{render(config.key, ctx)}"
        lock_hash = hash_files(ctx.root, DEFAULT_LOCK_FILES) or "nolock"
        return f"{job.id}.{env.runner_os}-{steps_fingerprint(job)[:16]}-{lock_hash[:16]}"

    def restore(self, job: Job, env: JobEnvironment) -> Optional[CacheEntry]:
        if self.config_for(job) is None:
            return None

        key = None
        try:
            key = self.key_for(job, env)
            data = self.storage.get(key)
        except Exception as e:
            logger.warning("[%s] cache lookup failed for %s: %s", job.id, key or "<no key>", e)
            return None
        if data is None:
            logger.info("[%s] cache miss: %s", job.id, key)
            return None

        try:
            restored = unpack_into(env.workspace, data)
        except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
            logger.warning("[%s] cache entry %s is corrupt, ignoring: %s", job.id, key, e)
            return None

        logger.info("[%s] cache hit: %s (%d files)", job.id, key, restored)
        return CacheEntry(key=key, data=data)

    def snapshot(self, job: Job, env: JobEnvironment) -> Optional[CacheEntry]:
        config = self.config_for(job)
        if config is None:
            return None
        try:
            key = self.key_for(job, env)
        except (OSError, CIError) as e:
            raise CacheWriteError(job.id, "", f"could not compute cache key: {e}") from e
        try:
            data = pack_paths(env.workspace, config.paths)
        except OSError as e:
            raise CacheWriteError(job.id, key, f"could not archive cache paths: {e}") from e
        return CacheEntry(key=key, data=data)

    def save(self, job: Job, entry: CacheEntry) -> None:
        with self._lock:
            self.save_attempts.append(job.id)
        started = time.monotonic()
        try:
            self.storage.put(entry.key, entry.data)
        except Exception as e:
            raise CacheWriteError(job.id, entry.key, str(e)) from e

        prune = getattr(self.storage, "prune", None)
        if callable(prune):
            try:
                prune(job.id, keep=self.keep)
            except OSError as e:
                logger.warning("[%s] cache prune failed: %s", job.id, e)
        logger.info(
            "[%s] cache saved: %s (%d bytes, %.2fs)", job.id, entry.key, len(entry.data), time.monotonic() - started
        )

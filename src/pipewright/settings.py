from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .executor import DEFAULT_GRACE_PERIOD_S
from .scheduler import DEFAULT_JOB_TIMEOUT_S


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a whole number, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    cache_dir: Path = Path(".pipewright/cache")
    work_dir: Path = Path(".pipewright/work")
    redis_url: Optional[str] = None
    job_timeout_s: float = DEFAULT_JOB_TIMEOUT_S
    grace_period_s: float = DEFAULT_GRACE_PERIOD_S
    cache_keep: int = 3

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        environ = os.environ if environ is None else environ
        return cls(
            cache_dir=Path(environ.get("PIPEWRIGHT_CACHE_DIR", ".pipewright/cache")),
            work_dir=Path(environ.get("PIPEWRIGHT_WORK_DIR", ".pipewright/work")),
            redis_url=environ.get("PIPEWRIGHT_REDIS_URL") or None,
            job_timeout_s=_float(environ, "PIPEWRIGHT_JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT_S),
            grace_period_s=_float(environ, "PIPEWRIGHT_GRACE_PERIOD", DEFAULT_GRACE_PERIOD_S),
            cache_keep=_positive_int(environ, "PIPEWRIGHT_CACHE_KEEP", 3),
        )

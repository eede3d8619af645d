# expressions.py
# Minimal ${{ ... }} renderer for cache key templates.
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List

from .errors import DeclarationError
from .model import Event

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_HASH_FILES = re.compile(r"^hashFiles\((.*)\)$")
_QUOTED = re.compile(r"'([^']*)'|\"([^\"]*)\"")

EXCLUDED_DIRS = {".git", ".pipewright", "__pycache__"}


@dataclass
class ExpressionContext:
    root: Path
    runner_os: str
    job: str
    event: Event | None = None
    env: Dict[str, str] = field(default_factory=dict)


def _iter_matches(root: Path, patterns: Iterable[str]) -> List[Path]:
    seen = set()
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        try:
            matches = sorted(root.glob(pat))
        except (ValueError, NotImplementedError) as e:
            raise DeclarationError(f"invalid hashFiles pattern {pat!r}: {e}") from e
        for p in matches:
            if not p.is_file():
                continue
            rel = p.relative_to(root)
            if any(part in EXCLUDED_DIRS for part in rel.parts):
                continue
            if rel not in seen:
                seen.add(rel)
                out.append(p)
    return sorted(out, key=lambda p: p.relative_to(root).as_posix())


def hash_files(root: Path, patterns: Iterable[str]) -> str:
    """
    sha256 over the (relative path, contents) of every file matching the globs.
    Empty string when nothing matches.
    """
    files = _iter_matches(root, patterns)
    if not files:
        return ""
    h = hashlib.sha256()
    for p in files:
        h.update(p.relative_to(root).as_posix().encode("utf-8"))
        h.update(b"\0")
        with p.open("rb") as f:
            while True:
                chunk = f.read(1024 * 1024)
                if not chunk:
                    break
                h.update(chunk)
    return h.hexdigest()


def evaluate(expr: str, ctx: ExpressionContext) -> str:
    m = _HASH_FILES.match(expr)
    if m:
        patterns = [a or b for a, b in _QUOTED.findall(m.group(1))]
        if not patterns:
            raise DeclarationError(f"hashFiles() needs at least one quoted pattern: {expr!r}")
        return hash_files(ctx.root, patterns)

    if expr == "runner.os":
        return ctx.runner_os
    if expr == "github.job":
        return ctx.job
    if expr.startswith("github."):
        if ctx.event is None:
            return ""
        attr = expr[len("github."):]
        values = {"ref": ctx.event.ref, "sha": ctx.event.sha, "event_name": ctx.event.kind}
        if attr in values:
            return values[attr]
    if expr.startswith("env."):
        return ctx.env.get(expr[len("env."):], "")

    raise DeclarationError(f"unsupported expression: ${{{{ {expr} }}}}")


_NAMES = {"runner.os", "github.job", "github.ref", "github.sha", "github.event_name"}


def validate(template: str) -> None:
    """Reject expressions evaluate() would not understand, before anything runs."""
    for m in _EXPR.finditer(template):
        expr = m.group(1)
        if expr in _NAMES or expr.startswith("env."):
            continue
        hf = _HASH_FILES.match(expr)
        if hf and _QUOTED.findall(hf.group(1)):
            continue
        raise DeclarationError(f"unsupported expression: ${{{{ {expr} }}}}")


def render(template: str, ctx: ExpressionContext) -> str:
    return _EXPR.sub(lambda m: evaluate(m.group(1), ctx), template)

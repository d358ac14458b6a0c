"""Sandbox Resolver - maps untrusted virtual paths to physical paths.

The resolver is a PURE FUNCTION of (virtual path, config). It never touches
disk: containment is decided by string-prefix comparison of canonicalized
absolute paths, never on the raw input.

INVARIANTS:
1. Every resolved path is a descendant of exactly one configured root
2. Paths escaping every root raise AccessDenied
3. Restricted names (VCS internals, secrets, audit database) and denied
   paths (the kernel state directory) are refused even when contained
4. Resolution has no side effects
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import AccessDenied

logger = logging.getLogger(__name__)

PROJECT_ROOT = "project"
MEMORY_ROOT = "memory"

# Matched against every segment of the root-relative path
DEFAULT_RESTRICTED_PATTERNS = (
    ".git",
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.secret",
    "*credentials*",
    "warden_audit.db",
    "warden_audit.db-*",
)

DEFAULT_VIRTUAL_PREFIXES = ((".agent_memory", MEMORY_ROOT),)


def canonicalize(path: str | os.PathLike) -> str:
    """Absolute, normalized form of a path (no symlink resolution, no I/O)."""
    return os.path.normpath(os.path.abspath(os.fspath(path)))


@dataclass(frozen=True)
class SandboxConfig:
    """Immutable sandbox configuration.

    ``virtual_prefixes`` maps a leading path segment onto a named root, e.g.
    ``.agent_memory/notes.md`` is rewritten against ``memory_root``.
    ``denied_paths`` are absolute paths refused together with everything below
    them, even inside a root.
    """

    project_root: str
    memory_root: str | None = None
    virtual_prefixes: tuple[tuple[str, str], ...] = DEFAULT_VIRTUAL_PREFIXES
    restricted_patterns: tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_RESTRICTED_PATTERNS
    )
    denied_paths: tuple[str, ...] = ()

    def roots(self) -> dict[str, str]:
        """Canonical root paths keyed by root name."""
        roots = {PROJECT_ROOT: canonicalize(self.project_root)}
        if self.memory_root:
            roots[MEMORY_ROOT] = canonicalize(self.memory_root)
        return roots


@dataclass(frozen=True)
class ResolvedPath:
    """A path that passed the sandbox checks."""

    virtual: str  # normalized display form, e.g. "src/a.ts"
    physical: Path
    root_name: str
    root: Path

    @property
    def key(self) -> str:
        """Stable identity of the path (aliases like ./a.ts and a.ts collapse)."""
        return str(self.physical)

    def __str__(self) -> str:
        return self.virtual


class SandboxResolver:
    """Resolves caller-supplied paths against the configured roots.

    Usage:
        resolver = SandboxResolver(SandboxConfig(project_root="/srv/app"))
        resolved = resolver.resolve("src/a.ts")      # ResolvedPath
        resolver.resolve("../etc/passwd")            # raises AccessDenied
    """

    def __init__(self, config: SandboxConfig):
        self._config = config
        self._roots = config.roots()
        self._denied = [canonicalize(p) for p in config.denied_paths]

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def project_root(self) -> Path:
        return Path(self._roots[PROJECT_ROOT])

    @property
    def memory_root(self) -> Path | None:
        root = self._roots.get(MEMORY_ROOT)
        return Path(root) if root else None

    def resolve(self, virtual_path: str) -> ResolvedPath:
        """Resolve ``virtual_path`` or raise AccessDenied."""
        if not isinstance(virtual_path, str):
            raise AccessDenied(repr(virtual_path), "path must be a string")
        if "\x00" in virtual_path:
            raise AccessDenied(repr(virtual_path), "null byte in path")

        raw = virtual_path.strip().replace("\\", "/")
        forced_root, remainder = self._match_virtual_prefix(raw)

        if forced_root is not None:
            base = self._roots.get(forced_root)
            if base is None:
                raise AccessDenied(virtual_path, f"root '{forced_root}' is not configured")
            candidate = os.path.normpath(os.path.join(base, remainder))
        elif os.path.isabs(raw):
            candidate = os.path.normpath(raw)
        else:
            candidate = os.path.normpath(os.path.join(self._roots[PROJECT_ROOT], raw))

        root_name = self._containing_root(candidate)
        if root_name is None or (forced_root is not None and root_name != forced_root):
            logger.warning(f"Sandbox escape blocked: {virtual_path!r} -> {candidate}")
            raise AccessDenied(virtual_path, "path is outside the sandbox roots")

        for denied in self._denied:
            if candidate == denied or candidate.startswith(denied.rstrip(os.sep) + os.sep):
                logger.warning(f"Denied path blocked: {virtual_path!r} -> {candidate}")
                raise AccessDenied(virtual_path, "restricted path (kernel state)")

        root = self._roots[root_name]
        relative = os.path.relpath(candidate, root)
        segments = [] if relative == "." else PurePosixPath(relative.replace(os.sep, "/")).parts

        for segment in segments:
            for pattern in self._config.restricted_patterns:
                if fnmatch.fnmatch(segment, pattern):
                    logger.warning(f"Restricted path blocked: {virtual_path!r} (pattern {pattern})")
                    raise AccessDenied(virtual_path, f"restricted path (matches '{pattern}')")

        return ResolvedPath(
            virtual=self._display(root_name, segments),
            physical=Path(candidate),
            root_name=root_name,
            root=Path(root),
        )

    def check(self, virtual_path: str) -> bool:
        """True if ``virtual_path`` resolves, without raising."""
        try:
            self.resolve(virtual_path)
            return True
        except AccessDenied:
            return False

    def _match_virtual_prefix(self, raw: str) -> tuple[str | None, str]:
        stripped = raw[2:] if raw.startswith("./") else raw
        for prefix, root_name in self._config.virtual_prefixes:
            if stripped == prefix:
                return root_name, ""
            if stripped.startswith(prefix + "/"):
                return root_name, stripped[len(prefix) + 1:]
        return None, raw

    def _containing_root(self, candidate: str) -> str | None:
        # Nested roots: the most specific (longest) root owns the path
        best: str | None = None
        for name, root in self._roots.items():
            if candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep):
                if best is None or len(root) > len(self._roots[best]):
                    best = name
        return best

    def _display(self, root_name: str, segments: tuple[str, ...] | list[str]) -> str:
        relative = "/".join(segments) or "."
        if root_name == PROJECT_ROOT:
            return relative
        for prefix, name in self._config.virtual_prefixes:
            if name == root_name:
                return prefix if relative == "." else f"{prefix}/{relative}"
        return relative

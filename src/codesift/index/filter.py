"""Path inclusion/exclusion with tiered architecture.

Tiered Architecture:
- HARDCODED_DIRS: Always excluded, cannot be overridden (VCS, .codesift)
- DEFAULT_PRUNABLE_DIRS: Excluded by default, user can opt-in via !pattern
- Exclude patterns: configured patterns plus .siftignore files, gitignore-style
- Include patterns: when present, a file must match at least one
- Binary suffixes: never indexed

Pattern syntax:
- Standard glob patterns (fnmatch)
- A pattern without "/" matches any path component (basename at any depth)
- Directory patterns ending in / match everything below that directory
- Negation with ! prefix; the last matching pattern wins
"""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codesift.config.constants import IGNORE_FILE_NAME
from codesift.core.excludes import (
    DEFAULT_PRUNABLE_DIRS,
    PRUNABLE_DIRS,
    is_binary_extension,
    is_default_prunable,
    is_hardcoded_dir,
)

if TYPE_CHECKING:
    from codesift.config.models import IngestConfig

log = structlog.get_logger()

__all__ = ["PathFilter", "matches_pattern"]


def matches_pattern(rel_path: str, pattern: str, *, is_dir: bool = False) -> bool:
    """Check a POSIX relative path against one gitignore-style pattern.

    With ``is_dir`` the path itself names a directory, so directory-only
    patterns may match its last component.
    """
    dir_only = pattern.endswith("/")
    pat = pattern.rstrip("/").lstrip("/")
    if not pat:
        return False
    parts = rel_path.split("/")
    # Directory-only patterns never match the final (file) component
    limit = len(parts) - 1 if dir_only and not is_dir else len(parts)

    if pat.startswith("**/"):
        pat = pat[3:]
        if "/" in pat:
            return any(
                fnmatch.fnmatch("/".join(parts[i:j]), pat)
                for i in range(limit)
                for j in range(i + 1, limit + 1)
            )

    if "/" not in pat:
        return any(fnmatch.fnmatch(part, pat) for part in parts[:limit])

    return any(fnmatch.fnmatch("/".join(parts[: i + 1]), pat) for i in range(limit))


class PathFilter:
    """Decides which files under a project root get indexed.

    ``matches`` is pure and safe to call from several ingestion workers:
    every pattern list is built once in ``__init__`` and never mutated.
    Unreadable or vanished paths return False instead of raising.
    """

    def __init__(
        self,
        root: Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        *,
        respect_ignore_files: bool = True,
    ) -> None:
        self._root = Path(root)
        self._include: tuple[str, ...] = tuple(include_patterns or ())
        patterns: list[str] = []
        if respect_ignore_files:
            patterns.extend(self._load_ignore_files(self._root))
        patterns.extend(exclude_patterns or ())
        self._patterns: tuple[str, ...] = tuple(patterns)
        # Root-level negations of default-pruned dirs (e.g. "!vendor/") opt them back in
        self._negated_dirs: frozenset[str] = frozenset(
            p[1:].strip("/")
            for p in self._patterns
            if p.startswith("!") and p[1:].strip("/") in DEFAULT_PRUNABLE_DIRS
        )

    @classmethod
    def from_config(cls, root: Path, config: IngestConfig) -> PathFilter:
        return cls(
            root,
            include_patterns=list(config.include_patterns),
            exclude_patterns=list(config.exclude_patterns),
            respect_ignore_files=config.respect_ignore_files,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def negated_dirs(self) -> frozenset[str]:
        return self._negated_dirs

    def should_prune_dir(self, dirname: str, rel_dir: str | None = None) -> bool:
        """Check if a directory should be skipped during traversal.

        Args:
            dirname: Directory name, e.g. "node_modules".
            rel_dir: POSIX path of the directory relative to the root, if known.
        """
        if is_hardcoded_dir(dirname):
            return True
        if is_default_prunable(dirname) and dirname not in self._negated_dirs:
            return True
        if rel_dir is not None:
            return self._excluded_by_patterns(rel_dir, is_dir=True)
        return False

    def matches(self, path: Path | str) -> bool:
        """Return True when the file at *path* should be indexed."""
        rel = self._relative(Path(path))
        if rel is None:
            return False

        parts = rel.split("/")
        for dirname in parts[:-1]:
            if is_hardcoded_dir(dirname):
                return False
            if is_default_prunable(dirname) and dirname not in self._negated_dirs:
                return False

        if is_binary_extension(os.path.splitext(parts[-1])[1]):
            return False
        if self._excluded_by_patterns(rel):
            return False
        if self._include and not any(matches_pattern(rel, p) for p in self._include):
            return False

        try:
            return (self._root / rel).is_file()
        except OSError:
            return False

    def relative(self, path: Path | str) -> str | None:
        """POSIX path relative to root, or None when *path* lies outside it."""
        return self._relative(Path(path))

    def _relative(self, path: Path) -> str | None:
        if not path.is_absolute():
            return path.as_posix()
        try:
            return path.relative_to(self._root).as_posix()
        except ValueError:
            return None

    def _excluded_by_patterns(self, rel: str, *, is_dir: bool = False) -> bool:
        excluded = False
        for pattern in self._patterns:
            if pattern.startswith("!"):
                if excluded and matches_pattern(rel, pattern[1:], is_dir=is_dir):
                    excluded = False
            elif not excluded and matches_pattern(rel, pattern, is_dir=is_dir):
                excluded = True
        return excluded

    @classmethod
    def _load_ignore_files(cls, root: Path) -> list[str]:
        """Collect patterns from .siftignore files, nested ones prefixed by their dir."""
        patterns: list[str] = []
        if not root.is_dir():
            return patterns
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in PRUNABLE_DIRS)
            if IGNORE_FILE_NAME not in filenames:
                continue
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            prefix = "" if rel_dir == "." else rel_dir
            patterns.extend(cls._read_ignore_file(Path(dirpath) / IGNORE_FILE_NAME, prefix))
        return patterns

    @staticmethod
    def _read_ignore_file(path: Path, prefix: str = "") -> list[str]:
        patterns: list[str] = []
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            log.warning("filter.ignore_file_unreadable", path=str(path))
            return patterns

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            is_negation = line.startswith("!")
            if is_negation:
                line = line[1:]
            if prefix:
                line = f"{prefix}/{line.lstrip('/')}"
            patterns.append(f"!{line}" if is_negation else line)
        return patterns

"""Canonical exclude sets with tiered architecture.

Tier 0 (HARDCODED_DIRS): Never traversed, not user-configurable.
    - VCS internals, CodeSift data directories

Tier 1 (DEFAULT_PRUNABLE_DIRS): Excluded by default, user can override with !pattern.
    - Dependencies, caches, build outputs, IDE folders

BINARY_EXTENSIONS: file suffixes that never hold indexable text.
"""

from __future__ import annotations

# =============================================================================
# Tier 0: HARDCODED - Never traverse, not user-configurable
# =============================================================================

HARDCODED_DIRS: frozenset[str] = frozenset(
    (
        # VCS internals
        ".git",
        ".svn",
        ".hg",
        ".bzr",
        # CodeSift data
        ".codesift",
    )
)

# =============================================================================
# Tier 1: DEFAULT_PRUNABLE - Excluded by default, user can override
# =============================================================================

DEFAULT_PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        # JavaScript/Node.js
        "node_modules",
        ".npm",
        ".yarn",
        ".pnpm-store",
        "bower_components",
        ".next",
        ".nuxt",
        ".turbo",
        # Python
        "venv",
        ".venv",
        ".virtualenv",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        ".eggs",
        "site-packages",
        ".ipynb_checkpoints",
        ".hypothesis",
        "htmlcov",
        # Rust / JVM build output
        "target",
        ".gradle",
        ".m2",
        # .NET
        "bin",
        "obj",
        # Elixir/Erlang
        "_build",
        "deps",
        # Generic build/output directories
        "dist",
        "build",
        "out",
        "coverage",
        ".nyc_output",
        # IDE/Editor and CI metadata
        ".idea",
        ".vscode",
        ".vs",
        ".github",
        # Misc caches
        ".cache",
        ".terraform",
    )
)

PRUNABLE_DIRS: frozenset[str] = HARDCODED_DIRS | DEFAULT_PRUNABLE_DIRS

# =============================================================================
# Binary file suffixes
# =============================================================================

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    (
        # Images
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff",
        # Audio/video
        ".mp3", ".mp4", ".avi", ".mov", ".webm", ".wav", ".ogg", ".flac",
        # Fonts
        ".ttf", ".otf", ".woff", ".woff2", ".eot",
        # Archives
        ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".rar", ".jar", ".war",
        ".whl", ".egg", ".iso", ".dmg", ".deb", ".rpm", ".msi",
        # Compiled objects
        ".class", ".pyc", ".pyo", ".pyd", ".o", ".obj", ".a", ".so", ".dll",
        ".dylib", ".exe", ".bin", ".beam", ".wasm",
        # Documents and databases
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        ".sqlite", ".sqlite3", ".db", ".npz", ".npy",
    )
)  # fmt: skip


def is_hardcoded_dir(dirname: str) -> bool:
    """Check if directory is hardcoded (never traversable, not overridable)."""
    return dirname in HARDCODED_DIRS


def is_default_prunable(dirname: str) -> bool:
    """Check if directory is prunable by default (but user can override)."""
    return dirname in DEFAULT_PRUNABLE_DIRS


def is_binary_extension(suffix: str) -> bool:
    return suffix.lower() in BINARY_EXTENSIONS


__all__ = [
    "HARDCODED_DIRS",
    "DEFAULT_PRUNABLE_DIRS",
    "PRUNABLE_DIRS",
    "BINARY_EXTENSIONS",
    "is_hardcoded_dir",
    "is_default_prunable",
    "is_binary_extension",
]

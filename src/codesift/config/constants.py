"""Configuration constants.

Values here are NOT user-configurable: format versions, hard caps and
implementation details. For configurable values, see models.py.
"""

# =============================================================================
# Search Maximums
# =============================================================================

SEARCH_MAX_K = 1000
"""Maximum results for a single similarity query."""

# =============================================================================
# Storage Layout
# =============================================================================

STORE_SUBDIR = "knowledge_index"
"""Directory under <store_root>/<project>/ holding the embedding files."""

EMBEDDINGS_FILE = "embeddings.npz"
METADATA_FILE = "metadata.json"
INDEXED_PROJECTS_FILE = "indexed_projects.json"

STORE_FORMAT_VERSION = 1
"""Bumped whenever the on-disk layout of embeddings.npz changes."""

# =============================================================================
# Ingestion Internals
# =============================================================================

BINARY_SNIFF_BYTES = 8192
"""Bytes inspected for a NUL byte when deciding a file is binary."""

CHUNK_ID_HEX_CHARS = 32
"""Length of the hex digest used as a chunk id."""

IGNORE_FILE_NAME = ".siftignore"

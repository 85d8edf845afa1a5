"""Index module - on-disk embedding store and ingestion pipeline.

This module provides:
- PathFilter: which files under a project root get indexed
- Chunker: bounded, overlapping text chunks with stable ids
- BatchIngestor: deterministic directory walk grouped into bounded batches
- EmbeddingStore: durable per-project vectors with exact cosine search
- StoreRegistry: process-wide map of open stores

Public API is in `codesift.index.ops`:
- KnowledgeIndex: ingestion, search and maintenance entry points
"""

from codesift.index.chunking import Chunker, ChunkSequence
from codesift.index.filter import PathFilter
from codesift.index.ingest import BatchIngestor, IngestBatches
from codesift.index.models import Chunk, IndexEntry, IngestSummary, SearchResult, SkippedFile
from codesift.index.ops import EmbedFn, IndexResult, KnowledgeIndex
from codesift.index.registry import StoreRegistry, get_registry, shutdown_registry, store_path
from codesift.index.store import EmbeddingStore

__all__ = [
    # Pipeline
    "BatchIngestor",
    "Chunker",
    "ChunkSequence",
    "IngestBatches",
    "PathFilter",
    # Storage
    "EmbeddingStore",
    "StoreRegistry",
    "get_registry",
    "shutdown_registry",
    "store_path",
    # Facade
    "EmbedFn",
    "IndexResult",
    "KnowledgeIndex",
    # Models
    "Chunk",
    "IndexEntry",
    "IngestSummary",
    "SearchResult",
    "SkippedFile",
]

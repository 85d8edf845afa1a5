"""Split file content into bounded, optionally overlapping text chunks.

A chunk never exceeds ``max_chunk_chars``. When the window ends inside the
file, the boundary moves back to the last newline in the second half of the
window so chunks tend to end on whole lines. Consecutive chunks share
``overlap_chars`` characters.

Chunk ids are ``sha256(project_id NUL source_path NUL index)`` truncated to
32 hex chars: re-chunking an unchanged file reproduces the same ids.
"""

from __future__ import annotations

import hashlib
import posixpath
from collections.abc import Iterator
from typing import TYPE_CHECKING

from codesift.config.constants import BINARY_SNIFF_BYTES, CHUNK_ID_HEX_CHARS
from codesift.core.errors import InvalidInput
from codesift.index.models import Chunk, SkippedFile

if TYPE_CHECKING:
    from codesift.config.models import IngestConfig

__all__ = ["Chunker", "ChunkSequence", "content_hash", "decode_text", "make_chunk_id"]


def make_chunk_id(project_id: str, source_path: str, index: int) -> str:
    digest = hashlib.sha256(f"{project_id}\0{source_path}\0{index}".encode())
    return digest.hexdigest()[:CHUNK_ID_HEX_CHARS]


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def decode_text(content: bytes) -> tuple[str | None, str | None]:
    """Decode file bytes as UTF-8.

    Returns (text, None) on success, (None, reason) for binary or
    undecodable content.
    """
    if b"\0" in content[:BINARY_SNIFF_BYTES]:
        return None, "binary"
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return None, "undecodable"
    # Strip a UTF-8 BOM so it never lands in the first chunk
    return text.removeprefix("\ufeff"), None


class ChunkSequence:
    """Lazy, finite, restartable sequence of one file's chunks.

    Every ``iter()`` re-splits the text from the start; nothing is cached.
    ``skipped`` is set (and the sequence is empty) when the file could not be
    decoded.
    """

    def __init__(
        self,
        chunker: Chunker,
        project_id: str,
        source_path: str,
        text: str,
        metadata: dict[str, str] | None = None,
        skipped: SkippedFile | None = None,
    ) -> None:
        self._chunker = chunker
        self._project_id = project_id
        self._source_path = source_path
        self._text = text
        self._metadata = metadata or {}
        self.skipped = skipped

    @property
    def source_path(self) -> str:
        return self._source_path

    def __iter__(self) -> Iterator[Chunk]:
        base = {
            "source_path": self._source_path,
            "file_name": posixpath.basename(self._source_path),
            "extension": posixpath.splitext(self._source_path)[1].lower(),
            **self._metadata,
        }
        text = self._text
        line = 1
        line_pos = 0
        for index, (start, end) in enumerate(self._chunker.spans(text)):
            # Advance the running line counter to this chunk's start
            line += text.count("\n", line_pos, start)
            line_pos = start
            end_line = line + text.count("\n", start, max(start, end - 1))
            yield Chunk(
                id=make_chunk_id(self._project_id, self._source_path, index),
                text=text[start:end],
                source_path=self._source_path,
                index=index,
                metadata={
                    **base,
                    "chunk_index": str(index),
                    "start_line": str(line),
                    "end_line": str(end_line),
                },
            )


class Chunker:
    """Splits text into chunks of at most ``max_chunk_chars`` characters."""

    def __init__(self, max_chunk_chars: int = 1500, overlap_chars: int = 0) -> None:
        if max_chunk_chars < 1:
            raise InvalidInput.create(
                "max_chunk_chars must be >= 1", max_chunk_chars=max_chunk_chars
            )
        if not (0 <= overlap_chars < max_chunk_chars):
            raise InvalidInput.create(
                "overlap_chars must be in [0, max_chunk_chars)",
                overlap_chars=overlap_chars,
                max_chunk_chars=max_chunk_chars,
            )
        self.max_chunk_chars = max_chunk_chars
        self.overlap_chars = overlap_chars

    @classmethod
    def from_config(cls, config: IngestConfig) -> Chunker:
        return cls(max_chunk_chars=config.max_chunk_chars, overlap_chars=config.overlap_chars)

    def spans(self, text: str) -> Iterator[tuple[int, int]]:
        """Yield (start, end) offsets covering *text* in order."""
        n = len(text)
        start = 0
        while start < n:
            end = min(start + self.max_chunk_chars, n)
            if end < n:
                newline = text.rfind("\n", start + self.max_chunk_chars // 2, end)
                if newline != -1:
                    end = newline + 1
            yield start, end
            if end >= n:
                return
            next_start = end - self.overlap_chars
            start = next_start if next_start > start else end

    def chunk_text(
        self,
        project_id: str,
        source_path: str,
        text: str,
        metadata: dict[str, str] | None = None,
    ) -> ChunkSequence:
        return ChunkSequence(self, project_id, source_path, text, metadata)

    def chunk_bytes(
        self,
        project_id: str,
        source_path: str,
        content: bytes,
        metadata: dict[str, str] | None = None,
    ) -> ChunkSequence:
        """Chunk raw file bytes; binary/undecodable content yields a skipped, empty sequence."""
        text, reason = decode_text(content)
        if text is None:
            return ChunkSequence(
                self,
                project_id,
                source_path,
                "",
                metadata,
                skipped=SkippedFile(source_path=source_path, reason=reason or "undecodable"),
            )
        meta = {"content_hash": content_hash(content), **(metadata or {})}
        return ChunkSequence(self, project_id, source_path, text, meta)

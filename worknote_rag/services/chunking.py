"""
Chunking Service - deterministic splitting of work notes into embeddable chunks.

Chunks are contiguous, non-overlapping slices of the note text: joining them
gives back the original text (only whitespace-only slices at a boundary are
dropped). Boundaries prefer sentence ends, then line breaks, then any
whitespace, and fall back to a hard cut. The same text always produces the
same boundaries, which matters because chunk counts are compared across
embedding generations.

Each chunk is stored in the vector index under "{work_id}#chunk{index}".
"""

import math
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from worknote_rag.core.config import settings

logger = logging.getLogger(__name__)

# 4 characters per token approximation
CHARS_PER_TOKEN = 4

# Boundary separators, most preferred first
BOUNDARY_SEPARATORS = ['\n\n', '. ', '! ', '? ', '\n', ' ', '\t']

CHUNK_ID_PATTERN = re.compile(r'^(.+?)#chunk(\d+)$')

WORK_SCOPE = "WORK"


def generate_chunk_id(work_id: str, chunk_index: int) -> str:
    """Composite vector index key for one chunk."""
    return f"{work_id}#chunk{chunk_index}"


def parse_chunk_id(chunk_id: str) -> Tuple[str, int]:
    """
    Split a composite chunk ID into (work_id, chunk_index).

    Raises:
        ValueError: If the ID is not in "{work_id}#chunk{index}" form
    """
    match = CHUNK_ID_PATTERN.match(chunk_id)
    if not match:
        raise ValueError(f"Invalid chunk ID format: {chunk_id}")
    return match.group(1), int(match.group(2))


def work_id_from_chunk_id(chunk_id: str) -> str:
    """Work ID for a chunk ID. IDs without a chunk suffix map to themselves."""
    match = CHUNK_ID_PATTERN.match(chunk_id)
    return match.group(1) if match else chunk_id


def estimate_token_count(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def build_note_text(title: str, content: str) -> str:
    """Text that gets embedded for a work note."""
    return f"{title}\n\n{content}"


@dataclass
class TextChunk:
    """A chunk of a work note ready for embedding."""
    text: str
    work_id: str
    chunk_index: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return generate_chunk_id(self.work_id, self.chunk_index)


class ChunkingService:
    """Splits work note text into ordered, size-bounded chunks."""

    def __init__(self, max_chunk_chars: Optional[int] = None):
        self.max_chunk_chars = max_chunk_chars or settings.max_chunk_chars
        if self.max_chunk_chars < 1:
            raise ValueError("max_chunk_chars must be at least 1")

    def chunk_text(self, text: str) -> List[str]:
        """
        Split text into chunks of at most max_chunk_chars characters.

        Returns an empty list for empty or whitespace-only text.
        """
        if not text or not text.strip():
            return []

        chunks = []
        start = 0
        length = len(text)

        while start < length:
            end = min(start + self.max_chunk_chars, length)
            if end < length:
                end = self._find_boundary(text, start, end)

            piece = text[start:end]
            if piece.strip():
                chunks.append(piece)
            start = end

        return chunks

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """
        Best cut position in (start, end].

        Only separators in the second half of the window are used so a
        single early separator cannot produce a run of tiny chunks.
        """
        search_start = start + self.max_chunk_chars // 2
        for sep in BOUNDARY_SEPARATORS:
            pos = text.rfind(sep, search_start, end)
            if pos != -1:
                return pos + len(sep)
        return end

    def count_chunks(self, text: str) -> int:
        return len(self.chunk_text(text))

    def chunk_work_note(
        self,
        work_id: str,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[TextChunk]:
        """Chunk a work note and attach per-chunk metadata."""
        base_metadata = dict(metadata or {})
        pieces = self.chunk_text(build_note_text(title, content))

        chunks = []
        for index, piece in enumerate(pieces):
            chunk_metadata = {
                **base_metadata,
                "work_id": work_id,
                "scope": WORK_SCOPE,
                "chunk_index": index,
            }
            chunks.append(TextChunk(text=piece, work_id=work_id, chunk_index=index, metadata=chunk_metadata))

        logger.debug(
            f"Chunked work note {work_id} into {len(chunks)} chunk(s)",
            extra={"work_id": work_id, "chunk_count": len(chunks)}
        )
        return chunks

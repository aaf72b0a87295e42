"""
Fixed-size content chunking and content hashing.

Chunks are contiguous slices of the input, so joining them gives back the
original text exactly.
"""

import hashlib
from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class Chunk:
    """A slice of an entity's content, tagged with its position."""

    index: int
    total: int
    text: str


def chunk_text(text: str, size: int = DEFAULT_CHUNK_SIZE) -> list[Chunk]:
    """
    Split text into ordered chunks of at most `size` characters.

    Empty text yields one empty chunk so every entity still produces a record.

    Args:
        text: Content to split
        size: Maximum characters per chunk

    Returns:
        List of Chunk, ceil(len(text) / size) long for non-empty text
    """
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")

    if not text:
        return [Chunk(index=0, total=1, text="")]

    pieces = [text[i : i + size] for i in range(0, len(text), size)]
    return [Chunk(index=i, total=len(pieces), text=piece) for i, piece in enumerate(pieces)]


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()

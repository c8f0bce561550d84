"""Split article text into overlapping fixed-size character windows."""

from __future__ import annotations

from .config import CHUNK_OVERLAP, CHUNK_SIZE
from .errors import InvalidInputError


def validate_chunking(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0 or chunk_overlap <= 0:
        raise InvalidInputError(
            f"chunk_size and chunk_overlap must be positive (got {chunk_size}, {chunk_overlap})"
        )
    if chunk_overlap >= chunk_size:
        raise InvalidInputError(
            f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """Split text into windows of ``chunk_size`` characters.

    Consecutive windows share ``chunk_overlap`` characters so a fact sitting on
    a boundary appears whole in at least one chunk. Each window is trimmed and
    blank windows are dropped.
    """
    validate_chunking(chunk_size, chunk_overlap)

    trimmed = text.strip()
    if not trimmed:
        return []

    chunks: list[str] = []
    start = 0
    length = len(trimmed)

    while start < length:
        end = min(start + chunk_size, length)
        window = trimmed[start:end].strip()
        if window:
            chunks.append(window)

        if end >= length:
            break

        start = max(end - chunk_overlap, 0)

    return chunks

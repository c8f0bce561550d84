"""Exception hierarchy shared by the indexing, search and compaction layers."""

from __future__ import annotations


class WikiRagError(Exception):
    """Base class for all wikirag errors."""


class InvalidInputError(WikiRagError, ValueError):
    """Rejected input: blank question, bad chunking parameters, unknown segment."""


class IndexNotReadyError(WikiRagError):
    """No persisted index exists yet. Run an index build first."""

    def __init__(self, message: str = "Wiki index not found. Please build it first."):
        super().__init__(message)


class IndexLoadError(WikiRagError):
    """A persisted index exists but could not be read or parsed."""


class UpstreamError(WikiRagError):
    """A collaborator (fetcher, embeddings, language model) failed."""


class InsufficientContextError(WikiRagError):
    """No usable sources were retrieved and model fallback is disabled."""

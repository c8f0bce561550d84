"""wikirag — compacted conversation memory and retrieval over fetched Wikipedia articles."""

__version__ = "0.1.0"

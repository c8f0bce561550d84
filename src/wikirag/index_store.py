"""Persistence for the wiki index: one JSON snapshot, replaced atomically."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .errors import IndexLoadError
from .models import WikiIndex

logger = logging.getLogger(__name__)


class IndexRepository(Protocol):
    def load(self) -> WikiIndex | None:
        """Return the current index, or None if none has been built."""

    def replace(self, index: WikiIndex) -> None:
        """Make ``index`` the only index."""


class JsonIndexStore:
    """Index snapshot stored as a single JSON file.

    Writes go to a temp file in the same directory followed by ``os.replace``,
    so a concurrent reader sees either the old or the new snapshot.
    """

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WikiIndex | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IndexLoadError(f"Failed to read wiki index {self.path}: {e}") from e
        except UnicodeDecodeError as e:
            raise IndexLoadError(f"Wiki index {self.path} is not valid UTF-8: {e}") from e

        try:
            return WikiIndex.model_validate_json(raw)
        except ValidationError as e:
            raise IndexLoadError(f"Wiki index {self.path} is corrupt: {e}") from e

    def replace(self, index: WikiIndex) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = index.model_dump_json(by_alias=True, indent=2)

        fd, tmp = tempfile.mkstemp(prefix=".wiki_index.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        logger.info(
            "Saved wiki index with %d articles and %d chunks",
            len(index.articles),
            len(index.chunks),
        )


class InMemoryIndexStore:
    def __init__(self, index: WikiIndex | None = None):
        self.index = index

    def load(self) -> WikiIndex | None:
        return self.index

    def replace(self, index: WikiIndex) -> None:
        self.index = index

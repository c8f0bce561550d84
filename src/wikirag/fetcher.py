"""Fetch Wikipedia articles as plain text and cache them on disk."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from urllib.parse import quote

import httpx

from .config import HTTP_TIMEOUT, WIKI_DIR, WIKIPEDIA_API
from .errors import InvalidInputError, UpstreamError
from .models import WikiArticleMeta

logger = logging.getLogger(__name__)

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.DOTALL | re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def slugify(topic: str) -> str:
    """'Quantum computing' → 'Quantum_computing'."""
    return topic.strip().replace(" ", "_").replace("/", "_").replace("\\", "_")


def html_to_text(html: str) -> str:
    text = _SCRIPT_RE.sub("", html)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


class WikiFetcher:
    """Downloads articles from the Wikipedia REST API into ``wiki_dir/<slug>.txt``."""

    def __init__(
        self,
        wiki_dir: Path = WIKI_DIR,
        client: httpx.AsyncClient | None = None,
        api_base: str = WIKIPEDIA_API,
    ):
        self.wiki_dir = wiki_dir
        self.api_base = api_base.rstrip("/")
        self._client = client
        self.wiki_dir.mkdir(parents=True, exist_ok=True)

    async def fetch_and_save(self, topic: str) -> WikiArticleMeta:
        """Fetch the full article (falling back to its summary) and cache it.

        Raises UpstreamError when neither endpoint has the article.
        """
        topic = topic.strip()
        if not topic:
            raise InvalidInputError("Topic must not be empty")

        slug = slugify(topic)
        if self._client is not None:
            text = await self._fetch_text(self._client, topic)
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=True) as client:
                text = await self._fetch_text(client, topic)

        path = self.wiki_dir / f"{slug}.txt"
        path.write_text(text, encoding="utf-8")
        logger.info("Saved article '%s' (%d chars) to %s", topic, len(text), path)

        return WikiArticleMeta(id=slug, title=topic, file_path=path.name)

    async def _fetch_text(self, client: httpx.AsyncClient, topic: str) -> str:
        title = quote(topic.replace(" ", "_"), safe="")
        try:
            res = await client.get(
                f"{self.api_base}/page/html/{title}", headers={"Accept": "text/html"}
            )
            if res.status_code == 200:
                return html_to_text(res.text)

            logger.info("Full article for '%s' unavailable (%s), trying summary", topic, res.status_code)
            res = await client.get(
                f"{self.api_base}/page/summary/{title}", headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to fetch Wikipedia article for '{topic}': {e}") from e

        if res.status_code != 200:
            raise UpstreamError(f"Wikipedia article not found for topic: {topic}")

        try:
            extract = res.json().get("extract")
        except ValueError as e:
            raise UpstreamError(f"Malformed Wikipedia summary for '{topic}'") from e
        if not extract:
            raise UpstreamError(f"Wikipedia summary for '{topic}' has no text")
        return extract

    def list_local_articles(self) -> list[WikiArticleMeta]:
        if not self.wiki_dir.exists():
            return []
        return [
            WikiArticleMeta(id=path.stem, title=path.stem.replace("_", " "), file_path=path.name)
            for path in sorted(self.wiki_dir.glob("*.txt"))
        ]

    def find_local(self, title: str) -> WikiArticleMeta | None:
        wanted = title.strip().casefold()
        return next(
            (a for a in self.list_local_articles() if a.title.casefold() == wanted),
            None,
        )

    def read_article_text(self, meta: WikiArticleMeta) -> str:
        path = self.wiki_dir / meta.file_path
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise UpstreamError(f"Failed to read article file {path}: {e}") from e

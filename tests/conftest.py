from __future__ import annotations

import pytest

from wikirag.errors import UpstreamError
from wikirag.models import WikiArticleMeta, WikiChunk, WikiIndex


class FakeEmbeddings:
    """Looks vectors up by exact text; unknown texts get ``default``."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default: list[float] | None = None):
        self.vectors = vectors or {}
        self.default = default or []
        self.calls: list[list[str]] = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        return [list(self.vectors.get(t, self.default)) for t in texts]


class FakeLLM:
    """Records prompts. Replies via ``responder(prompt)`` or a numbered default."""

    def __init__(self, responder=None, structured: dict | None = None, fail: bool = False):
        self.responder = responder
        self.structured = structured or {}
        self.fail = fail
        self.prompts: list[str] = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise UpstreamError("LLM error: upstream unavailable")
        if self.responder is not None:
            return self.responder(prompt)
        return f"reply {len(self.prompts)}"

    async def generate_structured(self, prompt, schema):
        self.prompts.append(prompt)
        if self.fail:
            raise UpstreamError("LLM error: upstream unavailable")
        return schema.model_validate(self.structured)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def sample_index() -> WikiIndex:
    return WikiIndex(
        created_at=1_700_000_000_000,
        articles=[
            WikiArticleMeta(id="Alpha", title="Alpha", file_path="Alpha.txt"),
            WikiArticleMeta(id="Beta", title="Beta", file_path="Beta.txt"),
        ],
        chunks=[
            WikiChunk(id="Alpha::0", article_id="Alpha", index=0, text="alpha one", embedding=[1.0, 0.0]),
            WikiChunk(id="Alpha::1", article_id="Alpha", index=1, text="alpha two", embedding=[1.0, 1.0]),
            WikiChunk(id="Beta::0", article_id="Beta", index=0, text="beta one", embedding=[0.0, 1.0]),
            WikiChunk(id="Beta::1", article_id="Beta", index=1, text="beta broken", embedding=[]),
        ],
    )


def by_kind(prompt):
    """Scripted replies telling the prompt kinds apart."""
    if "Citations should reference" in prompt:
        return "cited"
    if "CONTEXT START" in prompt or "CONTEXT FROM DOCUMENTS" in prompt:
        return "grounded"
    return "baseline"

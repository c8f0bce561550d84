import asyncio

import httpx
import pytest
from conftest import FakeEmbeddings

from wikirag.errors import InvalidInputError, UpstreamError
from wikirag.fetcher import WikiFetcher
from wikirag.index_store import InMemoryIndexStore, JsonIndexStore
from wikirag.indexer import WikiIndexer


class ShortEmbeddings:
    """Returns fewer vectors than texts."""

    async def embed(self, texts):
        return [[1.0, 0.0]]


def offline(request):
    raise AssertionError(f"unexpected request to {request.url}")


def make_fetcher(tmp_path, handler=offline, articles=None):
    wiki_dir = tmp_path / "wiki"
    wiki_dir.mkdir(parents=True, exist_ok=True)
    for name, text in (articles or {}).items():
        (wiki_dir / f"{name}.txt").write_text(text, encoding="utf-8")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WikiFetcher(wiki_dir, client=client)


def test_cached_article_is_chunked_and_embedded(tmp_path):
    fetcher = make_fetcher(tmp_path, articles={"Alpha": "abcdefghijklmno"})
    store = InMemoryIndexStore()
    embeddings = FakeEmbeddings({"abcdefghij": [1.0, 0.0], "hijklmno": [0.0, 1.0]})
    indexer = WikiIndexer(fetcher, embeddings, store, chunk_size=10, chunk_overlap=3)

    index = asyncio.run(indexer.build_index_for_topics(["alpha"]))

    assert [a.id for a in index.articles] == ["Alpha"]
    assert [(c.id, c.index, c.text, c.embedding) for c in index.chunks] == [
        ("Alpha::0", 0, "abcdefghij", [1.0, 0.0]),
        ("Alpha::1", 1, "hijklmno", [0.0, 1.0]),
    ]
    assert embeddings.calls == [["abcdefghij", "hijklmno"]]
    assert store.load() is index


def test_missing_topics_are_fetched(tmp_path):
    def handler(request):
        return httpx.Response(200, text="<p>Entangled qubits</p>")

    fetcher = make_fetcher(tmp_path, handler)
    indexer = WikiIndexer(fetcher, FakeEmbeddings(default=[1.0]), InMemoryIndexStore(), 100, 10)

    index = asyncio.run(indexer.build_index_for_topics(["Quantum computing"]))

    assert index.articles[0].title == "Quantum computing"
    assert index.chunks[0].id == "Quantum_computing::0"
    assert (tmp_path / "wiki" / "Quantum_computing.txt").exists()


def test_missing_embeddings_leave_chunks_unsearchable(tmp_path):
    fetcher = make_fetcher(tmp_path, articles={"Alpha": "abcdefghijklmno"})
    indexer = WikiIndexer(fetcher, ShortEmbeddings(), InMemoryIndexStore(), 10, 3)

    index = asyncio.run(indexer.build_index_for_topics(["Alpha"]))

    assert [c.embedding for c in index.chunks] == [[1.0, 0.0], []]


def test_fetch_failure_aborts_without_persisting(tmp_path):
    fetcher = make_fetcher(
        tmp_path, lambda request: httpx.Response(404), articles={"Alpha": "alpha text"}
    )
    store = JsonIndexStore(tmp_path / "wiki" / "wiki_index.json")
    indexer = WikiIndexer(fetcher, FakeEmbeddings(default=[1.0]), store, 10, 3)

    with pytest.raises(UpstreamError):
        asyncio.run(indexer.build_index_for_topics(["Alpha", "Does not exist"]))

    assert store.load() is None


def test_rebuild_replaces_previous_index(tmp_path):
    fetcher = make_fetcher(tmp_path, articles={"Alpha": "alpha text", "Beta": "beta text"})
    store = InMemoryIndexStore()
    indexer = WikiIndexer(fetcher, FakeEmbeddings(default=[1.0]), store, 10, 3)

    asyncio.run(indexer.build_index_for_topics(["Alpha"]))
    asyncio.run(indexer.build_index_for_topics(["Beta"]))

    assert [a.id for a in store.load().articles] == ["Beta"]
    assert {c.article_id for c in store.load().chunks} == {"Beta"}


def test_duplicate_topics_are_indexed_once(tmp_path):
    fetcher = make_fetcher(tmp_path, articles={"Alpha": "alpha text"})
    indexer = WikiIndexer(fetcher, FakeEmbeddings(default=[1.0]), InMemoryIndexStore(), 10, 3)

    index = asyncio.run(indexer.build_index_for_topics(["Alpha", "alpha"]))

    assert [a.id for a in index.articles] == ["Alpha"]
    assert len({c.id for c in index.chunks}) == len(index.chunks)


def test_build_from_local_uses_every_cached_article(tmp_path):
    fetcher = make_fetcher(tmp_path, articles={"Alpha": "alpha text", "Machine_learning": "ml text"})
    indexer = WikiIndexer(fetcher, FakeEmbeddings(default=[1.0]), InMemoryIndexStore(), 100, 10)

    index = asyncio.run(indexer.build_index_from_local())

    assert [a.id for a in index.articles] == ["Alpha", "Machine_learning"]
    assert len(index.chunks) == 2


def test_blank_topic_and_bad_chunking_are_rejected(tmp_path):
    fetcher = make_fetcher(tmp_path)
    with pytest.raises(InvalidInputError):
        WikiIndexer(fetcher, FakeEmbeddings(), InMemoryIndexStore(), chunk_size=10, chunk_overlap=10)

    indexer = WikiIndexer(fetcher, FakeEmbeddings(), InMemoryIndexStore(), 10, 3)
    with pytest.raises(InvalidInputError):
        asyncio.run(indexer.build_index_for_topics(["Alpha", "  "]))

import json

import pytest
from click.testing import CliRunner
from conftest import FakeEmbeddings, FakeLLM, by_kind

from wikirag import __version__, cli as cli_module, services
from wikirag.cli import cli
from wikirag.compression import CompressionService
from wikirag.chat import ChatService
from wikirag.index_store import InMemoryIndexStore, JsonIndexStore
from wikirag.rag import RagService
from wikirag.searcher import WikiSearcher
from wikirag.storage import ConversationStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def wire(monkeypatch, tmp_path):
    """Point the CLI at fakes and a throwaway data directory."""

    def _wire(index=None, store=None):
        store = store or InMemoryIndexStore(index)
        llm = FakeLLM(responder=by_kind, structured={"topics": []})
        searcher = WikiSearcher(FakeEmbeddings({"alpha?": [1.0, 0.0]}))
        db_path = tmp_path / "conversations.db"
        conversations = []

        def conversation_store():
            # Created on first use, like the real singleton
            if not conversations:
                conversations.append(ConversationStore(db_path))
            return conversations[0]

        monkeypatch.setattr(cli_module, "DATA_DIR", tmp_path)
        monkeypatch.setattr(cli_module, "SQLITE_PATH", db_path)
        monkeypatch.setattr(services, "get_index_store", lambda: store)
        monkeypatch.setattr(services, "get_searcher", lambda: searcher)
        monkeypatch.setattr(services, "get_rag_service", lambda: RagService(store, searcher, llm))
        monkeypatch.setattr(services, "get_conversation_store", conversation_store)
        monkeypatch.setattr(
            services,
            "get_chat_service",
            lambda: ChatService(CompressionService(llm, segment_window_size=2), llm, conversation_store()),
        )
        return llm

    return _wire


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_ask_without_index(runner, wire):
    llm = wire(None)
    result = runner.invoke(cli, ["ask", "What is a qubit?"])

    assert result.exit_code == 1
    assert "Please build it first" in result.output
    assert llm.prompts == []


def test_ask_json(runner, wire, sample_index):
    wire(sample_index)
    result = runner.invoke(cli, ["ask", "alpha?", "--top-k", "1", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["baselineAnswer"] == "baseline"
    assert payload["ragAnswer"] == "grounded"
    assert [c["chunkId"] for c in payload["usedChunks"]] == ["Alpha::0"]


def test_search(runner, wire, sample_index):
    wire(sample_index)
    result = runner.invoke(cli, ["search", "alpha?", "--top-k", "2"])

    assert result.exit_code == 0, result.output
    assert "Alpha::0" in result.output
    assert "score=1.000" in result.output


def test_stats_before_anything_exists(runner, wire, tmp_path):
    wire(None)
    result = runner.invoke(cli, ["stats"])

    assert result.exit_code == 0, result.output
    assert "Not built yet" in result.output
    assert "None yet." in result.output
    assert str(tmp_path) in result.output
    assert not (tmp_path / "conversations.db").exists()


def test_chat_and_compact(runner, wire):
    wire(None)

    result = runner.invoke(cli, ["chat", "c1", "hello"])
    assert result.exit_code == 0, result.output
    assert "baseline" in result.output

    result = runner.invoke(cli, ["compact", "c1"])
    assert result.exit_code == 0, result.output
    assert "Summarized. 1 summaries" in result.output

    result = runner.invoke(cli, ["context", "c1"])
    assert "S1: baseline" in result.output


def test_compact_unknown_conversation(runner, wire):
    wire(None)
    result = runner.invoke(cli, ["compact", "nope"])
    assert result.exit_code == 1
    assert "Conversation not found" in result.output


def test_search_with_corrupt_index(runner, wire, tmp_path):
    path = tmp_path / "wiki_index.json"
    path.write_text("{broken", encoding="utf-8")
    wire(store=JsonIndexStore(path))

    result = runner.invoke(cli, ["search", "alpha?"])

    assert result.exit_code == 1
    assert "corrupt" in result.output
    assert "Traceback" not in result.output


def test_ask_with_filter(runner, wire, sample_index):
    llm = wire(sample_index)
    result = runner.invoke(cli, ["ask", "alpha?", "--top-k", "3", "--min-similarity", "0.9"])

    assert result.exit_code == 0, result.output
    assert "With chunks scoring >= 0.9" in result.output
    assert "[1.000] Alpha (Alpha::0)" in result.output
    assert "Beta::0" not in result.output
    assert len(llm.prompts) == 3


def test_ask_cited(runner, wire, sample_index):
    wire(sample_index)
    result = runner.invoke(
        cli, ["ask", "alpha?", "--cite", "--min-similarity", "0.5", "--min-best-score", "0.8", "--json"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["answerWithCitations"] == "cited"
    assert [s["label"] for s in payload["labeledSources"]] == ["1", "2"]


def test_ask_cited_without_sources_and_no_fallback(runner, wire, sample_index):
    llm = wire(sample_index)
    result = runner.invoke(
        cli,
        ["ask", "alpha?", "--cite", "--min-similarity", "0.5", "--min-best-score", "1.5", "--no-fallback"],
    )

    assert result.exit_code == 1
    assert "fallback is disabled" in result.output
    assert llm.prompts == []


def test_ask_cited_needs_thresholds(runner, wire, sample_index):
    wire(sample_index)
    result = runner.invoke(cli, ["ask", "alpha?", "--cite"])
    assert result.exit_code == 2
    assert "--min-best-score" in result.output


def test_conversations_and_forget(runner, wire):
    wire(None)
    assert "No conversations yet." in runner.invoke(cli, ["conversations"]).output

    runner.invoke(cli, ["chat", "c1", "hello"])
    result = runner.invoke(cli, ["conversations"])
    assert result.exit_code == 0, result.output
    assert "c1" in result.output
    assert "2 messages, 0 summaries" in result.output

    result = runner.invoke(cli, ["forget", "c1"])
    assert result.exit_code == 0, result.output
    assert "No conversations yet." in runner.invoke(cli, ["conversations"]).output

    result = runner.invoke(cli, ["forget", "c1"])
    assert result.exit_code == 1
    assert "Conversation not found" in result.output

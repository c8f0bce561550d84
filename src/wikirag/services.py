"""Default wiring of collaborators, shared by the CLI and the MCP server."""

from __future__ import annotations

from .chat import ChatService
from .compression import CompressionService
from .config import CHUNK_OVERLAP, CHUNK_SIZE, INDEX_PATH, SEGMENT_WINDOW_SIZE, SQLITE_PATH, WIKI_DIR
from .embeddings import EmbeddingProvider, get_embedding_provider
from .fetcher import WikiFetcher
from .index_store import JsonIndexStore
from .indexer import WikiIndexer
from .llm import LanguageModel, OpenAILanguageModel
from .rag import RagService
from .searcher import WikiSearcher
from .storage import ConversationStore

# Singletons, reused across calls
_embeddings: EmbeddingProvider | None = None
_llm: LanguageModel | None = None
_conversations: ConversationStore | None = None


def get_embeddings() -> EmbeddingProvider:
    global _embeddings
    if _embeddings is None:
        _embeddings = get_embedding_provider()
    return _embeddings


def get_llm() -> LanguageModel:
    global _llm
    if _llm is None:
        _llm = OpenAILanguageModel()
    return _llm


def get_conversation_store() -> ConversationStore:
    global _conversations
    if _conversations is None:
        _conversations = ConversationStore(SQLITE_PATH)
    return _conversations


def get_index_store() -> JsonIndexStore:
    return JsonIndexStore(INDEX_PATH)


def get_fetcher() -> WikiFetcher:
    return WikiFetcher(WIKI_DIR)


def get_indexer() -> WikiIndexer:
    return WikiIndexer(
        fetcher=get_fetcher(),
        embeddings=get_embeddings(),
        store=get_index_store(),
        chunk_size=CHUNK_SIZE,
        chunk_overlap=CHUNK_OVERLAP,
    )


def get_searcher() -> WikiSearcher:
    return WikiSearcher(get_embeddings())


def get_rag_service() -> RagService:
    return RagService(
        store=get_index_store(),
        searcher=get_searcher(),
        llm=get_llm(),
        indexer=get_indexer(),
    )


def get_chat_service() -> ChatService:
    compression = CompressionService(get_llm(), segment_window_size=SEGMENT_WINDOW_SIZE)
    return ChatService(compression, get_llm(), get_conversation_store())

"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with WIKIRAG_DATA_DIR env var
DATA_DIR = Path(os.environ.get("WIKIRAG_DATA_DIR", str(Path.home() / ".wikirag")))

# Storage paths
WIKI_DIR = DATA_DIR / "wiki"
INDEX_PATH = WIKI_DIR / "wiki_index.json"
SQLITE_PATH = DATA_DIR / "conversations.db"

# Chunking parameters (characters)
CHUNK_SIZE = int(os.environ.get("WIKIRAG_CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.environ.get("WIKIRAG_CHUNK_OVERLAP", "200"))

# Search
SNIPPET_CHARS = 300
DEFAULT_TOP_K = 5

# Conversation compaction: messages per open segment before it is summarized
SEGMENT_WINDOW_SIZE = int(os.environ.get("WIKIRAG_SEGMENT_WINDOW", "5"))

# Embeddings: "ollama" or "chroma" (local ONNX MiniLM shipped with chromadb)
EMBEDDINGS_BACKEND = os.environ.get("WIKIRAG_EMBEDDINGS", "ollama")
OLLAMA_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
OLLAMA_EMBED_MODEL = os.environ.get("WIKIRAG_OLLAMA_MODEL", "all-minilm")
EMBED_CONCURRENCY = int(os.environ.get("WIKIRAG_EMBED_CONCURRENCY", "4"))

# Language model (OpenAI-compatible chat completions)
LLM_MODEL = os.environ.get("WIKIRAG_LLM_MODEL", "gpt-4o-mini")

# Wikipedia REST API
WIKIPEDIA_API = "https://en.wikipedia.org/api/rest_v1"
HTTP_TIMEOUT = 30.0

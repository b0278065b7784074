"""RAG (Retrieval-Augmented Generation) core for the companion knowledge base"""

from .splitter import TextSegmenter, extract_keywords, generate_summary
from .embedder import EmbeddingClient, RetryPolicy
from .store import VectorStore
from .retriever import RAGEngine
from .ingest import ingest_files

__all__ = [
    "TextSegmenter",
    "extract_keywords",
    "generate_summary",
    "EmbeddingClient",
    "RetryPolicy",
    "VectorStore",
    "RAGEngine",
    "ingest_files",
]

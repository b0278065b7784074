"""
Pytest configuration and fixtures for testing
"""

import math
import os
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_TOKEN"] = "test-admin-token-secure"
os.environ["EMBEDDING_SERVICE_URL"] = "http://embedding.test"

from companion_rag.models.exceptions import DocumentNotFoundError, EmbeddingServiceError  # noqa: E402
from companion_rag.rag.models import (  # noqa: E402
    DocumentRecord,
    EmbeddingResponse,
    EmbeddingServiceHealth,
    ListFilters,
    SearchOptions,
    SearchResult,
    utcnow,
)
from companion_rag.rag.retriever import RAGEngine  # noqa: E402
from companion_rag.rag.store import generate_highlights, lexical_score  # noqa: E402

ADMIN_TOKEN = "test-admin-token-secure"
FAKE_DIM = 8


def fake_embedding(text: str) -> List[float]:
    """Letter histogram folded into a few buckets; equal texts embed equally"""
    vector = [0.0] * FAKE_DIM
    for char in text.lower():
        if char.isalpha():
            vector[ord(char) % FAKE_DIM] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


def _cosine(a: List[float], b: List[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if not norm:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / norm


def _matches(document: DocumentRecord, filters: ListFilters) -> bool:
    if filters.user_id and document.user_id != filters.user_id:
        return False
    if filters.companion_id and document.companion_id != filters.companion_id:
        return False
    if filters.content_type:
        allowed = filters.content_type if isinstance(filters.content_type, list) else [filters.content_type]
        if document.content_type not in allowed:
            return False
    if filters.tags and not set(filters.tags) & set(document.metadata.tags or []):
        return False
    if filters.date_range:
        created = document.metadata.created_at
        if not filters.date_range.start <= created <= filters.date_range.end:
            return False
    return True


class FakeEmbedder:
    """In-process embedding client"""

    base_url = "http://embedding.test"
    default_model = "test-model"

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.calls: List[List[str]] = []

    @staticmethod
    def vector_for(text: str) -> List[float]:
        return fake_embedding(text)

    async def embed_texts(self, texts, model=None, policy=None) -> EmbeddingResponse:
        self.calls.append(list(texts))
        return EmbeddingResponse(
            embeddings=[fake_embedding(text) for text in texts],
            model=model or self.default_model,
        )

    async def embed_single(self, text, model=None) -> List[float]:
        response = await self.embed_texts([text], model)
        return response.embeddings[0]

    async def get_health(self) -> EmbeddingServiceHealth:
        return EmbeddingServiceHealth(
            status="healthy" if self.healthy else "unhealthy",
            model=self.default_model,
        )

    async def validate_connection(self) -> bool:
        return self.healthy

    async def wait_for_service(self, max_wait_time: float = 60.0) -> None:
        if not self.healthy:
            raise EmbeddingServiceError("Embedding service did not become available")

    async def close(self):
        pass


class FakeVectorStore:
    """Dictionary-backed vector store with the same contract as VectorStore"""

    index_name = "test_index"

    def __init__(self):
        self.documents: Dict[str, DocumentRecord] = {}
        self._next_id = 0

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def index_definition(self):
        return {"name": self.index_name, "prefix": "test:documents:", "type": "HASH", "fields": []}

    async def ensure_index(self) -> bool:
        return True

    async def insert_documents(self, documents: List[DocumentRecord]) -> List[str]:
        now = utcnow()
        ids = []
        for document in documents:
            self._next_id += 1
            document_id = f"doc-{self._next_id}"
            metadata = document.metadata.model_copy(update={"created_at": now, "updated_at": now})
            self.documents[document_id] = document.model_copy(
                update={"id": document_id, "metadata": metadata},
            )
            ids.append(document_id)
        return ids

    async def insert_document(self, document: DocumentRecord) -> str:
        ids = await self.insert_documents([document])
        return ids[0]

    async def update_document(self, params, embedding=None) -> None:
        existing = self.documents.get(params.document_id)
        if existing is None:
            raise DocumentNotFoundError(document_id=params.document_id)

        updates = {}
        metadata_updates = {"updated_at": utcnow()}
        if params.title is not None:
            updates["title"] = params.title
        if params.content is not None:
            updates["content"] = params.content
        if params.tags is not None:
            metadata_updates["tags"] = params.tags
        if params.summary is not None:
            metadata_updates["summary"] = params.summary
        if embedding is not None:
            updates["embedding"] = embedding
        updates["metadata"] = existing.metadata.model_copy(update=metadata_updates)

        self.documents[params.document_id] = existing.model_copy(update=updates)

    async def delete_document(self, document_id: str) -> None:
        if self.documents.pop(document_id, None) is None:
            raise DocumentNotFoundError(document_id=document_id)

    async def delete_documents_by_user(self, user_id: str) -> int:
        owned = [key for key, doc in self.documents.items() if doc.user_id == user_id]
        for key in owned:
            del self.documents[key]
        return len(owned)

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        return self.documents.get(document_id)

    async def list_documents(self, filters: ListFilters, limit: int = 50, skip: int = 0):
        matches = sorted(
            (doc for doc in self.documents.values() if _matches(doc, filters)),
            key=lambda doc: doc.metadata.updated_at,
            reverse=True,
        )
        page = [doc.model_copy(update={"embedding": []}) for doc in matches[skip:skip + limit]]
        return page, len(matches)

    async def vector_search(self, query_embedding, filters, options=None) -> List[SearchResult]:
        options = options or SearchOptions()
        scored = sorted(
            (
                ((1.0 + _cosine(query_embedding, doc.embedding)) / 2.0, doc)
                for doc in self.documents.values()
                if _matches(doc, filters)
            ),
            key=lambda item: item[0],
            reverse=True,
        )

        results = []
        for score, doc in scored[:options.limit]:
            if options.threshold > 0 and score < options.threshold:
                continue
            update = {"embedding": []}
            if not options.include_content:
                update["content"] = ""
            record = doc.model_copy(update=update)
            results.append(SearchResult(
                document=record,
                score=score,
                highlights=generate_highlights(record.content),
            ))
        return results

    async def hybrid_search(self, query_embedding, text_query, filters, options=None) -> List[SearchResult]:
        options = options or SearchOptions()
        candidates = await self.vector_search(
            query_embedding, filters, options.model_copy(update={"limit": options.limit * 2}),
        )
        if not text_query.strip():
            return candidates[:options.limit]
        rescored = [
            r.model_copy(update={
                "score": 0.7 * r.score + 0.3 * lexical_score(text_query, r.document.title, r.document.content),
            })
            for r in candidates
        ]
        rescored.sort(key=lambda r: r.score, reverse=True)
        return rescored[:options.limit]

    async def get_collection_stats(self):
        count = len(self.documents)
        size = sum(len(doc.content) for doc in self.documents.values())
        return {
            "document_count": count,
            "storage_size": size,
            "avg_document_size": size / count if count else 0,
        }


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def engine(embedder: FakeEmbedder, vector_store: FakeVectorStore) -> RAGEngine:
    return RAGEngine(embedder=embedder, vector_store=vector_store)


@pytest.fixture
def user_headers() -> Dict[str, str]:
    return {"X-User-Id": "user-1"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest_asyncio.fixture
async def client(engine: RAGEngine) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing"""
    from main import app
    from companion_rag.dependencies import get_rag_engine

    app.dependency_overrides[get_rag_engine] = lambda: engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()

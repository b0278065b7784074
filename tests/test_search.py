"""
Tests for search and context endpoints
"""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from companion_rag.models.exceptions import EmbeddingServiceError


async def _seed(client: AsyncClient, headers):
    for title, content in [
        ("Garden", "Anna's garden has red roses."),
        ("Travel", "We took the train to Leeds in June."),
    ]:
        response = await client.post(
            "/api/rag/documents",
            json={"title": title, "content": content, "content_type": "memory"},
            headers=headers,
        )
        assert response.status_code == 201


@pytest.mark.asyncio
async def test_semantic_search(client: AsyncClient, user_headers):
    await _seed(client, user_headers)

    response = await client.post(
        "/api/rag/search",
        json={"query": "Anna's garden has red roses.", "threshold": 0.0},
        headers=user_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["total_count"] == 2
    assert data["results"][0]["document"]["title"] == "Garden"
    assert "query_embedding" not in data


@pytest.mark.asyncio
async def test_hybrid_search_boosts_lexical_matches(client: AsyncClient, user_headers):
    await _seed(client, user_headers)

    response = await client.post(
        "/api/rag/search",
        json={
            "query": "Anna's garden has red roses.",
            "text_query": "train leeds",
            "search_type": "hybrid",
            "threshold": 0.0,
        },
        headers=user_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["results"][0]["document"]["title"] == "Travel"
    assert data["total_count"] == len(data["results"])


@pytest.mark.asyncio
async def test_search_rejects_blank_query(client: AsyncClient, user_headers):
    response = await client.post("/api/rag/search", json={"query": "   "}, headers=user_headers)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_search_reports_embedding_outage(client: AsyncClient, user_headers, embedder):
    embedder.embed_texts = AsyncMock(side_effect=EmbeddingServiceError("Embedding service timeout after 30.0s"))

    response = await client.post("/api/rag/search", json={"query": "roses"}, headers=user_headers)

    assert response.status_code == 502
    assert response.json()["error"] == "embedding_service_error"


@pytest.mark.asyncio
async def test_build_context(client: AsyncClient, user_headers):
    await _seed(client, user_headers)

    response = await client.post(
        "/api/rag/context",
        json={"query": "Anna's garden has red roses.", "max_context_length": 1000},
        headers=user_headers,
    )

    assert response.status_code == 200
    context = response.json()["context"]
    assert context["query"] == "Anna's garden has red roses."
    assert context["max_context_length"] == 1000
    assert context["relevant_documents"][0]["document"]["title"] == "Garden"
    total = sum(len(r["document"]["content"]) for r in context["relevant_documents"])
    assert total <= 1000

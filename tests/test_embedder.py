"""
Tests for the embedding service client
"""

import json

import httpx
import pytest

from companion_rag.models.exceptions import EmbeddingServiceError, RAGValidationError
from companion_rag.rag.embedder import MAX_TEXT_LENGTH, EmbeddingClient, RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=3, timeout=1.0, base_delay=0.0, max_delay=0.0)


def _client(handler, policy: RetryPolicy = NO_WAIT) -> EmbeddingClient:
    return EmbeddingClient(
        base_url="http://embedding.test/",
        retry_policy=policy,
        default_model="test-model",
        transport=httpx.MockTransport(handler),
    )


def _embed_response(count: int = 1) -> httpx.Response:
    return httpx.Response(200, json={
        "embeddings": [[0.1, 0.2, 0.3]] * count,
        "model": "test-model",
        "usage": {"total_tokens": 7},
    })


def test_backoff_doubles_up_to_cap():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0)

    assert [policy.backoff(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


@pytest.mark.asyncio
async def test_embed_texts_sends_texts_and_model():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return _embed_response(2)

    client = _client(handler)
    result = await client.embed_texts(["one", "two"])
    await client.close()

    assert seen["path"] == "/embed"
    assert seen["body"] == {"texts": ["one", "two"], "model": "test-model"}
    assert len(result.embeddings) == 2
    assert result.usage.total_tokens == 7


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return _embed_response()

    client = _client(handler)
    embedding = await client.embed_single("hello")
    await client.close()

    assert attempts["count"] == 3
    assert embedding == pytest.approx([0.1, 0.2, 0.3])


@pytest.mark.asyncio
async def test_timeouts_exhaust_attempts():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler)
    with pytest.raises(EmbeddingServiceError) as exc_info:
        await client.embed_texts(["hello"])
    await client.close()

    assert attempts["count"] == 3
    assert "after 3 attempts" in exc_info.value.message
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_error_status_is_not_retried():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(500, text="model crashed")

    client = _client(handler)
    with pytest.raises(EmbeddingServiceError) as exc_info:
        await client.embed_texts(["hello"])
    await client.close()

    assert attempts["count"] == 1
    assert exc_info.value.context["status"] == 500
    assert "model crashed" in exc_info.value.message


@pytest.mark.asyncio
async def test_per_call_policy_overrides_attempts():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        raise httpx.ConnectError("down", request=request)

    client = _client(handler)
    with pytest.raises(EmbeddingServiceError):
        await client.embed_texts(["hello"], policy=RetryPolicy(max_attempts=1, base_delay=0.0))
    await client.close()

    assert attempts["count"] == 1


@pytest.mark.asyncio
async def test_rejects_invalid_input_without_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler)
    with pytest.raises(RAGValidationError):
        await client.embed_texts([])
    with pytest.raises(RAGValidationError):
        await client.embed_texts(["ok", "x" * (MAX_TEXT_LENGTH + 1)])
    await client.close()


@pytest.mark.asyncio
async def test_count_mismatch_is_service_error():
    client = _client(lambda request: _embed_response(1))

    with pytest.raises(EmbeddingServiceError):
        await client.embed_texts(["one", "two"])
    await client.close()


@pytest.mark.asyncio
async def test_validate_connection():
    healthy = _client(lambda request: httpx.Response(200, json={"status": "healthy", "model": "m"}))
    unhealthy = _client(lambda request: httpx.Response(503, text="loading"))

    assert await healthy.validate_connection() is True
    assert await unhealthy.validate_connection() is False

    await healthy.close()
    await unhealthy.close()


@pytest.mark.asyncio
async def test_wait_for_service_gives_up():
    client = _client(lambda request: httpx.Response(503, text="loading"))

    with pytest.raises(EmbeddingServiceError):
        await client.wait_for_service(max_wait_time=0)
    await client.close()


@pytest.mark.asyncio
async def test_with_policy_shares_connection_pool():
    client = _client(lambda request: _embed_response())
    strict = client.with_policy(RetryPolicy(max_attempts=1))

    assert strict.client is client.client
    assert strict.retry_policy.max_attempts == 1
    assert strict.base_url == "http://embedding.test"
    await client.close()

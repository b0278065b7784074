"""
Embedding generation through the external embedding service
Async HTTP client with per-attempt timeouts and exponential backoff
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

from companion_rag.models.exceptions import (
    EmbeddingServiceError,
    RAGError,
    RAGValidationError,
)
from .models import EmbeddingResponse, EmbeddingServiceHealth

logger = structlog.get_logger()

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_MODEL = "BAAI/bge-m3"
# Characters, a conservative stand-in for the model's 8192-token ceiling
MAX_TEXT_LENGTH = 8000
HEALTH_POLL_INTERVAL = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour of one embedding request.

    Attributes:
        max_attempts: Attempts before giving up
        timeout: Seconds allowed per attempt
        base_delay: Backoff before the second attempt, in seconds
        max_delay: Backoff cap, in seconds
    """
    max_attempts: int = 3
    timeout: float = 30.0
    base_delay: float = 1.0
    max_delay: float = 10.0

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt"""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class EmbeddingClient:
    """
    HTTP client for the embedding service.
    Expects GET /health and POST /embed {texts, model}.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        retry_policy: Optional[RetryPolicy] = None,
        default_model: str = DEFAULT_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize embedding client.

        Args:
            base_url: Service root URL
            retry_policy: Attempts, timeout and backoff (default RetryPolicy())
            default_model: Model requested when the caller names none
            transport: Optional httpx transport (tests)
            client: Existing httpx client to share
        """
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_model = default_model
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

        logger.info(
            "embedder.initialized",
            base_url=self.base_url,
            model=self.default_model,
            max_attempts=self.retry_policy.max_attempts,
        )

    def with_policy(self, retry_policy: RetryPolicy) -> "EmbeddingClient":
        """Client sharing this connection pool with a different retry policy"""
        return EmbeddingClient(
            base_url=self.base_url,
            retry_policy=retry_policy,
            default_model=self.default_model,
            client=self.client,
        )

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()
        logger.info("embedder.closed")

    async def _request(
        self,
        endpoint: str,
        method: str = "GET",
        payload: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Send a request with retries.

        Timeouts and transport errors are retried with exponential backoff.
        A non-2xx answer is a service error and is raised immediately.

        Raises:
            EmbeddingServiceError: If the service errors or every attempt fails
        """
        policy = policy or self.retry_policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await self.client.request(
                    method,
                    endpoint,
                    json=payload,
                    timeout=policy.timeout,
                )

                if response.is_error:
                    raise EmbeddingServiceError(
                        f"Embedding service error: {response.status_code} - {response.text}",
                        context={
                            "status": response.status_code,
                            "status_text": response.reason_phrase,
                            "endpoint": endpoint,
                        },
                    )

                try:
                    return response.json()
                except ValueError as e:
                    raise EmbeddingServiceError(
                        "Embedding service returned invalid JSON",
                        context={"endpoint": endpoint, "error": str(e)},
                    ) from e

            except RAGError:
                raise

            except httpx.TimeoutException as e:
                last_error = EmbeddingServiceError(
                    f"Embedding service timeout after {policy.timeout}s",
                    context={"endpoint": endpoint, "reason": "timeout"},
                )
                last_error.__cause__ = e

            except httpx.HTTPError as e:
                last_error = e

            logger.warning(
                "embedder.request_failed",
                endpoint=endpoint,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=str(last_error),
            )

            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.backoff(attempt))

        logger.error(
            "embedder.retries_exhausted",
            endpoint=endpoint,
            attempts=policy.max_attempts,
            error=str(last_error),
        )
        raise EmbeddingServiceError(
            f"Failed to connect to embedding service after {policy.max_attempts} attempts: {last_error}",
            context={
                "endpoint": endpoint,
                "attempts": policy.max_attempts,
                "original_error": str(last_error),
            },
        ) from last_error

    async def get_health(self) -> EmbeddingServiceHealth:
        """
        Fetch embedding service health.

        Returns:
            Health payload (status, model, version, uptime)
        """
        data = await self._request("/health")
        return EmbeddingServiceHealth.model_validate(data)

    async def embed_texts(
        self,
        texts: List[str],
        model: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> EmbeddingResponse:
        """
        Generate embeddings for multiple texts in one request.

        Args:
            texts: Texts to embed
            model: Model identifier (default: client default model)
            policy: Per-call retry policy override

        Returns:
            Embeddings in input order, model name and token usage

        Raises:
            RAGValidationError: If texts is empty or a text is too long
            EmbeddingServiceError: If the service fails
        """
        if not texts:
            raise RAGValidationError("No texts provided for embedding")

        oversized = [text for text in texts if len(text) > MAX_TEXT_LENGTH]
        if oversized:
            raise RAGValidationError(
                f"Text too long for embedding. Maximum length: {MAX_TEXT_LENGTH} characters",
                context={"oversized_count": len(oversized)},
            )

        payload = {"texts": texts, "model": model or self.default_model}
        data = await self._request("/embed", "POST", payload, policy)

        try:
            result = EmbeddingResponse.model_validate(data)
        except ValueError as e:
            raise EmbeddingServiceError(
                "Embedding service returned an unexpected payload",
                context={"error": str(e)},
            ) from e

        if len(result.embeddings) != len(texts):
            raise EmbeddingServiceError(
                "Embedding count does not match input count",
                context={"expected": len(texts), "received": len(result.embeddings)},
            )

        logger.debug(
            "embedder.batch_complete",
            num_texts=len(texts),
            model=result.model,
            total_tokens=result.usage.total_tokens,
        )

        return result

    async def embed_single(self, text: str, model: Optional[str] = None) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed
            model: Model identifier

        Returns:
            Embedding vector
        """
        response = await self.embed_texts([text], model)
        return response.embeddings[0]

    async def validate_connection(self) -> bool:
        """True if the service reports itself healthy; errors count as unhealthy"""
        try:
            health = await self.get_health()
        except Exception as e:
            logger.warning("embedder.health.fail", error=str(e))
            return False
        return health.status == "healthy"

    async def wait_for_service(self, max_wait_time: float = 60.0) -> None:
        """
        Poll the health endpoint until the service is healthy.

        Args:
            max_wait_time: Seconds to wait before giving up

        Raises:
            EmbeddingServiceError: If the service is not healthy in time
        """
        started = time.monotonic()

        while time.monotonic() - started < max_wait_time:
            if await self.validate_connection():
                logger.info(
                    "embedder.service_available",
                    waited_seconds=round(time.monotonic() - started, 2),
                )
                return
            await asyncio.sleep(HEALTH_POLL_INTERVAL)

        raise EmbeddingServiceError(
            f"Embedding service did not become available within {max_wait_time}s",
            context={"max_wait_time": max_wait_time},
        )

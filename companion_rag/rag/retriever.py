"""
Retrieval engine for the companion knowledge base
Composes segmenter, embedding client and vector store; owns ranking,
thresholds and context budgeting
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from companion_rag.models.exceptions import (
    DatabaseError,
    DocumentNotFoundError,
    EmbeddingServiceError,
    RAGError,
    RAGValidationError,
)
from .embedder import EmbeddingClient
from .models import (
    AddDocumentParams,
    ChunkingOptions,
    ContentType,
    DateRange,
    DocumentMetadata,
    DocumentRecord,
    ListFilters,
    RAGContext,
    SearchFilters,
    SearchOptions,
    SearchResult,
    SemanticSearchParams,
    SemanticSearchResponse,
    UpdateDocumentParams,
)
from .splitter import TextSegmenter, generate_summary
from .store import VectorStore, join_tags

logger = structlog.get_logger()

CONTEXT_THRESHOLD = 0.7
SIMILAR_THRESHOLD = 0.5
# Below this many spare characters a truncated entry is not worth adding
MIN_PARTIAL_CONTEXT = 100


class RAGEngine:
    """
    Entry point of the RAG core.
    Stateless; every call orchestrates the injected store and embedding client.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        segmenter: Optional[TextSegmenter] = None,
        chunking: Optional[ChunkingOptions] = None,
    ):
        """
        Initialize engine.

        Args:
            embedder: Embedding service client
            vector_store: Document store
            segmenter: Text segmenter (default TextSegmenter())
            chunking: Chunk size and overlap used on ingestion
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.segmenter = segmenter or TextSegmenter()
        self.chunking = chunking or ChunkingOptions()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def add_document(self, params: AddDocumentParams) -> List[str]:
        """
        Chunk, embed and store a document.

        Args:
            params: Owner, scope, title, content and descriptive fields

        Returns:
            IDs of the stored chunks in chunk order

        Raises:
            RAGValidationError: If content or user ID is missing, or a tag contains a comma
            EmbeddingServiceError: If embedding fails
            DatabaseError: If storing fails
        """
        if not params.content or not params.content.strip():
            raise RAGValidationError("Document content cannot be empty")
        if not params.user_id:
            raise RAGValidationError("User ID is required")
        join_tags(params.tags)

        logger.info(
            "rag.add_document.started",
            user_id=params.user_id,
            companion_id=params.companion_id,
            content_type=params.content_type.value,
            content_length=len(params.content),
        )

        try:
            chunks = self.segmenter.chunk_document(
                params.content,
                params.title,
                params.content_type,
                self.chunking,
                params.source,
            )
            response = await self.embedder.embed_texts([chunk.text for chunk in chunks])
            summary = generate_summary(params.content)

            records = [
                DocumentRecord(
                    user_id=params.user_id,
                    companion_id=params.companion_id,
                    title=params.title,
                    content=chunk.text,
                    content_type=params.content_type,
                    metadata=DocumentMetadata(
                        source=params.source,
                        tags=params.tags,
                        summary=summary if chunk.chunk_index == 0 else None,
                    ),
                    embedding=embedding,
                    chunk_id=chunk.chunk_id,
                    chunk_index=chunk.chunk_index,
                )
                for chunk, embedding in zip(chunks, response.embeddings)
            ]
        except RAGError:
            raise
        except Exception as e:
            raise DatabaseError(
                "Failed to add document",
                context={"original_error": str(e)},
            ) from e

        try:
            ids = await self.vector_store.insert_documents(records)
        except RAGError as e:
            # The bulk insert is one transaction, so nothing was persisted
            logger.error(
                "rag.add_document.insert_failed",
                user_id=params.user_id,
                num_chunks=len(records),
                error=e.message,
            )
            raise DatabaseError(
                f"Failed to store document: {e.message}",
                context={
                    **e.context,
                    "chunks_not_persisted": len(records),
                    "total_chunks": len(records),
                },
            ) from e

        logger.info(
            "rag.add_document.complete",
            user_id=params.user_id,
            num_chunks=len(ids),
            embedding_model=response.model,
        )

        return ids

    async def update_document(self, params: UpdateDocumentParams) -> None:
        """
        Update title, content, tags or summary of a stored chunk.

        New content is re-embedded so search reflects it immediately.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        existing = await self.vector_store.get_document(params.document_id)
        if existing is None:
            raise DocumentNotFoundError(document_id=params.document_id)

        embedding = None
        if params.content is not None and params.content != existing.content:
            if not params.content.strip():
                raise RAGValidationError("Document content cannot be empty")
            embedding = await self.embedder.embed_single(params.content)

        await self.vector_store.update_document(params, embedding=embedding)

        logger.info(
            "rag.update_document.complete",
            document_id=params.document_id,
            reembedded=embedding is not None,
        )

    async def delete_document(self, document_id: str) -> None:
        """Delete one stored chunk (NOT_FOUND if absent)"""
        await self.vector_store.delete_document(document_id)

    async def delete_user_documents(self, user_id: str) -> int:
        """Delete everything a user stored; returns the number of chunks removed"""
        return await self.vector_store.delete_documents_by_user(user_id)

    async def get_document_by_id(self, document_id: str) -> Optional[DocumentRecord]:
        return await self.vector_store.get_document(document_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def semantic_search(self, params: SemanticSearchParams) -> SemanticSearchResponse:
        """
        Vector search for a natural-language query.

        total_count counts every document matching the filters, not only
        those that passed the similarity search.

        Args:
            params: Query, filters and options

        Returns:
            Results, total count and the query embedding
        """
        query_embedding = await self.embedder.embed_single(params.query)

        results = await self.vector_store.vector_search(
            query_embedding,
            params.filters,
            params.options,
        )
        _, total = await self.vector_store.list_documents(params.filters, limit=1)

        logger.info(
            "rag.semantic_search.complete",
            user_id=params.filters.user_id,
            num_results=len(results),
            total_count=total,
        )

        return SemanticSearchResponse(
            results=results,
            total_count=total,
            query_embedding=query_embedding,
        )

    async def hybrid_search(
        self,
        query: str,
        text_query: str,
        params: SemanticSearchParams,
    ) -> SemanticSearchResponse:
        """
        Vector search for query, re-ranked by lexical matches of text_query.

        Returns:
            Results with total_count equal to the number returned
        """
        query_embedding = await self.embedder.embed_single(query)

        results = await self.vector_store.hybrid_search(
            query_embedding,
            text_query,
            params.filters,
            params.options,
        )

        logger.info(
            "rag.hybrid_search.complete",
            user_id=params.filters.user_id,
            num_results=len(results),
        )

        return SemanticSearchResponse(
            results=results,
            total_count=len(results),
            query_embedding=query_embedding,
        )

    async def build_rag_context(
        self,
        query: str,
        user_id: str,
        companion_id: Optional[str] = None,
        max_documents: int = 5,
        max_context_length: int = 4000,
    ) -> RAGContext:
        """
        Collect the most relevant documents that fit a character budget.

        Whole documents are added while they fit. The first one that does not
        fit is added truncated to the remaining budget (with "...") if more
        than 100 characters remain; accumulation stops there.

        Args:
            query: Conversational turn to ground
            user_id: Owner of the knowledge base
            companion_id: Optional companion scope
            max_documents: Results requested from search
            max_context_length: Character budget over document contents

        Returns:
            Context with the selected results, the query and the budget
        """
        response = await self.semantic_search(SemanticSearchParams(
            query=query,
            filters=SearchFilters(user_id=user_id, companion_id=companion_id),
            options=SearchOptions(
                limit=max_documents,
                threshold=CONTEXT_THRESHOLD,
                include_content=True,
            ),
        ))

        selected = select_within_budget(response.results, max_context_length)

        logger.info(
            "rag.context_built",
            user_id=user_id,
            candidates=len(response.results),
            selected=len(selected),
            budget=max_context_length,
        )

        return RAGContext(
            relevant_documents=selected,
            query=query,
            max_context_length=max_context_length,
        )

    async def try_build_rag_context(
        self,
        query: str,
        user_id: str,
        companion_id: Optional[str] = None,
        max_documents: int = 5,
        max_context_length: int = 4000,
    ) -> Optional[RAGContext]:
        """
        Best-effort context for a conversational turn.

        Returns:
            The context, or None when the embedding service is unavailable
        """
        try:
            return await self.build_rag_context(
                query, user_id, companion_id, max_documents, max_context_length,
            )
        except EmbeddingServiceError as e:
            logger.warning(
                "rag.context_unavailable",
                user_id=user_id,
                error=e.message,
            )
            return None

    async def search_similar_documents(
        self,
        document_id: str,
        limit: int = 5,
    ) -> SemanticSearchResponse:
        """
        Documents similar to a stored one, excluding itself.

        Raises:
            DocumentNotFoundError: If the reference document does not exist
        """
        reference = await self.vector_store.get_document(document_id)
        if reference is None:
            raise DocumentNotFoundError(document_id=document_id)

        results = await self.vector_store.vector_search(
            reference.embedding,
            SearchFilters(user_id=reference.user_id, companion_id=reference.companion_id),
            SearchOptions(limit=limit + 1, threshold=SIMILAR_THRESHOLD),
        )
        results = [r for r in results if r.document.id != document_id][:limit]

        return SemanticSearchResponse(results=results, total_count=len(results))

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def get_user_documents(
        self,
        user_id: str,
        content_type: Optional[ContentType] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> Tuple[List[DocumentRecord], int]:
        return await self.vector_store.list_documents(
            ListFilters(user_id=user_id, content_type=content_type),
            limit=limit,
            skip=skip,
        )

    async def search_by_tags(
        self,
        tags: List[str],
        user_id: str,
        companion_id: Optional[str] = None,
        limit: int = 20,
    ) -> List[DocumentRecord]:
        documents, _ = await self.vector_store.list_documents(
            ListFilters(user_id=user_id, companion_id=companion_id, tags=tags),
            limit=limit,
        )
        return documents

    async def get_recent_documents(
        self,
        user_id: str,
        companion_id: Optional[str] = None,
        days: int = 7,
        limit: int = 10,
    ) -> List[DocumentRecord]:
        now = datetime.now(timezone.utc)
        documents, _ = await self.vector_store.list_documents(
            ListFilters(
                user_id=user_id,
                companion_id=companion_id,
                date_range=DateRange(start=now - timedelta(days=days), end=now),
            ),
            limit=limit,
        )
        return documents

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        """User document count alongside collection-wide statistics"""
        _, user_documents = await self.vector_store.list_documents(
            ListFilters(user_id=user_id),
            limit=1,
        )
        stats = await self.vector_store.get_collection_stats()
        return {"user_documents": user_documents, **stats}

    # ------------------------------------------------------------------
    # Service health
    # ------------------------------------------------------------------

    async def validate_embedding_service(self) -> bool:
        return await self.embedder.validate_connection()

    async def health_check(self) -> Dict[str, Any]:
        """
        Health of the RAG system.

        Returns:
            status, embedding_service {healthy, details} and timestamp
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            healthy = await self.embedder.validate_connection()
            details = await self.embedder.get_health() if healthy else None
        except Exception as e:
            logger.error("rag.health_check.fail", error=str(e))
            return {"status": "unhealthy", "error": str(e), "timestamp": timestamp}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "embedding_service": {
                "healthy": healthy,
                "details": details.model_dump() if details else None,
            },
            "timestamp": timestamp,
        }

    async def initialize_rag(self, max_wait_time: float = 30.0, create_index: bool = False) -> Dict[str, Any]:
        """
        Wait for the embedding service, then report the expected vector index.

        Index provisioning is an administrative step; create_index is meant
        for local development against Redis Stack.

        Raises:
            EmbeddingServiceError: If the embedding service stays unavailable
        """
        await self.embedder.wait_for_service(max_wait_time)

        definition = self.vector_store.index_definition()
        logger.info("rag.vector_index_definition", definition=definition)

        created = False
        if create_index:
            created = await self.vector_store.ensure_index()
        else:
            logger.info(
                "rag.vector_index_manual_step",
                message="Create this index in Redis Stack before serving traffic",
                index_name=definition["name"],
            )

        return {"initialized": True, "index": definition, "index_created": created}


def select_within_budget(results: List[SearchResult], max_context_length: int) -> List[SearchResult]:
    """
    Greedy context packing by content length.

    Args:
        results: Ranked search results
        max_context_length: Character budget

    Returns:
        Leading results that fit, plus at most one truncated result
    """
    selected: List[SearchResult] = []
    used = 0

    for result in results:
        content = result.document.content
        if used + len(content) <= max_context_length:
            selected.append(result)
            used += len(content)
            continue

        remaining = max_context_length - used
        if remaining > MIN_PARTIAL_CONTEXT:
            truncated = result.document.model_copy(update={"content": content[:remaining] + "..."})
            selected.append(result.model_copy(update={"document": truncated}))
        break

    return selected

"""
Redis vector store for RAG document chunks
Uses RediSearch (Redis Stack) for filtered KNN search and listing
"""

import re
import struct
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError
from redis.commands.search.field import TextField, VectorField, NumericField, TagField
from redis.commands.search.query import Query
import structlog

try:
    from redis.commands.search.index_definition import IndexDefinition, IndexType
except ImportError:  # redis-py < 6
    from redis.commands.search.indexDefinition import IndexDefinition, IndexType

from companion_rag.models.exceptions import (
    DatabaseError,
    DocumentNotFoundError,
    RAGError,
    RAGValidationError,
)
from .filters import FilterClause, FilterOperator, build_filter_clauses
from .models import (
    ContentType,
    DocumentMetadata,
    DocumentRecord,
    ListFilters,
    SearchFilters,
    SearchOptions,
    SearchResult,
    UpdateDocumentParams,
    utcnow,
)

logger = structlog.get_logger()

# Hybrid score weights and lexical bonuses
VECTOR_WEIGHT = 0.7
TEXT_WEIGHT = 0.3
CONTENT_MATCH_SCORE = 1
TITLE_MATCH_SCORE = 2

MAX_HIGHLIGHTS = 3
TAG_SEPARATOR = ","
DELETE_BATCH_SIZE = 500

# HSET only if the hash still exists
UPDATE_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

RECORD_FIELDS = (
    "user_id", "companion_id", "title", "content", "content_type", "source",
    "tags", "summary", "created_at", "updated_at", "chunk_id", "chunk_index",
)

_TAG_SPECIAL_CHARS = re.compile(r"([,.<>{}\[\]\"':;!@#$%^&*()\-+=~|/\\ ])")


def escape_tag(value: str) -> str:
    """Escape a value for use inside a RediSearch tag query"""
    return _TAG_SPECIAL_CHARS.sub(r"\\\1", value)


def translate_clauses(clauses: List[FilterClause]) -> str:
    """
    Translate filter clauses into a RediSearch query string.

    Args:
        clauses: Typed filter clauses

    Returns:
        Intersection of all clauses, or "*" when there are none
    """
    parts = []

    for clause in clauses:
        if clause.operator == FilterOperator.EQ:
            parts.append(f"@{clause.field}:{{{escape_tag(str(clause.value))}}}")
        elif clause.operator in (FilterOperator.IN, FilterOperator.ANY):
            values = " | ".join(escape_tag(str(v)) for v in clause.value)
            parts.append(f"@{clause.field}:{{{values}}}")
        elif clause.operator == FilterOperator.RANGE:
            start, end = clause.value
            parts.append(f"@{clause.field}:[{_to_epoch(start)} {_to_epoch(end)}]")
        else:
            raise RAGValidationError(
                f"Unsupported filter operator: {clause.operator}",
                context={"field": clause.field},
            )

    return " ".join(parts) if parts else "*"


def generate_highlights(content: str, max_highlights: int = MAX_HIGHLIGHTS) -> List[str]:
    """Leading sentence fragments for display"""
    if not content:
        return []

    fragments = [f.strip() for f in re.split(r"[.!?]+", content) if f.strip()]
    return [f"{fragment}..." for fragment in fragments[:max_highlights]]


def lexical_score(text_query: str, title: str, content: str) -> int:
    """+1 per query term found in content, +2 per term found in title"""
    content = content.lower()
    title = title.lower()

    score = 0
    for term in text_query.lower().split():
        if term in content:
            score += CONTENT_MATCH_SCORE
        if term in title:
            score += TITLE_MATCH_SCORE
    return score


def join_tags(tags: Optional[List[str]]) -> str:
    """
    Serialize tags for the tag index.

    Raises:
        RAGValidationError: If a tag contains the separator
    """
    tags = tags or []
    invalid = [tag for tag in tags if TAG_SEPARATOR in tag]
    if invalid:
        raise RAGValidationError(
            f"Tags must not contain '{TAG_SEPARATOR}'",
            context={"invalid_tags": invalid},
        )
    return TAG_SEPARATOR.join(tags)


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: Any) -> datetime:
    return datetime.fromtimestamp(float(_as_str(value) or 0), tz=timezone.utc)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class VectorStore:
    """
    Redis-based vector store for document chunks.
    Supports CRUD, vector similarity search, hybrid search and filtered listing.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        index_name: str = "vector_search_index",
        key_prefix: str = "rag:documents:",
        embed_dim: int = 1024,
        client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize vector store.

        Args:
            redis_url: Redis Stack connection URL
            index_name: Name of the search index
            key_prefix: Prefix of the document hashes
            embed_dim: Embedding dimensionality enforced on insert
            client: Existing Redis client (created lazily otherwise)
        """
        self.redis_url = redis_url
        self.index_name = index_name
        self.key_prefix = key_prefix
        self.embed_dim = embed_dim
        self.client = client

        logger.info(
            "vectorstore.initialized",
            index_name=self.index_name,
            embed_dim=self.embed_dim,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the client if needed and verify it answers PING"""
        if self.client is None:
            self.client = aioredis.from_url(
                self.redis_url,
                decode_responses=False,  # Keep binary for vectors
                socket_timeout=5,
                socket_connect_timeout=5,
            )

        try:
            await self.client.ping()
        except RedisError as e:
            logger.error("vectorstore.connection_failed", error=str(e))
            raise DatabaseError(
                "Failed to connect to Redis",
                context={"original_error": str(e)},
            ) from e

    async def close(self) -> None:
        """Close Redis connection"""
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            logger.info("vectorstore.closed")

    def index_definition(self) -> Dict[str, Any]:
        """Expected shape of the vector search index"""
        return {
            "name": self.index_name,
            "prefix": self.key_prefix,
            "type": "HASH",
            "fields": [
                {"type": "vector", "path": "embedding", "algorithm": "HNSW",
                 "num_dimensions": self.embed_dim, "similarity": "cosine"},
                {"type": "tag", "path": "user_id", "casesensitive": True},
                {"type": "tag", "path": "companion_id", "casesensitive": True},
                {"type": "tag", "path": "content_type"},
                {"type": "tag", "path": "tags", "separator": TAG_SEPARATOR, "casesensitive": True},
                {"type": "tag", "path": "chunk_id", "casesensitive": True},
                {"type": "text", "path": "title"},
                {"type": "text", "path": "content"},
                {"type": "numeric", "path": "created_at"},
                {"type": "numeric", "path": "updated_at", "sortable": True},
                {"type": "numeric", "path": "chunk_index"},
            ],
        }

    async def ensure_index(self) -> bool:
        """
        Create the RediSearch index if it does not exist.

        Returns:
            True if the index was created, False if it already existed
        """
        async with self._database_errors("create vector search index"):
            try:
                await self.client.ft(self.index_name).info()
                logger.debug("vectorstore.index_exists", index_name=self.index_name)
                return False
            except ResponseError:
                pass

            schema = (
                VectorField(
                    "embedding",
                    "HNSW",
                    {
                        "TYPE": "FLOAT32",
                        "DIM": self.embed_dim,
                        "DISTANCE_METRIC": "COSINE",
                    },
                ),
                TagField("user_id", case_sensitive=True),
                TagField("companion_id", case_sensitive=True),
                TagField("content_type"),
                TagField("tags", separator=TAG_SEPARATOR, case_sensitive=True),
                TagField("chunk_id", case_sensitive=True),
                TextField("title", weight=2.0),
                TextField("content"),
                NumericField("created_at"),
                NumericField("updated_at", sortable=True),
                NumericField("chunk_index"),
            )

            definition = IndexDefinition(
                prefix=[self.key_prefix],
                index_type=IndexType.HASH,
            )

            await self.client.ft(self.index_name).create_index(
                fields=schema,
                definition=definition,
            )

        logger.info("vectorstore.index_created", index_name=self.index_name)
        return True

    @asynccontextmanager
    async def _database_errors(self, action: str, **context):
        """Connect first; wrap anything but domain errors as DATABASE_ERROR"""
        try:
            await self.connect()
            yield
        except RAGError:
            raise
        except Exception as e:
            logger.error(
                "vectorstore.operation_failed",
                action=action,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise DatabaseError(
                f"Failed to {action}",
                context={**context, "original_error": str(e)},
            ) from e

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def insert_document(self, document: DocumentRecord) -> str:
        """
        Insert a single chunk.

        Args:
            document: Record to store; timestamps are overwritten with now

        Returns:
            Generated document ID
        """
        ids = await self.insert_documents([document])
        return ids[0]

    async def insert_documents(self, documents: List[DocumentRecord]) -> List[str]:
        """
        Insert chunks in one MULTI/EXEC transaction (all or nothing).

        Args:
            documents: Records to store; timestamps are overwritten with now

        Returns:
            Generated document IDs in input order
        """
        if not documents:
            return []

        for document in documents:
            self._check_embedding(document.embedding)
            join_tags(document.metadata.tags)

        now = utcnow()
        ids = [uuid.uuid4().hex for _ in documents]

        async with self._database_errors("insert documents", count=len(documents)):
            pipeline = self.client.pipeline(transaction=True)
            for document_id, document in zip(ids, documents):
                pipeline.hset(self._key(document_id), mapping=self._to_mapping(document, now))
            await pipeline.execute()

        logger.info(
            "vectorstore.documents_inserted",
            num_documents=len(ids),
            index_name=self.index_name,
        )

        return ids

    async def update_document(
        self,
        params: UpdateDocumentParams,
        embedding: Optional[List[float]] = None,
    ) -> None:
        """
        Partially update a chunk; only provided fields change.

        Args:
            params: Document ID and the fields to change
            embedding: Replacement embedding, when content was re-embedded

        Raises:
            DocumentNotFoundError: If no document has this ID
        """
        updates: Dict[str, Any] = {"updated_at": utcnow().timestamp()}

        if params.title is not None:
            updates["title"] = params.title
        if params.content is not None:
            updates["content"] = params.content
        if params.tags is not None:
            updates["tags"] = join_tags(params.tags)
        if params.summary is not None:
            updates["summary"] = params.summary
        if embedding is not None:
            self._check_embedding(embedding)
            updates["embedding"] = self._embedding_to_bytes(embedding)

        key = self._key(params.document_id)
        async with self._database_errors("update document", document_id=params.document_id):
            args = [item for pair in updates.items() for item in pair]
            updated = await self.client.eval(UPDATE_IF_EXISTS_SCRIPT, 1, key, *args)
            if not updated:
                raise DocumentNotFoundError(document_id=params.document_id)

        logger.info(
            "vectorstore.document_updated",
            document_id=params.document_id,
            fields=sorted(updates),
        )

    async def delete_document(self, document_id: str) -> None:
        """
        Delete a chunk.

        Raises:
            DocumentNotFoundError: If nothing was deleted
        """
        async with self._database_errors("delete document", document_id=document_id):
            deleted = await self.client.delete(self._key(document_id))
            if not deleted:
                raise DocumentNotFoundError(document_id=document_id)

        logger.info("vectorstore.document_deleted", document_id=document_id)

    async def delete_documents_by_user(self, user_id: str) -> int:
        """
        Delete every chunk owned by a user.

        Returns:
            Number of chunks deleted (0 is not an error)
        """
        query_string = translate_clauses(build_filter_clauses(ListFilters(user_id=user_id)))
        total_deleted = 0

        async with self._database_errors("delete user documents", user_id=user_id):
            while True:
                query = Query(query_string).no_content().paging(0, DELETE_BATCH_SIZE).dialect(2)
                results = await self.client.ft(self.index_name).search(query)
                keys = [doc.id for doc in results.docs]
                if not keys:
                    break

                deleted = await self.client.delete(*keys)
                total_deleted += deleted
                if not deleted:
                    break

        logger.info(
            "vectorstore.user_documents_deleted",
            user_id=user_id,
            num_deleted=total_deleted,
        )

        return total_deleted

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        """
        Fetch one chunk including its embedding.

        Returns:
            The record, or None if it does not exist
        """
        async with self._database_errors("get document", document_id=document_id):
            raw = await self.client.hgetall(self._key(document_id))

        if not raw:
            return None

        fields = {_as_str(k): v for k, v in raw.items()}
        embedding_bytes = fields.pop("embedding", b"")
        return self._to_record(
            document_id,
            fields,
            embedding=self._bytes_to_embedding(embedding_bytes),
        )

    async def list_documents(
        self,
        filters: ListFilters,
        limit: int = 50,
        skip: int = 0,
    ) -> Tuple[List[DocumentRecord], int]:
        """
        List chunks matching filters, newest update first.

        Args:
            filters: Listing filters
            limit: Page size
            skip: Offset

        Returns:
            (documents without embeddings, total count of all matches)
        """
        query = (
            Query(translate_clauses(build_filter_clauses(filters)))
            .sort_by("updated_at", asc=False)
            .paging(skip, limit)
            .return_fields(*RECORD_FIELDS)
            .dialect(2)
        )

        async with self._database_errors("list documents"):
            results = await self.client.ft(self.index_name).search(query)

        documents = [self._doc_to_record(doc) for doc in results.docs]
        return documents, int(results.total)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def vector_search(
        self,
        query_embedding: List[float],
        filters: SearchFilters,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Approximate nearest-neighbour search within the filtered set.

        Args:
            query_embedding: Query vector
            filters: Scope of the search
            options: Limit, score threshold and content inclusion

        Returns:
            Results ordered by descending score, embeddings stripped
        """
        options = options or SearchOptions()
        limit = options.limit
        num_candidates = max(limit * 10, 100)

        filter_query = translate_clauses(build_filter_clauses(filters))
        if filter_query != "*":
            filter_query = f"({filter_query})"

        return_fields = [f for f in RECORD_FIELDS if options.include_content or f != "content"]
        query = (
            Query(f"{filter_query}=>[KNN $K @embedding $vec EF_RUNTIME $EF AS vector_distance]")
            .sort_by("vector_distance")
            .paging(0, limit)
            .return_fields(*return_fields, "vector_distance")
            .dialect(2)
        )
        params = {
            "vec": self._embedding_to_bytes(query_embedding),
            "K": limit,
            "EF": num_candidates,
        }

        async with self._database_errors("run vector search"):
            results = await self.client.ft(self.index_name).search(query, query_params=params)

        search_results = []
        for doc in results.docs:
            # Cosine distance is in [0, 2]; report similarity in [0, 1]
            score = 1.0 - float(_as_str(getattr(doc, "vector_distance", 2.0))) / 2.0
            if options.threshold > 0 and score < options.threshold:
                continue

            record = self._doc_to_record(doc)
            search_results.append(SearchResult(
                document=record,
                score=score,
                highlights=generate_highlights(record.content),
            ))

        logger.debug(
            "vectorstore.search_complete",
            num_results=len(search_results),
            num_candidates=num_candidates,
            limit=limit,
        )

        return search_results

    async def hybrid_search(
        self,
        query_embedding: List[float],
        text_query: str,
        filters: SearchFilters,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Vector search re-ranked by lexical matches.

        The candidate pool is twice the limit. Each result is rescored as
        0.7 * vector score + 0.3 * lexical score.

        Args:
            query_embedding: Query vector
            text_query: Terms to match in content and title
            filters: Scope of the search
            options: Limit, score threshold and content inclusion

        Returns:
            Top results by combined score
        """
        options = options or SearchOptions()
        limit = options.limit

        vector_results = await self.vector_search(
            query_embedding,
            filters,
            options.model_copy(update={"limit": limit * 2}),
        )

        if not text_query.strip():
            return vector_results[:limit]

        rescored = [
            result.model_copy(update={
                "score": VECTOR_WEIGHT * result.score + TEXT_WEIGHT * lexical_score(
                    text_query, result.document.title, result.document.content,
                ),
            })
            for result in vector_results
        ]
        rescored.sort(key=lambda r: r.score, reverse=True)

        logger.debug(
            "vectorstore.hybrid_search_complete",
            num_candidates=len(vector_results),
            limit=limit,
        )

        return rescored[:limit]

    async def get_collection_stats(self) -> Dict[str, Any]:
        """
        Index statistics.

        Returns:
            document_count, storage_size (bytes) and avg_document_size (bytes)
        """
        async with self._database_errors("get collection stats"):
            info = await self.client.ft(self.index_name).info()

        info = {_as_str(k): v for k, v in info.items()}
        document_count = int(float(_as_str(info.get("num_docs", 0)) or 0))
        size_mb = sum(
            float(_as_str(info.get(key, 0)) or 0)
            for key in ("doc_table_size_mb", "key_table_size_mb", "inverted_sz_mb", "vector_index_sz_mb")
        )
        storage_size = int(size_mb * 1024 * 1024)

        return {
            "document_count": document_count,
            "storage_size": storage_size,
            "avg_document_size": storage_size / document_count if document_count else 0,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _key(self, document_id: str) -> str:
        return f"{self.key_prefix}{document_id}"

    def _check_embedding(self, embedding: List[float]) -> None:
        if len(embedding) != self.embed_dim:
            raise RAGValidationError(
                f"Embedding must have {self.embed_dim} dimensions",
                context={"received": len(embedding)},
            )

    def _to_mapping(self, document: DocumentRecord, now: datetime) -> Dict[str, Any]:
        metadata = document.metadata
        return {
            "user_id": document.user_id,
            "companion_id": document.companion_id or "",
            "title": document.title,
            "content": document.content,
            "content_type": document.content_type.value,
            "source": metadata.source or "",
            "tags": join_tags(metadata.tags),
            "summary": metadata.summary or "",
            "created_at": now.timestamp(),
            "updated_at": now.timestamp(),
            "chunk_id": document.chunk_id or "",
            "chunk_index": document.chunk_index or 0,
            "embedding": self._embedding_to_bytes(document.embedding),
        }

    def _doc_to_record(self, doc: Any) -> DocumentRecord:
        """Convert a RediSearch result document"""
        document_id = _as_str(doc.id)
        if document_id.startswith(self.key_prefix):
            document_id = document_id[len(self.key_prefix):]
        fields = {name: getattr(doc, name, None) for name in RECORD_FIELDS}
        return self._to_record(document_id, fields)

    def _to_record(
        self,
        document_id: str,
        fields: Dict[str, Any],
        embedding: Optional[List[float]] = None,
    ) -> DocumentRecord:
        tags = _as_str(fields.get("tags"))
        chunk_index = _as_str(fields.get("chunk_index"))
        return DocumentRecord(
            id=document_id,
            user_id=_as_str(fields.get("user_id")),
            companion_id=_as_str(fields.get("companion_id")) or None,
            title=_as_str(fields.get("title")),
            content=_as_str(fields.get("content")),
            content_type=ContentType(_as_str(fields.get("content_type")) or ContentType.DOCUMENT.value),
            metadata=DocumentMetadata(
                created_at=_from_epoch(fields.get("created_at")),
                updated_at=_from_epoch(fields.get("updated_at")),
                source=_as_str(fields.get("source")) or None,
                tags=tags.split(TAG_SEPARATOR) if tags else None,
                summary=_as_str(fields.get("summary")) or None,
            ),
            embedding=embedding or [],
            chunk_id=_as_str(fields.get("chunk_id")) or None,
            chunk_index=int(float(chunk_index)) if chunk_index else None,
        )

    def _embedding_to_bytes(self, embedding: List[float]) -> bytes:
        """Convert embedding list to FLOAT32 bytes for Redis"""
        return struct.pack(f"{len(embedding)}f", *embedding)

    def _bytes_to_embedding(self, data: bytes) -> List[float]:
        """Convert bytes back to embedding list"""
        num_floats = len(data) // 4
        return list(struct.unpack(f"{num_floats}f", data))

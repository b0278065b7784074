"""
Data model for the RAG core
Stored chunks, transient chunks, search filters/options and responses
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time"""
    return datetime.now(timezone.utc)


class ContentType(str, Enum):
    """Kinds of content a user can store"""
    MEMORY = "memory"
    NOTE = "note"
    CONVERSATION = "conversation"
    DOCUMENT = "document"


class DocumentMetadata(BaseModel):
    """Timestamps and optional descriptive fields of a stored chunk"""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None


class DocumentRecord(BaseModel):
    """A single stored, embedded chunk"""
    id: Optional[str] = None
    user_id: str
    companion_id: Optional[str] = None
    title: str
    content: str = ""
    content_type: ContentType
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    embedding: List[float] = Field(default_factory=list)
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None


class ChunkMetadata(BaseModel):
    """Metadata inherited by every chunk of one document"""
    title: str
    content_type: ContentType
    source: Optional[str] = None


class DocumentChunk(BaseModel):
    """Segmenter output, consumed by the embedding step"""
    text: str
    chunk_id: str
    chunk_index: int
    metadata: ChunkMetadata


class DateRange(BaseModel):
    """Inclusive creation-time window"""
    start: datetime
    end: datetime


class ListFilters(BaseModel):
    """Filters for plain listing; user scope is optional for admin use"""
    user_id: Optional[str] = None
    companion_id: Optional[str] = None
    content_type: Optional[Union[ContentType, List[ContentType]]] = None
    tags: Optional[List[str]] = None
    date_range: Optional[DateRange] = None


class SearchFilters(ListFilters):
    """Query-time restriction; every search is scoped to one user"""
    user_id: str


class SearchOptions(BaseModel):
    limit: int = Field(default=10, ge=1)
    threshold: float = 0.7
    include_metadata: bool = True
    include_content: bool = True


class SearchResult(BaseModel):
    """A record (embedding stripped) with its similarity score"""
    document: DocumentRecord
    score: float
    highlights: List[str] = Field(default_factory=list)


class SemanticSearchParams(BaseModel):
    query: str
    filters: SearchFilters
    options: SearchOptions = Field(default_factory=SearchOptions)


class SemanticSearchResponse(BaseModel):
    results: List[SearchResult]
    total_count: int
    query_embedding: Optional[List[float]] = None


class AddDocumentParams(BaseModel):
    user_id: str
    companion_id: Optional[str] = None
    title: str
    content: str
    content_type: ContentType
    source: Optional[str] = None
    tags: Optional[List[str]] = None


class UpdateDocumentParams(BaseModel):
    document_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None


class ChunkingOptions(BaseModel):
    max_chunk_size: int = 1000
    overlap_size: int = 200
    preserve_sentences: bool = True


class RAGContext(BaseModel):
    """Per-turn retrieval context, never persisted"""
    relevant_documents: List[SearchResult]
    query: str
    max_context_length: Optional[int] = None


class EmbeddingUsage(BaseModel):
    total_tokens: int = 0


class EmbeddingResponse(BaseModel):
    embeddings: List[List[float]]
    model: str
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)


class EmbeddingServiceHealth(BaseModel):
    status: str
    model: Optional[str] = None
    version: Optional[str] = None
    uptime: Optional[float] = None

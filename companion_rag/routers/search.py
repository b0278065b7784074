"""
Retrieval endpoints
Semantic/hybrid search and conversational context building
"""

from typing import List, Literal, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
import structlog

from companion_rag.dependencies import get_current_user_id, get_rag_engine
from companion_rag.rag.models import (
    ContentType,
    SearchFilters,
    SearchOptions,
    SemanticSearchParams,
)
from companion_rag.rag.retriever import RAGEngine

logger = structlog.get_logger()
router = APIRouter(prefix="/api/rag", tags=["search"])


class SearchRequest(BaseModel):
    """Semantic or hybrid search over the user's documents"""
    query: str = Field(..., min_length=1, max_length=2000)
    text_query: Optional[str] = None
    companion_id: Optional[str] = None
    content_type: Optional[Union[ContentType, List[ContentType]]] = None
    tags: Optional[List[str]] = None
    limit: int = Field(10, ge=1, le=100)
    threshold: float = Field(0.7, ge=0, le=1)
    include_content: bool = True
    search_type: Literal["semantic", "hybrid"] = "semantic"

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Query cannot be empty")
        return v.strip()


class ContextRequest(BaseModel):
    """Context for one conversational turn"""
    query: str = Field(..., min_length=1, max_length=2000)
    companion_id: Optional[str] = None
    max_documents: int = Field(5, ge=1, le=20)
    max_context_length: int = Field(4000, ge=1, le=32000)


@router.post("/search")
async def search(
    request: SearchRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """
    Search the user's knowledge base.
    Hybrid re-ranking applies only when search_type is hybrid and text_query is set.
    """
    params = SemanticSearchParams(
        query=request.query,
        filters=SearchFilters(
            user_id=user_id,
            companion_id=request.companion_id,
            content_type=request.content_type,
            tags=request.tags,
        ),
        options=SearchOptions(
            limit=request.limit,
            threshold=request.threshold,
            include_content=request.include_content,
        ),
    )

    if request.search_type == "hybrid" and request.text_query:
        response = await engine.hybrid_search(request.query, request.text_query, params)
    else:
        response = await engine.semantic_search(params)

    logger.info(
        "search.complete",
        user_id=user_id,
        search_type=request.search_type,
        num_results=len(response.results),
    )

    return {"success": True, **response.model_dump(mode="json", exclude={"query_embedding"})}


@router.post("/context")
async def build_context(
    request: ContextRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """Relevant documents for a conversational turn, within a character budget"""
    context = await engine.build_rag_context(
        request.query,
        user_id,
        request.companion_id,
        request.max_documents,
        request.max_context_length,
    )

    return {"success": True, "context": context.model_dump(mode="json")}

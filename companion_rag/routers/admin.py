"""
Admin endpoints for system management
3 endpoints: collection stats, user data deletion, RAG initialization
"""

from fastapi import APIRouter, Depends
import structlog

from companion_rag.config import settings
from companion_rag.dependencies import get_rag_engine, verify_admin
from companion_rag.rag.retriever import RAGEngine

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_admin)])


@router.get("/stats")
async def get_system_stats(engine: RAGEngine = Depends(get_rag_engine)):
    """
    Vector store statistics.
    Requires admin token in X-Admin-Token header.
    """
    logger.info("admin.stats.requested")
    return await engine.vector_store.get_collection_stats()


@router.delete("/users/{user_id}/documents")
async def delete_user_documents(user_id: str, engine: RAGEngine = Depends(get_rag_engine)):
    """
    Delete every document a user stored (right to erasure).
    """
    deleted = await engine.delete_user_documents(user_id)

    logger.warning(
        "admin.user_documents_deleted",
        user_id=user_id,
        documents_deleted=deleted,
    )

    return {"status": "deleted", "user_id": user_id, "documents_deleted": deleted}


@router.post("/initialize")
async def initialize_rag(engine: RAGEngine = Depends(get_rag_engine)):
    """
    Wait for the embedding service and report the expected vector index.
    The index is created only when RAG_AUTO_CREATE_INDEX is enabled.
    """
    result = await engine.initialize_rag(create_index=settings.RAG_AUTO_CREATE_INDEX)
    logger.info("admin.rag_initialized", index_created=result["index_created"])
    return result

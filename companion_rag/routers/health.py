"""
Health endpoints for the RAG service and its dependencies
4 endpoints: RAG health, detailed, ready, live
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Response
from pydantic import BaseModel
import structlog
import psutil

from companion_rag.dependencies import get_rag_engine
from companion_rag.rag.retriever import RAGEngine

logger = structlog.get_logger()
router = APIRouter(prefix="/health", tags=["health"])

# Track startup time
_startup_time = time.time()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DetailedHealthResponse(BaseModel):
    """Per-component status plus host resources"""
    status: str
    timestamp: str
    uptime_seconds: float
    components: Dict[str, Any]
    system: Dict[str, Any]


@router.get("")
async def health_rag(
    response: Response,
    x_user_id: Optional[str] = Header(None),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """
    RAG system health.
    Returns 200 when the embedding service is healthy, 503 otherwise.
    Includes the caller's document statistics when X-User-Id is sent.
    """
    health = await engine.health_check()

    if x_user_id:
        try:
            health["user_stats"] = await engine.get_stats(x_user_id)
        except Exception as e:
            logger.warning("health.user_stats.fail", error=str(e))

    if health["status"] != "healthy":
        response.status_code = 503

    return health


@router.get("/detailed", response_model=DetailedHealthResponse)
async def health_detailed(engine: RAGEngine = Depends(get_rag_engine)):
    """
    Embedding service, vector store and host resources in one report.
    Degraded when any dependency fails or the host is above 90% on cpu, memory or disk.
    """
    components = {}
    overall_status = "healthy"

    # 1. Embedding service check
    try:
        healthy = await engine.embedder.validate_connection()
        components["embedding_service"] = {
            "status": "healthy" if healthy else "unhealthy",
            "base_url": engine.embedder.base_url,
            "model": engine.embedder.default_model,
        }
        if not healthy:
            overall_status = "degraded"
    except Exception as e:
        components["embedding_service"] = {
            "status": "unhealthy",
            "error": str(e),
        }
        overall_status = "degraded"

    # 2. Redis vector store check
    try:
        stats = await engine.vector_store.get_collection_stats()
        components["vector_store"] = {
            "status": "healthy",
            "index_name": engine.vector_store.index_name,
            **stats,
        }
    except Exception as e:
        components["vector_store"] = {
            "status": "unhealthy",
            "error": str(e),
        }
        overall_status = "degraded"

    # 3. System resources
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")

        system_info = {
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "memory_available_mb": memory.available / (1024 * 1024),
            "disk_percent": disk.percent,
            "disk_free_gb": disk.free / (1024 * 1024 * 1024),
        }

        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            overall_status = "degraded"

    except Exception as e:
        system_info = {"error": str(e)}

    return {
        "status": overall_status,
        "timestamp": _now(),
        "uptime_seconds": time.time() - _startup_time,
        "components": components,
        "system": system_info,
    }


@router.get("/ready")
async def health_ready(response: Response, engine: RAGEngine = Depends(get_rag_engine)):
    """
    Readiness: Redis answers PING and the embedding service reports healthy.
    """
    try:
        # Vector store must be reachable
        await engine.vector_store.connect()

        if not await engine.validate_embedding_service():
            response.status_code = 503
            return {"status": "not_ready", "reason": "embedding_service_unavailable"}

        return {"status": "ready"}

    except Exception as e:
        response.status_code = 503
        logger.error("health.ready.fail", error=str(e))
        return {"status": "not_ready", "reason": str(e)}


@router.get("/live")
async def health_live():
    """
    Liveness: the process answers; dependencies are not checked.
    """
    return {
        "status": "alive",
        "timestamp": _now(),
        "uptime_seconds": time.time() - _startup_time,
    }

"""API routers package"""

from companion_rag.routers.health import router as health_router
from companion_rag.routers.documents import router as documents_router
from companion_rag.routers.search import router as search_router
from companion_rag.routers.admin import router as admin_router

__all__ = ["health_router", "documents_router", "search_router", "admin_router"]

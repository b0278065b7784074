"""
FastAPI dependencies shared by the routers
"""

import secrets

from fastapi import Header, Request
import structlog

from companion_rag.config import settings
from companion_rag.models.exceptions import InsufficientPermissionsException
from companion_rag.rag.retriever import RAGEngine

logger = structlog.get_logger()


def get_rag_engine(request: Request) -> RAGEngine:
    """Engine created in the application lifespan"""
    return request.app.state.rag_engine


async def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    """
    Authenticated caller identity.
    Set by the authenticating front end; the API does not issue sessions.
    """
    return x_user_id


async def verify_admin(x_admin_token: str = Header(...)) -> None:
    """
    Verify admin token from header using constant-time comparison.

    Args:
        x_admin_token: Admin token from X-Admin-Token header

    Raises:
        InsufficientPermissionsException: If token is invalid
    """
    if not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        logger.warning("admin.unauthorized_access_attempt")
        raise InsufficientPermissionsException(
            message="Invalid admin token",
            required_permission="admin",
        )

"""
Knowledge base document endpoints
Add, upload, list, read, update, delete and find similar documents
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
import structlog

from companion_rag.dependencies import get_current_user_id, get_rag_engine
from companion_rag.models.exceptions import (
    DocumentNotFoundError,
    InsufficientPermissionsException,
)
from companion_rag.rag.ingest import ingest_files
from companion_rag.rag.models import (
    AddDocumentParams,
    ContentType,
    DocumentRecord,
    UpdateDocumentParams,
)
from companion_rag.rag.retriever import RAGEngine

logger = structlog.get_logger()
router = APIRouter(prefix="/api/rag", tags=["documents"])


class AddDocumentRequest(BaseModel):
    """New document for the knowledge base"""
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1)
    content_type: ContentType
    companion_id: Optional[str] = None
    source: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v


class UploadedFile(BaseModel):
    """Base64-encoded file from the document uploader"""
    name: str = Field(..., min_length=1)
    type: str = Field(..., description="MIME type")
    base64_data: str = Field(..., min_length=1)


class UploadRequest(BaseModel):
    files: List[UploadedFile] = Field(..., min_length=1)
    companion_id: Optional[str] = None
    content_type: ContentType = ContentType.DOCUMENT
    tags: Optional[List[str]] = None


class UpdateDocumentRequest(BaseModel):
    """Fields to change; omitted fields stay as they are"""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    summary: Optional[str] = None


class TagSearchRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1)
    companion_id: Optional[str] = None
    limit: int = Field(20, ge=1, le=100)


def _public(document: DocumentRecord) -> dict:
    """Document payload without the embedding vector"""
    return document.model_dump(mode="json", exclude={"embedding"})


async def _get_owned_document(engine: RAGEngine, document_id: str, user_id: str) -> DocumentRecord:
    document = await engine.get_document_by_id(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id=document_id)
    if document.user_id != user_id:
        logger.warning("documents.access_denied", document_id=document_id, user_id=user_id)
        raise InsufficientPermissionsException(
            message="Access denied",
            context={"document_id": document_id},
        )
    return document


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def add_document(
    request: AddDocumentRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """
    Add a document to the user's knowledge base.
    Content is chunked and embedded; one ID is returned per chunk.
    """
    document_ids = await engine.add_document(AddDocumentParams(
        user_id=user_id,
        **request.model_dump(),
    ))

    return {
        "success": True,
        "document_ids": document_ids,
        "message": f"Document added successfully with {len(document_ids)} chunks",
    }


@router.post("/documents/upload", status_code=status.HTTP_201_CREATED)
async def upload_documents(
    request: UploadRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """
    Upload PDF or text files (base64) into the knowledge base.
    Max 5MB per file, 20MB per upload.
    """
    results = await ingest_files(
        engine,
        [f.model_dump() for f in request.files],
        user_id=user_id,
        companion_id=request.companion_id,
        content_type=request.content_type,
        tags=request.tags,
    )

    return {"success": True, "files": results}


@router.get("/documents")
async def list_documents(
    content_type: Optional[ContentType] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """List the user's documents, most recently updated first"""
    documents, total = await engine.get_user_documents(user_id, content_type, limit, skip)

    return {
        "success": True,
        "documents": [_public(d) for d in documents],
        "total": total,
    }


@router.get("/documents/recent")
async def recent_documents(
    companion_id: Optional[str] = None,
    days: int = Query(7, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """Documents created in the last `days` days"""
    documents = await engine.get_recent_documents(user_id, companion_id, days, limit)
    return {"success": True, "documents": [_public(d) for d in documents]}


@router.post("/documents/by-tags")
async def documents_by_tags(
    request: TagSearchRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """Documents carrying any of the given tags"""
    documents = await engine.search_by_tags(
        request.tags, user_id, request.companion_id, request.limit,
    )
    return {"success": True, "documents": [_public(d) for d in documents]}


@router.get("/documents/{document_id}")
async def get_document(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    document = await _get_owned_document(engine, document_id, user_id)
    return {"success": True, "document": _public(document)}


@router.put("/documents/{document_id}")
async def update_document(
    document_id: str,
    request: UpdateDocumentRequest,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    await _get_owned_document(engine, document_id, user_id)

    await engine.update_document(UpdateDocumentParams(
        document_id=document_id,
        **request.model_dump(),
    ))

    return {"success": True, "message": "Document updated successfully"}


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    await _get_owned_document(engine, document_id, user_id)
    await engine.delete_document(document_id)

    logger.info("documents.deleted", document_id=document_id, user_id=user_id)

    return {"success": True, "message": "Document deleted successfully"}


@router.get("/similar/{document_id}")
async def similar_documents(
    document_id: str,
    limit: int = Query(5, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    engine: RAGEngine = Depends(get_rag_engine),
):
    """Documents similar to one of the user's documents"""
    await _get_owned_document(engine, document_id, user_id)

    response = await engine.search_similar_documents(document_id, limit)
    return {"success": True, **response.model_dump(mode="json")}

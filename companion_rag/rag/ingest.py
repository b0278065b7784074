"""
Document ingestion from uploaded files
Extracts text from PDF and plain-text uploads and stores it through the engine
"""

import base64
import binascii
import io
from typing import Any, Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError
import structlog

from companion_rag.models.exceptions import RAGValidationError
from .models import AddDocumentParams, ContentType
from .retriever import RAGEngine
from .splitter import extract_keywords

logger = structlog.get_logger()

MAX_FILE_SIZE = 5 * 1024 * 1024
MAX_TOTAL_SIZE = 20 * 1024 * 1024

PDF_TYPES = {"application/pdf"}
TEXT_TYPES = {"text/plain", "text/markdown"}
AUTO_TAG_COUNT = 5


def decode_upload(name: str, base64_data: str) -> bytes:
    """
    Decode a base64 upload payload.

    Raises:
        RAGValidationError: If the payload is not valid base64 or too large
    """
    try:
        content = base64.b64decode(base64_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise RAGValidationError(
            f'File "{name}" is not valid base64',
            context={"file": name},
        ) from e

    if len(content) > MAX_FILE_SIZE:
        raise RAGValidationError(
            f'File "{name}" is too large. Maximum size is 5MB.',
            context={"file": name, "size": len(content)},
        )

    return content


def extract_text(name: str, mime_type: str, content: bytes) -> str:
    """
    Extract text from an uploaded file.

    Args:
        name: File name (for messages)
        mime_type: Declared MIME type
        content: Raw file bytes

    Returns:
        Extracted text

    Raises:
        RAGValidationError: If the type is unsupported or nothing can be read
    """
    if mime_type in PDF_TYPES:
        text = _extract_text_from_pdf(name, content)
    elif mime_type in TEXT_TYPES:
        text = content.decode("utf-8", errors="replace")
    else:
        raise RAGValidationError(
            f'File type "{mime_type}" is not supported. Supported types: PDF and text files.',
            context={"file": name, "type": mime_type},
        )

    if not text.strip():
        raise RAGValidationError(
            f'No text could be extracted from "{name}"',
            context={"file": name},
        )

    return text


def _extract_text_from_pdf(name: str, pdf_content: bytes) -> str:
    """
    Extract text from PDF bytes.

    Args:
        name: File name (for messages)
        pdf_content: PDF file content

    Returns:
        Page texts joined by blank lines
    """
    try:
        reader = PdfReader(io.BytesIO(pdf_content))
    except PdfReadError as e:
        raise RAGValidationError(
            f'File "{name}" is not a readable PDF',
            context={"file": name, "error": str(e)},
        ) from e

    text_parts = []

    for page_num, page in enumerate(reader.pages, start=1):
        try:
            page_text = page.extract_text()
        except Exception as e:
            logger.warning(
                "ingest.page_extraction_failed",
                file=name,
                page_num=page_num,
                error=str(e),
            )
            continue
        if page_text:
            text_parts.append(page_text)

    full_text = "\n\n".join(text_parts)

    logger.debug(
        "ingest.text_extracted",
        file=name,
        num_pages=len(reader.pages),
        text_length=len(full_text),
    )

    return full_text


async def ingest_files(
    engine: RAGEngine,
    files: List[Dict[str, str]],
    user_id: str,
    companion_id: Optional[str] = None,
    content_type: ContentType = ContentType.DOCUMENT,
    tags: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Ingest uploaded files into the knowledge base.

    All files are decoded and extracted before anything is stored, so a bad
    file rejects the whole upload.

    Args:
        engine: Retrieval engine
        files: Dicts with name, type and base64_data
        user_id: Owner
        companion_id: Optional companion scope
        content_type: Content type of the stored documents
        tags: Tags applied to every file (default: top keywords of each file)

    Returns:
        One dict per file with its name, chunk IDs and text length
    """
    if not files:
        raise RAGValidationError("No files provided")

    decoded = [(f["name"], f["type"], decode_upload(f["name"], f["base64_data"])) for f in files]

    total_size = sum(len(content) for _, _, content in decoded)
    if total_size > MAX_TOTAL_SIZE:
        raise RAGValidationError(
            "Total file size exceeds 20MB limit.",
            context={"total_size": total_size},
        )

    texts = [(name, extract_text(name, mime_type, content)) for name, mime_type, content in decoded]

    results = []
    for name, text in texts:
        document_ids = await engine.add_document(AddDocumentParams(
            user_id=user_id,
            companion_id=companion_id,
            title=name,
            content=text,
            content_type=content_type,
            source=name,
            tags=tags if tags is not None else extract_keywords(text, AUTO_TAG_COUNT),
        ))
        results.append({
            "file": name,
            "document_ids": document_ids,
            "total_characters": len(text),
        })

        logger.info(
            "ingest.file_complete",
            file=name,
            user_id=user_id,
            num_chunks=len(document_ids),
        )

    return results

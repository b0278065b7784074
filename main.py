"""
FastAPI main application for the dementia companion knowledge base
Retrieval-Augmented Generation API over Redis Stack and an embedding service
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import structlog
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.trace import TracerProvider

from companion_rag.config import settings
from companion_rag.routers import health_router, documents_router, search_router, admin_router
from companion_rag.models.exceptions import (
    CompanionAPIException,
    InsufficientPermissionsException,
    RAGError,
)
from companion_rag.rag import EmbeddingClient, RAGEngine, RetryPolicy, TextSegmenter, VectorStore
from companion_rag.rag.models import ChunkingOptions

# JSON logs through stdlib logging
logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

ENVIRONMENT = settings.ENVIRONMENT

# Tracing only in production
if ENVIRONMENT == "production":
    trace.set_tracer_provider(TracerProvider())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the embedding client, vector store and engine once per process
    and close their connections on shutdown.
    """
    # Startup
    logger.info(
        "app.startup",
        environment=ENVIRONMENT,
        python_version=os.sys.version.split()[0],
    )

    embedder = EmbeddingClient(
        base_url=settings.EMBEDDING_SERVICE_URL,
        retry_policy=RetryPolicy(
            max_attempts=settings.EMBEDDING_MAX_RETRIES,
            timeout=settings.EMBEDDING_TIMEOUT,
        ),
        default_model=settings.EMBEDDING_MODEL,
    )
    vector_store = VectorStore(
        redis_url=settings.REDIS_VECTOR_URL,
        index_name=settings.RAG_INDEX_NAME,
        key_prefix=settings.RAG_KEY_PREFIX,
        embed_dim=settings.EMBED_DIM,
    )

    # Test vector store connection
    try:
        await vector_store.connect()
        if settings.RAG_AUTO_CREATE_INDEX:
            await vector_store.ensure_index()
        logger.info("app.vector_store.connected")
    except Exception as e:
        logger.error("app.vector_store.connection_failed", error=str(e))
        await embedder.close()
        raise

    app.state.rag_engine = RAGEngine(
        embedder=embedder,
        vector_store=vector_store,
        segmenter=TextSegmenter(),
        chunking=ChunkingOptions(
            max_chunk_size=settings.CHUNK_SIZE,
            overlap_size=settings.CHUNK_OVERLAP,
        ),
    )

    yield

    # Shutdown
    logger.info("app.shutdown")
    await vector_store.close()
    await embedder.close()


app = FastAPI(
    title="Dementia Companion RAG API",
    description="Personal knowledge base with semantic search for conversational companions",
    version="1.0.0",
    docs_url="/docs" if ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if ENVIRONMENT != "production" else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Request start/finish events with duration"""
    start_time = datetime.utcnow()

    logger.info(
        "request.started",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
    )

    response = await call_next(request)

    duration_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)

    logger.info(
        "request.completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )

    return response


def _public_context(exc: CompanionAPIException) -> dict:
    """Error context is internal detail outside development and test"""
    return exc.context if ENVIRONMENT in ("development", "test") else {}


# Exception handlers
@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError):
    """Map RAG error codes to HTTP status"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "exception.rag_error",
        path=request.url.path,
        code=exc.error_code,
        message=exc.message,
        context=exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code.lower(),
            "message": exc.message,
            "context": _public_context(exc),
        },
    )


@app.exception_handler(InsufficientPermissionsException)
async def insufficient_permissions_handler(request: Request, exc: InsufficientPermissionsException):
    """Bad admin token or access to another user's document"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "insufficient_permissions",
            "message": exc.message,
            "required_permission": exc.context.get("required_permission"),
        },
    )


@app.exception_handler(CompanionAPIException)
async def generic_api_handler(request: Request, exc: CompanionAPIException):
    """Non-RAG API errors"""
    logger.error(
        "exception.api_error",
        path=request.url.path,
        message=exc.message,
        context=exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "api_error",
            "message": exc.message,
            "context": _public_context(exc),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request schema errors, without pydantic ctx objects"""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Invalid request data",
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors without non-serializable ctx values"""
    return [
        {key: value for key, value in error.items() if key in ("type", "loc", "msg")}
        for error in exc.errors()
    ]


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Anything unhandled becomes an opaque 500"""
    logger.error(
        "exception.unexpected",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


# Include routers
app.include_router(health_router)
app.include_router(documents_router)
app.include_router(search_router)
app.include_router(admin_router)


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    """Service name, version and where to look next"""
    return {
        "name": "Dementia Companion RAG API",
        "version": "1.0.0",
        "status": "operational",
        "documentation": "/docs" if ENVIRONMENT != "production" else None,
        "health_check": "/health",
        "environment": ENVIRONMENT,
    }


if ENVIRONMENT == "production":
    FastAPIInstrumentor.instrument_app(app)
    logger.info("app.telemetry.enabled")


logger.info(
    "app.configured",
    environment=ENVIRONMENT,
    cors_origins=settings.cors_origin_list,
    log_level=settings.LOG_LEVEL,
)

"""
Service configuration from the environment (or .env)
Redis, embedding service, chunking and admin settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """
    Application settings.

    ADMIN_TOKEN has no default; startup fails without it.
    """

    # Application
    ENVIRONMENT: str = Field(default="production", description="Environment: development, staging, production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Vector store
    REDIS_VECTOR_URL: str = Field(default="redis://localhost:6379/0", description="Redis Stack URL for vector store")
    RAG_INDEX_NAME: str = Field(default="vector_search_index", description="RediSearch index name")
    RAG_KEY_PREFIX: str = Field(default="rag:documents:", description="Key prefix of stored document chunks")
    RAG_AUTO_CREATE_INDEX: bool = Field(default=False, description="Create the vector index on startup (local development)")
    EMBED_DIM: int = Field(default=1024, description="Embedding dimension")

    # Embedding service
    EMBEDDING_SERVICE_URL: str = Field(default="http://localhost:8080", description="Embedding service base URL")
    EMBEDDING_MODEL: str = Field(default="BAAI/bge-m3", description="Embedding model identifier")
    EMBEDDING_TIMEOUT: float = Field(default=30.0, gt=0, description="Per-attempt timeout in seconds")
    EMBEDDING_MAX_RETRIES: int = Field(default=3, ge=1, description="Attempts per embedding request")

    # Chunking
    CHUNK_SIZE: int = Field(default=1000, description="Maximum characters per chunk")
    CHUNK_OVERLAP: int = Field(default=200, description="Characters shared by consecutive chunks")

    # Admin
    ADMIN_TOKEN: str = Field(..., description="Admin API token (required for security)")

    # CORS
    CORS_ORIGINS: str = Field(default="http://localhost:3000", description="Comma-separated CORS origins")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("EMBEDDING_SERVICE_URL")
    @classmethod
    def validate_embedding_url(cls, v: str) -> str:
        """Strip trailing slash so endpoint paths join cleanly"""
        return v.strip().rstrip("/")

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_origins(cls, v: str) -> str:
        """Ensure CORS origins are properly formatted"""
        return v.strip()

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


# Global settings instance
settings = Settings()

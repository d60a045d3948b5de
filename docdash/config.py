# docdash/config.py
from typing import Annotated, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


class Settings(BaseSettings):
    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/docdash")
    auto_create_tables: bool = Field(True)

    # Redis change feed / Celery
    redis_url: str = Field("redis://localhost:6379/0")
    celery_queue: str = Field("processing_queue")
    change_channel_prefix: str = Field("changes")

    # MinIO object storage
    minio_endpoint: str = Field("localhost:9000")
    minio_access_key: Optional[str] = Field(None)
    minio_secret_key: Optional[str] = Field(None)
    minio_secure: bool = Field(False)
    uploads_bucket: str = Field("uploads")
    signed_url_ttl: int = Field(60)  # seconds

    # Uploads
    max_upload_size: int = Field(50 * 1024 * 1024)
    allowed_mime_types: Annotated[List[str], NoDecode] = Field(["application/pdf", "text/csv"])

    # status progression (seconds)
    processing_start_delay: float = Field(1.0)
    processing_duration: float = Field(3.0)

    # Auth: access tokens are issued by the platform, we only verify them
    jwt_secret: str = Field("change_me")
    jwt_audience: str = Field("authenticated")

    # CORS
    cors_origins: Annotated[List[str], NoDecode] = Field(["*"])

    host: str = Field("0.0.0.0")
    port: int = Field(8000)

    # Prometheus
    prometheus_enabled: bool = Field(True)

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ---- field validators (pydantic v2 style) ----
    @field_validator("allowed_mime_types", mode="before")
    def _split_allowed_mime_types(cls, v):
        """
        Allows ALLOWED_MIME_TYPES as comma-separated string in env, or as a list.
        Example: 'application/pdf,text/csv'
        """
        if isinstance(v, str):
            return [s.strip().lower() for s in v.split(",") if s.strip()]
        return v

    @field_validator("cors_origins", mode="before")
    def _split_cors_origins(cls, v):
        """
        Allows CORS_ORIGINS as comma-separated string in env, or as a list.
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("signed_url_ttl", mode="before")
    def _validate_ttl(cls, v):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError("SIGNED_URL_TTL must be a positive integer")
        return v


settings = Settings()

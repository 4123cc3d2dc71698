from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "project-store"
    APP_ENV: str = "local"
    LOG_LEVEL: str = "INFO"

    # In unit tests / CI we avoid long startup retries against external deps.
    ENSURE_EXTERNAL_DEPS_ON_STARTUP: bool = True

    ADMIN_TOKEN: str = "change-me-admin-token"
    AUTH_DISABLED: bool = False

    DATABASE_URL: str

    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # Blob storage: "local" (filesystem, atomic rename) or "minio".
    BLOB_BACKEND: str = "local"
    BLOB_STORE_DIR: str = "store"
    # Calendar days for backup rotation are computed in this timezone.
    BLOB_DAY_TZ: str = "UTC"

    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_BUCKET: str = "projects"
    MINIO_SECURE: bool = False

    # "dummy" only logs outgoing mail.
    MAIL_TRANSPORT: str = "dummy"
    MAIL_SMTP_SERVER: str | None = None
    MAIL_SMTP_PORT: int = 587
    MAIL_SMTP_USER: str | None = None
    MAIL_SMTP_PASSWORD: str | None = None
    MAIL_FROM: str = "postmaster@localhost"
    MAIL_FROM_NAME: str = "Project Cloud"

    DEFAULT_PAGE_SIZE: int = 16

    # Comma-separated list of origins allowed to call the API from a browser.
    ALLOWED_ORIGINS: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    def allowed_origins(self) -> list[str]:
        return [x.strip() for x in self.ALLOWED_ORIGINS.split(",") if x.strip()]


settings = Settings()

from __future__ import annotations

from urllib.parse import quote

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    SERVICE_NAME: str = "service"
    DATABASE_URL: str | None = None
    PG_USER: str | None = None
    PG_PASSWORD: str | None = None
    PG_HOST: str | None = None
    PG_PORT: int = 5432
    PG_DATABASE: str | None = None
    UPLOAD_DIR: str = "uploads"
    UPLOAD_ALLOWED_CONTENT_TYPES: str = "text/csv"
    CORS_ALLOW_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    def resolve_database_url(self) -> str | None:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if not self.PG_HOST or not self.PG_DATABASE:
            return None
        credentials = ""
        if self.PG_USER:
            credentials = quote(self.PG_USER, safe="")
            if self.PG_PASSWORD:
                credentials += ":" + quote(self.PG_PASSWORD, safe="")
            credentials += "@"
        return f"postgresql://{credentials}{self.PG_HOST}:{self.PG_PORT}/{self.PG_DATABASE}"

    @property
    def allowed_content_types(self) -> frozenset[str]:
        return frozenset(item.lower() for item in _split_setting(self.UPLOAD_ALLOWED_CONTENT_TYPES))

    @property
    def cors_origins(self) -> list[str]:
        return _split_setting(self.CORS_ALLOW_ORIGINS)


def _split_setting(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def load_settings(service_name: str) -> ServiceSettings:
    return ServiceSettings(SERVICE_NAME=service_name)

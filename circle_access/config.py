"""
Configuration for the Circle Access Service
===========================================

Environment variables:
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./circles.db)
- DB_CONNECT_TIMEOUT: Connect timeout in seconds for server databases (default: 5)
- SQL_ECHO: Echo SQL statements (default: false)
- ENTITLEMENT_CACHE_ENABLED: Cache entitled-circle sets in-process (default: false)
- JWT_SECRET_KEY: Secret used to sign access tokens
- JWT_ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime (default: 60)
- ALLOW_HEADER_IDENTITY: Accept X-User-Id as caller identity (default: false)
- LOG_LEVEL: Root log level for the API process (default: INFO)
"""

from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./circles.db"
    db_connect_timeout: int = 5
    sql_echo: bool = False

    # Relationship index (cache is per process; keep off with several workers)
    entitlement_cache_enabled: bool = False

    # Identity
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    allow_header_identity: bool = False

    # HTTP
    cors_allow_origins: List[str] = ["http://localhost:3000"]

    # Service info
    log_level: str = "INFO"
    service_version: str = "1.0.0"

    def validate_identity_config(self) -> List[str]:
        """Validate identity configuration, return list of warnings"""
        warnings = []

        if self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default")

        if self.allow_header_identity:
            warnings.append("ALLOW_HEADER_IDENTITY=true: X-User-Id is trusted without a token")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

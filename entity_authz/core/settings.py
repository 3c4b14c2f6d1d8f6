import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Authorization engine settings loaded from environment variables."""

    # Resolution cache
    AUTHZ_CACHE_TTL_SECONDS: float = 5.0  # Backstop for missed invalidations
    AUTHZ_CACHE_MAX_ENTRIES: int = 10000

    # Collaborator budget (repository + hierarchy source)
    AUTHZ_DEPENDENCY_TIMEOUT_SECONDS: float = 0.5
    AUTHZ_MAX_HIERARCHY_DEPTH: int = 32
    AUTHZ_HIERARCHY_WALK_TIMEOUT_SECONDS: float = 2.0  # Whole ancestor walk

    # Permission an assigner needs on the target scope
    AUTHZ_MANAGE_ROLES_PERMISSION: str = "manage_roles"

    AUTHZ_LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the package logger."""
    logging.getLogger("entity_authz").setLevel(
        (level or settings.AUTHZ_LOG_LEVEL).upper()
    )

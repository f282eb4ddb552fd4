import logging
from typing import List, Optional

from pydantic import ConfigDict, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment: development | test | production
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (TEST_DATABASE_URL wins when set)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity provider (Clerk-issued JWTs)
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None
    CLERK_AUDIENCE: Optional[str] = None
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback, never in production

    # Container orchestrator
    ORCHESTRATOR_MODE: str = "mock"  # mock | http
    ORCHESTRATOR_URL: Optional[str] = None
    ORCHESTRATOR_API_KEY: Optional[str] = None
    ORCHESTRATOR_TIMEOUT_SECONDS: float = 30.0
    ORCHESTRATOR_MAX_WORKERS: int = 8

    # GitHub MCP server image
    MCP_GITHUB_IMAGE: str = "mcp-github-server"
    MCP_GITHUB_IMAGE_TAG: str = "latest"

    # Plan assigned on first sign-in
    DEFAULT_PLAN_TIER: str = "free"

    AUDIT_ENABLED: bool = True

    # Comma-separated
    CORS_ALLOW_ORIGINS: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ENV", "ORCHESTRATOR_MODE", "DEFAULT_PLAN_TIER")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return (value or "").strip().lower()

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ALLOW_ORIGINS.split(",") if o.strip()]


settings = Settings()


def missing_required_keys(cfg) -> List[str]:
    required = ["DATABASE_URL", "CLERK_SECRET_KEY"]
    if (getattr(cfg, "ORCHESTRATOR_MODE", "mock") or "mock").lower() == "http":
        required.append("ORCHESTRATOR_URL")
    return [key for key in required if not getattr(cfg, key, None)]


def validate_config(strict: Optional[bool] = None, settings_obj=None, logger: Optional[logging.Logger] = None) -> bool:
    """Report unset keys a deployed control plane needs.

    Strict mode raises RuntimeError; otherwise a warning is logged. Only key
    names are logged, never values.
    """
    cfg = settings_obj or settings
    strict_mode = getattr(cfg, "CONFIG_STRICT", False) if strict is None else strict
    missing = missing_required_keys(cfg)
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict_mode:
        raise RuntimeError(message)
    (logger or logging.getLogger("mymcp")).warning(message)
    return True

from __future__ import annotations
import logging
import sys
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class NavActionsSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="NA_", case_sensitive=False)

    audit_db_url: str = "sqlite:///nav_actions_audit.db"
    ruleset_path: Optional[str] = None
    guardrail_config_path: Optional[str] = None
    account_id: Optional[str] = None
    actor_id: Optional[str] = None
    undo_depth: int = Field(1, ge=1)
    max_concurrency: int = Field(8, ge=1)
    mutation_base_url: str = "http://localhost:8080/v1"
    mutation_timeout: int = 30
    allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    max_request_bytes: int = 1_000_000
    log_level: str = "INFO"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger."""
    logger = logging.getLogger("nav_actions")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(h, "_nav_actions", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._nav_actions = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

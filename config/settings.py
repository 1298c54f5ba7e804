#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Settings - Centralized configuration management
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings


# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings"""

    # ========== API Keys ==========
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"

    # ========== Agents & Model ==========
    default_model: str = "claude-sonnet-4-20250514"
    agent_temperature: float = 0.7
    agent_max_tokens: int = 4096
    agent_timeout_seconds: float = 300.0
    agent_max_retries: int = 2  # SDK retries on connection errors, 429 and 5xx
    # Offline mode: canned agent output, no API calls
    use_mock_agents: bool = False

    # ========== Pipeline ==========
    heartbeat_interval_seconds: float = 15.0
    pipeline_retention_seconds: float = 300.0  # Finished pipelines stay queryable this long
    cancel_on_disconnect: bool = True  # Cancel when the last stream observer goes away
    summary_on_complete: bool = True

    # ========== Server ==========
    log_level: str = "INFO"
    # CORS origins (comma-separated in env, parsed to list)
    cors_origins: str = ""  # Empty = use default dev origins

    # ========== Database ==========
    database_url: Optional[str] = None
    database_dir: Path = BASE_DIR / "data"
    database_name: str = "chapter_pipeline"

    # ========== Directories ==========
    logs_dir: Path = BASE_DIR / "data" / "logs"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from .env that aren't defined in model

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Create directories
        for dir_path in [self.database_dir, self.logs_dir]:
            dir_path.mkdir(exist_ok=True, parents=True)

    def get_cors_origins(self) -> list:
        """Get CORS origins as a list. Falls back to dev defaults if empty."""
        if self.cors_origins:
            return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        # Dev defaults
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:8000",
            "http://127.0.0.1:8000",
        ]

    def agents_enabled(self) -> bool:
        """True when real model calls can be made."""
        return bool(self.anthropic_api_key) and not self.use_mock_agents


# Global settings instance
settings = Settings()

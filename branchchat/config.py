"""Centralised settings for the branchchat client.

All runtime configuration is resolved here in one place.  Values can be
overridden via environment variables or a `.env` file in the project root
(loaded automatically when this module is imported).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root (one level up from this package)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # ------------------------------------------------------------------
    # Workspace / storage
    # ------------------------------------------------------------------
    workspace_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("BRANCHCHAT_WORKSPACE", Path.home() / ".branchchat")
        )
    )
    cli_config_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("BRANCHCHAT_CLI_DIR", Path.home() / ".branchchat_cli")
        )
    )

    @property
    def db_path(self) -> Path:
        """Absolute path to the SQLite database file."""
        return self.workspace_dir / "conversations.db"

    @property
    def schema_path(self) -> Path:
        """Absolute path to the schema SQL file bundled with the package."""
        return Path(__file__).resolve().parent / "db" / "schema.sql"

    # ------------------------------------------------------------------
    # Built-in provider (always present in the registry)
    # ------------------------------------------------------------------
    provider_name: str = field(
        default_factory=lambda: os.environ.get("PROVIDER_NAME", "Pollinations")
    )
    provider_base_url: str = field(
        default_factory=lambda: os.environ.get(
            "PROVIDER_BASE_URL", "https://text.pollinations.ai/openai"
        )
    )
    provider_api_key: str | None = field(
        default_factory=lambda: os.environ.get("PROVIDER_API_KEY", "dummy") or None
    )
    provider_models: list[str] = field(
        default_factory=lambda: _env_list("PROVIDER_MODELS", "openai,openai-fast")
    )

    # ------------------------------------------------------------------
    # Chat generation
    # ------------------------------------------------------------------
    chat_model: str = field(
        default_factory=lambda: os.environ.get("CHAT_MODEL", "Pollinations: openai-fast")
    )
    temperature: float = field(
        default_factory=lambda: float(os.environ.get("CHAT_TEMPERATURE", "0.7"))
    )
    max_tokens: int = field(
        default_factory=lambda: int(os.environ.get("CHAT_MAX_TOKENS", "2048"))
    )
    default_system_prompt_id: str | None = field(
        default_factory=lambda: os.environ.get("DEFAULT_SYSTEM_PROMPT_ID") or None
    )

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------
    auto_generate_title: bool = field(
        default_factory=lambda: _env_bool("AUTO_GENERATE_TITLE", "true")
    )
    title_generation_trigger: int = field(
        default_factory=lambda: int(os.environ.get("TITLE_GENERATION_TRIGGER", "2"))
    )
    title_model: str = field(
        default_factory=lambda: os.environ.get(
            "TITLE_MODEL", os.environ.get("CHAT_MODEL", "Pollinations: openai-fast")
        )
    )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    stream_idle_timeout: float = field(
        default_factory=lambda: float(os.environ.get("STREAM_IDLE_TIMEOUT", "8.0"))
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.environ.get("REQUEST_TIMEOUT", "60.0"))
    )
    session_cache_size: int = field(
        default_factory=lambda: int(os.environ.get("SESSION_CACHE_SIZE", "32"))
    )

    def ensure_workspace(self) -> None:
        """Create the workspace directory if it does not exist."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)


# Module-level singleton. Import this everywhere:
#   from branchchat.config import settings
settings = Settings()

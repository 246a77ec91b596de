"""Configuration management for the AWF engine."""

import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field


# Load environment variables from .env file
def _find_env_file() -> Path | None:
    """Find the .env file, searching up the directory tree."""
    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        env_path = current / ".env"
        if env_path.exists():
            return env_path
        current = current.parent
    return None


_env_file = _find_env_file()
if _env_file:
    load_dotenv(_env_file)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"[Config] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"[Config] {name}={raw!r} is not a number, using {default}")
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


class BudgetConfig(BaseModel):
    """Token and shape ceilings for one turn."""

    max_input_tokens: int = Field(default=6000, gt=0)
    max_output_tokens: int = Field(default=1200, gt=0)
    max_txt_sentences: int = 6
    max_choices: int = 5
    max_acts: int = 8
    model_max_output_tokens: int = 1200
    model_temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    inline_slice_summaries: bool = False
    npc_floor: int = Field(default=5, ge=0)
    tool_quota_per_turn: int = Field(default=2, ge=0)
    episodic_cap: int = Field(default=60, gt=0)
    slice_max_tokens: int = 250


def load_budget_config() -> BudgetConfig:
    """Build budgets from AWF_* environment variables (read at call time)."""
    return BudgetConfig(
        max_input_tokens=_env_int("AWF_MAX_INPUT_TOKENS", 6000),
        max_output_tokens=_env_int("AWF_MAX_OUTPUT_TOKENS", 1200),
        max_txt_sentences=_env_int("AWF_MAX_TXT_SENTENCES", 6),
        max_choices=_env_int("AWF_MAX_CHOICES", 5),
        max_acts=_env_int("AWF_MAX_ACTS", 8),
        model_max_output_tokens=_env_int("AWF_MODEL_MAX_OUTPUT_TOKENS", 1200),
        model_temperature=_env_float("AWF_MODEL_TEMPERATURE", 0.4),
        inline_slice_summaries=_env_bool("AWF_INLINE_SLICE_SUMMARIES"),
        npc_floor=_env_int("AWF_NPC_FLOOR", 5),
        tool_quota_per_turn=_env_int("AWF_TOOL_QUOTA_PER_TURN", 2),
        episodic_cap=_env_int("AWF_EPISODIC_CAP", 60),
    )


class Config:
    """Application configuration from environment variables."""

    # Model provider
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    MODEL_NAME: str = os.getenv("AWF_MODEL_NAME", "gpt-4o-mini")
    MODEL_TIMEOUT_MS: int = _env_int("AWF_MODEL_TIMEOUT_MS", 120000)
    MODEL_MAX_RETRIES: int = _env_int("AWF_MODEL_MAX_RETRIES", 2)

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./awf_engine.db")

    # Cache
    CACHE_BACKEND: str = os.getenv("AWF_CACHE_BACKEND", "memory")  # memory | sql
    CACHE_MAX_ENTRIES: int = _env_int("AWF_CACHE_MAX_ENTRIES", 1000)

    # Debug
    DEBUG: bool = _env_bool("DEBUG")

    @classmethod
    def validate(cls) -> list[str]:
        """Validate configuration, return list of issues."""
        issues = []
        if not cls.OPENAI_API_KEY:
            issues.append("No model API key configured. Set OPENAI_API_KEY in .env")
        if cls.CACHE_BACKEND not in ("memory", "sql"):
            issues.append(f"AWF_CACHE_BACKEND must be 'memory' or 'sql', got {cls.CACHE_BACKEND!r}")
        return issues

    @classmethod
    def is_debug(cls) -> bool:
        return cls.DEBUG

    @classmethod
    def get_database_url(cls) -> str:
        return cls.DATABASE_URL


def configure_logging(debug: bool | None = None) -> None:
    """Root logging setup for the CLI and embedding hosts."""
    if debug is None:
        debug = Config.is_debug()
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(name)s] %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Quiet noisy third-party loggers
    for name in ("httpx", "httpcore", "openai", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

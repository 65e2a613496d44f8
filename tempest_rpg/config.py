"""Process configuration (backend credentials, tiers, timers, storage).

Values come from the environment, optionally seeded from a .env file at the
repo root. Credentials are a comma-delimited list: API_KEY="KEY1,KEY2".
"""

import json
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from tempest_rpg.models import ModelTier

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"

# Ordered by preference: richer/slower first.
DEFAULT_MODEL_TIERS: list[ModelTier] = [
    ModelTier(
        id="gemini-3-pro-preview",
        display_name="GEMINI 3.0 PRO",
        generation_config={"temperature": 1.2, "topK": 64, "topP": 0.95},
    ),
    ModelTier(
        id="gemini-3-flash-preview",
        display_name="GEMINI 3.0 FLASH",
        generation_config={"temperature": 0.9, "topK": 40, "topP": 0.95},
    ),
]


class Settings(BaseModel):
    credentials: list[str] = Field(default_factory=list)
    provider_url: str = "https://generativelanguage.googleapis.com"
    provider_format: Literal["gemini", "openai"] = "gemini"
    llm_timeout: float = 120.0
    model_tiers: list[ModelTier] = Field(default_factory=lambda: list(DEFAULT_MODEL_TIERS))
    tier_cooldown_seconds: float = 60.0
    autosave_delay_seconds: float = 2.0
    mail_poll_seconds: float = 20.0
    death_confirm_delay_seconds: float = 5.0
    admin_senders: list[str] = Field(default_factory=list)
    data_dir: Path = DEFAULT_DATA_DIR


def parse_credentials(raw: str) -> list[str]:
    """Split a delimited credential list, trimming blanks."""
    return [key.strip() for key in raw.split(",") if key.strip()]


def load_model_tiers(path: Path) -> list[ModelTier]:
    """Read a JSON array of tiers, e.g. [{"id": ..., "displayName": ...}]."""
    data = json.loads(path.read_text())
    if not isinstance(data, list) or not data:
        raise ValueError(f"Model tiers file must hold a non-empty JSON array: {path}")
    return [ModelTier.model_validate(t) for t in data]


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from the environment (and .env, if present)."""
    load_dotenv(env_file or ROOT / ".env")

    fields: dict = {
        "credentials": parse_credentials(os.getenv("API_KEY", "")),
        "admin_senders": parse_credentials(os.getenv("ADMIN_SENDERS", "")),
    }
    env_map = {
        "LLM_PROVIDER_URL": "provider_url",
        "LLM_PROVIDER_FORMAT": "provider_format",
        "LLM_TIMEOUT": "llm_timeout",
        "TIER_COOLDOWN_SECONDS": "tier_cooldown_seconds",
        "AUTOSAVE_DELAY_SECONDS": "autosave_delay_seconds",
        "MAIL_POLL_SECONDS": "mail_poll_seconds",
        "DEATH_CONFIRM_DELAY_SECONDS": "death_confirm_delay_seconds",
        "DATA_DIR": "data_dir",
    }
    for env_name, field in env_map.items():
        value = os.getenv(env_name)
        if value:
            fields[field] = value

    tiers_file = os.getenv("MODEL_TIERS_FILE")
    if tiers_file:
        fields["model_tiers"] = load_model_tiers(Path(tiers_file))

    return Settings.model_validate(fields)

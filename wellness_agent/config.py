from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

BASE_DIR = Path(__file__).resolve().parent
RESOURCES_DIR = BASE_DIR / "resources"


@dataclass(frozen=True)
class Settings:
    """Configuration container for the model, resources, stores and business hours."""
    gemini_api_key: str
    gemini_model: str
    temperature: float
    max_output_tokens: int
    catalog_path: Path
    lexicon_path: Path
    prompts_dir: Path
    data_dir: Path
    conversation_ttl_sec: int
    history_limit: int
    recommendation_limit: int
    business_timezone: str
    business_open: str
    business_close: str
    weekend_open: bool
    holidays: Tuple[str, ...]
    admin_phone: str
    admin_webhook_url: str
    notify_timeout_sec: float


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot configure the model, stores or business hours and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve resource and data paths, then build Settings.
    catalog_path = os.getenv("CATALOG_PATH")
    lexicon_path = os.getenv("LEXICON_PATH")
    data_dir = os.getenv("DATA_DIR")
    holidays = tuple(day.strip() for day in os.getenv("HOLIDAYS", "").split(",") if day.strip())

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        temperature=float(os.getenv("GEMINI_TEMPERATURE", "0.7")),
        max_output_tokens=int(os.getenv("GEMINI_MAX_OUTPUT_TOKENS", "800")),
        catalog_path=Path(catalog_path) if catalog_path else RESOURCES_DIR / "products.json",
        lexicon_path=Path(lexicon_path) if lexicon_path else RESOURCES_DIR / "health_lexicon.json",
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        data_dir=Path(data_dir) if data_dir else (BASE_DIR / "data").resolve(),
        conversation_ttl_sec=int(os.getenv("CONVERSATION_TTL_SEC", "86400")),
        history_limit=int(os.getenv("HISTORY_LIMIT", "20")),
        recommendation_limit=int(os.getenv("RECOMMENDATION_LIMIT", "5")),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "Asia/Jakarta"),
        business_open=os.getenv("BUSINESS_OPEN", "09:00"),
        business_close=os.getenv("BUSINESS_CLOSE", "18:00"),
        weekend_open=os.getenv("WEEKEND_OPEN", "false").strip().lower() in {"1", "true", "yes"},
        holidays=holidays,
        admin_phone=os.getenv("ADMIN_PHONE", "081277721866"),
        admin_webhook_url=os.getenv("ADMIN_WEBHOOK_URL", ""),
        notify_timeout_sec=float(os.getenv("NOTIFY_TIMEOUT_SEC", "10")),
    )

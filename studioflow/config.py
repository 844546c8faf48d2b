"""Runtime settings loaded from the environment (and `.env`, if present)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    contracts_api_url: Optional[str] = None
    contracts_api_token: Optional[str] = None
    http_timeout_seconds: float = 20.0
    draft_db_path: str = "data/drafts.db"
    draft_ttl_hours: float = 24.0
    poll_interval_seconds: float = 1.0
    autosave_delay_seconds: float = 0.5
    public_base_url: str = "http://localhost:5000"
    comms_use_llm: bool = False
    deepinfra_api_key: Optional[str] = None

    @property
    def uses_remote_api(self) -> bool:
        return bool(self.contracts_api_url)


def load_settings() -> Settings:
    """Read settings from the environment after loading `.env`."""

    load_dotenv()
    return Settings(
        contracts_api_url=os.getenv("CONTRACTS_API_URL") or None,
        contracts_api_token=os.getenv("CONTRACTS_API_TOKEN") or None,
        http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 20.0),
        draft_db_path=os.getenv("DRAFT_DB_PATH") or "data/drafts.db",
        draft_ttl_hours=_env_float("DRAFT_TTL_HOURS", 24.0),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 1.0),
        autosave_delay_seconds=_env_float("AUTOSAVE_DELAY_SECONDS", 0.5),
        public_base_url=os.getenv("PUBLIC_BASE_URL") or "http://localhost:5000",
        comms_use_llm=_env_bool("COMMS_USE_LLM"),
        deepinfra_api_key=os.getenv("DEEPINFRA_API_KEY") or None,
    )

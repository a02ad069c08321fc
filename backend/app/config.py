from pydantic_settings import BaseSettings
from datetime import timedelta
from typing import Dict, Optional, Set
import json
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # DATABASE_URL is injected by the environment in production (Postgres).
    # The sqlite default keeps local runs and tests self-contained.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./autopilot.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Confidence level cutoffs. A raw confidence >= HIGH maps to HIGH, etc.
    CONFIDENCE_HIGH_THRESHOLD: float = 0.85
    CONFIDENCE_MEDIUM_THRESHOLD: float = 0.65
    CONFIDENCE_LOW_THRESHOLD: float = 0.40

    # Daily execution caps per user and action type (UTC day).
    # A value <= 0 disables the cap for that action type.
    RATE_LIMIT_OFFER_ACCEPT: int = 50
    RATE_LIMIT_OFFER_DECLINE: int = 0
    RATE_LIMIT_OFFER_COUNTER: int = 100
    RATE_LIMIT_REPRICE: int = 100
    RATE_LIMIT_DELIST: int = 0
    RATE_LIMIT_RELIST: int = 25
    RATE_LIMIT_ARCHIVE: int = 0

    # Undo windows, in hours, for reversible action types. Offer decisions
    # are never reversible and have no entry here.
    UNDO_WINDOW_REPRICE_HOURS: int = 24
    UNDO_WINDOW_DELIST_HOURS: int = 720  # 30 days
    UNDO_WINDOW_RELIST_HOURS: int = 24
    UNDO_WINDOW_ARCHIVE_HOURS: int = 876000  # ~100 years, effectively unlimited

    # Execution / retry policy for channel adapter calls.
    AUTOPILOT_MAX_RETRIES: int = 3
    AUTOPILOT_RETRY_BACKOFF_SECONDS: int = 30
    AUTOPILOT_RETRY_BACKOFF_MAX_SECONDS: int = 3600
    AUTOPILOT_ADAPTER_TIMEOUT_SECONDS: float = 15.0
    # A worker's claim on an action expires after this long, so a crashed
    # worker cannot block the action forever. Keep it above the adapter
    # timeout times the number of listings an item can have.
    AUTOPILOT_CLAIM_TTL_SECONDS: int = 300

    # Derive confidence context (rule track record, item value, days listed)
    # from stored history when the caller supplies none.
    AUTOPILOT_CONTEXT_FACTORS_ENABLED: bool = True

    # Scheduled fan-out (reprice-check-all / stale-check-all).
    AUTOPILOT_BATCH_CONCURRENCY: int = 5
    AUTOPILOT_LOOP_INTERVAL_SECONDS: int = 900
    AUTOPILOT_LOOP_ENABLED: bool = False

    # Channels with a supported write API. Everything else is "assisted":
    # actions there are prompts for the user, never auto-executed.
    AUTOPILOT_API_CHANNELS: str = "ebay,mercari"

    # JSON object mapping channel -> base URL of the channel gateway used by
    # the HTTP adapter, e.g. {"ebay": "https://gateway.internal/ebay"}.
    CHANNEL_API_BASE_URLS: Optional[str] = None

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def api_channels(self) -> Set[str]:
        raw = self.AUTOPILOT_API_CHANNELS or ""
        return {c.strip().lower() for c in raw.split(",") if c.strip()}

    @property
    def channel_base_urls(self) -> Dict[str, str]:
        if not self.CHANNEL_API_BASE_URLS:
            return {}
        try:
            data = json.loads(self.CHANNEL_API_BASE_URLS)
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k).lower(): str(v) for k, v in data.items()}

    def rate_limit_for(self, action_type: str) -> Optional[int]:
        """Return the daily cap for ``action_type`` or None when uncapped."""
        value = getattr(self, f"RATE_LIMIT_{action_type.upper()}", 0)
        if value is None or int(value) <= 0:
            return None
        return int(value)

    def undo_window_for(self, action_type: str) -> Optional[timedelta]:
        """Return the undo window for a reversible action type, else None."""
        hours = {
            "REPRICE": self.UNDO_WINDOW_REPRICE_HOURS,
            "DELIST": self.UNDO_WINDOW_DELIST_HOURS,
            "RELIST": self.UNDO_WINDOW_RELIST_HOURS,
            "ARCHIVE": self.UNDO_WINDOW_ARCHIVE_HOURS,
        }.get(action_type.upper())
        if not hours:
            return None
        return timedelta(hours=hours)


settings = Settings()

"""
Engine configuration.

Values come from the environment (or a .env file next to the backend) and are
read once into an EngineSettings instance.
"""

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class EngineSettings(BaseModel):
    """Settings for the workflow execution engine."""

    # Base URL of the pass-through capability handlers (chat, image, video)
    capability_base_url: str = "http://localhost:3000"
    http_timeout_seconds: float = 120.0
    http_connect_timeout_seconds: float = 20.0

    # Edge activity signaling
    edge_activation_seconds: float = 3.0
    test_animation_seconds: float = 5.0

    # Video task polling: first check after 5s, then every 10s, 60 polls max (~10 min)
    poll_initial_delay_seconds: float = 5.0
    poll_interval_seconds: float = 10.0
    poll_max_attempts: int = 60

    vision_model: str = "gpt-4o"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from DAISY_* environment variables, falling back to defaults."""
        values: dict[str, str] = {}
        for field_name in cls.model_fields:
            raw = os.getenv(f"DAISY_{field_name.upper()}")
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        # Short alias
        if os.getenv("DAISY_HTTP_TIMEOUT"):
            values.setdefault("http_timeout_seconds", os.getenv("DAISY_HTTP_TIMEOUT"))
        return cls.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Get the cached engine settings."""
    return EngineSettings.from_env()

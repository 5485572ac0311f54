"""
Runtime configuration loaded from environment variables.
"""

from __future__ import annotations

import os
import typing as t
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from genwave.request import RetryPolicy

ENV_PREFIX = "GENWAVE_"
API_KEYS_ENV_VAR = "GEMINI_API_KEYS"
API_KEY_ENV_VAR = "GEMINI_API_KEY"


class Settings(BaseModel):
    """
    Engine configuration.

    Every field can be overridden through a ``GENWAVE_<FIELD_NAME>`` variable,
    e.g. ``GENWAVE_VIDEO_MODEL`` or ``GENWAVE_CACHE_TTL_SECONDS``.
    """

    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    video_model: str = "veo-3.0-generate-preview"
    optimization_model: str = "gemini-2.5-flash"
    generated_dir: Path = Path("generated")

    request_timeout_seconds: float = 30.0
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = 5.0
    retry_multiplier: float = 1.5
    retry_max_delay_seconds: float = 60.0

    poll_max_attempts: int = Field(default=120, ge=1)
    job_poll_interval_seconds: float = 5.0
    job_poll_max_iterations: int = Field(default=120, ge=1)

    cache_ttl_seconds: float = 10 * 60
    batch_max_age_seconds: float = 7 * 24 * 60 * 60
    default_max_concurrent: int = Field(default=3, ge=1)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, **overrides: t.Any) -> "Settings":
        """
        Build settings from ``GENWAVE_*`` environment variables.

        Parameters
        ----------
        **overrides : typing.Any
            Explicit values taking precedence over the environment.

        Returns
        -------
        Settings
            Validated settings.
        """
        load_dotenv(override=False)
        values: dict[str, t.Any] = {}
        for field_name in cls.model_fields:
            raw_value = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
            if raw_value is not None and raw_value.strip():
                values[field_name] = raw_value.strip()
        values.update(overrides)
        return cls.model_validate(values)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            multiplier=self.retry_multiplier,
            max_delay_seconds=self.retry_max_delay_seconds,
        )


def resolve_api_keys(*, session_key: str | None = None) -> list[str]:
    """
    List the API keys to try, in order.

    Parameters
    ----------
    session_key : str | None, optional
        Caller-supplied key; when set it is the only key used.

    Returns
    -------
    list[str]
        ``session_key`` alone, otherwise the comma separated
        ``GEMINI_API_KEYS`` followed by ``GEMINI_API_KEY`` (deduplicated).
    """
    if session_key:
        return [session_key]

    keys: list[str] = []
    for key in os.getenv(API_KEYS_ENV_VAR, "").split(","):
        key = key.strip()
        if key and key not in keys:
            keys.append(key)
    single_key = os.getenv(API_KEY_ENV_VAR, "").strip()
    if single_key and single_key not in keys:
        keys.append(single_key)
    return keys


def mask_api_key(api_key: str | None) -> str:
    if not api_key or len(api_key) < 10:
        return "***"
    return f"{api_key[:10]}..."

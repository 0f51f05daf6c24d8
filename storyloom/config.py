# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Configuration module for the storyloom service.

Settings are loaded from environment variables (and an optional .env file)
and validated at startup so that a misconfigured deployment fails fast.
"""

from functools import lru_cache
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables of the same
    name (case-insensitive).
    """

    # OpenAI Configuration
    openai_api_key: str = Field(
        ...,
        description="OpenAI API key for narration, moderation and image requests"
    )
    openai_model: str = Field(
        default="gpt-4",
        description="Chat model used for narration, prologues and adventure generation"
    )
    openai_stub_mode: bool = Field(
        default=False,
        description="Enable stub mode for offline development (no actual API calls)"
    )

    # Provider deadlines
    moderation_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Deadline in seconds for a moderation call"
    )
    narration_timeout: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Deadline in seconds for a narration call"
    )
    image_timeout: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Deadline in seconds for a single image generation call"
    )

    # Illustration pipeline
    image_cache_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="How long a generated image URL stays cached"
    )
    image_cache_max_entries: int = Field(
        default=100,
        ge=1,
        description="Maximum cached image URLs before least-recently-used eviction"
    )
    image_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Extra passes over the model cascade after a full failure"
    )
    image_retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay in seconds for cascade retry backoff"
    )

    # Gameplay limits
    max_input_length: int = Field(
        default=500,
        ge=1,
        description="Maximum player input length in characters"
    )
    max_turns_per_session: int = Field(
        default=1000,
        ge=1,
        description="Turn ceiling per session"
    )
    recent_turns_window: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of recent turns handed to the prompt composer"
    )

    # Service Configuration
    service_name: str = Field(
        default="storyloom",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )
    cors_allow_origins: List[str] = Field(
        default=["*"],
        description="Origins allowed by the CORS middleware"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    @field_validator('openai_api_key')
    @classmethod
    def validate_openai_key(cls, v: str) -> str:
        """Validate OpenAI API key is not empty."""
        if not v or v.strip() == "":
            raise ValueError(
                "openai_api_key cannot be empty. Set OPENAI_API_KEY environment variable."
            )
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Ensure all required environment variables are set."
        ) from e

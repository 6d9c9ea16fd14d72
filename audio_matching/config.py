"""
Settings for the audio matching service.

Values come from the environment (prefix ``AUDIO_MATCH_``) or a local ``.env`` file.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for matching, caching and persistence"""

    model_config = SettingsConfigDict(
        env_prefix="AUDIO_MATCH_",
        env_file=".env",
        extra="ignore",
    )

    # Service
    service_name: str = "audio-matching"
    service_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # Cache tier (Redis)
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 86400  # 24 hours

    # Persistence tier (PostgreSQL)
    database_url: str = "postgresql://localhost:5432/vinyl"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_command_timeout: float = 30.0

    # Matching
    max_tracks_per_release: int = 10
    default_track_duration: int = 180
    embedded_confidence_boost: int = 15
    embedded_min_confidence: int = 65

    # Search providers
    youtube_api_key: Optional[str] = None
    soundcloud_client_ids: str = ""  # comma separated, tried in order
    search_max_results: int = 3
    search_timeout_seconds: float = 10.0
    placeholder_results: bool = False
    circuit_failure_threshold: int = 5
    circuit_timeout_seconds: int = 60

    # Concurrent misses for the same key
    single_flight: bool = False
    single_flight_timeout: int = 30

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def soundcloud_client_id_list(self) -> List[str]:
        return [part.strip() for part in self.soundcloud_client_ids.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings instance"""
    return Settings()

"""
Configuration

Settings come from environment variables (a local .env file is loaded
first). Malformed numbers fall back to their defaults.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _get_env_str(key: str, default: str) -> str:
    value = os.getenv(key)
    return value if value else default


def _get_env_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _get_env_int(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    upload_dir: Path = Path("./uploads")

    # Metadata
    metadata_backend: str = "pillow"
    exiftool_path: str = "exiftool"
    extraction_timeout: float = 5.0
    max_photo_age_hours: float = 24
    max_gps_distance_m: float = 200

    # Duplicates
    similarity_threshold: float = 90.0

    # Geocoding
    geocoder_url: str = "https://nominatim.openstreetmap.org/reverse"
    geocoder_user_agent: str = "CivicFixApp/1.0"
    geocoder_timeout: float = 8.0
    geocoder_retries: int = 2
    geocoder_rate_limit_delay: float = 0.5
    geocode_cache_ttl: float = 24 * 60 * 60
    geocode_cache_max_size: int = 1000


def load_settings() -> Settings:
    """Read settings from the environment."""
    defaults = Settings()
    return Settings(
        log_level=_get_env_str("LOG_LEVEL", defaults.log_level).upper(),
        upload_dir=Path(_get_env_str("UPLOAD_DIR", str(defaults.upload_dir))),
        metadata_backend=_get_env_str("METADATA_BACKEND", defaults.metadata_backend).lower(),
        exiftool_path=_get_env_str("EXIFTOOL_PATH", defaults.exiftool_path),
        extraction_timeout=_get_env_float("EXTRACTION_TIMEOUT", defaults.extraction_timeout),
        max_photo_age_hours=_get_env_float("MAX_PHOTO_AGE_HOURS", defaults.max_photo_age_hours),
        max_gps_distance_m=_get_env_float("MAX_GPS_DISTANCE_M", defaults.max_gps_distance_m),
        similarity_threshold=_get_env_float("SIMILARITY_THRESHOLD", defaults.similarity_threshold),
        geocoder_url=_get_env_str("GEOCODER_URL", defaults.geocoder_url),
        geocoder_user_agent=_get_env_str("GEOCODER_USER_AGENT", defaults.geocoder_user_agent),
        geocoder_timeout=_get_env_float("GEOCODER_TIMEOUT", defaults.geocoder_timeout),
        geocoder_retries=_get_env_int("GEOCODER_RETRIES", defaults.geocoder_retries),
        geocoder_rate_limit_delay=_get_env_float(
            "GEOCODER_RATE_LIMIT_DELAY", defaults.geocoder_rate_limit_delay
        ),
        geocode_cache_ttl=_get_env_float("GEOCODE_CACHE_TTL", defaults.geocode_cache_ttl),
        geocode_cache_max_size=_get_env_int(
            "GEOCODE_CACHE_MAX_SIZE", defaults.geocode_cache_max_size
        ),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

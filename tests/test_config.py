from __future__ import annotations

from pathlib import Path

from config import Settings, load_settings


def test_defaults_without_environment(monkeypatch):
    for key in ("MAX_PHOTO_AGE_HOURS", "GEOCODER_RETRIES", "METADATA_BACKEND", "UPLOAD_DIR", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)

    settings = load_settings()

    assert settings.max_photo_age_hours == 24
    assert settings.max_gps_distance_m == 200
    assert settings.similarity_threshold == 90.0
    assert settings.geocoder_retries == 2
    assert settings.metadata_backend == "pillow"
    assert settings.upload_dir == Path("./uploads")


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("MAX_PHOTO_AGE_HOURS", "12")
    monkeypatch.setenv("METADATA_BACKEND", "ExifTool")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.max_photo_age_hours == 12.0
    assert settings.metadata_backend == "exiftool"
    assert settings.upload_dir == tmp_path
    assert settings.log_level == "DEBUG"


def test_malformed_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("GEOCODER_RETRIES", "three")
    monkeypatch.setenv("GEOCODER_TIMEOUT", "soon")

    settings = load_settings()

    assert settings.geocoder_retries == Settings().geocoder_retries
    assert settings.geocoder_timeout == Settings().geocoder_timeout

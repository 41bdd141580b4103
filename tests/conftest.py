from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from geocoding import GeoCache, ReverseGeocoder
from helpers import ADDRESS_PAYLOAD, FakeResponse, FakeSession, build_exif, make_image


@pytest.fixture
def now() -> datetime:
    return datetime.now().replace(microsecond=0)


@pytest.fixture
def photo_factory(tmp_path: Path):
    """Writes JPEG files, optionally carrying EXIF built by piexif."""

    def write(name: str = "photo.jpg", seed: int = 0, exif: bytes | None = None) -> str:
        path = tmp_path / name
        img = make_image(seed)
        if exif is not None:
            img.save(path, "JPEG", quality=90, exif=exif)
        else:
            img.save(path, "JPEG", quality=90)
        return str(path)

    return write


@pytest.fixture
def camera_photo(photo_factory, now):
    return photo_factory(exif=build_exif(taken_at=now))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def geocoder_factory(sleeps):
    def build(responses=None, retries: int = 2, cache: GeoCache | None = None) -> ReverseGeocoder:
        session = FakeSession(responses or [FakeResponse(200, ADDRESS_PAYLOAD)])
        return ReverseGeocoder(
            cache or GeoCache(),
            retries=retries,
            session=session,
            sleep=sleeps.append,
        )

    return build

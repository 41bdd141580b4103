from __future__ import annotations

import io
import random
import struct
import time
import zlib
from datetime import datetime
from fractions import Fraction

import piexif
from PIL import Image

from metadata_extractor import MetadataExtractor

SPRINGFIELD = (39.7684, -89.6502)

ADDRESS_PAYLOAD = {
    "display_name": "221, Main Street, Springfield, Illinois, 62701, United States",
    "address": {
        "house_number": "221",
        "road": "Main Street",
        "city": "Springfield",
        "state": "Illinois",
        "country": "United States",
        "postcode": "62701",
    },
}

SPRINGFIELD_ADDRESS = "221 Main Street, Springfield, Illinois, United States, 62701"


def exif_date(value: datetime) -> str:
    return value.strftime("%Y:%m:%d %H:%M:%S")


def camera_metadata(taken_at: datetime, latitude=None, longitude=None, **extra) -> dict:
    """Flat map shaped like `exiftool -json -n` output for a phone photo."""
    metadata = {
        "FileName": "IMG_0001.jpg",
        "Make": "Canon",
        "Model": "EOS R6",
        "DateTimeOriginal": exif_date(taken_at),
    }
    if latitude is not None and longitude is not None:
        metadata.update(
            {
                "GPSLatitude": latitude,
                "GPSLatitudeRef": "N" if latitude >= 0 else "S",
                "GPSLongitude": longitude,
                "GPSLongitudeRef": "E" if longitude >= 0 else "W",
            }
        )
    metadata.update(extra)
    return metadata


# =============================================================================
# IMAGES
# =============================================================================

def make_image(seed: int = 0, size: int = 256) -> Image.Image:
    """Blocky random image; different seeds give unrelated perceptual hashes."""
    rng = random.Random(seed)
    small = Image.new("L", (16, 16))
    small.putdata([rng.randrange(256) for _ in range(16 * 16)])
    return small.resize((size, size), Image.Resampling.NEAREST).convert("RGB")


def write_oversized_png(path) -> str:
    """1x1 PNG whose header claims 20000x20000 pixels."""
    buf = io.BytesIO()
    Image.new("RGB", (1, 1)).save(buf, "PNG")
    data = bytearray(buf.getvalue())
    # IHDR data starts after the 8-byte signature, chunk length and type
    data[16:24] = struct.pack(">II", 20000, 20000)
    data[29:33] = struct.pack(">I", zlib.crc32(bytes(data[12:29])) & 0xFFFFFFFF)
    with open(path, "wb") as f:
        f.write(bytes(data))
    return str(path)


def _rational(value: float):
    f = Fraction(value).limit_denominator(1000000)
    return (f.numerator, f.denominator)


def _to_dms(value: float):
    value = abs(value)
    degrees = int(value)
    minutes_full = (value - degrees) * 60
    minutes = int(minutes_full)
    seconds = (minutes_full - minutes) * 60
    return [_rational(degrees), _rational(minutes), _rational(seconds)]


def build_exif(make="Canon", model="EOS R6", taken_at=None, gps=None) -> bytes:
    zeroth = {}
    if make:
        zeroth[piexif.ImageIFD.Make] = make.encode()
    if model:
        zeroth[piexif.ImageIFD.Model] = model.encode()

    exif_ifd = {}
    if taken_at is not None:
        exif_ifd[piexif.ExifIFD.DateTimeOriginal] = exif_date(taken_at).encode()

    gps_ifd = {}
    if gps is not None:
        lat, lon = gps
        gps_ifd = {
            piexif.GPSIFD.GPSLatitudeRef: b"N" if lat >= 0 else b"S",
            piexif.GPSIFD.GPSLatitude: _to_dms(lat),
            piexif.GPSIFD.GPSLongitudeRef: b"E" if lon >= 0 else b"W",
            piexif.GPSIFD.GPSLongitude: _to_dms(lon),
        }

    return piexif.dump({"0th": zeroth, "Exif": exif_ifd, "GPS": gps_ifd, "1st": {}, "thumbnail": None})


# =============================================================================
# FAKES
# =============================================================================

class FakeExtractor(MetadataExtractor):
    name = "fake"

    def __init__(self, metadata=None, error: Exception | None = None, delay: float = 0):
        self.metadata = metadata or {}
        self.error = error
        self.delay = delay
        self.calls = []

    def extract(self, image_path: str) -> dict:
        self.calls.append(image_path)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.metadata)


class FakeResponse:
    def __init__(self, status_code: int, payload=None, raises_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._raises_json = raises_json

    def json(self):
        if self._raises_json:
            raise ValueError("bad json")
        return self._payload


class FakeSession:
    """Replays queued responses; the last one repeats."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass

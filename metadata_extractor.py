"""
Metadata Extractor for Submitted Photos

Reads EXIF, TIFF and GPS metadata from an uploaded image and returns it as
one flat key-value map using exiftool tag names (Make, Model,
DateTimeOriginal, FileModifyDate, GPSLatitude, GPSLatitudeRef, ...).

Two interchangeable backends:
- PillowMetadataExtractor - embedded, no external tools (default)
- ExifToolMetadataExtractor - runs `exiftool -json -n` as a subprocess

Both raise MetadataExtractionError when the file cannot be read.
"""

import json
import logging
import os
import struct
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from PIL import Image, UnidentifiedImageError
from PIL.ExifTags import TAGS, GPSTAGS, IFD
from PIL.TiffImagePlugin import IFDRational

from errors import MetadataExtractionError


logger = logging.getLogger(__name__)


# =============================================================================
# TAG NAMING
# =============================================================================

# Pillow tag name -> exiftool tag name, where the two differ
EXIFTOOL_TAG_ALIASES = {
    "DateTime": "ModifyDate",
    "DateTimeDigitized": "CreateDate",
}

# IFD pointers and blobs that carry no metadata of their own.
# GPSInfo must be skipped: it would look like a GPS field even when empty.
SKIPPED_TAGS = {
    "ExifOffset",
    "GPSInfo",
    "InteropOffset",
    "XMLPacket",
    "MakerNote",
    "PrintImageMatching",
}

EXIFTOOL_DATE_FORMAT = "%Y:%m:%d %H:%M:%S%z"

# Raised by Pillow for files it cannot decode
UNREADABLE_IMAGE_ERRORS = (
    OSError,
    UnidentifiedImageError,
    Image.DecompressionBombError,
    SyntaxError,
    ValueError,
    struct.error,
)


# =============================================================================
# GPS UTILITIES
# =============================================================================

def convert_gps_to_decimal(gps_coords: Any, ref: Optional[str] = None) -> Optional[float]:
    """
    Convert GPS coordinates from DMS to decimal degrees.

    Args:
        gps_coords: Sequence of (degrees, minutes, seconds)
        ref: Hemisphere reference ('N', 'S', 'E', 'W' or the spelled-out words)

    Returns:
        Decimal degrees (negative for S/W), or None if not a DMS triple
    """
    if not isinstance(gps_coords, (list, tuple)) or len(gps_coords) < 3:
        return None

    try:
        degrees = float(gps_coords[0])
        minutes = float(gps_coords[1])
        seconds = float(gps_coords[2])
    except (TypeError, ValueError):
        return None

    decimal = degrees + minutes / 60 + seconds / 3600
    return apply_hemisphere(decimal, ref)


def apply_hemisphere(value: float, ref: Optional[str]) -> float:
    """Make a coordinate negative for southern/western references."""
    if ref and str(ref).strip()[:1].upper() in ("S", "W"):
        return -abs(value)
    return value


def format_gps_readable(lat: float, lon: float) -> str:
    """Format decimal coordinates as human-readable string."""
    lat_dir = 'N' if lat >= 0 else 'S'
    lon_dir = 'E' if lon >= 0 else 'W'
    return f"{abs(lat):.6f}°{lat_dir}, {abs(lon):.6f}°{lon_dir}"


# =============================================================================
# EXTRACTORS
# =============================================================================

class MetadataExtractor:
    """Reads a photo file into a flat metadata map."""

    name = "base"

    def extract(self, image_path: str) -> dict:
        raise NotImplementedError


class PillowMetadataExtractor(MetadataExtractor):
    """Extracts metadata in-process with Pillow."""

    name = "pillow"

    def extract(self, image_path: str) -> dict:
        path = Path(image_path)

        try:
            stat = path.stat()
            img = Image.open(path)
        except UNREADABLE_IMAGE_ERRORS as e:
            raise MetadataExtractionError(f"Cannot open {path.name}: {e}") from e

        metadata = {
            "FileName": path.name,
            "FileSize": stat.st_size,
            "FileModifyDate": _format_file_date(stat.st_mtime),
        }

        try:
            with img:
                metadata["FileType"] = img.format
                metadata["ImageWidth"] = img.size[0]
                metadata["ImageHeight"] = img.size[1]

                exif_data = img.getexif()
                if exif_data:
                    _merge_tags(metadata, exif_data.items(), TAGS)
                    _merge_tags(metadata, exif_data.get_ifd(IFD.Exif).items(), TAGS)
                    _merge_tags(metadata, exif_data.get_ifd(IFD.GPSInfo).items(), GPSTAGS)
        except UNREADABLE_IMAGE_ERRORS + (KeyError,) as e:
            raise MetadataExtractionError(f"Corrupt metadata in {path.name}: {e}") from e

        return metadata


class ExifToolMetadataExtractor(MetadataExtractor):
    """
    Extracts metadata by running the exiftool executable.

    The `-n` flag keeps GPS values numeric (signed decimal degrees and a
    "lat lon" GPSPosition string).
    """

    name = "exiftool"

    def __init__(self, executable: str = "exiftool", timeout: float = 5.0):
        self.executable = executable
        self.timeout = timeout

    def extract(self, image_path: str) -> dict:
        cmd = [self.executable, "-json", "-n", str(image_path)]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise MetadataExtractionError(
                f"exiftool timed out after {self.timeout:g}s"
            ) from e
        except subprocess.CalledProcessError as e:
            raise MetadataExtractionError(
                f"exiftool exited with {e.returncode}: {(e.stderr or '').strip()}"
            ) from e
        except OSError as e:
            raise MetadataExtractionError(f"Cannot run exiftool: {e}") from e

        try:
            data = json.loads(result.stdout)[0]
        except (ValueError, IndexError, TypeError) as e:
            raise MetadataExtractionError("exiftool returned unparseable output") from e

        if data.get("Error"):
            raise MetadataExtractionError(f"exiftool: {data['Error']}")

        data.pop("SourceFile", None)
        return data


def get_metadata_extractor(
    backend: str = "pillow",
    exiftool_path: str = "exiftool",
    timeout: float = 5.0,
) -> MetadataExtractor:
    """Build the extractor named by configuration."""
    backend = (backend or "pillow").lower()
    if backend == "exiftool":
        return ExifToolMetadataExtractor(executable=exiftool_path, timeout=timeout)
    if backend == "pillow":
        return PillowMetadataExtractor()
    raise ValueError(f"Unknown metadata backend: {backend}")


# =============================================================================
# HELPERS
# =============================================================================

def _merge_tags(metadata: dict, items, names: dict) -> None:
    for tag_id, value in items:
        tag_name = names.get(tag_id)
        if tag_name is None or tag_name in SKIPPED_TAGS:
            continue
        tag_name = EXIFTOOL_TAG_ALIASES.get(tag_name, tag_name)
        metadata[tag_name] = _sanitize_value(value)


def _format_file_date(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).astimezone().strftime(EXIFTOOL_DATE_FORMAT)


def _sanitize_value(value: Any) -> Any:
    """Convert EXIF values to JSON-serializable format."""
    # Handle IFDRational (EXIF fractions)
    if isinstance(value, IFDRational):
        if value.denominator == 0:
            return float("nan")
        if value.denominator == 1:
            return int(value.numerator)
        return float(value)

    if isinstance(value, bytes):
        try:
            decoded = value.decode('utf-8').rstrip('\x00')
            if decoded.isprintable():
                return decoded
        except UnicodeDecodeError:
            pass
        if len(value) <= 32:
            return value.hex()
        return f"<{len(value)} bytes>"

    if isinstance(value, str):
        return value.rstrip('\x00').strip()

    if isinstance(value, (tuple, list)):
        return [_sanitize_value(v) for v in value]

    if isinstance(value, dict):
        return {k: _sanitize_value(v) for k, v in value.items()}

    return value


# =============================================================================
# EXAMPLE USAGE
# =============================================================================

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python metadata_extractor.py <image_path> [pillow|exiftool]")
        sys.exit(1)

    image_path = sys.argv[1]
    backend = sys.argv[2] if len(sys.argv) > 2 else os.getenv("METADATA_BACKEND", "pillow")

    print("=" * 60)
    print(" PHOTO METADATA")
    print("=" * 60)

    try:
        metadata = get_metadata_extractor(backend).extract(image_path)
    except MetadataExtractionError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(metadata, indent=2, default=str))

    lat = convert_gps_to_decimal(metadata.get("GPSLatitude"), metadata.get("GPSLatitudeRef"))
    lon = convert_gps_to_decimal(metadata.get("GPSLongitude"), metadata.get("GPSLongitudeRef"))
    if lat is not None and lon is not None:
        print(f"\nLocation: {format_gps_readable(lat, lon)}")

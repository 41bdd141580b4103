"""
Validators for Submitted Photo Metadata

Applies a fixed, ordered policy to a photo's metadata. The first failing
rule rejects the submission:
1. Presence - camera make/model, capture date or GPS tags must exist
2. Freshness - photo taken within the last 24 hours
3. GPS resolution - photo coordinates from EXIF, else device coordinates
4. Validity - all coordinates are finite numbers
5. Proximity - photo within 200 m of the device-reported location

Requires: metadata_extractor.py, models.py, errors.py
"""

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from errors import (
    InvalidCoordinatesError,
    InvalidDeviceLocationError,
    LocationMismatchError,
    MetadataExtractionError,
    MissingDateError,
    MissingMetadataError,
    StalePhotoError,
    UnreadableMetadataError,
)
from metadata_extractor import MetadataExtractor, apply_hemisphere, convert_gps_to_decimal
from models import ExifRecord, GpsSource, MetadataEvaluation


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_PHOTO_AGE_HOURS = 24

MAX_GPS_DISTANCE_M = 200

# Same mean radius as the distance helper the mobile clients use
EARTH_RADIUS_M = 6378137


# =============================================================================
# GEO UTILITIES
# =============================================================================

def calculate_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in meters between two points using Haversine formula."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_M * c


def validate_device_location(latitude: Any, longitude: Any) -> Tuple[float, float]:
    """Check device-reported coordinates are numbers within range."""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InvalidDeviceLocationError(latitude, longitude)

    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidDeviceLocationError(latitude, longitude)
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise InvalidDeviceLocationError(lat, lon)

    return lat, lon


# =============================================================================
# DATE UTILITIES
# =============================================================================

_EXIF_DATE_PREFIX = re.compile(r"^(\d{4}):(\d{2}):(\d{2})")
_SUBSECONDS = re.compile(r"(\d{2}:\d{2}:\d{2})\.\d+")

# Fallback formats for values fromisoformat() does not accept
_DATE_FORMATS = [
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
]


def normalize_exif_datetime(date_str: str) -> str:
    """Turn 'YYYY:MM:DD HH:MM:SS' into 'YYYY-MM-DDTHH:MM:SS'."""
    normalized = _EXIF_DATE_PREFIX.sub(r"\1-\2-\3", str(date_str).strip())
    normalized = re.sub(r"^(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2})", r"\1T\2", normalized)
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    return normalized


def parse_exif_datetime(value: Any) -> Optional[datetime]:
    """Parse an EXIF/exiftool date value to datetime. None if unusable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value

    normalized = normalize_exif_datetime(value)

    for candidate in (normalized, _SUBSECONDS.sub(r"\1", normalized)):
        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            continue

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(normalized, fmt)
        except ValueError:
            continue

    return None


def photo_age(capture_date: datetime, now: datetime) -> timedelta:
    """Age of the photo, comparing naive values as local time."""
    if capture_date.tzinfo is not None and now.tzinfo is None:
        capture_date = capture_date.astimezone().replace(tzinfo=None)
    elif capture_date.tzinfo is None and now.tzinfo is not None:
        capture_date = capture_date.astimezone()
    return now - capture_date


# =============================================================================
# GPS PARSING
# =============================================================================

def parse_gps_coordinate(coord_data: Any, ref: Optional[str] = None) -> Optional[float]:
    """Parse GPS coordinate from various EXIF formats to decimal degrees."""
    if coord_data is None or isinstance(coord_data, bool):
        return None

    # Already a number
    if isinstance(coord_data, (int, float)):
        val = float(coord_data)
        return None if math.isnan(val) else apply_hemisphere(val, ref)

    # String format "49.1234" or "49° 7' 24.12""
    if isinstance(coord_data, str):
        try:
            val = float(coord_data)
            return None if math.isnan(val) else apply_hemisphere(val, ref)
        except ValueError:
            pass

        match = re.match(r"(\d+)[°\s]+(\d+)['\s]+(\d+\.?\d*)", coord_data)
        if match:
            return convert_gps_to_decimal([float(g) for g in match.groups()], ref)
        return None

    # Sequence format (degrees, minutes, seconds)
    if isinstance(coord_data, (tuple, list)):
        if len(coord_data) == 1:
            return parse_gps_coordinate(coord_data[0], ref)
        val = convert_gps_to_decimal(coord_data, ref)
        return None if val is None or math.isnan(val) else val

    return None


def parse_gps_position(position: Any) -> Optional[Tuple[float, float]]:
    """Parse a combined 'lat lon' position string."""
    if not isinstance(position, str):
        return None

    parts = position.split()
    if len(parts) < 2:
        return None

    try:
        lat, lon = float(parts[0]), float(parts[1])
    except ValueError:
        return None

    if math.isnan(lat) or math.isnan(lon):
        return None
    return lat, lon


def resolve_photo_coordinates(
    exif: ExifRecord,
    device_lat: float,
    device_lon: float,
) -> Tuple[float, float, GpsSource, bool]:
    """
    Decide which coordinates represent where the photo was taken.

    Returns:
        Tuple of (latitude, longitude, source, has_embedded_gps)
    """
    # Method 1: direct GPS fields
    lat = parse_gps_coordinate(exif.gps_latitude, exif.gps_latitude_ref)
    lon = parse_gps_coordinate(exif.gps_longitude, exif.gps_longitude_ref)
    if lat is not None and lon is not None:
        logger.debug("GPS found in direct EXIF fields")
        return lat, lon, GpsSource.EXIF_FIELDS, True

    # Method 2: combined position string
    position = parse_gps_position(exif.gps_position)
    if position is not None:
        logger.debug("GPS found in position string")
        return position[0], position[1], GpsSource.EXIF_POSITION, True

    # Method 3: GPS tags exist but none decode. The device location is
    # substituted, so the proximity check compares it with itself.
    if exif.has_gps_fields:
        logger.warning(
            "GPS fields present but unreadable (%s); using device location",
            ", ".join(exif.gps_keys),
        )
        return device_lat, device_lon, GpsSource.DEVICE_FALLBACK, True

    logger.info("No GPS fields found; using device location")
    return device_lat, device_lon, GpsSource.NO_GPS, False


# =============================================================================
# POLICY RULES
# =============================================================================

def check_presence(exif: ExifRecord) -> None:
    """Reject screenshots and stripped images."""
    if exif.key_count == 0 or not (
        exif.has_make_or_model or exif.has_date_time_original or exif.has_gps_fields
    ):
        logger.info(
            "EXIF validation failed: make/model=%s, original date=%s, gps=%s, keys=%d",
            exif.has_make_or_model,
            exif.has_date_time_original,
            exif.has_gps_fields,
            exif.key_count,
        )
        raise MissingMetadataError(exif.key_count)


def check_freshness(
    exif: ExifRecord,
    now: datetime,
    max_age_hours: float = MAX_PHOTO_AGE_HOURS,
) -> Tuple[datetime, str]:
    """Find the capture date and reject photos older than the limit."""
    date_sources = [
        ("DateTimeOriginal", exif.date_time_original),
        ("FileModifyDate", exif.file_modify_date),
    ]

    capture_date = None
    date_source = None

    for source_name, value in date_sources:
        parsed = parse_exif_datetime(value)
        if parsed is not None:
            capture_date = parsed
            date_source = source_name
            break

    if capture_date is None:
        raise MissingDateError()

    age = photo_age(capture_date, now)
    age_hours = age.total_seconds() / 3600
    logger.info("Photo age: %.0f minutes (from %s)", age.total_seconds() / 60, date_source)

    if age > timedelta(hours=max_age_hours):
        raise StalePhotoError(age_hours, max_age_hours)

    return capture_date, date_source


def check_coordinates_valid(
    photo_lat: float,
    photo_lon: float,
    device_lat: float,
    device_lon: float,
) -> None:
    values = (photo_lat, photo_lon, device_lat, device_lon)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        raise InvalidCoordinatesError(*values)


def check_proximity(
    photo_lat: float,
    photo_lon: float,
    device_lat: float,
    device_lon: float,
    max_distance_m: float = MAX_GPS_DISTANCE_M,
) -> float:
    """Reject photos taken too far from the reported location."""
    distance = calculate_distance_m(photo_lat, photo_lon, device_lat, device_lon)
    logger.info("GPS distance: %.0fm", distance)

    # Compared in whole meters
    if round(distance) > max_distance_m:
        raise LocationMismatchError(
            distance, photo_lat, photo_lon, device_lat, device_lon, max_distance_m
        )
    return distance


# =============================================================================
# MAIN VALIDATION FUNCTIONS
# =============================================================================

def evaluate_metadata(
    metadata: Dict[str, Any],
    device_lat: float,
    device_lon: float,
    now: Optional[datetime] = None,
    max_age_hours: float = MAX_PHOTO_AGE_HOURS,
    max_distance_m: float = MAX_GPS_DISTANCE_M,
) -> MetadataEvaluation:
    """
    Apply the metadata policy to an extracted metadata map.

    Args:
        metadata: Flat metadata map from a MetadataExtractor
        device_lat, device_lon: Coordinates reported by the submitting device
        now: Reference time for the freshness rule

    Returns:
        MetadataEvaluation when every rule passes

    Raises:
        PhotoRejected subclass for the first failing rule
    """
    now = now or datetime.now()
    exif = ExifRecord.from_metadata(metadata)

    logger.info(
        "EXIF validation: keys=%d make=%s model=%s original date=%s gps=%s",
        exif.key_count,
        exif.make or "N/A",
        exif.model or "N/A",
        exif.date_time_original or "N/A",
        "YES" if exif.has_gps_fields else "NO",
    )

    check_presence(exif)
    capture_date, date_source = check_freshness(exif, now, max_age_hours)

    photo_lat, photo_lon, gps_source, has_embedded_gps = resolve_photo_coordinates(
        exif, device_lat, device_lon
    )

    check_coordinates_valid(photo_lat, photo_lon, device_lat, device_lon)
    distance = check_proximity(photo_lat, photo_lon, device_lat, device_lon, max_distance_m)

    return MetadataEvaluation(
        exif=exif,
        capture_date=capture_date,
        capture_date_source=date_source,
        photo_latitude=photo_lat,
        photo_longitude=photo_lon,
        gps_source=gps_source,
        has_embedded_gps=has_embedded_gps,
        distance_m=distance,
    )


def read_metadata(extractor: MetadataExtractor, image_path: str) -> Dict[str, Any]:
    """Run the extractor; any extraction failure rejects the photo."""
    try:
        return extractor.extract(image_path)
    except MetadataExtractionError as e:
        logger.error("EXIF read error: %s", e)
        raise UnreadableMetadataError(str(e)) from e


def validate_photo(
    extractor: MetadataExtractor,
    image_path: str,
    device_lat: float,
    device_lon: float,
    now: Optional[datetime] = None,
    max_age_hours: float = MAX_PHOTO_AGE_HOURS,
    max_distance_m: float = MAX_GPS_DISTANCE_M,
) -> MetadataEvaluation:
    """Extract metadata from a photo and apply the policy to it."""
    metadata = read_metadata(extractor, image_path)
    return evaluate_metadata(
        metadata,
        device_lat,
        device_lon,
        now=now,
        max_age_hours=max_age_hours,
        max_distance_m=max_distance_m,
    )

"""
Error Types for Photo Submission Validation

Two families:
- Rejections (PhotoRejected) - terminal, shown to the submitter
- Advisory failures - logged and replaced with a fallback value

Rejections keep their measured values as attributes; the message is
only the presentation of those values.
"""

from typing import Any, Dict, Optional


class SubmissionError(Exception):
    """Base class for pipeline failures."""

    reason_code = "SUBMISSION_ERROR"


# =============================================================================
# REJECTIONS
# =============================================================================

class PhotoRejected(SubmissionError):
    """Submission must not be stored."""

    reason_code = "REJECTED"

    def details(self) -> Dict[str, Any]:
        """Measured values behind the rejection."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason_code,
            "message": str(self),
            "details": self.details(),
        }


class InvalidDeviceLocationError(PhotoRejected):
    reason_code = "INVALID_DEVICE_LOCATION"

    def __init__(self, latitude: Any, longitude: Any):
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(
            f"Invalid location coordinates. Latitude: {latitude}, Longitude: {longitude}"
        )

    def details(self) -> Dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude}


class MissingMetadataError(PhotoRejected):
    reason_code = "MISSING_METADATA"

    def __init__(self, key_count: int = 0):
        self.key_count = key_count
        super().__init__(
            "Photo has no camera metadata. Please capture a new photo directly with "
            "your device camera or select a photo which has accurate location information."
        )

    def details(self) -> Dict[str, Any]:
        return {"key_count": self.key_count}


class MissingDateError(PhotoRejected):
    reason_code = "MISSING_DATE"

    def __init__(self):
        super().__init__(
            "Photo has no date metadata. Please capture a new photo or select one "
            "with date information."
        )


class StalePhotoError(PhotoRejected):
    reason_code = "STALE_PHOTO"

    def __init__(self, age_hours: float, max_age_hours: float = 24):
        self.age_hours = age_hours
        self.max_age_hours = max_age_hours
        super().__init__(
            f"Photo is older than {max_age_hours:g} hours. Please capture a fresh "
            f"photo or select a recent one."
        )

    def details(self) -> Dict[str, Any]:
        return {
            "age_hours": round(self.age_hours, 2),
            "max_age_hours": self.max_age_hours,
        }


class InvalidCoordinatesError(PhotoRejected):
    reason_code = "INVALID_COORDINATES"

    def __init__(
        self,
        photo_latitude: Any,
        photo_longitude: Any,
        device_latitude: Any,
        device_longitude: Any,
    ):
        self.photo_latitude = photo_latitude
        self.photo_longitude = photo_longitude
        self.device_latitude = device_latitude
        self.device_longitude = device_longitude
        super().__init__(
            "Location coordinates are invalid. Please try again with valid coordinates."
        )

    def details(self) -> Dict[str, Any]:
        return {
            "photo_latitude": self.photo_latitude,
            "photo_longitude": self.photo_longitude,
            "device_latitude": self.device_latitude,
            "device_longitude": self.device_longitude,
        }


class LocationMismatchError(PhotoRejected):
    reason_code = "LOCATION_MISMATCH"

    def __init__(
        self,
        distance_m: float,
        photo_latitude: float,
        photo_longitude: float,
        device_latitude: float,
        device_longitude: float,
        max_distance_m: float = 200,
    ):
        self.distance_m = distance_m
        self.photo_latitude = photo_latitude
        self.photo_longitude = photo_longitude
        self.device_latitude = device_latitude
        self.device_longitude = device_longitude
        self.max_distance_m = max_distance_m
        super().__init__(
            f"Photo was taken {distance_m:.0f}m away from reported location. "
            f"Photo GPS: ({photo_latitude:.6f}, {photo_longitude:.6f}), "
            f"Reported: ({device_latitude:.6f}, {device_longitude:.6f}). "
            f"Please use a photo taken at the exact location of the issue."
        )

    def details(self) -> Dict[str, Any]:
        return {
            "distance_m": round(self.distance_m, 1),
            "max_distance_m": self.max_distance_m,
            "photo_latitude": self.photo_latitude,
            "photo_longitude": self.photo_longitude,
            "device_latitude": self.device_latitude,
            "device_longitude": self.device_longitude,
        }


class UnreadableMetadataError(PhotoRejected):
    reason_code = "UNREADABLE_METADATA"

    def __init__(self, cause: Optional[str] = None):
        self.cause = cause
        super().__init__(
            "Unable to read photo metadata. Please capture a new photo with your device camera."
        )

    def details(self) -> Dict[str, Any]:
        return {"cause": self.cause} if self.cause else {}


# =============================================================================
# COLLABORATOR / ADVISORY FAILURES
# =============================================================================

class MetadataExtractionError(SubmissionError):
    """Raised by a metadata extractor; the pipeline turns it into a rejection."""

    reason_code = "EXTRACTION_ERROR"


class GeocodingError(SubmissionError):
    """One failed reverse-geocoding attempt. Always retryable."""

    reason_code = "GEOCODING_ERROR"


class HashComputationError(SubmissionError):
    """Perceptual hash could not be computed for an image."""

    reason_code = "HASH_ERROR"

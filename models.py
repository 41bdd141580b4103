"""
Data Models for Photo Submission Validation

Defines common structures for:
- Submission input (SubmissionContext)
- Extracted metadata view (ExifRecord)
- Metadata policy outcome (MetadataEvaluation)
- Duplicate detection (HashRecord, SimilarImage)
- Geocoding cache entries (GeoCacheEntry)
- Final pipeline output (SubmissionDecision)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from errors import PhotoRejected


# =============================================================================
# ENUMS
# =============================================================================

class Decision(str, Enum):
    """Final processing decision."""
    ACCEPT = "ACCEPT"
    REVIEW = "REVIEW"
    REJECT = "REJECT"


class GpsSource(str, Enum):
    """Where the photo coordinates used for the proximity check came from."""
    EXIF_FIELDS = "exif_fields"
    EXIF_POSITION = "exif_position"
    # GPS tags exist but could not be decoded; device coordinates substituted
    DEVICE_FALLBACK = "device_fallback"
    # No GPS tags at all; device coordinates substituted
    NO_GPS = "no_gps"


# =============================================================================
# SUBMISSION INPUT
# =============================================================================

@dataclass
class SubmissionContext:
    """
    One candidate submission.

    Created per request and discarded once the pipeline returns.
    """
    latitude: float
    longitude: float
    title: str = ""
    description: str = ""
    image_path: Optional[str] = None
    photo_url: Optional[str] = None
    submitted_at: datetime = field(default_factory=datetime.now)

    @property
    def has_image(self) -> bool:
        return bool(self.image_path)


# =============================================================================
# METADATA
# =============================================================================

@dataclass(frozen=True)
class ExifRecord:
    """
    Read-only view over a flat metadata map.

    Keys follow exiftool naming (Make, Model, DateTimeOriginal,
    FileModifyDate, GPSLatitude, GPSLatitudeRef, GPSPosition, ...).
    """
    make: Optional[str] = None
    model: Optional[str] = None
    date_time_original: Optional[Any] = None
    file_modify_date: Optional[Any] = None
    gps_latitude: Optional[Any] = None
    gps_longitude: Optional[Any] = None
    gps_latitude_ref: Optional[str] = None
    gps_longitude_ref: Optional[str] = None
    gps_position: Optional[Any] = None
    gps_keys: tuple = ()
    key_count: int = 0

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "ExifRecord":
        metadata = metadata or {}
        return cls(
            make=_text_or_none(metadata.get("Make")),
            model=_text_or_none(metadata.get("Model")),
            date_time_original=metadata.get("DateTimeOriginal") or None,
            file_modify_date=metadata.get("FileModifyDate") or None,
            gps_latitude=metadata.get("GPSLatitude"),
            gps_longitude=metadata.get("GPSLongitude"),
            gps_latitude_ref=_text_or_none(metadata.get("GPSLatitudeRef")),
            gps_longitude_ref=_text_or_none(metadata.get("GPSLongitudeRef")),
            gps_position=metadata.get("GPSPosition"),
            gps_keys=tuple(sorted(k for k in metadata if str(k).startswith("GPS"))),
            key_count=len(metadata),
        )

    @property
    def has_make_or_model(self) -> bool:
        return bool(self.make or self.model)

    @property
    def has_date_time_original(self) -> bool:
        return bool(self.date_time_original)

    @property
    def has_gps_fields(self) -> bool:
        return len(self.gps_keys) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "make": self.make,
            "model": self.model,
            "date_time_original": _stringify(self.date_time_original),
            "file_modify_date": _stringify(self.file_modify_date),
            "gps_keys": list(self.gps_keys),
            "key_count": self.key_count,
        }


@dataclass
class MetadataEvaluation:
    """Outcome of a photo that passed every metadata rule."""
    exif: ExifRecord
    capture_date: datetime
    capture_date_source: str
    photo_latitude: float
    photo_longitude: float
    gps_source: GpsSource
    has_embedded_gps: bool
    distance_m: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exif": self.exif.to_dict(),
            "capture_date": self.capture_date.isoformat(),
            "capture_date_source": self.capture_date_source,
            "photo_latitude": self.photo_latitude,
            "photo_longitude": self.photo_longitude,
            "gps_source": self.gps_source.value,
            "has_embedded_gps": self.has_embedded_gps,
            "distance_m": round(self.distance_m, 1),
        }


# =============================================================================
# DUPLICATE DETECTION
# =============================================================================

@dataclass(frozen=True)
class HashRecord:
    """Stored fingerprint of an accepted issue's image."""
    issue_id: Any
    phash: Optional[str]


@dataclass(frozen=True)
class SimilarImage:
    issue_id: Any
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.issue_id, "similarity": self.similarity}


# =============================================================================
# GEOCODING CACHE
# =============================================================================

@dataclass(frozen=True)
class GeoCacheEntry:
    address: str
    created_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.created_at < ttl


# =============================================================================
# PIPELINE RESULT
# =============================================================================

@dataclass
class SubmissionDecision:
    """
    Final output of the validation pipeline.

    This is all the persistence layer receives: it stores the issue when
    `accepted` is True and drops it otherwise.
    """
    accepted: bool = False
    decision: str = Decision.REJECT.value
    rejection: Optional[PhotoRejected] = None
    address: Optional[str] = None
    needs_review: bool = False
    review_reasons: List[str] = field(default_factory=list)
    phash: Optional[str] = None
    similar_images: List[SimilarImage] = field(default_factory=list)
    metadata: Optional[MetadataEvaluation] = None
    timestamp: str = ""

    @property
    def rejection_reason(self) -> Optional[str]:
        return str(self.rejection) if self.rejection else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "decision": self.decision,
            "rejection": self.rejection.to_dict() if self.rejection else None,
            "address": self.address,
            "needs_review": self.needs_review,
            "review_reasons": self.review_reasons,
            "phash": self.phash,
            "similar_images": [s.to_dict() for s in self.similar_images],
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "timestamp": self.timestamp,
        }

    def summary(self) -> str:
        """Human-readable summary."""
        icon = {"ACCEPT": "✅", "REVIEW": "⚠️", "REJECT": "❌"}.get(self.decision, "❓")

        if self.rejection:
            lines = [f"{icon} {self.decision}: {self.rejection}"]
        else:
            lines = [f"{icon} {self.decision}"]

        if self.address:
            lines.append(f"   Address: {self.address}")
        if self.metadata:
            lines.append(f"   Distance from device: {self.metadata.distance_m:.0f}m "
                         f"({self.metadata.gps_source.value})")
        if self.phash:
            lines.append(f"   pHash: {self.phash}")
        for reason in self.review_reasons:
            lines.append(f"   Review: {reason}")

        return "\n".join(lines)


def _text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _stringify(value: Any) -> Optional[str]:
    return None if value is None else str(value)

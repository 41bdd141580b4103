"""
Submission Validation Pipeline

Unified flow for a citizen-submitted issue photo:
1. Check device coordinates
2. Validate photo metadata (presence, freshness, GPS proximity)
3. Reverse geocode the device location (concurrently with step 2)
4. Compute perceptual hash and look for near-duplicate photos
5. Combine into one decision

A metadata rejection stops the pipeline. Geocoding and hashing failures
only degrade the output (fallback address, no duplicate check).

Usage:
    from pipeline import build_pipeline
    from models import SubmissionContext

    pipeline = build_pipeline()
    decision = pipeline.validate(SubmissionContext(
        latitude=39.7684, longitude=-89.6502, image_path="photo.jpg"
    ))

    # With progress callback:
    def on_progress(stage, progress, message):
        print(f"[{progress*100:.0f}%] {stage}: {message}")

    decision = pipeline.validate(ctx, on_progress=on_progress)
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from config import Settings, load_settings
from errors import HashComputationError, PhotoRejected, UnreadableMetadataError
from geocoding import GeoCache, ReverseGeocoder, format_coordinates_as_address
from metadata_extractor import MetadataExtractor, get_metadata_extractor
from models import (
    Decision,
    HashRecord,
    MetadataEvaluation,
    SimilarImage,
    SubmissionContext,
    SubmissionDecision,
)
from phash import SIMILARITY_THRESHOLD, compute_phash, find_similar_images
from validators import (
    MAX_GPS_DISTANCE_M,
    MAX_PHOTO_AGE_HOURS,
    evaluate_metadata,
    read_metadata,
    validate_device_location,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, str], None]

REVIEW_REMOTE_PHOTO = "Photo supplied as remote URL without metadata"
REVIEW_SIMILAR_IMAGE = "Photo is similar to an existing issue photo"


# =============================================================================
# STORED FINGERPRINTS
# =============================================================================

class HashStore:
    """Read access to fingerprints of already stored issues."""

    def all_hashes(self) -> Iterable[HashRecord]:
        raise NotImplementedError


class InMemoryHashStore(HashStore):
    def __init__(self, records: Iterable[HashRecord] = ()):
        self._records: List[HashRecord] = list(records)
        self._lock = threading.Lock()

    def add(self, issue_id: Any, phash: Optional[str]) -> None:
        if phash:
            with self._lock:
                self._records.append(HashRecord(issue_id=issue_id, phash=phash))

    def all_hashes(self) -> List[HashRecord]:
        with self._lock:
            return list(self._records)


# =============================================================================
# MAIN PIPELINE
# =============================================================================

class SubmissionPipeline:
    """
    Decides whether a submission is accepted, rejected or needs review.

    The pipeline never stores anything; the caller persists the issue
    from the returned SubmissionDecision.
    """

    def __init__(
        self,
        extractor: MetadataExtractor,
        geocoder: ReverseGeocoder,
        hash_store: Optional[HashStore] = None,
        *,
        extraction_timeout: float = 5.0,
        max_photo_age_hours: float = MAX_PHOTO_AGE_HOURS,
        max_gps_distance_m: float = MAX_GPS_DISTANCE_M,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        max_workers: int = 4,
    ):
        self.extractor = extractor
        self.geocoder = geocoder
        self.hash_store = hash_store or InMemoryHashStore()
        self.extraction_timeout = extraction_timeout
        self.max_photo_age_hours = max_photo_age_hours
        self.max_gps_distance_m = max_gps_distance_m
        self.similarity_threshold = similarity_threshold
        # Geocoding gets its own pool so it cannot hold up extraction
        self._geocode_executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="geocode"
        )
        self._extract_executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="extract"
        )

    def close(self) -> None:
        self._geocode_executor.shutdown(wait=False)
        self._extract_executor.shutdown(wait=False)

    def __enter__(self) -> "SubmissionPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def validate(
        self,
        ctx: SubmissionContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SubmissionDecision:
        """
        Run a submission through the full pipeline.

        Args:
            ctx: The candidate submission
            on_progress: Optional callback(stage, progress, message)

        Returns:
            SubmissionDecision; `rejection` is set when the photo was refused
        """
        timestamp = datetime.now().isoformat()

        def progress(stage: str, pct: float, msg: str = ""):
            if on_progress:
                on_progress(stage, pct, msg)

        progress("start", 0.0, "Validating submission...")

        # Step 1: Device coordinates
        try:
            device_lat, device_lon = validate_device_location(ctx.latitude, ctx.longitude)
        except PhotoRejected as e:
            return self._reject(e, timestamp, progress)

        # Fingerprints as of pipeline start
        existing = list(self.hash_store.all_hashes()) if ctx.has_image else []

        # Step 2 + 3: Metadata validation and geocoding run side by side
        progress("geocoding", 0.1, "Resolving address...")
        address_future = self._geocode_executor.submit(self._resolve_address, device_lat, device_lon)

        evaluation: Optional[MetadataEvaluation] = None
        if ctx.has_image:
            progress("metadata", 0.2, "Reading photo metadata...")
            try:
                evaluation = self._validate_metadata(ctx, device_lat, device_lon)
            except PhotoRejected as e:
                return self._reject(e, timestamp, progress)
            progress("metadata", 0.5, "Photo metadata validated")

        address = address_future.result()
        progress("geocoding", 0.6, f"Address: {address}")

        # Step 4: Duplicate detection
        phash = None
        similar: List[SimilarImage] = []
        if ctx.has_image:
            progress("duplicates", 0.7, "Checking for duplicate photos...")
            phash, similar = self._find_duplicates(ctx.image_path, existing)

        # Step 5: Decision
        review_reasons = []
        if not ctx.has_image and ctx.photo_url:
            review_reasons.append(REVIEW_REMOTE_PHOTO)
        if similar:
            review_reasons.append(REVIEW_SIMILAR_IMAGE)

        needs_review = bool(review_reasons)
        decision = Decision.REVIEW if needs_review else Decision.ACCEPT

        result = SubmissionDecision(
            accepted=True,
            decision=decision.value,
            address=address,
            needs_review=needs_review,
            review_reasons=review_reasons,
            phash=phash,
            similar_images=similar,
            metadata=evaluation,
            timestamp=timestamp,
        )

        logger.info("Submission accepted: decision=%s address=%s", decision.value, address)
        progress("done", 1.0, f"Complete: {decision.value}")
        return result

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _validate_metadata(
        self,
        ctx: SubmissionContext,
        device_lat: float,
        device_lon: float,
    ) -> MetadataEvaluation:
        metadata = self._read_metadata(ctx.image_path)
        return evaluate_metadata(
            metadata,
            device_lat,
            device_lon,
            now=ctx.submitted_at,
            max_age_hours=self.max_photo_age_hours,
            max_distance_m=self.max_gps_distance_m,
        )

    def _read_metadata(self, image_path: str) -> dict:
        """Run the extractor; only its own run time counts against the timeout."""
        started = threading.Event()

        def run():
            started.set()
            return read_metadata(self.extractor, image_path)

        future = self._extract_executor.submit(run)
        started.wait()
        try:
            return future.result(timeout=self.extraction_timeout)
        except FutureTimeout:
            future.cancel()
            logger.error(
                "Metadata extraction exceeded %.1fs for %s",
                self.extraction_timeout,
                image_path,
            )
            raise UnreadableMetadataError(
                f"extraction timed out after {self.extraction_timeout:g}s"
            )

    def _resolve_address(self, latitude: float, longitude: float) -> str:
        try:
            return self.geocoder.reverse(latitude, longitude)
        except Exception:
            # Address is advisory; the submission goes ahead with coordinates
            logger.exception("Geocoding error for (%s, %s)", latitude, longitude)
            return format_coordinates_as_address(latitude, longitude)

    def _find_duplicates(
        self,
        image_path: str,
        existing: List[HashRecord],
    ) -> tuple:
        try:
            phash = compute_phash(image_path)
        except HashComputationError as e:
            logger.warning("pHash computation failed: %s", e)
            return None, []

        logger.info("pHash computed: %s", phash)
        similar = find_similar_images(phash, existing, self.similarity_threshold)

        if similar:
            logger.warning(
                "DUPLICATE ALERT: image is similar to %d existing image(s)", len(similar)
            )
            for image in similar:
                logger.warning("   - Issue %s: %.1f%% similarity", image.issue_id, image.similarity)

        return phash, similar

    def _reject(
        self,
        rejection: PhotoRejected,
        timestamp: str,
        progress: Callable[[str, float, str], None],
    ) -> SubmissionDecision:
        logger.info("Submission rejected (%s): %s", rejection.reason_code, rejection)
        progress("done", 1.0, f"Complete: {Decision.REJECT.value}")
        return SubmissionDecision(
            accepted=False,
            decision=Decision.REJECT.value,
            rejection=rejection,
            timestamp=timestamp,
        )


# =============================================================================
# WIRING
# =============================================================================

def build_pipeline(
    settings: Optional[Settings] = None,
    hash_store: Optional[HashStore] = None,
) -> SubmissionPipeline:
    """Build a pipeline from configuration."""
    settings = settings or load_settings()

    extractor = get_metadata_extractor(
        settings.metadata_backend,
        exiftool_path=settings.exiftool_path,
        timeout=settings.extraction_timeout,
    )
    cache = GeoCache(
        ttl=settings.geocode_cache_ttl,
        max_size=settings.geocode_cache_max_size,
    )
    geocoder = ReverseGeocoder(
        cache,
        url=settings.geocoder_url,
        user_agent=settings.geocoder_user_agent,
        timeout=settings.geocoder_timeout,
        retries=settings.geocoder_retries,
        rate_limit_delay=settings.geocoder_rate_limit_delay,
    )

    return SubmissionPipeline(
        extractor,
        geocoder,
        hash_store,
        extraction_timeout=settings.extraction_timeout,
        max_photo_age_hours=settings.max_photo_age_hours,
        max_gps_distance_m=settings.max_gps_distance_m,
        similarity_threshold=settings.similarity_threshold,
    )


# =============================================================================
# CLI
# =============================================================================

if __name__ == "__main__":
    import sys

    from config import configure_logging

    if len(sys.argv) < 4:
        print("Usage: python pipeline.py <photo> <latitude> <longitude>")
        sys.exit(1)

    settings = load_settings()
    configure_logging(settings.log_level)

    print("=" * 60)
    print(" SUBMISSION VALIDATION PIPELINE")
    print("=" * 60)

    def show_progress(stage, pct, msg):
        bar = "█" * int(pct * 20) + "░" * (20 - int(pct * 20))
        print(f"\r  [{bar}] {pct*100:3.0f}% {msg:<50}", end="", flush=True)

    with build_pipeline(settings) as pipeline:
        decision = pipeline.validate(
            SubmissionContext(
                latitude=float(sys.argv[2]),
                longitude=float(sys.argv[3]),
                image_path=sys.argv[1],
            ),
            on_progress=show_progress,
        )
    print()

    print("\n" + "=" * 60)
    print(" RESULT")
    print("=" * 60)
    print(decision.summary())
    print("\n" + "=" * 60)
    print(" FULL JSON")
    print("=" * 60)
    print(json.dumps(decision.to_dict(), indent=2, ensure_ascii=False, default=str))

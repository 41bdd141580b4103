"""
Perceptual Hash Duplicate Detection

Computes a 64-bit DCT perceptual hash (8x8 grid) for uploaded photos and
finds earlier issues whose photos are near-duplicates.

Similarity = (1 - hamming_distance / 64) * 100, rounded to one decimal.
"""

import logging
from typing import Iterable, List, Optional

import imagehash
from PIL import Image, UnidentifiedImageError

from errors import HashComputationError
from models import HashRecord, SimilarImage


logger = logging.getLogger(__name__)


HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE
SIMILARITY_THRESHOLD = 90.0


def compute_phash(image_path: str) -> str:
    """
    Compute perceptual hash (pHash) for an image file.

    Returns:
        16-character hex string

    Raises:
        HashComputationError if the image cannot be read or hashed
    """
    try:
        with Image.open(image_path) as img:
            digest = str(imagehash.phash(img, hash_size=HASH_SIZE))
    except (
        OSError,
        UnidentifiedImageError,
        Image.DecompressionBombError,
        SyntaxError,
        ValueError,
    ) as e:
        raise HashComputationError(f"Cannot hash {image_path}: {e}") from e

    if not digest:
        raise HashComputationError(f"Empty hash for {image_path}")
    return digest


def hamming_distance(hash1: Optional[str], hash2: Optional[str]) -> int:
    """
    Number of differing bits between two hex hashes.

    Missing, unequal-length or non-hex hashes count as maximally different.
    """
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return HASH_BITS

    try:
        diff = int(hash1, 16) ^ int(hash2, 16)
    except ValueError:
        return HASH_BITS

    return min(bin(diff).count("1"), HASH_BITS)


def calculate_similarity(hash1: Optional[str], hash2: Optional[str]) -> float:
    """Similarity percentage (0-100) between two hashes."""
    distance = hamming_distance(hash1, hash2)
    return round((1 - distance / HASH_BITS) * 100, 1)


def find_similar_images(
    current_hash: Optional[str],
    existing: Iterable[HashRecord],
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[SimilarImage]:
    """Return every stored record at or above the similarity threshold."""
    if not current_hash:
        return []

    similar = []
    for record in existing or ():
        if not record.phash:
            continue

        similarity = calculate_similarity(current_hash, record.phash)
        if similarity >= threshold:
            similar.append(SimilarImage(issue_id=record.issue_id, similarity=similarity))

    return similar

"""
Similarity scoring between catalog tracks and audio candidates

Pure functions, no I/O. Scores are integers on a 0-100 scale:
- String similarity: Levenshtein edit distance over the longer string
- Duration similarity: coarse step buckets favouring near-identical masters
- Match confidence: title 40% + artist 35% + duration 25%
"""

import math
import re
from typing import Optional

import structlog
from rapidfuzz.distance import Levenshtein

from .models import ConfidenceTier

logger = structlog.get_logger(__name__)

TITLE_WEIGHT = 0.40
ARTIST_WEIGHT = 0.35
DURATION_WEIGHT = 0.25

HIGH_CONFIDENCE_FLOOR = 90  # exclusive
MEDIUM_CONFIDENCE_FLOOR = 70  # inclusive

DEFAULT_TRACK_DURATION = 180

# (max difference in seconds, score)
_DURATION_STEPS = (
    (2, 100),
    (5, 80),
    (10, 60),
    (30, 40),
)
_DURATION_FLOOR_SCORE = 20

_ISO_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; scores round .5 upwards
    return int(math.floor(value + 0.5))


def string_similarity(a: Optional[str], b: Optional[str]) -> int:
    """
    Similarity of two strings after lowercasing and trimming (0-100).

    Identical strings, including two empty ones, score 100.
    """
    s1 = (a or "").lower().strip()
    s2 = (b or "").lower().strip()

    if s1 == s2:
        return 100

    max_length = max(len(s1), len(s2))
    distance = Levenshtein.distance(s1, s2)
    return _round_half_up((max_length - distance) / max_length * 100)


def duration_similarity(original_seconds: int, candidate_seconds: int) -> int:
    """Step score for the absolute duration difference, no interpolation"""
    difference = abs(original_seconds - candidate_seconds)
    for max_difference, score in _DURATION_STEPS:
        if difference <= max_difference:
            return score
    return _DURATION_FLOOR_SCORE


def match_confidence(
    title: str,
    artist: str,
    duration_seconds: int,
    candidate_title: Optional[str],
    candidate_artist: Optional[str],
    candidate_duration: Optional[int],
    boost: int = 0,
) -> int:
    """
    Weighted confidence that a candidate is the given track (0-100).

    ``boost`` is added before clamping; catalog-embedded videos use it.
    """
    title_score = string_similarity(title, candidate_title)
    artist_score = string_similarity(artist, candidate_artist)
    duration_score = duration_similarity(duration_seconds, candidate_duration or 0)

    confidence = _round_half_up(
        title_score * TITLE_WEIGHT
        + artist_score * ARTIST_WEIGHT
        + duration_score * DURATION_WEIGHT
    )
    confidence += boost

    return min(100, max(0, confidence))


def classify(confidence: int) -> ConfidenceTier:
    """91+ is high, 70-90 is medium, anything below is low"""
    if confidence > HIGH_CONFIDENCE_FLOOR:
        return ConfidenceTier.HIGH
    if confidence >= MEDIUM_CONFIDENCE_FLOOR:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def parse_track_duration(duration: Optional[str], default: int = DEFAULT_TRACK_DURATION) -> int:
    """
    Convert a catalog duration ("3:45" or "1:02:30") to seconds.

    Never raises; malformed or empty values fall back to ``default``.
    """
    if not duration or not isinstance(duration, str):
        return default

    parts = duration.strip().split(":")
    if len(parts) not in (2, 3) or not all(part.isdecimal() and part.isascii() for part in parts):
        logger.debug("Unparsable track duration, using default", duration=duration, default=default)
        return default

    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return seconds


def parse_iso8601_duration(duration: Optional[str]) -> int:
    """YouTube ``contentDetails.duration`` (e.g. PT4M13S) to seconds, 0 if unknown"""
    if not duration:
        return 0
    match = _ISO_DURATION.fullmatch(duration)
    if not match:
        return 0
    hours, minutes, seconds = (int(group or 0) for group in match.groups())
    return hours * 3600 + minutes * 60 + seconds

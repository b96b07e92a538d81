"""Confidence policy shared by recognition and display.

Maps a confidence score in [0, 1] to a tier and an uncertainty flag, and
holds the field weighting used to derive an attempt's overall confidence.
"""
import math
from enum import Enum
from typing import Mapping, Optional

FIELD_NAMES = ("player_name", "year", "brand", "card_series")

FIELD_WEIGHTS = {
    "player_name": 0.35,
    "year": 0.25,
    "brand": 0.25,
    "card_series": 0.15,
}

HIGH_THRESHOLD = 0.7
MEDIUM_THRESHOLD = 0.5
UNCERTAINTY_THRESHOLD = 0.6

_WEIGHT_TOLERANCE = 1e-9


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_TIER_MESSAGES = {
    ConfidenceTier.HIGH: "Card recognized with high confidence. Please review the details.",
    ConfidenceTier.MEDIUM: "Card recognized with medium confidence. Please verify the highlighted fields.",
    ConfidenceTier.LOW: "Low confidence recognition. Please carefully review all fields before saving.",
}


def check_confidence(confidence: float) -> float:
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError(f"Confidence must be a number, got {confidence!r}")
    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise ValueError(f"Confidence must be within [0, 1], got {confidence!r}")
    return float(confidence)


def validate_weights(weights: Mapping[str, float]) -> Mapping[str, float]:
    if set(weights) != set(FIELD_NAMES):
        raise ValueError(f"Field weights must cover exactly {list(FIELD_NAMES)}, got {sorted(weights)}")
    for name, weight in weights.items():
        if weight < 0:
            raise ValueError(f"Weight for {name} is negative: {weight}")
    total = sum(weights.values())
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        raise ValueError(f"Field weights must sum to 1.0, got {total}")
    return weights


validate_weights(FIELD_WEIGHTS)


def tier_of(confidence: float) -> ConfidenceTier:
    confidence = check_confidence(confidence)
    if confidence >= HIGH_THRESHOLD:
        return ConfidenceTier.HIGH
    if confidence >= MEDIUM_THRESHOLD:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def is_uncertain(confidence: float, threshold: float = UNCERTAINTY_THRESHOLD) -> bool:
    return check_confidence(confidence) < threshold


def describe(confidence: float) -> str:
    return _TIER_MESSAGES[tier_of(confidence)]


def overall_confidence(field_confidences: Mapping[str, Optional[float]], weights: Mapping[str, float] = FIELD_WEIGHTS) -> float:
    """Weighted sum of per-field confidences.

    Absent fields (missing or None) contribute 0; their weight is not spread
    over the fields that are present.
    """
    total = 0.0
    for name, weight in weights.items():
        value = field_confidences.get(name)
        if value is None:
            continue
        total += check_confidence(value) * weight
    # Float summation can land a hair above 1.0 when every field is 1.0.
    return min(total, 1.0)

"""
severity.py — Crowd-corroboration severity engine.

Pure, synchronous functions that turn raw tap statistics into:

    • severity score          (0–100 integer)
    • severity tier           (low / medium / high / critical)
    • notification radius     (km)
    • escalation edge         (which threshold, if any, was just crossed)

═══════════════════════════════════════════════════════════════════════════
SCORING FORMULA
═══════════════════════════════════════════════════════════════════════════

Each signal is normalised against a ceiling and capped at 1.0 BEFORE it is
weighted, so no single factor can exceed its share of the budget:

    tap_score       = min(tap_count / 50, 1)        × W_tap
    frequency_score = min(tap_frequency / 5, 1)     × W_freq
    reporter_score  = min(unique_reporters / 10, 1) × W_reporter

    severity = round_half_up(tap_score + frequency_score + reporter_score)

    W_tap + W_freq + W_reporter = 100

Weight presets:

    Preset              W_tap    W_freq    W_reporter
    ─────────────────   ─────    ──────    ──────────
    reporter_dominant   20       30        50          (default)
    balanced            30       40        30

Independent witnesses are the strongest corroboration signal, so the
default gives unique reporters half of the budget.

═══════════════════════════════════════════════════════════════════════════
TIERS, RADII AND ESCALATION EDGES
═══════════════════════════════════════════════════════════════════════════

    Score      Tier        Radius
    ───────    ────────    ──────
    0 – 29     low          3 km
    30 – 49    medium       5 km
    50 – 79    high        10 km
    80 – 100   critical    15 km

Lower bounds are inclusive (30 → medium, 29 → low).

An escalation edge is reported only on the update where the score moves
from below an edge to at-or-above it. When several edges are crossed in a
single update only the highest is reported.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Constants — Tunable Parameters
# ═══════════════════════════════════════════════════════════════════════════

# Normalisation ceilings (raw value at which a sub-score saturates)
TAP_COUNT_CEILING = 50.0
TAP_FREQUENCY_CEILING = 5.0       # taps per second
UNIQUE_REPORTER_CEILING = 10.0

# Tier lower bounds (inclusive)
THRESHOLD_MEDIUM = 30
THRESHOLD_HIGH = 50
THRESHOLD_CRITICAL = 80

# Ordered escalation edges
ESCALATION_EDGES: Tuple[int, ...] = (THRESHOLD_MEDIUM, THRESHOLD_HIGH, THRESHOLD_CRITICAL)

# Edge at or above which an alert becomes "escalated" and fans out again
ESCALATION_STATUS_EDGE = THRESHOLD_HIGH

# Notification radius per tier (km)
RADIUS_LOW_KM = 3.0
RADIUS_MEDIUM_KM = 5.0
RADIUS_HIGH_KM = 10.0
RADIUS_CRITICAL_KM = 15.0

MAX_SCORE = 100
MIN_SCORE = 0


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class SeverityTier(str, Enum):
    """Severity label shown to responders."""
    LOW = "low"             # 0–29
    MEDIUM = "medium"       # 30–49
    HIGH = "high"           # 50–79
    CRITICAL = "critical"   # 80–100


# ═══════════════════════════════════════════════════════════════════════════
# Weight Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SeverityWeights:
    """
    Weighting policy for the three corroboration signals.

    The three weights must sum to 100 so that a fully saturated alert
    scores exactly 100.
    """
    tap_weight: float
    freq_weight: float
    reporter_weight: float

    def __post_init__(self) -> None:
        for name in ("tap_weight", "freq_weight", "reporter_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        total = self.tap_weight + self.freq_weight + self.reporter_weight
        if not math.isclose(total, MAX_SCORE, abs_tol=1e-9):
            raise ValueError(f"Severity weights must sum to 100, got {total}")

    def to_dict(self) -> Dict[str, float]:
        return {
            "tap_weight": self.tap_weight,
            "freq_weight": self.freq_weight,
            "reporter_weight": self.reporter_weight,
        }


REPORTER_DOMINANT_WEIGHTS = SeverityWeights(tap_weight=20, freq_weight=30, reporter_weight=50)
BALANCED_WEIGHTS = SeverityWeights(tap_weight=30, freq_weight=40, reporter_weight=30)

DEFAULT_WEIGHTS = REPORTER_DOMINANT_WEIGHTS

WEIGHT_PRESETS: Dict[str, SeverityWeights] = {
    "reporter_dominant": REPORTER_DOMINANT_WEIGHTS,
    "balanced": BALANCED_WEIGHTS,
}


def resolve_weights(
    preset: str = "reporter_dominant",
    *,
    tap_weight: Optional[float] = None,
    freq_weight: Optional[float] = None,
    reporter_weight: Optional[float] = None,
) -> SeverityWeights:
    """
    Resolve the active weight policy.

    Explicit weights win over the named preset, but must be given as a
    complete set of three.

    Raises
    ------
    ValueError
        Unknown preset, partial override, or weights not summing to 100.
    """
    explicit = (tap_weight, freq_weight, reporter_weight)
    if any(w is not None for w in explicit):
        if any(w is None for w in explicit):
            raise ValueError(
                "Explicit severity weights must set tap, freq and reporter weights together"
            )
        return SeverityWeights(tap_weight, freq_weight, reporter_weight)

    weights = WEIGHT_PRESETS.get(preset)
    if weights is None:
        raise ValueError(
            f"Unknown severity weight preset '{preset}'. "
            f"Must be one of: {sorted(WEIGHT_PRESETS)}"
        )
    return weights


# ═══════════════════════════════════════════════════════════════════════════
# Scoring
# ═══════════════════════════════════════════════════════════════════════════

def _normalise(value: float, ceiling: float) -> float:
    """Map a raw signal onto [0, 1]; negatives clamp to 0."""
    return min(max(value, 0.0) / ceiling, 1.0)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_severity(
    tap_count: float,
    tap_frequency: float,
    unique_reporters: float,
    weights: SeverityWeights = DEFAULT_WEIGHTS,
) -> int:
    """
    Compute the 0–100 severity score for an alert.

    Parameters
    ----------
    tap_count : float
        Total taps recorded against the alert.
    tap_frequency : float
        Taps per second over the trailing window.
    unique_reporters : float
        Distinct identities that have tapped the alert.
    weights : SeverityWeights
        Weight policy (defaults to the reporter-dominant preset).

    Returns
    -------
    int
        Score in [0, 100].

    Examples
    --------
    >>> compute_severity(7, 0.6, 5)
    31
    >>> compute_severity(500, 50, 100)
    100
    >>> compute_severity(0, 0, 0)
    0
    """
    tap_score = _normalise(tap_count, TAP_COUNT_CEILING) * weights.tap_weight
    frequency_score = _normalise(tap_frequency, TAP_FREQUENCY_CEILING) * weights.freq_weight
    reporter_score = _normalise(unique_reporters, UNIQUE_REPORTER_CEILING) * weights.reporter_weight

    total = _round_half_up(tap_score + frequency_score + reporter_score)
    return max(MIN_SCORE, min(MAX_SCORE, total))


def severity_tier(score: float) -> SeverityTier:
    """
    Map a severity score to its tier.

    >>> severity_tier(29)
    <SeverityTier.LOW: 'low'>
    >>> severity_tier(30)
    <SeverityTier.MEDIUM: 'medium'>
    >>> severity_tier(80)
    <SeverityTier.CRITICAL: 'critical'>
    """
    if score >= THRESHOLD_CRITICAL:
        return SeverityTier.CRITICAL
    if score >= THRESHOLD_HIGH:
        return SeverityTier.HIGH
    if score >= THRESHOLD_MEDIUM:
        return SeverityTier.MEDIUM
    return SeverityTier.LOW


def notification_radius_km(score: float) -> float:
    """Radius (km) of the notification zone for a given score."""
    return {
        SeverityTier.LOW: RADIUS_LOW_KM,
        SeverityTier.MEDIUM: RADIUS_MEDIUM_KM,
        SeverityTier.HIGH: RADIUS_HIGH_KM,
        SeverityTier.CRITICAL: RADIUS_CRITICAL_KM,
    }[severity_tier(score)]


def escalation_edge(old_score: float, new_score: float) -> Optional[int]:
    """
    Return the highest edge crossed upward by this update, or None.

    An edge E is crossed when ``old_score < E <= new_score``.

    >>> escalation_edge(25, 35)
    30
    >>> escalation_edge(10, 95)
    80
    >>> escalation_edge(60, 70) is None
    True
    """
    crossed = None
    for edge in ESCALATION_EDGES:
        if old_score < edge <= new_score:
            crossed = edge
    return crossed

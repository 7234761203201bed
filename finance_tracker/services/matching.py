"""Amount and date matching between credit-card statements and bill payments.

Scoring is pure: no I/O, no module state touched while scoring. Callers that
want to see why a pair was rejected pass a diagnostics sink; nothing is logged
from inside the scorer itself.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from finance_tracker.config import settings
from finance_tracker.logger import get_logger

logger = get_logger(__name__)


class ConfidenceTier(str, Enum):
    """How trustworthy an automatic match is, from the amount band it falls in."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class ToleranceBand:
    """Amount tolerance: a fraction of the amount or a fixed value, whichever is larger."""

    percent: Decimal
    absolute: Decimal

    def contains(self, absolute_difference: Decimal, ratio: Decimal | None) -> bool:
        if absolute_difference <= self.absolute:
            return True
        return ratio is not None and ratio <= self.percent


@dataclass(frozen=True)
class MatchingProfile:
    """Tolerances and weights for one matching context."""

    name: str
    amount_percent: Decimal
    amount_absolute: Decimal
    date_window_days: int
    high: ToleranceBand
    medium: ToleranceBand
    amount_weight: Decimal = Decimal("0.7")
    date_weight: Decimal = Decimal("0.3")

    @property
    def tolerance(self) -> ToleranceBand:
        return ToleranceBand(percent=self.amount_percent, absolute=self.amount_absolute)


@dataclass(frozen=True)
class MatchingProfiles:
    import_preview: MatchingProfile
    reconciliation: MatchingProfile


@dataclass(frozen=True)
class MatchScore:
    """Outcome of comparing one candidate against a reference."""

    is_match: bool
    is_amount_match: bool
    is_date_match: bool
    score: float
    confidence: ConfidenceTier
    amount_difference: Decimal
    # Fraction of the smaller amount; None when that amount is zero and they differ
    amount_difference_ratio: Decimal | None
    date_difference_days: int

    @property
    def amount_difference_percent(self) -> Decimal | None:
        if self.amount_difference_ratio is None:
            return None
        return (self.amount_difference_ratio * 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class MatchDiagnostic:
    """Explains a single scoring decision to an injected sink."""

    profile: str
    outcome: str
    candidate_amount: Decimal
    reference_amount: Decimal
    amount_difference: Decimal
    amount_difference_ratio: Decimal | None
    date_difference_days: int


DiagnosticsSink = Callable[[MatchDiagnostic], None]


IMPORT_PREVIEW_PROFILE = MatchingProfile(
    name="import_preview",
    amount_percent=Decimal("0.01"),
    amount_absolute=Decimal("10.00"),
    date_window_days=10,
    high=ToleranceBand(percent=Decimal("0.005"), absolute=Decimal("5.00")),
    medium=ToleranceBand(percent=Decimal("0.01"), absolute=Decimal("10.00")),
)

RECONCILIATION_PROFILE = MatchingProfile(
    name="reconciliation",
    amount_percent=Decimal("0.02"),
    amount_absolute=Decimal("20.00"),
    date_window_days=15,
    high=ToleranceBand(percent=Decimal("0.005"), absolute=Decimal("5.00")),
    medium=ToleranceBand(percent=Decimal("0.02"), absolute=Decimal("20.00")),
)

DEFAULT_PROFILES = MatchingProfiles(
    import_preview=IMPORT_PREVIEW_PROFILE,
    reconciliation=RECONCILIATION_PROFILE,
)

_ONE = Decimal("1")
_ZERO = Decimal("0")


def amount_difference_ratio(a: Decimal, b: Decimal) -> Decimal | None:
    """Relative difference of two magnitudes, measured against the smaller one.

    Using the smaller magnitude keeps the comparison symmetric and never looser
    than measuring against either operand.
    """
    a, b = abs(a), abs(b)
    difference = abs(a - b)
    base = min(a, b)
    if base == _ZERO:
        return _ZERO if difference == _ZERO else None
    return difference / base


def _clamp(value: Decimal) -> Decimal:
    return max(_ZERO, min(_ONE, value))


def _amount_score(ratio: Decimal | None, percent: Decimal) -> Decimal:
    if ratio is None:
        return _ZERO
    if percent == _ZERO:
        return _ONE if ratio == _ZERO else _ZERO
    return _clamp(_ONE - min(ratio / percent, _ONE))


def _date_score(days: int, window: int) -> Decimal:
    if window <= 0:
        return _ONE if days == 0 else _ZERO
    return _clamp(_ONE - Decimal(days) / Decimal(window))


def _classify(profile: MatchingProfile, difference: Decimal, ratio: Decimal | None) -> ConfidenceTier:
    if profile.high.contains(difference, ratio):
        return ConfidenceTier.HIGH
    if profile.medium.contains(difference, ratio):
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def is_within_tolerance(a: Decimal, b: Decimal, profile: MatchingProfile) -> bool:
    """Amount-only check used where dates do not apply (manual links, linked cycles)."""
    difference = abs(abs(a) - abs(b))
    return profile.tolerance.contains(difference, amount_difference_ratio(a, b))


def score_match(
    candidate_amount: Decimal,
    reference_amount: Decimal,
    candidate_date: date,
    reference_date: date,
    profile: MatchingProfile,
    diagnostics: DiagnosticsSink | None = None,
) -> MatchScore:
    """Compare a candidate amount/date against a reference amount/date.

    Amounts are compared by magnitude. The pair matches only when the amount is
    within tolerance AND the dates are within the profile's window. The score
    is only meaningful for ranking matches against each other.

    The percentage tolerance is measured against the smaller of the two
    magnitudes, so 9900.00 against 10000.00 is a 1.01% gap and falls outside
    the 1% import-preview tolerance.
    """
    difference = abs(abs(candidate_amount) - abs(reference_amount))
    ratio = amount_difference_ratio(candidate_amount, reference_amount)
    days = abs((candidate_date - reference_date).days)

    is_amount_match = profile.tolerance.contains(difference, ratio)
    is_date_match = days <= profile.date_window_days
    is_match = is_amount_match and is_date_match

    combined = (
        profile.amount_weight * _amount_score(ratio, profile.amount_percent)
        + profile.date_weight * _date_score(days, profile.date_window_days)
    )
    confidence = _classify(profile, difference, ratio) if is_match else ConfidenceTier.NONE

    result = MatchScore(
        is_match=is_match,
        is_amount_match=is_amount_match,
        is_date_match=is_date_match,
        score=round(float(_clamp(combined)), 4),
        confidence=confidence,
        amount_difference=difference,
        amount_difference_ratio=ratio,
        date_difference_days=days,
    )

    if diagnostics is not None:
        if is_match:
            outcome = "matched"
        elif not is_amount_match and not is_date_match:
            outcome = "amount_and_date_out_of_range"
        elif not is_amount_match:
            outcome = "amount_out_of_tolerance"
        else:
            outcome = "date_out_of_window"
        diagnostics(
            MatchDiagnostic(
                profile=profile.name,
                outcome=outcome,
                candidate_amount=candidate_amount,
                reference_amount=reference_amount,
                amount_difference=difference,
                amount_difference_ratio=ratio,
                date_difference_days=days,
            )
        )

    return result


def ranking_key(score: MatchScore) -> tuple[float, Decimal, int]:
    """Sort key: best score first, then smaller amount difference, then nearer date."""
    return (-score.score, score.amount_difference, score.date_difference_days)


def logging_sink(**context: Any) -> DiagnosticsSink:
    """Diagnostics sink that writes each decision as a debug event."""

    def sink(diagnostic: MatchDiagnostic) -> None:
        logger.debug(
            "Match candidate scored",
            profile=diagnostic.profile,
            outcome=diagnostic.outcome,
            candidate_amount=str(diagnostic.candidate_amount),
            reference_amount=str(diagnostic.reference_amount),
            amount_difference=str(diagnostic.amount_difference),
            date_difference_days=diagnostic.date_difference_days,
            **context,
        )

    return sink


# =============================================================================
# Profile loading
# =============================================================================

_profiles_cache: MatchingProfiles | None = None


def _config_path() -> Path:
    if settings.reconciliation_config_path:
        return Path(settings.reconciliation_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


def _parse_band(raw: dict[str, Any] | None, fallback: ToleranceBand) -> ToleranceBand:
    raw = raw or {}
    return ToleranceBand(
        percent=Decimal(str(raw.get("percent", fallback.percent))),
        absolute=Decimal(str(raw.get("absolute", fallback.absolute))),
    )


def _parse_profile(raw: dict[str, Any] | None, fallback: MatchingProfile) -> MatchingProfile:
    raw = raw or {}
    weights = raw.get("weights") or {}
    confidence = raw.get("confidence") or {}
    return MatchingProfile(
        name=fallback.name,
        amount_percent=Decimal(str(raw.get("amount_percent", fallback.amount_percent))),
        amount_absolute=Decimal(str(raw.get("amount_absolute", fallback.amount_absolute))),
        date_window_days=int(raw.get("date_window_days", fallback.date_window_days)),
        high=_parse_band(confidence.get("high"), fallback.high),
        medium=_parse_band(confidence.get("medium"), fallback.medium),
        amount_weight=Decimal(str(weights.get("amount", fallback.amount_weight))),
        date_weight=Decimal(str(weights.get("date", fallback.date_weight))),
    )


def _apply_env_overrides(profile: MatchingProfile, prefix: str) -> MatchingProfile:
    percent = os.getenv(f"{prefix}_AMOUNT_PERCENT")
    absolute = os.getenv(f"{prefix}_AMOUNT_ABSOLUTE")
    window = os.getenv(f"{prefix}_DATE_WINDOW_DAYS")
    if percent:
        profile = replace(profile, amount_percent=Decimal(percent))
    if absolute:
        profile = replace(profile, amount_absolute=Decimal(absolute))
    if window:
        profile = replace(profile, date_window_days=int(window))
    return profile


def load_matching_profiles(force_reload: bool = False) -> MatchingProfiles:
    """Load matching profiles from YAML if available.

    Caches the result to avoid repeated disk I/O. A missing or malformed file
    falls back to the built-in profiles.
    """
    global _profiles_cache
    if _profiles_cache is not None and not force_reload:
        return _profiles_cache

    profiles = DEFAULT_PROFILES
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            sections = raw.get("profiles") or {}
            profiles = MatchingProfiles(
                import_preview=_parse_profile(
                    sections.get("import_preview"), DEFAULT_PROFILES.import_preview
                ),
                reconciliation=_parse_profile(
                    sections.get("reconciliation"), DEFAULT_PROFILES.reconciliation
                ),
            )
        except (OSError, yaml.YAMLError, ArithmeticError, ValueError, TypeError, AttributeError) as e:
            logger.warning(
                "Failed to load matching profiles - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    profiles = MatchingProfiles(
        import_preview=_apply_env_overrides(profiles.import_preview, "IMPORT_PREVIEW"),
        reconciliation=_apply_env_overrides(profiles.reconciliation, "RECONCILIATION"),
    )

    _profiles_cache = profiles
    return profiles

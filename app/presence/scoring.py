from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from .errors import SchemaViolationError
from .models import BucketAnalysis, ScenarioAnalysis, ScenarioScore


# Changing any weight is a contract change: bump SCORING_SCHEMA_VERSION with it.
SCORING_SCHEMA_VERSION = "ep_v2"
BUCKET_WEIGHTS: Mapping[str, Decimal] = {
    "communication": Decimal("0.40"),
    "appearance": Decimal("0.35"),
    "storytelling": Decimal("0.25"),
}


def check_weights(weights: Mapping[str, Decimal]) -> None:
    if sum(weights.values()) != Decimal("1"):
        raise RuntimeError(f"Bucket weights must sum to 1.0, got {sum(weights.values())}.")


check_weights(BUCKET_WEIGHTS)

SCENARIO_DIMENSIONS = (
    "commanding_presence",
    "strategic_thinking",
    "composure",
    "decisiveness",
    "stakeholder_management",
)


def round_half_up(value: float | Decimal) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _checked_score(name: str, value) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise SchemaViolationError(f"{name} score must be a number, got {type(value).__name__}.")
    score = Decimal(str(value))
    if not score.is_finite() or not (Decimal("0") <= score <= Decimal("100")):
        raise SchemaViolationError(f"{name} score {value} is outside [0, 100].")
    return score


def weighted_overall(scores: Mapping[str, float]) -> int:
    missing = sorted(set(BUCKET_WEIGHTS) - set(scores))
    if missing:
        raise SchemaViolationError("Missing bucket scores: " + ", ".join(missing))
    total = sum(
        _checked_score(name, scores[name]) * weight for name, weight in BUCKET_WEIGHTS.items()
    )
    return round_half_up(total)


def aggregate_overall(
    communication: BucketAnalysis,
    appearance: BucketAnalysis,
    storytelling: BucketAnalysis,
) -> int:
    return weighted_overall(
        {
            "communication": communication.overall_score,
            "appearance": appearance.overall_score,
            "storytelling": storytelling.overall_score,
        }
    )


def scenario_result(analysis: ScenarioAnalysis) -> ScenarioScore:
    """Use the model's top-level score as-is; the sub-dimension mean is for display."""
    _checked_score("scenario", analysis.score)
    for name in SCENARIO_DIMENSIONS:
        if name not in analysis.dimensions:
            raise SchemaViolationError(f"Scenario analysis is missing dimension {name}.")
        _checked_score(name, analysis.dimensions[name].score)

    dimension_scores = [analysis.dimensions[name].score for name in SCENARIO_DIMENSIONS]
    average = sum(dimension_scores) / len(dimension_scores)

    return ScenarioScore(
        score=analysis.score,
        dimensions={name: analysis.dimensions[name] for name in SCENARIO_DIMENSIONS},
        dimension_average=round(average, 1),
        strengths=list(analysis.strengths),
        improvements=list(analysis.improvements),
    )

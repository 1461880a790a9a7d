"""
Composite scoring and narrative summary.

The overall score is the plain mean of every category that produced a
score; categories with no data (EPC not found, no bedroom count, no
cost information) are left out rather than counted as zero.  If nothing
at all could be scored the analysis is rejected with
AggregationImpossible instead of reporting a misleading 0.

The summary is built from independent clauses.  Each clause checks its
own inputs and is skipped when they are missing, so the text never
mentions a value that was not found.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from accessible_features import FeatureResult
from epc_resolver import EPCResult
from keyword_tables import match_keywords
from listing_analyzers import CostResult
from proximity import ProximityResult, TransportResult
from scoring_config import (
    CATEGORY_LABELS,
    SCORING_MODEL,
    ScoringModel,
    get_narrative_band,
    get_score_band,
    round_half_up,
)

logger = logging.getLogger(__name__)

_PROPERTY_TYPES = (
    "semi-detached bungalow", "detached bungalow", "bungalow",
    "semi-detached house", "detached house", "terraced house", "end of terrace house",
    "town house", "cottage", "maisonette", "apartment", "flat", "studio", "house",
)
_TITLE_BEDROOMS_RE = re.compile(r"\b(\d{1,2})\s*(?:-\s*)?bed(?:room)?s?\b", re.IGNORECASE)


class AggregationImpossible(Exception):
    """No category produced a score, so there is nothing to aggregate."""


@dataclass
class CategoryScore:
    key: str
    label: str
    score: Optional[float]
    rating: str
    details: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.extra)
        payload.update({"score": self.score, "rating": self.rating, "details": self.details})
        return payload


@dataclass
class CompositeScore:
    categories: List[CategoryScore]
    overall: float
    rating: str
    summary: str = ""

    def category(self, key: str) -> Optional[CategoryScore]:
        for c in self.categories:
            if c.key == key:
                return c
        return None


def category_from_payload(key: str, payload: Dict[str, Any]) -> CategoryScore:
    """Build a CategoryScore from an analyzer's details payload."""
    extra = {k: v for k, v in payload.items() if k not in ("score", "rating", "details")}
    return CategoryScore(
        key=key,
        label=CATEGORY_LABELS[key],
        score=payload.get("score"),
        rating=payload.get("rating") or get_score_band(payload.get("score"))["label"],
        details=payload.get("details", ""),
        extra=extra,
    )


def aggregate(categories: List[CategoryScore], model: ScoringModel = SCORING_MODEL) -> CompositeScore:
    scored = [c.score for c in categories if c.score is not None]
    if not scored:
        raise AggregationImpossible("No category could be scored for this listing")
    overall = round_half_up(sum(scored) / len(scored), 1)
    logger.info("Composite %.1f from %d of %d categories", overall, len(scored), len(categories))
    return CompositeScore(
        categories=categories,
        overall=overall,
        rating=get_score_band(overall, model)["label"],
    )


# =============================================================================
# Narrative
# =============================================================================

def _join(items: List[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + " and " + items[-1]


def property_descriptor(title: str, location: Optional[str]) -> str:
    lowered = title.lower()
    kind = next(iter(match_keywords(lowered, _PROPERTY_TYPES)), None)
    match = _TITLE_BEDROOMS_RE.search(title)
    if match and kind and kind != "studio":
        descriptor = f"This {match.group(1)} bedroom {kind}"
    elif kind:
        descriptor = f"This {kind}"
    else:
        descriptor = "This property"
    if location and location != "Location not specified":
        descriptor += f" in {location}"
    return descriptor


def _feature_clause(features: Optional[FeatureResult]) -> Optional[str]:
    if features is None or features.score < 3 or not features.found_labels:
        return None
    labels = [label.lower() for label in features.found_labels[:4]]
    return f"Accessibility highlights include {_join(labels)}."


def _gp_clause(gp: Optional[ProximityResult]) -> Optional[str]:
    if gp is None or not gp.data_available:
        return None
    if gp.name is None:
        return "No GP surgery was found within walking distance."
    if gp.adjusted_duration_min is None:
        return f"The nearest GP surgery is {gp.name}."
    clause = (
        f"The nearest GP surgery, {gp.name}, is about {gp.adjusted_duration_min} "
        f"minutes' walk at an older adult's pace"
    )
    hazards = gp.hazards.labels()
    if hazards:
        clause += f", and the route involves {_join(hazards)}"
    return clause + "."


def _transit_clause(transport: Optional[TransportResult]) -> Optional[str]:
    if transport is None or not transport.data_available:
        return None
    best = transport.best
    if best.name is None:
        return "No bus stop or train station was found nearby."
    if best.adjusted_duration_min is None:
        return f"The closest public transport is {best.name}."
    kind = "bus stop" if best.service == "bus" else "station"
    return (
        f"The closest public transport is {best.name} ({kind}), about "
        f"{best.adjusted_duration_min} minutes' walk."
    )


def _missing_clause(features: Optional[FeatureResult]) -> Optional[str]:
    if features is None:
        return None
    sentences = []
    if features.missing_critical:
        sentences.append(
            f"The listing does not show {_join(features.missing_critical)}."
        )
    if features.unverified_warnings:
        sentences.append(" ".join(w + "." for w in features.unverified_warnings))
    return " ".join(sentences) or None


def _cost_clause(cost: Optional[CostResult]) -> Optional[str]:
    if cost is None:
        return None
    parts = []
    if cost.council_tax_band:
        parts.append(f"council tax band {cost.council_tax_band}")
    if cost.price_per_sqft is not None:
        parts.append(f"an asking price of £{cost.price_per_sqft:,.0f} per sq ft")
    if cost.stamp_duty is not None and cost.stamp_duty_pct is not None:
        if cost.stamp_duty > 0:
            parts.append(
                f"stamp duty of about £{cost.stamp_duty:,.0f} ({cost.stamp_duty_pct:.1f}% of the price)"
            )
        else:
            parts.append("no stamp duty at standard rates")
    if not parts:
        return None
    return f"Cost considerations: {_join(parts)}."


def _energy_clause(epc: Optional[EPCResult]) -> str:
    if epc is None or epc.grade is None:
        return "The EPC rating could not be determined from the listing."
    return (
        f"The EPC rating is {epc.grade} ({epc.method.lower()}, "
        f"{epc.confidence}% confidence)."
    )


def generate_summary(
    composite: CompositeScore,
    title: str = "",
    location: Optional[str] = None,
    epc: Optional[EPCResult] = None,
    features: Optional[FeatureResult] = None,
    gp: Optional[ProximityResult] = None,
    transport: Optional[TransportResult] = None,
    cost: Optional[CostResult] = None,
    model: ScoringModel = SCORING_MODEL,
) -> str:
    band = get_narrative_band(composite.overall, model)
    clauses: List[Optional[str]] = [
        f"{property_descriptor(title, location)} {band.assessment}, "
        f"scoring {composite.overall:.1f} out of 5 ({composite.rating}).",
        _feature_clause(features),
        _gp_clause(gp),
        _transit_clause(transport),
        _missing_clause(features),
        _cost_clause(cost),
        _energy_clause(epc),
        band.recommendation,
    ]
    return " ".join(c for c in clauses if c)

"""
Scoring model configuration for HomeAccess.

Owns every numeric constant that affects an accessibility score:
resolver confidences, EPC bands, walking-time buckets, route penalties,
room and cost tables, and the rating bands used by the narrative.
Keyword lists live in keyword_tables.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Tune a value by building a
new model with dataclasses.replace() and passing it in explicitly.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class PiecewiseKnot:
    """A single (x, y) breakpoint on a piecewise linear curve."""
    x: float
    y: float


@dataclass(frozen=True)
class Band:
    """Upper-inclusive bucket: values <= max_value earn *points*.

    Bands are evaluated in order; the first whose max_value is >= the
    input wins.  A value above every band earns the model's fallback.
    """
    max_value: float
    points: float


@dataclass(frozen=True)
class ScoreBand:
    """Maps a minimum score threshold to a human-readable band label."""
    threshold: float
    label: str
    css_class: str = ""


@dataclass(frozen=True)
class EPCBand:
    """Canonical SAP score range for one EPC letter."""
    letter: str
    low: int
    high: int


@dataclass(frozen=True)
class EPCConfig:
    explicit_text_confidence: int = 95
    vision_confidence: int = 75
    contextual_text_confidence: int = 70
    literal_phrase_confidence: int = 65
    # Numeric SAP score only drives the sub-score at or above this confidence.
    numeric_min_confidence: int = 80
    vision_max_images: int = 2
    # Characters either side of an explicit declaration checked for context.
    explicit_context_chars: int = 50
    # (before, after) characters checked by the contextual pattern set.
    contextual_window: Tuple[int, int] = (60, 80)
    bands: Tuple[EPCBand, ...] = ()
    letter_scores: Tuple[Tuple[str, int], ...] = ()

    def letter_score(self, letter: str) -> Optional[int]:
        return dict(self.letter_scores).get(letter.upper())

    def band_for_score(self, score: int) -> Optional[str]:
        for band in self.bands:
            if band.low <= score <= band.high:
                return band.letter
        return None

    def band_range(self, letter: str) -> Optional[Tuple[int, int]]:
        for band in self.bands:
            if band.letter == letter.upper():
                return band.low, band.high
        return None


@dataclass(frozen=True)
class FeatureConfig:
    total_criteria: int = 8
    display_max: float = 5.0
    # "ground floor" must sit within this many characters of a room term.
    proximity_window_chars: int = 80
    keyword_confidence: int = 90
    structured_confidence: int = 95
    window_confidence: int = 80
    inferred_confidence: int = 60
    vision_confidence: int = 70
    max_entrance_photos: int = 5
    # A standard UK external door leaf is 1981 mm.
    reference_door_height_cm: float = 198.0
    # Rises below this are treated as zero elevation change.
    level_rise_tolerance_cm: float = 2.0


@dataclass(frozen=True)
class RouteAccessibilityConfig:
    """Route accessibility = start minus hazard penalties, floored."""
    start: float = 5.0
    stairs_penalty: float = 2.0
    steep_penalty: float = 1.5
    busy_road_penalty: float = 1.0
    long_walk_min: int = 15
    very_long_walk_min: int = 25
    long_walk_penalty: float = 1.0
    floor: float = 1.0


@dataclass(frozen=True)
class ProximityConfig:
    # Provider walking times assume ~5 km/h; older adults walk slower.
    walking_inflation: float = 1.4
    initial_radius_m: int = 2000
    widened_radius_m: int = 10000
    duration_bands: Tuple[Band, ...] = ()
    duration_fallback_points: float = 0.0
    route: RouteAccessibilityConfig = RouteAccessibilityConfig()
    max_routed_candidates: int = 2
    max_classified_candidates: int = 10
    remote_classifier_confidence: int = 80
    keyword_classifier_confidence: int = 60
    # Used to estimate a walk when the routing provider returns nothing.
    estimated_walk_m_per_min: float = 80.0
    estimated_detour_factor: float = 1.25
    no_data_score: float = 0.0


@dataclass(frozen=True)
class RoomConfig:
    # (bedrooms, points); counts above the last entry use the last entry.
    bedroom_points: Tuple[Tuple[int, float], ...] = ()
    bathroom_bonus: float = 0.5
    max_score: float = 5.0
    min_score: float = 1.0


@dataclass(frozen=True)
class SDLTBand:
    """Stamp Duty Land Tax slice: the portion of price up to *upper* is taxed at *rate*."""
    upper: Optional[int]
    rate: float


@dataclass(frozen=True)
class CostConfig:
    council_tax_scores: Tuple[Tuple[str, float], ...] = ()
    # Reference UK asking-price-per-sq-ft distribution (price -> percentile).
    price_per_sqft_percentiles: Tuple[PiecewiseKnot, ...] = ()
    # Lower percentile (cheaper per sq ft) is better.
    percentile_bands: Tuple[Band, ...] = ()
    sdlt_bands: Tuple[SDLTBand, ...] = ()
    # Stamp duty as a percentage of price.
    sdlt_burden_bands: Tuple[Band, ...] = ()
    fallback_points: float = 1.0

    def council_tax_score(self, band: str) -> Optional[float]:
        return dict(self.council_tax_scores).get(band.upper())


@dataclass(frozen=True)
class NarrativeBand:
    """Overall-score band used by the summary's opening and closing clauses."""
    threshold: float
    assessment: str
    recommendation: str


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    chain_confidence_floor: int
    epc: EPCConfig
    features: FeatureConfig
    proximity: ProximityConfig
    rooms: RoomConfig
    cost: CostConfig
    score_bands: Tuple[ScoreBand, ...]
    narrative_bands: Tuple[NarrativeBand, ...]


# =============================================================================
# Pure scoring functions
# =============================================================================

def apply_piecewise(knots: Tuple[PiecewiseKnot, ...], x: float) -> float:
    """Evaluate a piecewise linear curve at *x*.

    Linearly interpolates between adjacent knots.  Values outside the
    knot range are clamped to the first / last y value.

    Requires at least one knot.
    """
    if not knots:
        raise ValueError("knots must not be empty")

    if x <= knots[0].x:
        return knots[0].y

    if x >= knots[-1].x:
        return knots[-1].y

    for i in range(1, len(knots)):
        if x <= knots[i].x:
            k0 = knots[i - 1]
            k1 = knots[i]
            dx = k1.x - k0.x
            if dx == 0:
                return k1.y
            t = (x - k0.x) / dx
            return k0.y + t * (k1.y - k0.y)

    return knots[-1].y


def score_from_bands(value: float, bands: Tuple[Band, ...], fallback: float) -> float:
    """Return the points of the first band whose max_value >= *value*."""
    for band in bands:
        if value <= band.max_value:
            return band.points
    return fallback


def round_half_up(value: float, ndigits: int = 1) -> float:
    """Round with .5 going up.

    Python's round() is round-half-to-even, which produces unintuitive
    displayed scores at .5 boundaries (round(2.25, 1) -> 2.2).
    """
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def get_score_band(score: Optional[float], model: Optional["ScoringModel"] = None) -> dict:
    """Return band info dict for a 0-5 category score.

    Returns {"label": str, "css_class": str}; None scores get "No data".
    """
    model = model or SCORING_MODEL
    if score is None:
        return {"label": "No data", "css_class": "band-none"}
    for band in model.score_bands:
        if score >= band.threshold:
            return {"label": band.label, "css_class": band.css_class}
    fallback = model.score_bands[-1]
    return {"label": fallback.label, "css_class": fallback.css_class}


def get_narrative_band(score: float, model: Optional["ScoringModel"] = None) -> NarrativeBand:
    model = model or SCORING_MODEL
    for band in model.narrative_bands:
        if score >= band.threshold:
            return band
    return model.narrative_bands[-1]


def stamp_duty(price: int, bands: Tuple[SDLTBand, ...]) -> float:
    """Progressive Stamp Duty Land Tax on a residential purchase price."""
    tax = 0.0
    lower = 0
    for band in bands:
        upper = band.upper if band.upper is not None else price
        if price > lower:
            taxable = min(price, upper) - lower
            tax += max(0, taxable) * band.rate
        if band.upper is None or price <= band.upper:
            break
        lower = band.upper
    return tax


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

_EPC_BANDS = (
    EPCBand("A", 92, 100),
    EPCBand("B", 81, 91),
    EPCBand("C", 69, 80),
    EPCBand("D", 55, 68),
    EPCBand("E", 39, 54),
    EPCBand("F", 21, 38),
    EPCBand("G", 1, 20),
)

_EPC_LETTER_SCORES = (
    ("A", 5), ("B", 4), ("C", 4), ("D", 3), ("E", 2), ("F", 2), ("G", 1),
)

# Adjusted walking minutes -> base proximity points.
_DURATION_BANDS = (
    Band(5, 5),
    Band(10, 4),
    Band(15, 3),
    Band(20, 2),
    Band(25, 1),
)

# Studio flats count as one bedroom.  Two or three bedrooms leave room for
# a carer or visiting family without the upkeep of a large house.
_BEDROOM_POINTS = (
    (1, 3.0),
    (2, 5.0),
    (3, 5.0),
    (4, 4.0),
    (5, 3.0),
)

_COUNCIL_TAX_SCORES = (
    ("A", 5.0), ("B", 4.5), ("C", 4.0), ("D", 3.5),
    ("E", 3.0), ("F", 2.0), ("G", 1.5), ("H", 1.0),
)

# England & Wales asking prices, GBP per sq ft.
_PRICE_PER_SQFT_PERCENTILES = (
    PiecewiseKnot(120, 0),
    PiecewiseKnot(180, 10),
    PiecewiseKnot(240, 25),
    PiecewiseKnot(320, 50),
    PiecewiseKnot(450, 75),
    PiecewiseKnot(650, 90),
    PiecewiseKnot(1200, 100),
)

_PERCENTILE_BANDS = (
    Band(20, 5),
    Band(40, 4),
    Band(60, 3),
    Band(80, 2),
)

# Standard residential rates from 1 April 2025.
_SDLT_BANDS = (
    SDLTBand(125_000, 0.0),
    SDLTBand(250_000, 0.02),
    SDLTBand(925_000, 0.05),
    SDLTBand(1_500_000, 0.10),
    SDLTBand(None, 0.12),
)

_SDLT_BURDEN_BANDS = (
    Band(1.0, 5),
    Band(3.0, 4),
    Band(5.0, 3),
    Band(7.0, 2),
)


SCORING_MODEL = ScoringModel(
    version="2.1.0",
    chain_confidence_floor=50,

    epc=EPCConfig(
        bands=_EPC_BANDS,
        letter_scores=_EPC_LETTER_SCORES,
    ),

    features=FeatureConfig(),

    proximity=ProximityConfig(
        duration_bands=_DURATION_BANDS,
        duration_fallback_points=0.0,
    ),

    rooms=RoomConfig(
        bedroom_points=_BEDROOM_POINTS,
    ),

    cost=CostConfig(
        council_tax_scores=_COUNCIL_TAX_SCORES,
        price_per_sqft_percentiles=_PRICE_PER_SQFT_PERCENTILES,
        percentile_bands=_PERCENTILE_BANDS,
        sdlt_bands=_SDLT_BANDS,
        sdlt_burden_bands=_SDLT_BURDEN_BANDS,
        fallback_points=1.0,
    ),

    score_bands=(
        ScoreBand(4.5, "Excellent", "band-excellent"),
        ScoreBand(3.5, "Good", "band-good"),
        ScoreBand(2.5, "Fair", "band-fair"),
        ScoreBand(1.0, "Poor", "band-poor"),
        ScoreBand(0.0, "Very poor", "band-very-poor"),
    ),

    narrative_bands=(
        NarrativeBand(
            4.0,
            "offers excellent accessibility for older adults",
            "This property is well suited to older adults and is worth a viewing.",
        ),
        NarrativeBand(
            3.0,
            "offers good accessibility for older adults",
            "This property is broadly suitable; check the gaps noted above at a viewing.",
        ),
        NarrativeBand(
            2.0,
            "has mixed accessibility for older adults",
            "This property may suit some older adults but would likely need adaptations.",
        ),
        NarrativeBand(
            0.0,
            "presents accessibility challenges for older adults",
            "This property is unlikely to suit someone with limited mobility without significant work.",
        ),
    ),
)

# Maps category keys to their display labels, in aggregation order.
CATEGORY_LABELS: Dict[str, str] = {
    "gp_proximity": "GP Proximity",
    "epc_rating": "Energy Efficiency (EPC)",
    "accessible_features": "Accessible Features",
    "public_transport": "Public Transport",
    "room_accommodation": "Room Accommodation",
    "property_cost": "Property Cost",
}

# Validate band tables at import time (ValueError, not assert,
# so validation is never stripped by python -O).
for _b in SCORING_MODEL.epc.bands:
    if _b.low > _b.high:
        raise ValueError(f"EPC band {_b.letter!r} has low > high")
if [b.threshold for b in SCORING_MODEL.score_bands] != sorted(
    (b.threshold for b in SCORING_MODEL.score_bands), reverse=True
):
    raise ValueError("score_bands must be sorted highest threshold first")

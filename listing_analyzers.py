"""
Room accommodation and property cost analyzers.

Both read only the immutable listing.  Cost needs the floor area that
the room analyzer resolves, so the orchestrator runs rooms first.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from keyword_tables import KEYWORD_TABLES, KeywordTables, match_keywords
from listing_scraper import PropertyListing, parse_floor_area
from scoring_config import (
    SCORING_MODEL,
    ScoringModel,
    apply_piecewise,
    get_score_band,
    round_half_up,
    score_from_bands,
    stamp_duty,
)

logger = logging.getLogger(__name__)

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
_COUNT = r"\b(\d{1,2}|one|two|three|four|five|six|seven|eight|nine|ten)"

_BEDROOM_RE = re.compile(_COUNT + r"[\s-]*(?:double\s+|single\s+)?bed(?:room)?s?\b")
_BATHROOM_RE = re.compile(_COUNT + r"[\s-]*bath(?:room)?s?\b")
_RECEPTION_RE = re.compile(_COUNT + r"[\s-]*reception(?:\s+rooms?)?\b")
_STUDIO_RE = re.compile(r"\bstudio\b")
_PRICE_RE = re.compile(r"£\s?([\d,]{3,})")
_COUNCIL_TAX_RE = re.compile(r"council\s+tax\s*(?:band)?\s*[:\-]?\s*([a-h])\b")


@dataclass
class RoomResult:
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    receptions: Optional[int] = None
    en_suite: bool = False
    downstairs_wc: bool = False
    floor_area_sqft: Optional[float] = None
    score: Optional[float] = None

    @property
    def rating(self) -> str:
        return get_score_band(self.score)["label"]


@dataclass
class CostResult:
    price: Optional[int] = None
    council_tax_band: Optional[str] = None
    council_tax_score: Optional[float] = None
    price_per_sqft: Optional[float] = None
    price_per_sqft_percentile: Optional[float] = None
    price_per_sqft_score: Optional[float] = None
    stamp_duty: Optional[float] = None
    stamp_duty_pct: Optional[float] = None
    stamp_duty_score: Optional[float] = None
    score: Optional[float] = None
    notes: List[str] = field(default_factory=list)

    @property
    def rating(self) -> str:
        return get_score_band(self.score)["label"]


def _to_int(raw: str) -> int:
    return _NUMBER_WORDS.get(raw) or int(raw)


def _first_count(pattern: "re.Pattern", sources: List[str]) -> Optional[int]:
    """First count found, searching sources in priority order."""
    for text in sources:
        match = pattern.search(text)
        if match:
            value = _to_int(match.group(1))
            if value > 0:
                return value
    return None


# =============================================================================
# Rooms
# =============================================================================

def score_rooms(bedrooms: Optional[int], bathrooms: Optional[int], en_suite: bool,
                model: ScoringModel = SCORING_MODEL) -> Optional[float]:
    cfg = model.rooms
    if bedrooms is None:
        return None
    points = cfg.bedroom_points[-1][1]
    for count, value in cfg.bedroom_points:
        if bedrooms <= count:
            points = value
            break
    if (bathrooms or 0) >= 2 or en_suite:
        points += cfg.bathroom_bonus
    return max(cfg.min_score, min(cfg.max_score, points))


def analyze_rooms(
    listing: PropertyListing,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> RoomResult:
    # Key features are structured by the agent, so they outrank prose.
    sources = [
        listing.title.lower(),
        " ".join(listing.features).lower(),
        listing.description.lower(),
    ]
    text = listing.full_text

    bedrooms = _first_count(_BEDROOM_RE, sources)
    if bedrooms is None and any(_STUDIO_RE.search(s) for s in sources):
        bedrooms = 1
    bathrooms = _first_count(_BATHROOM_RE, sources)
    receptions = _first_count(_RECEPTION_RE, sources)
    en_suite = bool(match_keywords(text, tables.en_suite))
    downstairs_wc = bool(match_keywords(text, tables.downstairs_wc))

    floor_area = listing.floor_area_sqft
    if floor_area is None:
        floor_area = parse_floor_area(" ".join(sources))

    result = RoomResult(
        bedrooms=bedrooms,
        bathrooms=bathrooms,
        receptions=receptions,
        en_suite=en_suite,
        downstairs_wc=downstairs_wc,
        floor_area_sqft=floor_area,
        score=score_rooms(bedrooms, bathrooms, en_suite, model),
    )
    logger.info(
        "Rooms for %s: beds=%s baths=%s recs=%s area=%s score=%s",
        listing.url, bedrooms, bathrooms, receptions, floor_area, result.score,
    )
    return result


def room_details(result: RoomResult) -> Dict[str, object]:
    if result.bedrooms is None:
        details = "Bedroom count not stated"
    else:
        parts = [f"{result.bedrooms} bedroom{'s' if result.bedrooms != 1 else ''}"]
        if result.bathrooms:
            parts.append(f"{result.bathrooms} bathroom{'s' if result.bathrooms != 1 else ''}")
        if result.receptions:
            parts.append(f"{result.receptions} reception{'s' if result.receptions != 1 else ''}")
        if result.en_suite:
            parts.append("en-suite")
        if result.downstairs_wc:
            parts.append("downstairs WC")
        if result.floor_area_sqft:
            parts.append(f"{result.floor_area_sqft:,.0f} sq ft")
        details = ", ".join(parts)
    return {
        "score": result.score,
        "rating": result.rating,
        "details": details,
        "bedrooms": result.bedrooms,
        "bathrooms": result.bathrooms,
        "receptions": result.receptions,
        "en_suite": result.en_suite,
        "downstairs_wc": result.downstairs_wc,
        "floor_area_sqft": result.floor_area_sqft,
    }


# =============================================================================
# Cost
# =============================================================================

def parse_price(price_text: str, tables: KeywordTables = KEYWORD_TABLES) -> Optional[int]:
    """Asking price in pounds, or None for placeholders like "POA"."""
    lowered = (price_text or "").lower()
    if not lowered or match_keywords(lowered, tables.price_placeholders):
        return None
    match = _PRICE_RE.search(price_text)
    if not match:
        return None
    digits = match.group(1).replace(",", "")
    return int(digits) if digits else None


def analyze_cost(
    listing: PropertyListing,
    rooms: RoomResult,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> CostResult:
    cfg = model.cost
    result = CostResult()
    sub_scores: List[float] = []

    band = listing.council_tax_band
    if not band:
        match = _COUNCIL_TAX_RE.search(listing.full_text) or _COUNCIL_TAX_RE.search(
            listing.page_text.lower()
        )
        band = match.group(1) if match else None
    if band:
        result.council_tax_band = band.upper()
        result.council_tax_score = cfg.council_tax_score(band)
        if result.council_tax_score is not None:
            sub_scores.append(result.council_tax_score)

    price = parse_price(listing.price_text, tables)
    result.price = price
    if price is None:
        result.notes.append("Asking price not stated")
    else:
        if rooms.floor_area_sqft:
            per_sqft = price / rooms.floor_area_sqft
            percentile = apply_piecewise(cfg.price_per_sqft_percentiles, per_sqft)
            result.price_per_sqft = round(per_sqft, 0)
            result.price_per_sqft_percentile = round(percentile, 0)
            result.price_per_sqft_score = score_from_bands(
                percentile, cfg.percentile_bands, cfg.fallback_points
            )
            sub_scores.append(result.price_per_sqft_score)

        duty = stamp_duty(price, cfg.sdlt_bands)
        pct = duty / price * 100 if price else 0.0
        result.stamp_duty = round(duty, 0)
        result.stamp_duty_pct = round(pct, 2)
        result.stamp_duty_score = score_from_bands(pct, cfg.sdlt_burden_bands, cfg.fallback_points)
        sub_scores.append(result.stamp_duty_score)

    if sub_scores:
        result.score = round_half_up(sum(sub_scores) / len(sub_scores), 1)
    logger.info(
        "Cost for %s: price=%s band=%s ppsf=%s sdlt=%s score=%s",
        listing.url, price, result.council_tax_band, result.price_per_sqft,
        result.stamp_duty, result.score,
    )
    return result


def cost_details(result: CostResult) -> Dict[str, object]:
    parts = []
    if result.price is not None:
        parts.append(f"£{result.price:,}")
    if result.council_tax_band:
        parts.append(f"council tax band {result.council_tax_band}")
    if result.price_per_sqft is not None:
        parts.append(f"£{result.price_per_sqft:,.0f}/sq ft")
    if result.stamp_duty is not None:
        parts.append(f"stamp duty £{result.stamp_duty:,.0f} ({result.stamp_duty_pct:.1f}%)")
    return {
        "score": result.score,
        "rating": result.rating,
        "details": ", ".join(parts) if parts else "No cost information found",
        "price": result.price,
        "council_tax_band": result.council_tax_band,
        "council_tax_score": result.council_tax_score,
        "price_per_sqft": result.price_per_sqft,
        "price_per_sqft_percentile": result.price_per_sqft_percentile,
        "price_per_sqft_score": result.price_per_sqft_score,
        "stamp_duty": result.stamp_duty,
        "stamp_duty_pct": result.stamp_duty_pct,
        "stamp_duty_score": result.stamp_duty_score,
        "notes": result.notes,
    }

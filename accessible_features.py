"""
Accessible-feature detector.

Checks eight criteria that matter to someone with limited mobility:

    step_free_internal, downstairs_bedroom, downstairs_bathroom,
    ground_floor_entry, private_parking, garden_access,
    balcony_terrace, external_level_access

The first step is classifying the property as single-level or
multi-level, because most of the other criteria lean on it.  Each
criterion is then a small ResolverChain (keyword -> proximity window ->
inference -> vision).  Every flag carries the provenance of the strategy
that decided it; provenance is reported but never changes the count.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from evidence import (
    ChainResult,
    Evidence,
    EvidenceNotFound,
    FunctionStrategy,
    ResolverChain,
    Strategy,
)
from keyword_tables import (
    KEYWORD_TABLES,
    AmenityKeywords,
    KeywordTables,
    keyword_positions,
    match_keywords,
)
from listing_scraper import PropertyListing, is_epc_image_url
from scoring_config import SCORING_MODEL, ScoringModel, get_score_band, round_half_up
from vision_client import VisionClassifier

logger = logging.getLogger(__name__)


class Provenance(Enum):
    TEXT = "verified_text"
    INFERRED = "inferred"
    VISION = "verified_vision"
    UNVERIFIED = "unverified"
    NONE = "none"


class LevelClass(Enum):
    SINGLE_LEVEL = "single_level"
    MULTI_LEVEL = "multi_level"
    UPPER_FLOOR = "upper_floor"
    UNKNOWN = "unknown"


FEATURE_LABELS: Dict[str, str] = {
    "step_free_internal": "Step-free internal access",
    "downstairs_bedroom": "Downstairs bedroom",
    "downstairs_bathroom": "Downstairs bathroom",
    "ground_floor_entry": "Ground floor entry",
    "private_parking": "Private parking",
    "garden_access": "Garden access",
    "balcony_terrace": "Balcony or terrace",
    "external_level_access": "Level access to entrance",
}

# Criteria whose absence is called out in the narrative.
CRITICAL_FEATURES: Dict[str, str] = {
    "step_free_internal": "single-level living",
    "downstairs_bathroom": "a downstairs bathroom",
    "external_level_access": "level access to the entrance",
}

BALCONY_PROMPT = (
    "This is a property floorplan. Does it show a balcony, roof terrace or "
    "terrace that belongs to the property? Reply with exactly one word: "
    "FOUND, NOT_FOUND or UNCLEAR."
)

ENTRANCE_PROMPT = (
    "Look at this property photo. If the main entrance door is visible, "
    "measure it in image pixels. Reply with a single JSON object and nothing "
    "else: {\"entrance_visible\": true|false, \"door_height_px\": <int>, "
    "\"step_count\": <int>, \"rise_px\": <int>} where rise_px is the total "
    "height difference between the ground in front of the entrance and the "
    "door threshold. Use 0 when there are no steps."
)


@dataclass
class FeatureFlag:
    key: str
    label: str
    present: bool
    provenance: Provenance
    detail: str = ""


@dataclass
class LevelAssessment:
    level: LevelClass
    single_level_hits: List[str] = field(default_factory=list)
    upper_floor_hits: List[str] = field(default_factory=list)
    multi_level_hits: List[str] = field(default_factory=list)
    lift_hits: List[str] = field(default_factory=list)

    @property
    def is_single_level(self) -> bool:
        return self.level == LevelClass.SINGLE_LEVEL


@dataclass
class FeatureResult:
    flags: List[FeatureFlag]
    levels: LevelAssessment
    score: float = 0.0

    @property
    def count(self) -> int:
        return sum(1 for f in self.flags if f.present)

    @property
    def rating(self) -> str:
        return get_score_band(self.score)["label"]

    def flag(self, key: str) -> Optional[FeatureFlag]:
        for f in self.flags:
            if f.key == key:
                return f
        return None

    @property
    def found_labels(self) -> List[str]:
        return [f.label for f in self.flags if f.present]

    @property
    def missing_critical(self) -> List[str]:
        return [
            phrase for key, phrase in CRITICAL_FEATURES.items()
            if not (self.flag(key) and self.flag(key).present)
        ]

    @property
    def unverified_warnings(self) -> List[str]:
        return [
            f"{f.label} could not be verified" + (f" ({f.detail})" if f.detail else "")
            for f in self.flags if f.provenance == Provenance.UNVERIFIED
        ]


# =============================================================================
# Level classification
# =============================================================================

def classify_levels(text: str, tables: KeywordTables = KEYWORD_TABLES) -> LevelAssessment:
    """Classify lowercase listing text as single-level, multi-level or upper floor.

    Explicit multi-level indicators, or a lift without any single-level
    keyword, force multi-level.  A storey name ("first floor: three
    bedrooms") in a house is a second storey, so it counts as multi-level;
    in a flat it places the dwelling upstairs.  Single-level keywords count
    only when no upper-floor or multi-level indicator is present.
    """
    levels = tables.levels
    assessment = LevelAssessment(
        level=LevelClass.UNKNOWN,
        single_level_hits=match_keywords(text, levels.single_level),
        upper_floor_hits=match_keywords(text, levels.upper_floor),
        multi_level_hits=match_keywords(text, levels.multi_level),
        lift_hits=match_keywords(text, levels.lift),
    )
    storey_hits = match_keywords(text, levels.upper_storey)
    is_flat = bool(match_keywords(text, levels.flat_types)) and not match_keywords(text, levels.house_types)
    if storey_hits and not assessment.upper_floor_hits:
        if is_flat and not assessment.single_level_hits:
            assessment.upper_floor_hits.extend(storey_hits)
        elif not is_flat:
            assessment.multi_level_hits.extend(storey_hits)
    if assessment.multi_level_hits or (assessment.lift_hits and not assessment.single_level_hits):
        assessment.level = LevelClass.MULTI_LEVEL
    elif assessment.single_level_hits and not assessment.upper_floor_hits:
        assessment.level = LevelClass.SINGLE_LEVEL
    elif assessment.upper_floor_hits:
        assessment.level = LevelClass.UPPER_FLOOR
    return assessment


# =============================================================================
# Criterion chains
# =============================================================================

def _strategy(name: str, provenance: Provenance, fn: Callable) -> FunctionStrategy:
    return FunctionStrategy(name, fn, provenance=provenance)


def _flag_from_chain(key: str, result: ChainResult, fallback: Provenance = Provenance.NONE,
                     fallback_detail: str = "") -> FeatureFlag:
    evidence = result.evidence
    if not evidence.found:
        return FeatureFlag(key, FEATURE_LABELS[key], False, fallback, fallback_detail)
    provenance = getattr(result.winner, "provenance", Provenance.TEXT)
    return FeatureFlag(key, FEATURE_LABELS[key], bool(evidence.value), provenance, evidence.rationale)


def _within_window(text: str, anchors, terms, window: int) -> bool:
    anchor_pos = keyword_positions(text, anchors)
    term_pos = keyword_positions(text, terms)
    return any(abs(a - t) <= window for a in anchor_pos for t in term_pos)


def _strip_phrases(text: str, phrases) -> str:
    for phrase in phrases:
        text = text.replace(phrase, " ")
    return text


def _amenity_keywords(text: str, keywords: AmenityKeywords, conf: int, what: str) -> Optional[Evidence]:
    """Include-list match after removing exclusion phrases.

    "communal garden" must not satisfy "garden"; when only exclusion
    phrases are present the evidence is negative.
    """
    hits = match_keywords(_strip_phrases(text, keywords.exclude), keywords.include)
    if hits:
        return Evidence(True, conf, f"Listing mentions {hits[0]}", "keywords")
    excluded = match_keywords(text, keywords.exclude)
    if excluded:
        return Evidence(False, conf, f"Only {excluded[0]} mentioned for {what}", "keywords")
    return None


def _structured_count(value: Optional[int], conf: int, noun: str) -> Optional[Evidence]:
    if value is None or value < 0:
        return None
    if value > 0:
        return Evidence(True, conf, f"{value} {noun} listed", "structured")
    return Evidence(False, conf, f"No {noun} listed", "structured")


def parse_entrance_reply(reply: str, model: ScoringModel) -> Evidence:
    """Turn the entrance classifier's JSON into level-access evidence.

    Raises EvidenceNotFound when no entrance is identifiable.
    """
    match = re.search(r"\{.*\}", reply, re.DOTALL)
    if not match:
        raise EvidenceNotFound(f"no JSON in entrance reply: {reply[:60]!r}")
    try:
        payload = json.loads(match.group(0))
    except ValueError:
        raise EvidenceNotFound("entrance reply was not valid JSON")

    if not payload.get("entrance_visible"):
        raise EvidenceNotFound("no entrance visible")

    cfg = model.features
    steps = int(payload.get("step_count") or 0)
    if steps > 0:
        return Evidence(
            False, cfg.vision_confidence,
            f"{steps} step{'s' if steps != 1 else ''} detected at the entrance",
            "entrance_photo",
        )

    door_px = float(payload.get("door_height_px") or 0)
    rise_px = float(payload.get("rise_px") or 0)
    if door_px <= 0:
        raise EvidenceNotFound("door not measurable")
    rise_cm = rise_px / door_px * cfg.reference_door_height_cm
    if rise_cm < cfg.level_rise_tolerance_cm:
        return Evidence(True, cfg.vision_confidence, "Level entrance seen in photo", "entrance_photo")
    return Evidence(
        False, cfg.vision_confidence,
        f"Approx. {rise_cm:.0f} cm rise at the entrance", "entrance_photo",
    )


class EntrancePhotoStrategy(Strategy):
    provenance = Provenance.VISION

    def __init__(self, photo_url: str, vision: VisionClassifier, model: ScoringModel):
        self.name = "entrance_photo"
        self.photo_url = photo_url
        self.vision = vision
        self.model = model

    def attempt(self, listing: PropertyListing) -> Optional[Evidence]:
        reply = self.vision.classify_image(self.photo_url, ENTRANCE_PROMPT, max_tokens=150)
        return parse_entrance_reply(reply, self.model)

    def excerpt(self, listing: PropertyListing) -> str:
        return self.photo_url


def parse_balcony_reply(reply: str) -> Optional[bool]:
    token = reply.strip().upper()
    if token.startswith("NOT_FOUND") or token.startswith("NOT FOUND"):
        return False
    if token.startswith("FOUND"):
        return True
    if token.startswith("UNCLEAR"):
        return None
    raise EvidenceNotFound(f"unrecognised floorplan reply: {reply[:40]!r}")


def entrance_photos(listing: PropertyListing, limit: int) -> List[str]:
    photos = [
        url for url in listing.image_urls
        if url != listing.floorplan_url
        and url not in listing.epc_image_urls
        and not is_epc_image_url(url)
        and "floorplan" not in url.lower()
    ]
    return photos[:limit]


def detect_features(
    listing: PropertyListing,
    vision: Optional[VisionClassifier] = None,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> FeatureResult:
    text = listing.full_text
    cfg = model.features
    rooms = tables.rooms
    levels = classify_levels(text, tables)
    single = levels.is_single_level
    floor = model.chain_confidence_floor

    def chain(key: str, strategies: List[Strategy]) -> ChainResult:
        return ResolverChain(f"feature.{key}", strategies, confidence_floor=floor).resolve(listing)

    flags: List[FeatureFlag] = []

    # 1. Step-free internal access
    def _single_level(_):
        if single:
            return Evidence(True, cfg.keyword_confidence,
                            f"Single-level property ({levels.single_level_hits[0]})", "single_level")
        return None

    def _via_lift(_):
        if levels.level in (LevelClass.MULTI_LEVEL, LevelClass.UPPER_FLOOR) and levels.lift_hits:
            return Evidence(True, cfg.keyword_confidence,
                            f"Multi-level via lift/stairlift ({levels.lift_hits[0]})", "via_lift")
        return None

    def _multi_without_lift(_):
        if levels.level == LevelClass.MULTI_LEVEL:
            return Evidence(False, cfg.keyword_confidence,
                            "Multi-level property without a lift or stairlift", "multi_level")
        return None

    flags.append(_flag_from_chain("step_free_internal", chain("step_free_internal", [
        _strategy("single_level", Provenance.TEXT, _single_level),
        _strategy("via_lift", Provenance.TEXT, _via_lift),
        _strategy("multi_level", Provenance.TEXT, _multi_without_lift),
    ])))

    # 2-3. Downstairs bedroom / bathroom
    any_room_term = bool(match_keywords(text, rooms.bedroom_terms + rooms.bathroom_terms))

    def _room_chain(key: str, keywords, terms, noun: str) -> FeatureFlag:
        def _keywords(_):
            hits = match_keywords(text, keywords)
            if hits:
                return Evidence(True, cfg.keyword_confidence, f"Listing mentions {hits[0]}", "keywords")
            return None

        def _window(_):
            if _within_window(text, rooms.ground_floor_terms, terms, cfg.proximity_window_chars):
                return Evidence(True, cfg.window_confidence,
                                f"Ground floor mentioned near {noun}", "proximity_window")
            return None

        def _inferred(_):
            if single and any_room_term:
                return Evidence(True, cfg.inferred_confidence,
                                f"Single-level property, so the {noun} is on the ground floor",
                                "single_level_inference")
            return None

        return _flag_from_chain(key, chain(key, [
            _strategy("keywords", Provenance.TEXT, _keywords),
            _strategy("proximity_window", Provenance.TEXT, _window),
            _strategy("single_level_inference", Provenance.INFERRED, _inferred),
        ]))

    flags.append(_room_chain("downstairs_bedroom", rooms.downstairs_bedroom, rooms.bedroom_terms, "bedroom"))
    flags.append(_room_chain("downstairs_bathroom", rooms.downstairs_bathroom, rooms.bathroom_terms, "bathroom"))

    # 4. Ground floor entry
    def _entry_single(_):
        if single:
            return Evidence(True, cfg.inferred_confidence,
                            "Single-level property", "single_level_inference")
        return None

    def _dwelling_type(_):
        hits = match_keywords(text, rooms.dwelling_types)
        if hits and levels.level != LevelClass.UPPER_FLOOR:
            return Evidence(True, cfg.keyword_confidence, f"Dwelling type: {hits[0]}", "dwelling_type")
        return None

    entry_flag = _flag_from_chain("ground_floor_entry", chain("ground_floor_entry", [
        _strategy("single_level_inference", Provenance.INFERRED, _entry_single),
        _strategy("dwelling_type", Provenance.TEXT, _dwelling_type),
    ]))
    flags.append(entry_flag)

    # 5-6. Parking / garden
    flags.append(_flag_from_chain("private_parking", chain("private_parking", [
        _strategy("structured", Provenance.TEXT,
                  lambda l: _structured_count(l.parking_spaces, cfg.structured_confidence, "parking space(s)")),
        _strategy("keywords", Provenance.TEXT,
                  lambda _: _amenity_keywords(text, tables.parking, cfg.keyword_confidence, "parking")),
    ])))
    flags.append(_flag_from_chain("garden_access", chain("garden_access", [
        _strategy("structured", Provenance.TEXT,
                  lambda l: _structured_count(l.gardens, cfg.structured_confidence, "garden(s)")),
        _strategy("keywords", Provenance.TEXT,
                  lambda _: _amenity_keywords(text, tables.garden, cfg.keyword_confidence, "outdoor space")),
    ])))

    # 7. Balcony / terrace
    def _balcony_floorplan(l: PropertyListing):
        if vision is None or not l.floorplan_url:
            raise EvidenceNotFound("no floorplan to inspect")
        found = parse_balcony_reply(vision.classify_image(l.floorplan_url, BALCONY_PROMPT, max_tokens=10))
        if found:
            return Evidence(True, cfg.vision_confidence, "Balcony or terrace shown on floorplan", "floorplan")
        return None

    flags.append(_flag_from_chain("balcony_terrace", chain("balcony_terrace", [
        _strategy("keywords", Provenance.TEXT,
                  lambda _: _amenity_keywords(text, tables.balcony, cfg.keyword_confidence, "balcony")),
        _strategy("floorplan", Provenance.VISION, _balcony_floorplan),
    ])))

    # 8. External level access
    def _level_keywords(_):
        hits = match_keywords(text, tables.level_access.include)
        if hits:
            return Evidence(True, cfg.keyword_confidence, f"Listing mentions {hits[0]}", "keywords")
        return None

    access_strategies: List[Strategy] = [_strategy("keywords", Provenance.TEXT, _level_keywords)]
    photos = entrance_photos(listing, cfg.max_entrance_photos)
    if entry_flag.present and vision is not None:
        access_strategies.extend(EntrancePhotoStrategy(p, vision, model) for p in photos)
    access_result = chain("external_level_access", access_strategies)
    if entry_flag.present:
        flags.append(_flag_from_chain(
            "external_level_access", access_result, fallback=Provenance.UNVERIFIED,
            fallback_detail="no identifiable entrance in listing photos",
        ))
    else:
        flags.append(_flag_from_chain("external_level_access", access_result))

    result = FeatureResult(flags=flags, levels=levels)
    result.score = round_half_up(min(cfg.display_max, result.count / cfg.total_criteria * cfg.display_max), 1)
    logger.info(
        "Features for %s: %d/%d level=%s score=%.1f",
        listing.url, result.count, cfg.total_criteria, levels.level.value, result.score,
    )
    return result


def feature_details(result: FeatureResult, model: ScoringModel = SCORING_MODEL) -> Dict[str, object]:
    """Category payload for the JSON response."""
    total = model.features.total_criteria
    return {
        "score": result.score,
        "rating": result.rating,
        "details": f"{result.count}/{total} accessibility features found",
        "features_found": result.found_labels,
        "missing_critical": result.missing_critical,
        "unverified": result.unverified_warnings,
        "level_classification": result.levels.level.value,
        "flags": [
            {
                "key": f.key,
                "label": f.label,
                "present": f.present,
                "provenance": f.provenance.value,
                "detail": f.detail,
            }
            for f in result.flags
        ],
    }

"""
Proximity scoring for GP surgeries and public transport stops.

For each service class the scorer answers "how hard is it for an older
adult to walk to the nearest genuine one?" in four phases:

  A. Discovery: nearby search at 2 km, widening to 10 km and then to a
     broader set of place types when nothing comes back.
  B. Classification: map search returns plenty of noise (podiatrists,
     pharmacies, coach-hire firms).  Candidates are checked in one batched
     classifier prompt, with a keyword allow/deny fallback.
  C. Routing: walking routes to the closest valid candidates; the route
     text is scanned for stairs, hills and busy-road crossings.
  D. Normalisation: provider walking times assume a brisk pace, so they
     are inflated before bucketing into a 0-5 base score.

Discovery and classification are both ResolverChains, so provider or
classifier failures fall through to the next strategy and are traced.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from evidence import (
    ChainResult,
    Evidence,
    EvidenceNotFound,
    FunctionStrategy,
    ResolverChain,
)
from google_maps import GeoProviderUnavailable, GoogleMapsClient, WalkingRoute
from keyword_tables import KEYWORD_TABLES, KeywordTables, ServiceKeywords, match_keywords
from scoring_config import (
    SCORING_MODEL,
    ScoringModel,
    get_score_band,
    round_half_up,
    score_from_bands,
)
from vision_client import VisionClassifier

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
_TAG_RE = re.compile(r"<[^>]+>")
_INDEX_LIST_RE = re.compile(r"\[[\d,\s]*\]")


@dataclass(frozen=True)
class ServiceProfile:
    key: str
    label: str
    noun: str
    place_types: Tuple[str, ...]
    widened_types: Tuple[str, ...]
    definition: str

    def keywords(self, tables: KeywordTables) -> ServiceKeywords:
        return getattr(tables, self.key)


MEDICAL = ServiceProfile(
    key="medical",
    label="GP surgery",
    noun="GP surgery",
    place_types=("doctor",),
    widened_types=("hospital", "health"),
    definition=(
        "NHS or private general practice surgeries, medical centres or health "
        "centres where a patient can register with a GP. Exclude dentists, "
        "pharmacies, opticians, physiotherapy, cosmetic, therapy and vet clinics"
    ),
)

BUS = ServiceProfile(
    key="bus",
    label="Bus stop",
    noun="bus stop",
    place_types=("bus_station",),
    widened_types=("transit_station",),
    definition="public bus stops or bus stations served by scheduled routes",
)

TRAIN = ServiceProfile(
    key="train",
    label="Train station",
    noun="train station",
    place_types=("train_station", "subway_station"),
    widened_types=("transit_station", "light_rail_station"),
    definition="passenger railway, underground, overground, metro or tram stations",
)

SERVICE_PROFILES: Dict[str, ServiceProfile] = {p.key: p for p in (MEDICAL, BUS, TRAIN)}


@dataclass
class RouteHazards:
    stairs: bool = False
    steep: bool = False
    busy_road: bool = False
    signalled_crossing: bool = False

    def labels(self) -> List[str]:
        out = []
        if self.stairs:
            out.append("stairs or steps")
        if self.steep:
            out.append("steep section")
        if self.busy_road:
            out.append(
                "busy road (signalled crossing)" if self.signalled_crossing else "busy road crossing"
            )
        return out

    def to_dict(self) -> Dict[str, bool]:
        return {
            "stairs": self.stairs,
            "steep": self.steep,
            "busy_road": self.busy_road,
            "signalled_crossing": self.signalled_crossing,
        }


@dataclass
class Candidate:
    place_id: str
    name: str
    address: str
    lat: float
    lng: float
    straight_line_km: float
    types: Tuple[str, ...] = ()


@dataclass
class ProximityResult:
    service: str
    name: Optional[str] = None
    address: Optional[str] = None
    straight_line_km: Optional[float] = None
    raw_duration_min: Optional[int] = None
    adjusted_duration_min: Optional[int] = None
    distance_text: str = ""
    hazards: RouteHazards = field(default_factory=RouteHazards)
    base_score: float = 0.0
    route_accessibility: Optional[float] = None
    score: float = 0.0
    rating: str = "Very poor"
    notes: List[str] = field(default_factory=list)
    alternatives: List[Dict[str, object]] = field(default_factory=list)
    data_available: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "address": self.address,
            "straight_line_km": self.straight_line_km,
            "raw_duration_min": self.raw_duration_min,
            "adjusted_duration_min": self.adjusted_duration_min,
            "distance_text": self.distance_text,
            "hazards": self.hazards.to_dict(),
            "base_score": self.base_score,
            "route_accessibility": self.route_accessibility,
            "score": self.score,
            "rating": self.rating,
            "notes": self.notes,
            "alternatives": self.alternatives,
            "data_available": self.data_available,
        }


@dataclass
class TransportResult:
    bus: ProximityResult
    train: ProximityResult

    @property
    def best(self) -> ProximityResult:
        return self.bus if self.bus.score >= self.train.score else self.train

    @property
    def score(self) -> float:
        return max(self.bus.score, self.train.score)

    @property
    def data_available(self) -> bool:
        return self.bus.data_available or self.train.data_available


# =============================================================================
# Pure helpers
# =============================================================================

def haversine_km(origin: Tuple[float, float], dest: Tuple[float, float]) -> float:
    lat1, lon1 = math.radians(origin[0]), math.radians(origin[1])
    lat2, lon2 = math.radians(dest[0]), math.radians(dest[1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def normalize_duration(seconds: int, model: ScoringModel = SCORING_MODEL) -> Tuple[int, int]:
    """Return (raw, adjusted) walking minutes for a provider duration."""
    raw = math.ceil(seconds / 60)
    # Round first so float noise cannot push an exact product past an integer.
    adjusted = math.ceil(round(raw * model.proximity.walking_inflation, 6))
    return raw, adjusted


def base_score(adjusted_minutes: int, model: ScoringModel = SCORING_MODEL) -> float:
    cfg = model.proximity
    return float(score_from_bands(adjusted_minutes, cfg.duration_bands, cfg.duration_fallback_points))


def detect_hazards(instructions: List[str], tables: KeywordTables = KEYWORD_TABLES) -> RouteHazards:
    text = " ".join(_TAG_RE.sub(" ", i) for i in instructions).lower()
    h = tables.hazards
    return RouteHazards(
        stairs=bool(match_keywords(text, h.stairs)),
        steep=bool(match_keywords(text, h.steep)),
        busy_road=bool(match_keywords(text, h.busy_road)),
        signalled_crossing=bool(match_keywords(text, h.signalled_crossing)),
    )


def route_accessibility(hazards: RouteHazards, adjusted_minutes: int,
                        model: ScoringModel = SCORING_MODEL) -> float:
    cfg = model.proximity.route
    score = cfg.start
    if hazards.stairs:
        score -= cfg.stairs_penalty
    if hazards.steep:
        score -= cfg.steep_penalty
    if hazards.busy_road and not hazards.signalled_crossing:
        score -= cfg.busy_road_penalty
    if adjusted_minutes > cfg.long_walk_min:
        score -= cfg.long_walk_penalty
    if adjusted_minutes > cfg.very_long_walk_min:
        score -= cfg.long_walk_penalty
    return round_half_up(max(cfg.floor, score), 1)


def keyword_verdict(candidate: Candidate, keywords: ServiceKeywords) -> str:
    """Return "invalid", "valid" or "probably_valid" for a candidate.

    Deny-list beats allow-list; neither means probably valid.  Leaning
    towards inclusion keeps genuine but oddly named practices (e.g.
    "The Old School House") from being dropped.
    """
    text = f"{candidate.name} {candidate.address}".lower()
    if match_keywords(text, keywords.deny):
        return "invalid"
    if match_keywords(text, keywords.allow):
        return "valid"
    return "probably_valid"


def rank_candidates(places: List[Dict], origin: Tuple[float, float]) -> List[Candidate]:
    """Dedupe by place id, drop permanently closed places, sort by distance."""
    seen = set()
    ranked: List[Candidate] = []
    for place in places:
        place_id = place.get("place_id")
        if not place_id or place_id in seen:
            continue
        seen.add(place_id)
        if place.get("business_status") == "CLOSED_PERMANENTLY":
            continue
        loc = (place.get("geometry") or {}).get("location") or {}
        if "lat" not in loc or "lng" not in loc:
            continue
        ranked.append(Candidate(
            place_id=place_id,
            name=place.get("name", ""),
            address=place.get("vicinity") or place.get("formatted_address") or "",
            lat=loc["lat"],
            lng=loc["lng"],
            straight_line_km=round(haversine_km(origin, (loc["lat"], loc["lng"])), 2),
            types=tuple(place.get("types") or ()),
        ))
    ranked.sort(key=lambda c: c.straight_line_km)
    return ranked


def classifier_prompt(candidates: List[Candidate], profile: ServiceProfile) -> str:
    lines = [
        f"These places came back from a map search for a {profile.noun} near a UK home.",
        f"Which of them are genuine {profile.definition}?",
        "Reply with only a JSON array of the genuine place numbers, e.g. [0, 2]. "
        "Reply [] if none are genuine.",
        "",
    ]
    for i, c in enumerate(candidates):
        types = ", ".join(c.types[:4])
        lines.append(f"{i}. {c.name} | {c.address} | {types}")
    return "\n".join(lines)


def parse_classifier_reply(reply: str, count: int) -> List[int]:
    match = _INDEX_LIST_RE.search(reply)
    if not match:
        raise ValueError(f"unparseable classifier reply: {reply[:80]!r}")
    indices = json.loads(match.group(0))
    return sorted({i for i in indices if isinstance(i, int) and 0 <= i < count})


# =============================================================================
# Chains
# =============================================================================

def discover(
    maps: GoogleMapsClient,
    origin: Tuple[float, float],
    profile: ServiceProfile,
    model: ScoringModel = SCORING_MODEL,
) -> ChainResult:
    """Phase A: widen the search until something comes back."""
    cfg = model.proximity

    def _search(types: Tuple[str, ...], radius: int, label: str):
        def run(_):
            places: List[Dict] = []
            for place_type in types:
                places.extend(maps.places_nearby(origin[0], origin[1], place_type, radius_meters=radius))
            ranked = rank_candidates(places, origin)
            if not ranked:
                return None
            return Evidence(ranked, 90, f"{len(ranked)} candidates ({label})", label)
        return run

    strategies = [
        FunctionStrategy("initial_radius", _search(profile.place_types, cfg.initial_radius_m,
                                                   f"{cfg.initial_radius_m // 1000} km")),
        FunctionStrategy("widened_radius", _search(profile.place_types, cfg.widened_radius_m,
                                                   f"{cfg.widened_radius_m // 1000} km")),
        FunctionStrategy("widened_types", _search(profile.widened_types, cfg.widened_radius_m,
                                                  f"{cfg.widened_radius_m // 1000} km, wider categories")),
    ]
    return ResolverChain(f"discover.{profile.key}", strategies,
                         confidence_floor=model.chain_confidence_floor).resolve(origin)


def classify(
    candidates: List[Candidate],
    profile: ServiceProfile,
    vision: Optional[VisionClassifier],
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> List[Candidate]:
    """Phase B: keep the candidates that are genuine instances of the service.

    An empty verdict from the remote classifier is not trusted on its own;
    the keyword classifier then decides.
    """
    cfg = model.proximity
    batch = candidates[:cfg.max_classified_candidates]
    keywords = profile.keywords(tables)

    def _remote(_):
        if vision is None:
            raise EvidenceNotFound("no classifier configured")
        reply = vision.classify_text(classifier_prompt(batch, profile), max_tokens=100)
        valid = [batch[i] for i in parse_classifier_reply(reply, len(batch))]
        if not valid:
            return None
        return Evidence(valid, cfg.remote_classifier_confidence,
                        f"{len(valid)}/{len(batch)} confirmed by classifier", "remote_classifier")

    def _keywords(_):
        verdicts = [(c, keyword_verdict(c, keywords)) for c in batch]
        valid = [c for c, verdict in verdicts if verdict != "invalid"]
        confirmed = sum(1 for _, verdict in verdicts if verdict == "valid")
        return Evidence(
            valid, cfg.keyword_classifier_confidence,
            f"{len(valid)}/{len(batch)} passed keyword check ({confirmed} on allow-list)",
            "keyword_classifier",
        )

    chain = ResolverChain(f"classify.{profile.key}", [
        FunctionStrategy("remote_classifier", _remote),
        FunctionStrategy("keyword_classifier", _keywords),
    ], confidence_floor=model.chain_confidence_floor)
    result = chain.resolve([c.name for c in batch])
    return list(result.evidence.value or [])


# =============================================================================
# Scoring
# =============================================================================

def no_data_result(profile: ServiceProfile, note: str, model: ScoringModel) -> ProximityResult:
    """Result for a service that could not be assessed (not a zero distance)."""
    score = model.proximity.no_data_score
    return ProximityResult(
        service=profile.key,
        score=score,
        base_score=score,
        rating=get_score_band(score, model)["label"],
        notes=[note],
        data_available=False,
    )


def _best_route(
    maps: GoogleMapsClient,
    origin: Tuple[float, float],
    candidates: List[Candidate],
    notes: List[str],
) -> Tuple[Optional[Candidate], Optional[WalkingRoute]]:
    best: Tuple[Optional[Candidate], Optional[WalkingRoute]] = (None, None)
    for candidate in candidates:
        try:
            route = maps.walking_route(origin, (candidate.lat, candidate.lng))
        except GeoProviderUnavailable as exc:
            logger.warning("Walking route to %s failed: %s", candidate.name, exc)
            notes.append(f"Walking route to {candidate.name} unavailable")
            continue
        if route is None:
            continue
        if best[1] is None or route.duration_s < best[1].duration_s:
            best = (candidate, route)
    return best


def score_service(
    maps: Optional[GoogleMapsClient],
    origin: Optional[Tuple[float, float]],
    profile: ServiceProfile,
    vision: Optional[VisionClassifier] = None,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> ProximityResult:
    cfg = model.proximity
    if origin is None:
        return no_data_result(profile, "Property location could not be determined", model)
    if maps is None:
        return no_data_result(profile, "Place search is not configured", model)

    found = discover(maps, origin, profile, model)
    if not found.evidence.found:
        if found.all_errored:
            return no_data_result(profile, f"{profile.label} search unavailable", model)
        score = 0.0
        return ProximityResult(
            service=profile.key,
            score=score,
            rating=get_score_band(score, model)["label"],
            notes=[f"No {profile.noun} found within {cfg.widened_radius_m // 1000} km"],
        )

    candidates: List[Candidate] = found.evidence.value
    notes: List[str] = []
    if found.evidence.strategy != "initial_radius":
        notes.append(f"Search widened ({found.evidence.rationale})")

    valid = classify(candidates, profile, vision, model, tables)
    if not valid:
        score = 0.0
        return ProximityResult(
            service=profile.key,
            score=score,
            rating=get_score_band(score, model)["label"],
            notes=notes + [f"No genuine {profile.noun} found nearby"],
        )

    routed = valid[:cfg.max_routed_candidates]
    nearest, route = _best_route(maps, origin, routed, notes)

    if route is None:
        # No walking route: estimate from straight-line distance.
        nearest = routed[0]
        metres = nearest.straight_line_km * 1000 * cfg.estimated_detour_factor
        raw, adjusted = normalize_duration(int(metres / cfg.estimated_walk_m_per_min * 60), model)
        base = base_score(adjusted, model)
        notes.append("Walking time estimated from straight-line distance")
        result = ProximityResult(
            service=profile.key,
            name=nearest.name,
            address=nearest.address,
            straight_line_km=nearest.straight_line_km,
            raw_duration_min=raw,
            adjusted_duration_min=adjusted,
            distance_text=f"{nearest.straight_line_km:.1f} km (straight line)",
            base_score=base,
            score=base,
            rating=get_score_band(base, model)["label"],
            notes=notes,
        )
    else:
        raw, adjusted = normalize_duration(route.duration_s, model)
        base = base_score(adjusted, model)
        hazards = detect_hazards(route.instructions, tables)
        access = route_accessibility(hazards, adjusted, model)
        score = round_half_up((base + access) / 2, 1)
        for label in hazards.labels():
            notes.append(f"Route includes {label}")
        result = ProximityResult(
            service=profile.key,
            name=nearest.name,
            address=nearest.address,
            straight_line_km=nearest.straight_line_km,
            raw_duration_min=raw,
            adjusted_duration_min=adjusted,
            distance_text=route.distance_text,
            hazards=hazards,
            base_score=base,
            route_accessibility=access,
            score=score,
            rating=get_score_band(score, model)["label"],
            notes=notes,
        )

    result.alternatives = [
        {"name": c.name, "straight_line_km": c.straight_line_km}
        for c in valid if c is not nearest
    ][:3]
    logger.info(
        "%s: %s raw=%s adj=%s base=%.1f route=%s score=%.1f",
        profile.key, result.name, result.raw_duration_min, result.adjusted_duration_min,
        result.base_score, result.route_accessibility, result.score,
    )
    return result


def score_gp_proximity(maps, origin, vision=None, model=SCORING_MODEL, tables=KEYWORD_TABLES):
    return score_service(maps, origin, MEDICAL, vision, model, tables)


def score_public_transport(maps, origin, vision=None, model=SCORING_MODEL, tables=KEYWORD_TABLES):
    return TransportResult(
        bus=score_service(maps, origin, BUS, vision, model, tables),
        train=score_service(maps, origin, TRAIN, vision, model, tables),
    )


def _walk_phrase(result: ProximityResult) -> str:
    if result.adjusted_duration_min is None:
        return ""
    return (
        f"{result.adjusted_duration_min} min walk for older adults "
        f"({result.raw_duration_min} min standard)"
    )


def gp_details(result: ProximityResult) -> Dict[str, object]:
    if not result.data_available:
        details = f"GP data unavailable: {result.notes[0]}"
    elif result.name is None:
        details = result.notes[-1] if result.notes else "No GP surgery found"
    else:
        details = f"Nearest GP: {result.name}, {_walk_phrase(result)}"
        if result.distance_text:
            details += f", {result.distance_text}"
    payload = result.to_dict()
    payload["details"] = details
    return payload


def transport_details(result: TransportResult) -> Dict[str, object]:
    parts = []
    for label, service in (("Bus", result.bus), ("Train", result.train)):
        if not service.data_available:
            parts.append(f"{label}: data unavailable")
        elif service.name is None:
            parts.append(f"{label}: none found nearby")
        else:
            parts.append(f"{label}: {service.name}, {_walk_phrase(service)}")
    score = result.score
    return {
        "score": score,
        "rating": get_score_band(score)["label"],
        "details": "; ".join(parts),
        "data_available": result.data_available,
        "bus": result.bus.to_dict(),
        "train": result.train.to_dict(),
    }

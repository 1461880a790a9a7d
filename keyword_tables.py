"""
Keyword, deny-list and allow-list tables for HomeAccess text heuristics.

Every phrase list the resolvers match against lives here so it can be
tuned without touching resolver code.  Tables are frozen dataclasses;
build a variant with dataclasses.replace() and pass it through the
AnalysisContext.

All phrases are lowercase.  Matching is done on word boundaries by
match_keywords(), so "lift" does not match "uplifting".
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class LevelKeywords:
    single_level: Tuple[str, ...]
    upper_floor: Tuple[str, ...]
    upper_storey: Tuple[str, ...]
    flat_types: Tuple[str, ...]
    house_types: Tuple[str, ...]
    multi_level: Tuple[str, ...]
    lift: Tuple[str, ...]


@dataclass(frozen=True)
class RoomKeywords:
    downstairs_bedroom: Tuple[str, ...]
    bedroom_terms: Tuple[str, ...]
    downstairs_bathroom: Tuple[str, ...]
    bathroom_terms: Tuple[str, ...]
    ground_floor_terms: Tuple[str, ...]
    dwelling_types: Tuple[str, ...]


@dataclass(frozen=True)
class AmenityKeywords:
    """Keyword list plus phrases that negate it (e.g. on-street parking)."""
    include: Tuple[str, ...]
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EPCKeywords:
    context_tokens: Tuple[str, ...]
    energy_context: Tuple[str, ...]
    deny_tokens: Tuple[str, ...]
    image_url_patterns: Tuple[str, ...]


@dataclass(frozen=True)
class ServiceKeywords:
    """Allow/deny tables used by the keyword place classifier."""
    allow: Tuple[str, ...]
    deny: Tuple[str, ...]


@dataclass(frozen=True)
class RouteHazardKeywords:
    stairs: Tuple[str, ...]
    steep: Tuple[str, ...]
    busy_road: Tuple[str, ...]
    signalled_crossing: Tuple[str, ...]


@dataclass(frozen=True)
class CityBox:
    """Approximate bounding box for a known city or large town."""
    name: str
    south: float
    west: float
    north: float
    east: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


@dataclass(frozen=True)
class KeywordTables:
    levels: LevelKeywords
    rooms: RoomKeywords
    parking: AmenityKeywords
    garden: AmenityKeywords
    balcony: AmenityKeywords
    level_access: AmenityKeywords
    en_suite: Tuple[str, ...]
    downstairs_wc: Tuple[str, ...]
    epc: EPCKeywords
    medical: ServiceKeywords
    bus: ServiceKeywords
    train: ServiceKeywords
    hazards: RouteHazardKeywords
    price_placeholders: Tuple[str, ...]
    city_boxes: Tuple[CityBox, ...]

    def city_named(self, text: str) -> Optional[CityBox]:
        """Return the first known city mentioned in *text*, if any."""
        lowered = text.lower()
        for box in self.city_boxes:
            if match_keywords(lowered, (box.name,)):
                return box
        return None

    def city_at(self, lat: float, lng: float) -> Optional[CityBox]:
        for box in self.city_boxes:
            if box.contains(lat, lng):
                return box
        return None


# =============================================================================
# Matching helpers
# =============================================================================

@lru_cache(maxsize=1024)
def _keyword_pattern(keyword: str) -> "re.Pattern":
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])")


def match_keywords(text: str, keywords: Tuple[str, ...]) -> List[str]:
    """Return the keywords that occur in lowercase *text* on word boundaries."""
    return [kw for kw in keywords if _keyword_pattern(kw).search(text)]


def keyword_positions(text: str, keywords: Tuple[str, ...]) -> List[int]:
    """Start offsets of every occurrence of any keyword in *text*."""
    positions = []
    for kw in keywords:
        positions.extend(m.start() for m in _keyword_pattern(kw).finditer(text))
    return sorted(positions)


# =============================================================================
# KEYWORD_TABLES: current production values
# =============================================================================

KEYWORD_TABLES = KeywordTables(
    levels=LevelKeywords(
        single_level=(
            "bungalow", "detached bungalow", "semi-detached bungalow",
            "single storey", "single-storey", "single story", "single level",
            "single-level", "one level", "all on one level", "all one level",
            "lateral living", "ground floor flat", "ground floor apartment",
            "ground floor maisonette", "ground-floor flat", "ground floor studio",
        ),
        # Phrases that place the dwelling itself above ground level.
        upper_floor=(
            "first floor flat", "first floor apartment", "first floor maisonette",
            "first floor studio", "first-floor flat", "first-floor apartment",
            "second floor flat", "second floor apartment", "second-floor flat",
            "third floor flat", "third floor apartment", "fourth floor flat",
            "fourth floor apartment", "top floor flat", "top floor apartment",
            "upper floor flat", "upper floor apartment", "penthouse",
            "upper maisonette",
        ),
        # Storey names: an upper floor inside a flat, a second storey in a house.
        upper_storey=(
            "first floor", "second floor", "third floor", "fourth floor",
            "fifth floor", "top floor", "upper floor", "first-floor",
            "second-floor",
        ),
        flat_types=("flat", "apartment", "studio", "maisonette"),
        house_types=(
            "house", "bungalow", "cottage", "townhouse", "town house",
            "end of terrace", "terraced", "semi-detached", "detached",
        ),
        multi_level=(
            "stairs to", "staircase", "stairs lead", "upstairs", "landing",
            "two storey", "two-storey", "three storey", "three-storey",
            "split level", "split-level", "mezzanine", "loft room",
            "first floor bedroom", "bedrooms upstairs", "dormer bungalow",
            "chalet bungalow", "duplex", "townhouse", "town house",
        ),
        lift=(
            "lift", "lifts", "elevator", "stairlift", "stair lift",
            "passenger lift", "through floor lift", "through-floor lift",
        ),
    ),

    rooms=RoomKeywords(
        downstairs_bedroom=(
            "downstairs bedroom", "ground floor bedroom", "bedroom on the ground floor",
            "ground-floor bedroom", "bedroom downstairs",
        ),
        bedroom_terms=("bedroom", "bedrooms", "bed room", "master bedroom", "principal bedroom"),
        downstairs_bathroom=(
            "downstairs bathroom", "ground floor bathroom", "downstairs shower room",
            "ground floor shower room", "ground floor wet room", "downstairs wet room",
            "ground-floor bathroom", "bathroom downstairs",
        ),
        bathroom_terms=(
            "bathroom", "shower room", "wet room", "en suite", "en-suite",
            "ensuite", "wc", "cloakroom",
        ),
        ground_floor_terms=("ground floor", "ground-floor", "downstairs"),
        dwelling_types=(
            "bungalow", "house", "detached house", "semi-detached house",
            "terraced house", "end of terrace", "cottage", "ground floor flat",
            "ground floor apartment", "ground floor maisonette", "ground-floor flat",
        ),
    ),

    parking=AmenityKeywords(
        include=(
            "off street parking", "off-street parking", "off road parking",
            "off-road parking", "driveway", "private parking", "allocated parking",
            "parking space", "garage", "carport", "car port", "gated parking",
            "underground parking", "secure parking",
        ),
        exclude=(
            "on street parking", "on-street parking", "permit parking",
            "no parking", "residents parking", "resident's parking",
        ),
    ),

    garden=AmenityKeywords(
        include=(
            "garden", "rear garden", "front garden", "private garden",
            "south facing garden", "enclosed garden", "patio", "courtyard",
            "lawn", "garden area",
        ),
        exclude=(
            "no garden", "communal garden", "communal gardens",
            "shared garden", "communal grounds",
        ),
    ),

    balcony=AmenityKeywords(
        include=(
            "balcony", "juliet balcony", "terrace", "roof terrace",
            "sun terrace", "private terrace", "veranda", "verandah",
        ),
    ),

    level_access=AmenityKeywords(
        include=(
            "level access", "step free", "step-free", "stepless access",
            "ramp", "ramped access", "level threshold", "level entrance",
            "wheelchair access", "wheelchair accessible", "disabled access",
            "no steps",
        ),
    ),

    en_suite=("en suite", "en-suite", "ensuite"),
    downstairs_wc=(
        "downstairs wc", "downstairs cloakroom", "ground floor wc",
        "ground floor cloakroom", "downstairs toilet", "ground floor toilet",
    ),

    epc=EPCKeywords(
        context_tokens=("epc", "energy", "rating"),
        energy_context=(
            "energy performance", "energy certificate", "energy efficiency",
            "epc rating", "energy rating", "epc",
        ),
        deny_tokens=(
            "deposit", "mortgage", "council tax", "band:", "street",
            "road", "address",
        ),
        image_url_patterns=(
            r"_epc_", r"/epc/", r"epc", r"energy[-_ ]?performance",
            r"energy[-_ ]?certificate", r"eecrating", r"ee_rating",
        ),
    ),

    medical=ServiceKeywords(
        allow=(
            "surgery", "gp surgery", "doctors surgery", "doctor's surgery",
            "medical centre", "medical center", "health centre", "health center",
            "medical practice", "family practice", "primary care", "group practice",
            "health practice", "nhs",
        ),
        deny=(
            "ear wax", "earwax", "chiropody", "chiropodist", "podiatry", "podiatrist",
            "hearing", "audiology", "tree surgery", "tree surgeon", "fertility",
            "ivf", "acupuncture", "chiropractor", "chiropractic", "physio",
            "physiotherapy", "osteopath", "osteopathy", "counselling", "therapy",
            "therapist", "beauty", "aesthetic", "aesthetics", "cosmetic", "laser",
            "botox", "massage", "pharmacy", "chemist", "dentist", "dental",
            "orthodontist", "optician", "opticians", "vet", "vets", "veterinary",
            "animal", "care home", "nursing home", "mental health", "spa",
            "hair transplant", "skin clinic", "travel clinic",
        ),
    ),

    bus=ServiceKeywords(
        allow=("bus stop", "bus station", "stop", "bus shelter", "interchange"),
        deny=("coach hire", "school bus", "bus depot", "bus garage", "tour", "minibus hire"),
    ),

    train=ServiceKeywords(
        allow=(
            "station", "railway station", "rail station", "train station",
            "underground", "tube", "overground", "metro", "tram stop",
        ),
        deny=(
            "model railway", "heritage railway", "fire station", "police station",
            "petrol station", "filling station", "service station", "charging station",
            "ticket office", "railway museum",
        ),
    ),

    hazards=RouteHazardKeywords(
        stairs=("stairs", "steps", "staircase", "take the stairs"),
        steep=("steep", "hill", "incline", "uphill"),
        busy_road=(
            "main road", "busy", "major", "a road", "a-road",
            "dual carriageway",
        ),
        signalled_crossing=(
            "traffic lights", "traffic light", "crossing", "pedestrian crossing",
            "zebra crossing", "pelican crossing", "puffin crossing", "toucan crossing",
        ),
    ),

    price_placeholders=(
        "poa", "price on application", "price on request", "offers invited",
        "coming soon",
    ),

    # Coarse boxes; they only need to separate cities from one another.
    city_boxes=(
        CityBox("london", 51.28, -0.51, 51.70, 0.33),
        CityBox("manchester", 53.34, -2.35, 53.55, -2.10),
        CityBox("birmingham", 52.38, -2.03, 52.61, -1.73),
        CityBox("leeds", 53.70, -1.80, 53.95, -1.29),
        CityBox("liverpool", 53.32, -3.02, 53.48, -2.82),
        CityBox("bristol", 51.39, -2.72, 51.54, -2.51),
        CityBox("sheffield", 53.30, -1.58, 53.47, -1.32),
        CityBox("newcastle", 54.95, -1.78, 55.05, -1.53),
        CityBox("nottingham", 52.88, -1.25, 53.02, -1.08),
        CityBox("leicester", 52.58, -1.22, 52.69, -1.05),
        CityBox("edinburgh", 55.88, -3.33, 55.99, -3.08),
        CityBox("glasgow", 55.79, -4.39, 55.93, -4.13),
        CityBox("cardiff", 51.44, -3.28, 51.54, -3.11),
        CityBox("brighton", 50.81, -0.22, 50.88, -0.05),
        CityBox("oxford", 51.71, -1.31, 51.80, -1.19),
        CityBox("cambridge", 52.16, 0.06, 52.24, 0.19),
        CityBox("york", 53.92, -1.16, 54.00, -1.01),
        CityBox("exeter", 50.69, -3.57, 50.75, -3.46),
        CityBox("norwich", 52.59, 1.22, 52.67, 1.35),
    ),
)

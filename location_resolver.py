"""
Human-readable location for a listing.

Listing pages carry the address in several places of varying quality
(page heading, embedded script data, body text, the title).  Candidates
are tried in that order.  A candidate that names a known city is
rejected when the listing's coordinates sit inside a *different* known
city; agents' pages sometimes reuse a head-office address or a
neighbouring listing's heading.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from evidence import Evidence, EvidenceNotFound, FunctionStrategy, ResolverChain
from keyword_tables import KEYWORD_TABLES, KeywordTables
from listing_scraper import PropertyListing
from scoring_config import SCORING_MODEL, ScoringModel

logger = logging.getLogger(__name__)

HEADING_CONFIDENCE = 90
SCRIPT_ADDRESS_CONFIDENCE = 80
STREET_PATTERN_CONFIDENCE = 70
TITLE_PLACE_CONFIDENCE = 60

_POSTCODE_RE = re.compile(r"\b[A-Z]{1,2}\d[A-Z\d]?(?:\s*\d[A-Z]{2})?\b")
_STREET_RE = re.compile(
    r"\b\d{0,4}\s*[A-Z][a-zA-Z']+(?:\s+[A-Z][a-zA-Z']+)*\s+"
    r"(?:Road|Street|Avenue|Lane|Close|Drive|Way|Crescent|Gardens|Place|Court|Grove|Terrace|Hill|Row|Square|Mews|Rise|View|Walk)"
    r"(?:,\s*[A-Z][a-zA-Z' ]+){1,3}"
)
_TITLE_PLACE_RE = re.compile(r"\bin\s+([A-Z][A-Za-z' -]+?(?:,\s*[A-Z0-9][A-Za-z0-9' ]+)*)(?:\s*[-|(]|$)")
# Headings that are page furniture rather than addresses.
_HEADING_NOISE = ("rightmove", "property for sale", "similar properties", "mortgage", "sign in")


@dataclass
class LocationResult:
    location: str
    confidence: int
    strategy: str
    rejected: List[Tuple[str, str]] = field(default_factory=list)


def contradicts_coordinates(
    candidate: str,
    coordinates: Optional[Tuple[float, float]],
    tables: KeywordTables = KEYWORD_TABLES,
) -> Optional[str]:
    """Explain why *candidate* disagrees with the coordinates, or None.

    Unknown cities and missing coordinates cannot contradict.
    """
    if coordinates is None:
        return None
    named = tables.city_named(candidate)
    if named is None or named.contains(*coordinates):
        return None
    actual = tables.city_at(*coordinates)
    if actual is None or actual.name == named.name:
        return None
    return f"names {named.name.title()} but coordinates are in {actual.name.title()}"


def _looks_like_address(text: str) -> bool:
    lowered = text.lower()
    if any(noise in lowered for noise in _HEADING_NOISE):
        return False
    return "," in text or bool(_POSTCODE_RE.search(text))


def resolve_location(
    listing: PropertyListing,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> LocationResult:
    rejected: List[Tuple[str, str]] = []

    def _accept(candidates: List[str], confidence: int, strategy: str) -> Optional[Evidence]:
        for candidate in candidates:
            reason = contradicts_coordinates(candidate, listing.coordinates, tables)
            if reason:
                logger.info("Location candidate %r rejected: %s", candidate, reason)
                rejected.append((candidate, reason))
                continue
            return Evidence(candidate, confidence, f"{strategy}: {candidate}", strategy)
        if candidates:
            raise EvidenceNotFound(f"all {strategy} candidates contradicted the coordinates")
        return None

    def _headings(l: PropertyListing):
        return _accept([h for h in l.address_headings if _looks_like_address(h)],
                       HEADING_CONFIDENCE, "heading")

    def _script_address(l: PropertyListing):
        return _accept([l.script_address] if l.script_address else [],
                       SCRIPT_ADDRESS_CONFIDENCE, "script_address")

    def _street_pattern(l: PropertyListing):
        return _accept([m.group(0).strip() for m in _STREET_RE.finditer(l.page_text)][:5],
                       STREET_PATTERN_CONFIDENCE, "street_pattern")

    def _title_place(l: PropertyListing):
        match = _TITLE_PLACE_RE.search(l.title)
        return _accept([match.group(1).strip()] if match else [],
                       TITLE_PLACE_CONFIDENCE, "title_place")

    chain = ResolverChain("location", [
        FunctionStrategy("heading", _headings),
        FunctionStrategy("script_address", _script_address),
        FunctionStrategy("street_pattern", _street_pattern),
        FunctionStrategy("title_place", _title_place),
    ], confidence_floor=model.chain_confidence_floor)
    outcome = chain.resolve(listing)

    if not outcome.evidence.found:
        fallback = listing.location_text
        if fallback in {candidate for candidate, _ in rejected}:
            fallback = ""
        return LocationResult(
            location=fallback or "Location not specified",
            confidence=0,
            strategy="not_found",
            rejected=rejected,
        )
    return LocationResult(
        location=outcome.evidence.value,
        confidence=outcome.evidence.confidence,
        strategy=outcome.evidence.strategy,
        rejected=rejected,
    )

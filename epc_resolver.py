"""
EPC (Energy Performance Certificate) rating resolver.

Listings state the EPC band in wildly different ways: a clean "EPC: C"
key feature, a certificate graph image, a sentence buried in the page
text, or a run-together "EPC RATINGD" from a flattened table.  Each of
these is a strategy in a ResolverChain, tried in strict priority order:

  1. explicit_text       (95)  declarations validated by nearby context
  2. vision_certificate  (75)  certificate image read by the classifier
  3. contextual_text     (70)  looser patterns near energy vocabulary
  4. literal_phrase      (65)  the "EPC RATING X" family on raw text

A certificate image often carries the numeric SAP score as well; that
score drives the category sub-score only when the evidence is strong.
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
    Strategy,
)
from keyword_tables import KEYWORD_TABLES, KeywordTables, match_keywords
from listing_scraper import PropertyListing, is_epc_image_url
from scoring_config import SCORING_MODEL, ScoringModel, clamp, get_score_band
from vision_client import VisionClassifier

logger = logging.getLogger(__name__)

METHOD_LABELS = {
    "explicit_text": "Clear text",
    "vision_certificate": "Vision",
    "contextual_text": "Text pattern",
    "literal_phrase": "Text pattern",
    "not_found": "Not found",
}

VISION_PROMPT = (
    "This image should be a UK Energy Performance Certificate (EPC) graph. "
    "Report the CURRENT energy efficiency rating of the property, not the "
    "potential rating. The current rating is usually the left-hand arrow. "
    "Reply on one line in exactly this format:\n"
    "Rating: <letter A-G>, Score: <number 1-100>, Confidence: <0-100>%\n"
    "If the score is not legible, omit it. If this is not an EPC graph or "
    "the rating is unreadable, reply: Rating: NONE"
)

_EXPLICIT_PATTERNS = (
    re.compile(r"\bepc\s*(?:rating)?\s*[-:]\s*([a-g])\b"),
    re.compile(r"\bepc\s+rating\s+(?:of\s+)?([a-g])\b"),
    re.compile(r"\bepc\s+([a-g])\b"),
    re.compile(r"\benergy\s+rating\s*[-:]\s*([a-g])\b"),
    re.compile(r"\b([a-g])\s+rated\b"),
)

_CONTEXTUAL_PATTERNS = (
    re.compile(r"\brating\s*(?:of\s+)?([a-g])\b"),
    re.compile(r"\bband\s+([a-g])\b"),
    re.compile(r"\b([a-g])\s*-?\s*rating\b"),
    re.compile(r"\benergy\s+efficiency\s*(?:rating)?\s*[-:]?\s*([a-g])\b"),
    re.compile(r"\bcurrent\s+(?:energy\s+)?rating\s*[-:]?\s*([a-g])\b"),
    re.compile(r"\b([a-g])\s*[-:(]\s*\d{1,3}\s*\)?"),
)

# Case-sensitive on purpose: picks up flattened table text like
# "EPC RATINGDCOUNCIL TAX" that the lowercase patterns cannot split.
_LITERAL_PATTERNS = (
    re.compile(r"EPC\s+RATING\s*[-:]?\s*([A-G])\b"),
    re.compile(r"EPC\s+RATING\s*([A-G])(?=[A-Z])"),
    re.compile(r"EPC\s*:\s*([A-G])\b", re.IGNORECASE),
    re.compile(r"EPC\s+([A-G])\b", re.IGNORECASE),
)

_RATING_LINE_RE = re.compile(r"rating\s*[:=]\s*([A-G]|NONE)\b", re.IGNORECASE)
_SCORE_LINE_RE = re.compile(r"score\s*[:=]\s*(\d{1,3})\b", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{.*?\}", re.DOTALL)


@dataclass(frozen=True)
class EPCReading:
    grade: Optional[str]
    score: Optional[int] = None


@dataclass
class EPCResult:
    grade: Optional[str]
    confidence: int
    rationale: str
    method: str
    numeric_score: Optional[int] = None
    score: Optional[int] = None
    attempts: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def rating(self) -> str:
        return get_score_band(self.score)["label"]


# =============================================================================
# Strategies
# =============================================================================

def _context_ok(text: str, start: int, end: int, tokens: Tuple[str, ...], radius: int) -> bool:
    window = text[max(0, start - radius): end + radius]
    return any(token in window for token in tokens)


def explicit_text(listing: PropertyListing, model: ScoringModel, tables: KeywordTables) -> Optional[Evidence]:
    text = " ".join((listing.full_text, listing.page_text.lower()))
    radius = model.epc.explicit_context_chars
    for pattern in _EXPLICIT_PATTERNS:
        for match in pattern.finditer(text):
            if not _context_ok(text, match.start(), match.end(), tables.epc.context_tokens, radius):
                continue
            grade = match.group(1).upper()
            return Evidence(
                value=EPCReading(grade),
                confidence=model.epc.explicit_text_confidence,
                rationale=f'Stated in listing text ("{match.group(0).strip()}")',
                strategy="explicit_text",
            )
    return None


def parse_vision_reply(reply: str) -> EPCReading:
    """Parse "Rating: X, Score: N" or a JSON object into an EPCReading.

    Raises EvidenceNotFound when the classifier could not read a rating.
    """
    grade: Optional[str] = None
    score: Optional[int] = None

    match = _RATING_LINE_RE.search(reply)
    if match:
        if match.group(1).upper() == "NONE":
            raise EvidenceNotFound("classifier could not read a rating")
        grade = match.group(1).upper()
        score_match = _SCORE_LINE_RE.search(reply)
        if score_match:
            score = int(score_match.group(1))
    else:
        obj_match = _JSON_OBJECT_RE.search(reply)
        if obj_match:
            try:
                payload = json.loads(obj_match.group(0))
            except ValueError:
                payload = {}
            raw_grade = str(payload.get("rating") or payload.get("current_rating") or "")
            if re.fullmatch(r"[A-Ga-g]", raw_grade.strip()):
                grade = raw_grade.strip().upper()
            raw_score = payload.get("score") or payload.get("current_score")
            if isinstance(raw_score, (int, float)):
                score = int(raw_score)
            elif isinstance(raw_score, str) and raw_score.strip().isdigit():
                score = int(raw_score.strip())

    if grade is None:
        raise EvidenceNotFound(f"unparseable classifier reply: {reply[:80]!r}")
    if score is not None and not 1 <= score <= 100:
        score = None
    return EPCReading(grade, score)


def reconcile_band(reading: EPCReading, model: ScoringModel) -> Tuple[EPCReading, Optional[str]]:
    """Re-map the letter when the numeric score falls outside its band.

    Returns the (possibly corrected) reading and a note describing the
    correction, or None when the letter and score already agree.
    """
    if reading.grade is None or reading.score is None:
        return reading, None
    bounds = model.epc.band_range(reading.grade)
    if bounds and bounds[0] <= reading.score <= bounds[1]:
        return reading, None
    corrected = model.epc.band_for_score(reading.score)
    if corrected is None or corrected == reading.grade:
        return reading, None
    note = f"score {reading.score} is band {corrected}, not {reading.grade}"
    return EPCReading(corrected, reading.score), note


class VisionCertificateStrategy(Strategy):
    """Reads one candidate certificate image with the vision classifier."""

    def __init__(self, image_url: str, vision: VisionClassifier, model: ScoringModel):
        self.name = "vision_certificate"
        self.image_url = image_url
        self.vision = vision
        self.model = model

    def attempt(self, listing: PropertyListing) -> Optional[Evidence]:
        reply = self.vision.classify_image(self.image_url, VISION_PROMPT)
        reading, note = reconcile_band(parse_vision_reply(reply), self.model)
        rationale = "Read from EPC certificate image"
        if reading.score is not None:
            rationale += f" (score {reading.score})"
        if note:
            rationale += f"; corrected: {note}"
        return Evidence(
            value=reading,
            confidence=self.model.epc.vision_confidence,
            rationale=rationale,
            strategy=self.name,
        )

    def excerpt(self, listing: PropertyListing) -> str:
        return self.image_url


def _no_certificate_images(listing: PropertyListing) -> Optional[Evidence]:
    raise EvidenceNotFound("no candidate certificate images")


def contextual_text(listing: PropertyListing, model: ScoringModel, tables: KeywordTables) -> Optional[Evidence]:
    before, after = model.epc.contextual_window
    for source_name, raw in (("description", listing.description), ("page text", listing.page_text)):
        text = raw.lower()
        for pattern in _CONTEXTUAL_PATTERNS:
            for match in pattern.finditer(text):
                window = text[max(0, match.start() - before): match.end() + after]
                if not match_keywords(window, tables.epc.energy_context):
                    continue
                if any(token in window for token in tables.epc.deny_tokens):
                    continue
                return Evidence(
                    value=EPCReading(match.group(1).upper()),
                    confidence=model.epc.contextual_text_confidence,
                    rationale=f'Inferred from {source_name} ("{match.group(0).strip()}")',
                    strategy="contextual_text",
                )
    return None


def literal_phrase(listing: PropertyListing, model: ScoringModel) -> Optional[Evidence]:
    for pattern in _LITERAL_PATTERNS:
        match = pattern.search(listing.description)
        if match:
            return Evidence(
                value=EPCReading(match.group(1).upper()),
                confidence=model.epc.literal_phrase_confidence,
                rationale=f'Literal phrase in description ("{match.group(0).strip()}")',
                strategy="literal_phrase",
            )
    return None


# =============================================================================
# Chain assembly and scoring
# =============================================================================

def candidate_certificate_images(listing: PropertyListing, limit: int) -> List[str]:
    urls: List[str] = list(listing.epc_image_urls)
    for url in listing.image_urls:
        if is_epc_image_url(url) and url not in urls:
            urls.append(url)
    return urls[:limit]


def build_epc_chain(
    listing: PropertyListing,
    vision: Optional[VisionClassifier],
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> ResolverChain:
    strategies: List[Strategy] = [
        FunctionStrategy("explicit_text", lambda l: explicit_text(l, model, tables)),
    ]
    images = candidate_certificate_images(listing, model.epc.vision_max_images)
    if vision is not None and images:
        strategies.extend(VisionCertificateStrategy(url, vision, model) for url in images)
    else:
        strategies.append(FunctionStrategy("vision_certificate", _no_certificate_images))
    strategies.append(
        FunctionStrategy("contextual_text", lambda l: contextual_text(l, model, tables))
    )
    strategies.append(FunctionStrategy("literal_phrase", lambda l: literal_phrase(l, model)))
    return ResolverChain("epc", strategies, confidence_floor=model.chain_confidence_floor)


def epc_sub_score(
    grade: Optional[str],
    confidence: int,
    numeric_score: Optional[int],
    model: ScoringModel = SCORING_MODEL,
) -> Optional[int]:
    """Category score 1-5, or None when no grade was resolved."""
    if grade is None:
        return None
    if numeric_score is not None and confidence >= model.epc.numeric_min_confidence:
        # Half-up rounding; round() would send 2.5 to 2.
        return int(math.floor(clamp(numeric_score / 100 * 5, 1, 5) + 0.5))
    return model.epc.letter_score(grade)


def resolve_epc(
    listing: PropertyListing,
    vision: Optional[VisionClassifier] = None,
    model: ScoringModel = SCORING_MODEL,
    tables: KeywordTables = KEYWORD_TABLES,
) -> EPCResult:
    chain = build_epc_chain(listing, vision, model, tables)
    outcome: ChainResult = chain.resolve(listing)
    evidence = outcome.evidence

    if not evidence.found:
        logger.info("EPC not found for %s: %s", listing.url, evidence.rationale)
        return EPCResult(
            grade=None,
            confidence=0,
            rationale=evidence.rationale,
            method=METHOD_LABELS["not_found"],
            attempts=outcome.attempts,
        )

    reading: EPCReading = evidence.value
    score = epc_sub_score(reading.grade, evidence.confidence, reading.score, model)
    logger.info(
        "EPC %s via %s (%d%%) score=%s", reading.grade, evidence.strategy,
        evidence.confidence, score,
    )
    return EPCResult(
        grade=reading.grade,
        confidence=evidence.confidence,
        rationale=evidence.rationale,
        method=METHOD_LABELS.get(evidence.strategy, evidence.strategy),
        numeric_score=reading.score,
        score=score,
        attempts=outcome.attempts,
    )


def epc_details(result: EPCResult) -> Dict[str, object]:
    """Category payload for the JSON response."""
    if result.grade is None:
        details = "EPC rating not found in listing"
    else:
        details = f"EPC rating {result.grade} ({result.method}, {result.confidence}% confidence)"
        if result.numeric_score is not None:
            details += f", SAP score {result.numeric_score}"
    return {
        "score": result.score,
        "rating": result.rating,
        "details": details,
        "grade": result.grade,
        "confidence": result.confidence,
        "method": result.method,
        "numeric_score": result.numeric_score,
        "rationale": result.rationale,
    }

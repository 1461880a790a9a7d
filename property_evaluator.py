#!/usr/bin/env python3
"""
HomeAccess Property Evaluator

Scores a UK property listing for suitability for older or
mobility-limited adults: GP proximity, energy efficiency, accessible
features, public transport, room accommodation and property cost,
combined into an overall rating with a written summary.

Requirements:
- Google Maps API key (Geocoding, Places Nearby, Directions)
- Anthropic API key (optional; enables certificate, floorplan and
  entrance-photo reading and place-candidate checks)

Usage:
    python property_evaluator.py "https://www.rightmove.co.uk/properties/123456789"
    python property_evaluator.py --json "https://www.rightmove.co.uk/properties/123456789"
"""

import os
import sys
import json
import time
import logging
import argparse
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any, Callable

from dotenv import load_dotenv

from accessible_features import FeatureResult, detect_features, feature_details
from aggregator import (
    AggregationImpossible,
    CompositeScore,
    aggregate,
    category_from_payload,
    generate_summary,
)
from epc_resolver import EPCResult, epc_details, resolve_epc
from google_maps import GeoProviderUnavailable, GoogleMapsClient
from ha_trace import get_trace, set_trace
from keyword_tables import KEYWORD_TABLES, KeywordTables
from listing_analyzers import (
    CostResult,
    RoomResult,
    analyze_cost,
    analyze_rooms,
    cost_details,
    room_details,
)
from listing_scraper import PropertyListing, SourceUnavailable, scrape_listing
from location_resolver import LocationResult, resolve_location
from proximity import (
    BUS,
    MEDICAL,
    TRAIN,
    ProximityResult,
    TransportResult,
    gp_details,
    no_data_result,
    score_gp_proximity,
    score_public_transport,
    transport_details,
)
from scoring_config import SCORING_MODEL, ScoringModel
from vision_client import VisionClassifier

logger = logging.getLogger(__name__)

load_dotenv()

__all__ = [
    "AggregationImpossible",
    "AnalysisContext",
    "AnalysisResult",
    "AnalysisTimeout",
    "GeoProviderUnavailable",
    "GoogleMapsClient",
    "PropertyListing",
    "SourceUnavailable",
    "analyze_url",
    "evaluate_property",
    "format_result",
    "result_to_dict",
]

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_DEADLINE_SECONDS = float(os.environ.get("ANALYSIS_DEADLINE_SECONDS", "45"))

# Stages that run concurrently once rooms have been analysed.
PARALLEL_STAGES = ("epc", "features", "gp_proximity", "public_transport", "cost")


class AnalysisTimeout(Exception):
    """The analysis did not finish inside the request deadline."""


@dataclass
class AnalysisContext:
    """Request-scoped settings and client factories.

    Clients are created per thread (requests.Session is not thread-safe),
    so the context holds keys rather than client instances.
    """
    maps_api_key: Optional[str] = None
    vision_api_key: Optional[str] = None
    vision_model: Optional[str] = None
    model: ScoringModel = SCORING_MODEL
    tables: KeywordTables = KEYWORD_TABLES
    deadline_seconds: float = DEFAULT_DEADLINE_SECONDS

    @classmethod
    def from_env(cls) -> "AnalysisContext":
        return cls(
            maps_api_key=os.environ.get("GOOGLE_MAPS_API_KEY"),
            vision_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            vision_model=os.environ.get("VISION_MODEL"),
        )

    def maps_client(self) -> Optional[GoogleMapsClient]:
        if not self.maps_api_key:
            return None
        return GoogleMapsClient(self.maps_api_key)

    def vision_client(self) -> Optional[VisionClassifier]:
        if not self.vision_api_key:
            return None
        return VisionClassifier(self.vision_api_key, model=self.vision_model)


@dataclass
class AnalysisResult:
    listing: PropertyListing
    location: LocationResult
    coordinates: Optional[Tuple[float, float]]
    epc: EPCResult
    features: Optional[FeatureResult]
    gp: ProximityResult
    transport: TransportResult
    rooms: RoomResult
    cost: CostResult
    composite: CompositeScore
    model_version: str
    timestamp: str


# =============================================================================
# MAIN EVALUATION
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    finally:
        if trace:
            trace.end_stage()


def _resolve_coordinates(
    listing: PropertyListing, location: LocationResult, ctx: AnalysisContext
) -> Optional[Tuple[float, float]]:
    if listing.coordinates is not None:
        return listing.coordinates
    maps = ctx.maps_client()
    query = listing.script_address or (location.location if location.confidence else "")
    if maps is None or not query:
        return None
    try:
        return maps.geocode(query)
    except GeoProviderUnavailable as exc:
        logger.warning("Geocoding %r failed: %s", query, exc)
        return None


def _stage_fallback(stage_name: str, ctx: AnalysisContext) -> Any:
    """Typed stand-in for a stage that raised unexpectedly."""
    note = f"{stage_name} analysis failed"
    if stage_name == "epc":
        return EPCResult(grade=None, confidence=0, rationale=note, method="Not found")
    if stage_name == "features":
        return None
    if stage_name == "gp_proximity":
        return no_data_result(MEDICAL, note, ctx.model)
    if stage_name == "public_transport":
        return TransportResult(
            bus=no_data_result(BUS, note, ctx.model),
            train=no_data_result(TRAIN, note, ctx.model),
        )
    if stage_name == "cost":
        return CostResult(notes=[note])
    raise KeyError(stage_name)


def evaluate_property(
    listing: PropertyListing,
    ctx: Optional[AnalysisContext] = None,
    on_stage: Optional[Callable[[str], None]] = None,
    deadline_at: Optional[float] = None,
) -> AnalysisResult:
    """Run the full analysis on a scraped listing.

    Rooms run first (cheap and deterministic; cost needs the floor area).
    EPC, features, GP, public transport and cost then run concurrently.
    Each is independent, so a single failing stage degrades to its typed
    fallback without affecting the others.  The whole evaluation shares
    one deadline; when it passes AnalysisTimeout is raised and no partial
    result is returned.

    on_stage: optional callback(stage_name: str) called at the start of each
    stage, for progress reporting.
    """
    ctx = ctx or AnalysisContext.from_env()
    if deadline_at is None:
        deadline_at = time.monotonic() + ctx.deadline_seconds

    def _run_stage(name: str, fn, *args, **kwargs):
        if on_stage:
            on_stage(name)
        return _timed_stage(name, fn, *args, **kwargs)

    eval_start = time.time()
    model, tables = ctx.model, ctx.tables

    parent_trace = get_trace()
    if parent_trace:
        parent_trace.model_version = model.version

    location = _run_stage("location", resolve_location, listing, model, tables)
    coordinates = _run_stage("geocode", _resolve_coordinates, listing, location, ctx)
    rooms = _run_stage("rooms", analyze_rooms, listing, model, tables)

    # Each thread gets fresh clients (requests.Session is not thread-safe)
    # and the parent TraceContext (list.append is GIL-atomic).
    def _threaded_stage(stage_name, fn, *args):
        set_trace(parent_trace)
        if on_stage:
            on_stage(stage_name)
        return _timed_stage(stage_name, fn, *args)

    def _maps_stage(stage_name, fn):
        set_trace(parent_trace)
        if on_stage:
            on_stage(stage_name)
        return _timed_stage(
            stage_name, fn, ctx.maps_client(), coordinates, ctx.vision_client(), model, tables,
        )

    pool = ThreadPoolExecutor(max_workers=len(PARALLEL_STAGES))
    try:
        futures: Dict[str, Any] = {
            "epc": pool.submit(
                _threaded_stage, "epc", resolve_epc, listing, ctx.vision_client(), model, tables,
            ),
            "features": pool.submit(
                _threaded_stage, "features", detect_features, listing, ctx.vision_client(), model, tables,
            ),
            "gp_proximity": pool.submit(_maps_stage, "gp_proximity", score_gp_proximity),
            "public_transport": pool.submit(_maps_stage, "public_transport", score_public_transport),
            "cost": pool.submit(
                _threaded_stage, "cost", analyze_cost, listing, rooms, model, tables,
            ),
        }
        remaining = max(0.0, deadline_at - time.monotonic())
        _, not_done = wait(futures.values(), timeout=remaining)
        if not_done:
            pending = sorted(name for name, f in futures.items() if f in not_done)
            logger.warning("Analysis deadline passed; still running: %s", ", ".join(pending))
            raise AnalysisTimeout(
                f"Analysis did not finish within {ctx.deadline_seconds:.0f}s "
                f"(pending: {', '.join(pending)})"
            )
    finally:
        # Do not block on stragglers once the deadline has gone.
        pool.shutdown(wait=False, cancel_futures=True)

    outputs: Dict[str, Any] = {}
    for name, future in futures.items():
        try:
            outputs[name] = future.result()
        except Exception:
            logger.warning("Stage %s failed, using fallback", name, exc_info=True)
            outputs[name] = _stage_fallback(name, ctx)

    epc: EPCResult = outputs["epc"]
    features: Optional[FeatureResult] = outputs["features"]
    gp: ProximityResult = outputs["gp_proximity"]
    transport: TransportResult = outputs["public_transport"]
    cost: CostResult = outputs["cost"]

    features_payload = (
        feature_details(features, model) if features is not None
        else {"score": None, "rating": "No data", "details": "Feature analysis failed"}
    )
    categories = [
        category_from_payload("gp_proximity", gp_details(gp)),
        category_from_payload("epc_rating", epc_details(epc)),
        category_from_payload("accessible_features", features_payload),
        category_from_payload("public_transport", transport_details(transport)),
        category_from_payload("room_accommodation", room_details(rooms)),
        category_from_payload("property_cost", cost_details(cost)),
    ]
    composite = _run_stage("aggregate", aggregate, categories, model)
    composite.summary = generate_summary(
        composite,
        title=listing.title,
        location=location.location,
        epc=epc,
        features=features,
        gp=gp,
        transport=transport,
        cost=cost,
        model=model,
    )

    result = AnalysisResult(
        listing=listing,
        location=location,
        coordinates=coordinates,
        epc=epc,
        features=features,
        gp=gp,
        transport=transport,
        rooms=rooms,
        cost=cost,
        composite=composite,
        model_version=model.version,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    elapsed_total = time.time() - eval_start
    logger.info("Evaluation complete for %r  overall=%.1f  (%.1fs total)",
                listing.url, composite.overall, elapsed_total)
    return result


def analyze_url(
    url: str,
    ctx: Optional[AnalysisContext] = None,
    cache=None,
    on_stage: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """Scrape, evaluate and serialise one listing URL.

    *cache* is an optional ResultCache; a fresh entry short-circuits the
    whole analysis and a new result is stored once, never updated.
    """
    ctx = ctx or AnalysisContext.from_env()
    deadline_at = time.monotonic() + ctx.deadline_seconds

    if cache is not None:
        cached = cache.get(url)
        if cached is not None:
            logger.info("Result cache hit for %s", url)
            return cached

    if on_stage:
        on_stage("scrape")
    listing = _timed_stage("scrape", scrape_listing, url)
    if time.monotonic() >= deadline_at:
        raise AnalysisTimeout("Deadline passed while fetching the listing")

    result = evaluate_property(listing, ctx, on_stage=on_stage, deadline_at=deadline_at)
    payload = result_to_dict(result)
    if cache is not None:
        cache.put(url, payload)
    return payload


def result_to_dict(result: AnalysisResult) -> Dict[str, Any]:
    """JSON response shape for /api/analyze and the --json CLI flag."""
    analysis: Dict[str, Any] = {
        c.key: c.to_dict() for c in result.composite.categories
    }
    analysis["overall"] = result.composite.overall
    analysis["rating"] = result.composite.rating
    analysis["summary"] = result.composite.summary
    return {
        "property": {
            "title": result.listing.title,
            "price": result.listing.price_text or "Price not specified",
            "location": result.location.location,
            "url": result.listing.url,
        },
        "analysis": analysis,
        "coordinates": (
            {"lat": result.coordinates[0], "lng": result.coordinates[1]}
            if result.coordinates else None
        ),
        "model_version": result.model_version,
        "timestamp": result.timestamp,
    }


def format_result(result: AnalysisResult) -> str:
    """Format analysis result as a readable report"""
    lines = []

    lines.append("=" * 70)
    lines.append(f"PROPERTY: {result.listing.title or '(untitled listing)'}")
    lines.append(f"LISTING: {result.listing.url}")
    if result.listing.price_text:
        lines.append(f"PRICE: {result.listing.price_text}")
    lines.append(f"LOCATION: {result.location.location}")
    if result.coordinates:
        lines.append(f"COORDINATES: {result.coordinates[0]:.6f}, {result.coordinates[1]:.6f}")
    lines.append("=" * 70)

    lines.append("\nCATEGORY SCORES:")
    for c in result.composite.categories:
        score = f"{c.score:.1f}/5" if c.score is not None else "n/a"
        lines.append(f"  - {c.label}: {score} ({c.rating}): {c.details}")

    if result.features is not None:
        lines.append("\nACCESSIBLE FEATURES:")
        for f in result.features.flags:
            symbol = "✓" if f.present else ("?" if f.provenance.value == "unverified" else "✗")
            detail = f": {f.detail}" if f.detail else ""
            lines.append(f"  {symbol} {f.label} [{f.provenance.value}]{detail}")

    lines.append(f"\n{'=' * 70}")
    lines.append(
        f"OVERALL: {result.composite.overall:.1f}/5 ({result.composite.rating})"
    )
    lines.append("=" * 70)
    lines.append("")
    lines.append(result.composite.summary)

    notes = result.gp.notes + result.transport.bus.notes + result.transport.train.notes
    if notes:
        lines.append("\nNOTES:")
        for note in notes:
            lines.append(f"  • {note}")

    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Score a UK property listing for accessibility for older adults"
    )
    parser.add_argument(
        "url",
        nargs="?",
        help="Listing URL to analyse"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_MAPS_API_KEY"),
        help="Google Maps API key (or set GOOGLE_MAPS_API_KEY env var)"
    )
    parser.add_argument(
        "--no-vision",
        action="store_true",
        help="Skip image classification even if ANTHROPIC_API_KEY is set"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    if not args.url:
        parser.print_help()
        sys.exit(1)

    if not args.api_key:
        print("Warning: no Google Maps API key; GP and transport scores will show no data",
              file=sys.stderr)

    ctx = AnalysisContext.from_env()
    ctx.maps_api_key = args.api_key
    if args.no_vision:
        ctx.vision_api_key = None

    try:
        listing = scrape_listing(args.url)
        result = evaluate_property(listing, ctx)
    except (SourceUnavailable, AggregationImpossible, AnalysisTimeout) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2))
    else:
        print(format_result(result))


if __name__ == "__main__":
    main()

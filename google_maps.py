"""
Google Maps client: geocoding, nearby place search and walking directions.

One client per thread; requests.Session is not thread-safe.  Provider
errors (non-OK statuses, network failures, timeouts) are raised as
GeoProviderUnavailable, which proximity scoring turns into a "no data"
result rather than a failed request.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests

from ha_trace import get_trace

logger = logging.getLogger(__name__)


class GeoProviderUnavailable(Exception):
    """Place search, geocoding or routing failed at the provider."""


@dataclass
class WalkingRoute:
    distance_m: int
    distance_text: str
    duration_s: int
    duration_text: str
    instructions: List[str] = field(default_factory=list)


class GoogleMapsClient:
    """Client for Google Maps APIs"""

    # Per-call timeout in seconds.  Keeps any single request from hanging
    # the whole evaluation.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with automatic trace recording."""
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise GeoProviderUnavailable(f"{endpoint_name} request failed: {exc}") from exc
        elapsed_ms = int((time.time() - t0) * 1000)
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        return data

    def geocode(self, address: str) -> Tuple[float, float]:
        """Convert a UK address to lat/lng coordinates."""
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "region": "uk", "key": self.api_key}
        data = self._traced_get("geocode", url, params)

        if data.get("status") != "OK" or not data.get("results"):
            raise GeoProviderUnavailable(f"Geocoding failed: {data.get('status')}")

        location = data["results"][0]["geometry"]["location"]
        return location["lat"], location["lng"]

    def places_nearby(
        self,
        lat: float,
        lng: float,
        place_type: str,
        radius_meters: int = 2000,
        keyword: Optional[str] = None
    ) -> List[Dict]:
        """Search for places near a location"""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "type": place_type,
            "key": self.api_key
        }
        if keyword:
            params["keyword"] = keyword

        data = self._traced_get("places_nearby", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            raise GeoProviderUnavailable(f"Places API failed: {data.get('status')}")

        return data.get("results", [])

    def walking_route(
        self, origin: Tuple[float, float], dest: Tuple[float, float]
    ) -> Optional[WalkingRoute]:
        """Walking directions between two points, or None if no route exists."""
        url = f"{self.base_url}/directions/json"
        params = {
            "origin": f"{origin[0]},{origin[1]}",
            "destination": f"{dest[0]},{dest[1]}",
            "mode": "walking",
            "units": "metric",
            "region": "uk",
            "key": self.api_key,
        }
        data = self._traced_get("directions_walking", url, params)

        status = data.get("status")
        if status in ("ZERO_RESULTS", "NOT_FOUND"):
            return None
        if status != "OK" or not data.get("routes"):
            raise GeoProviderUnavailable(f"Directions API failed: {status}")

        leg = data["routes"][0]["legs"][0]
        return WalkingRoute(
            distance_m=int(leg["distance"]["value"]),
            distance_text=leg["distance"].get("text", ""),
            duration_s=int(leg["duration"]["value"]),
            duration_text=leg["duration"].get("text", ""),
            instructions=[
                step.get("html_instructions", "") for step in leg.get("steps", [])
            ],
        )

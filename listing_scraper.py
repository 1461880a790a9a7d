"""
Listing page fetcher and parser.

Fetches a property listing page (Rightmove-style markup) and builds an
immutable PropertyListing snapshot that every resolver reads from.

Structured data embedded in the page (``window.PAGE_MODEL`` or a
``__NEXT_DATA__`` blob) is preferred; DOM heuristics fill whatever the
blob does not carry.  Fetch failures raise SourceUnavailable, which is
fatal for the request.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from ha_trace import get_trace
from keyword_tables import KEYWORD_TABLES

logger = logging.getLogger(__name__)

PAGE_TIMEOUT = 10
MAX_PAGE_TEXT_CHARS = 50_000
SQM_TO_SQFT = 10.7639

REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-GB,en;q=0.9",
}


class SourceUnavailable(Exception):
    """The listing page could not be fetched or contained no listing."""


@dataclass(frozen=True)
class PropertyListing:
    """Per-request snapshot of everything scraped from a listing page.

    Optional fields are None when the page did not state them; parking
    and garden counts of -1 mean "mentioned but unknown" (e.g. "Ask agent").
    """
    url: str
    title: str = ""
    description: str = ""
    features: Tuple[str, ...] = ()
    page_text: str = ""
    price_text: str = ""
    location_text: str = ""
    image_urls: Tuple[str, ...] = ()
    floorplan_url: Optional[str] = None
    epc_image_urls: Tuple[str, ...] = ()
    coordinates: Optional[Tuple[float, float]] = None
    parking_spaces: Optional[int] = None
    gardens: Optional[int] = None
    council_tax_band: Optional[str] = None
    floor_area_sqft: Optional[float] = None
    address_headings: Tuple[str, ...] = ()
    script_address: Optional[str] = None

    @property
    def full_text(self) -> str:
        """Lowercased title + description + key features."""
        parts = [self.title, self.description] + list(self.features)
        return " ".join(p for p in parts if p).lower()


# =============================================================================
# Fetching
# =============================================================================

def fetch_listing_html(url: str, session: Optional[requests.Session] = None) -> str:
    session = session or requests.Session()
    t0 = time.time()
    try:
        response = session.get(url, headers=REQUEST_HEADERS, timeout=PAGE_TIMEOUT)
    except requests.RequestException as exc:
        raise SourceUnavailable(f"Could not fetch listing: {exc}") from exc
    elapsed_ms = int((time.time() - t0) * 1000)

    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="listing",
            endpoint="page",
            elapsed_ms=elapsed_ms,
            status_code=response.status_code,
        )

    if response.status_code != 200:
        raise SourceUnavailable(f"Listing page returned HTTP {response.status_code}")
    return response.text


def scrape_listing(url: str, session: Optional[requests.Session] = None) -> PropertyListing:
    """Fetch *url* and parse it into a PropertyListing."""
    html = fetch_listing_html(url, session=session)
    listing = parse_listing_html(url, html)
    if not listing.title and not listing.description:
        raise SourceUnavailable("Page did not contain a property listing")
    logger.info(
        "Scraped %s: title=%r features=%d images=%d epc_images=%d coords=%s",
        url, listing.title[:60], len(listing.features), len(listing.image_urls),
        len(listing.epc_image_urls), listing.coordinates,
    )
    return listing


# =============================================================================
# Parsing
# =============================================================================

_PAGE_MODEL_RE = re.compile(r"window\.PAGE_MODEL\s*=\s*(\{.*?\})\s*;?\s*</script>", re.DOTALL)
_LAT_RE = re.compile(r'"(?:latitude|lat)"\s*:\s*(-?\d{1,2}\.\d+)')
_LNG_RE = re.compile(r'"(?:longitude|lng|lon)"\s*:\s*(-?\d{1,3}\.\d+)')
_DISPLAY_ADDRESS_RE = re.compile(r'"displayAddress"\s*:\s*"([^"]{3,200})"')
_PRICE_RE = re.compile(r"£\s?[\d,]{3,}")
_COUNCIL_TAX_RE = re.compile(r"council\s+tax\s*(?:band)?\s*[:\-]?\s*([a-h])\b", re.IGNORECASE)
_SQFT_RE = re.compile(r"([\d,]+(?:\.\d+)?)\s*(?:sq\.?\s*ft|sqft|square\s+feet|ft²|ft2)(?![a-z])", re.IGNORECASE)
_SQM_RE = re.compile(r"([\d,]+(?:\.\d+)?)\s*(?:sq\.?\s*m|sqm|square\s+met(?:re|er)s?|m²)(?![a-z])", re.IGNORECASE)
_SCRIPT_IMAGE_RE = re.compile(r"https?://[^\"'\s]+?\.(?:png|jpe?g|gif|webp)", re.IGNORECASE)

_DESCRIPTION_SELECTORS = (
    '[data-testid="truncated_text_container"]',
    'div[itemprop="description"]',
    ".property-description",
    "#description",
)
_FEATURE_SELECTORS = (
    '[data-testid="key-features"] li',
    "ul.key-features li",
    ".key-features li",
)
_HEADING_SELECTORS = (
    "h1",
    '[itemprop="streetAddress"]',
    "address",
    "h2",
)


def parse_listing_html(url: str, html: str) -> PropertyListing:
    soup = BeautifulSoup(html, "html.parser")
    scripts = "\n".join(s.string or "" for s in soup.find_all("script"))
    model = _extract_property_data(soup, html)

    title = _clean(model.get("title", "")) or _page_title(soup)
    description = _clean(model.get("description", "")) or _dom_description(soup)
    features = tuple(model.get("features") or _dom_features(soup))

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    page_text = _clean(soup.get_text(" "))[:MAX_PAGE_TEXT_CHARS]

    price_text = model.get("price") or _dom_price(soup, page_text)

    image_urls = tuple(model.get("images") or _dom_images(soup))
    floorplan_url = model.get("floorplan") or _dom_floorplan(soup)
    epc_urls = _epc_image_urls(model.get("epc_images") or [], soup, scripts)

    coordinates = model.get("coordinates") or _script_coordinates(scripts)
    script_address = model.get("address") or _script_address(scripts)
    headings = tuple(h for h in _dom_headings(soup) if h)

    council_tax = model.get("council_tax_band")
    if not council_tax:
        match = _COUNCIL_TAX_RE.search(page_text)
        council_tax = match.group(1).upper() if match else None

    floor_area = model.get("floor_area_sqft")
    if floor_area is None:
        floor_area = parse_floor_area(" ".join((description,) + features))

    return PropertyListing(
        url=url,
        title=title,
        description=description,
        features=features,
        page_text=page_text,
        price_text=price_text or "",
        location_text=script_address or (headings[0] if headings else ""),
        image_urls=image_urls,
        floorplan_url=floorplan_url,
        epc_image_urls=epc_urls,
        coordinates=coordinates,
        parking_spaces=model.get("parking_spaces"),
        gardens=model.get("gardens"),
        council_tax_band=council_tax,
        floor_area_sqft=floor_area,
        address_headings=headings,
        script_address=script_address,
    )


def parse_floor_area(text: str) -> Optional[float]:
    """Floor area in sq ft from free text, converting square metres."""
    match = _SQFT_RE.search(text)
    if match:
        value = _to_float(match.group(1))
        if value:
            return value
    match = _SQM_RE.search(text)
    if match:
        value = _to_float(match.group(1))
        if value:
            return round(value * SQM_TO_SQFT, 1)
    return None


def is_epc_image_url(url: str) -> bool:
    lowered = url.lower()
    return any(re.search(p, lowered) for p in KEYWORD_TABLES.epc.image_url_patterns)


# --- structured blob -------------------------------------------------------

def _extract_property_data(soup: BeautifulSoup, html: str) -> Dict[str, Any]:
    """Normalise the embedded property JSON into flat listing fields."""
    raw = None
    match = _PAGE_MODEL_RE.search(html)
    if match:
        try:
            raw = json.loads(match.group(1))
        except ValueError:
            logger.debug("PAGE_MODEL blob was not valid JSON")
    if raw is None:
        tag = soup.find("script", id="__NEXT_DATA__")
        if tag and tag.string:
            try:
                raw = json.loads(tag.string)
            except ValueError:
                logger.debug("__NEXT_DATA__ blob was not valid JSON")
    if raw is None:
        return {}

    data = _find_key(raw, "propertyData")
    if not isinstance(data, dict):
        return {}

    out: Dict[str, Any] = {}
    text = data.get("text") or {}
    if text.get("description"):
        out["description"] = BeautifulSoup(text["description"], "html.parser").get_text(" ")
    if text.get("pageTitle"):
        out["title"] = text["pageTitle"]
    out["features"] = [_clean(f) for f in data.get("keyFeatures") or [] if isinstance(f, str)]
    out["images"] = [i.get("url") for i in data.get("images") or [] if i.get("url")]
    floorplans = [f.get("url") for f in data.get("floorplans") or [] if f.get("url")]
    if floorplans:
        out["floorplan"] = floorplans[0]
    out["epc_images"] = [e.get("url") for e in data.get("epcGraphs") or [] if e.get("url")]

    location = data.get("location") or {}
    lat, lng = location.get("latitude"), location.get("longitude")
    if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
        out["coordinates"] = (float(lat), float(lng))

    address = (data.get("address") or {}).get("displayAddress")
    if address:
        out["address"] = _clean(address)

    price = ((data.get("prices") or {}).get("primaryPrice")) or ""
    if price:
        out["price"] = _clean(price)

    band = (data.get("livingCosts") or {}).get("councilTaxBand")
    if isinstance(band, str) and re.fullmatch(r"[A-Ha-h]", band.strip()):
        out["council_tax_band"] = band.strip().upper()

    for sizing in data.get("sizings") or []:
        if sizing.get("unit") == "sqft" and sizing.get("minimumSize"):
            out["floor_area_sqft"] = float(sizing["minimumSize"])
            break

    features = data.get("features") or {}
    out["parking_spaces"] = _count_feature(features.get("parking"))
    out["gardens"] = _count_feature(features.get("garden"))
    return out


def _find_key(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        if key in obj:
            return obj[key]
        for value in obj.values():
            found = _find_key(value, key)
            if found is not None:
                return found
    elif isinstance(obj, list):
        for value in obj:
            found = _find_key(value, key)
            if found is not None:
                return found
    return None


def _count_feature(entries: Any) -> Optional[int]:
    """Count structured parking/garden entries; -1 for "Ask agent"."""
    if not entries:
        return None
    texts = [
        (e.get("displayText") if isinstance(e, dict) else str(e)) or ""
        for e in entries
    ]
    if all("ask agent" in t.lower() for t in texts):
        return -1
    if any(t.strip().lower() in ("none", "no parking", "no garden") for t in texts):
        return 0
    return len(texts)


# --- DOM heuristics --------------------------------------------------------

def _page_title(soup: BeautifulSoup) -> str:
    meta = soup.find("meta", property="og:title")
    if meta and meta.get("content"):
        return _clean(meta["content"])
    if soup.title and soup.title.string:
        return _clean(soup.title.string.split(" - Rightmove")[0])
    return ""


def _dom_description(soup: BeautifulSoup) -> str:
    for selector in _DESCRIPTION_SELECTORS:
        node = soup.select_one(selector)
        if node:
            text = _clean(node.get_text(" "))
            if text:
                return text
    meta = soup.find("meta", attrs={"name": "description"})
    if meta and meta.get("content"):
        return _clean(meta["content"])
    return ""


def _dom_features(soup: BeautifulSoup) -> List[str]:
    for selector in _FEATURE_SELECTORS:
        items = [_clean(li.get_text(" ")) for li in soup.select(selector)]
        items = [i for i in items if i]
        if items:
            return items
    return []


def _dom_price(soup: BeautifulSoup, page_text: str) -> str:
    node = soup.select_one('[data-testid="price"]') or soup.select_one("[itemprop=price]")
    if node:
        return _clean(node.get_text(" "))
    match = _PRICE_RE.search(page_text)
    if match:
        return match.group(0)
    lowered = page_text.lower()
    for placeholder in KEYWORD_TABLES.price_placeholders:
        if placeholder in lowered:
            return placeholder.upper() if placeholder == "poa" else placeholder.capitalize()
    return ""


def _dom_images(soup: BeautifulSoup) -> List[str]:
    urls: List[str] = []
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        if not src.startswith("http"):
            continue
        lowered = src.lower()
        if any(skip in lowered for skip in ("logo", "icon", "sprite", "avatar", "branding")):
            continue
        if src not in urls:
            urls.append(src)
    return urls


def _dom_floorplan(soup: BeautifulSoup) -> Optional[str]:
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        alt = (img.get("alt") or "").lower()
        if src.startswith("http") and ("floorplan" in src.lower() or "floorplan" in alt
                                       or "floor plan" in alt):
            return src
    return None


def _epc_image_urls(structured: List[str], soup: BeautifulSoup, scripts: str) -> Tuple[str, ...]:
    """EPC certificate images from structured data, tag attributes and scripts."""
    urls: List[str] = list(structured)
    for tag in soup.find_all(["img", "a", "source"]):
        for attr in ("src", "data-src", "href", "srcset"):
            value = tag.get(attr)
            if not value or not value.startswith("http"):
                continue
            value = value.split(" ")[0]
            alt = (tag.get("alt") or "").lower()
            if is_epc_image_url(value) or "energy performance" in alt or "epc" in alt:
                if _SCRIPT_IMAGE_RE.fullmatch(value) and value not in urls:
                    urls.append(value)
    for match in _SCRIPT_IMAGE_RE.finditer(scripts):
        value = match.group(0)
        if is_epc_image_url(value) and value not in urls:
            urls.append(value)
    return tuple(urls)


def _script_coordinates(scripts: str) -> Optional[Tuple[float, float]]:
    lat_match = _LAT_RE.search(scripts)
    lng_match = _LNG_RE.search(scripts)
    if not (lat_match and lng_match):
        return None
    lat, lng = float(lat_match.group(1)), float(lng_match.group(1))
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def _script_address(scripts: str) -> Optional[str]:
    match = _DISPLAY_ADDRESS_RE.search(scripts)
    return _clean(match.group(1)) if match else None


def _dom_headings(soup: BeautifulSoup) -> List[str]:
    headings: List[str] = []
    for selector in _HEADING_SELECTORS:
        for node in soup.select(selector):
            text = _clean(node.get_text(" "))
            if text and len(text) < 200 and text not in headings:
                headings.append(text)
    return headings


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _to_float(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None

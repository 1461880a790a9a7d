"""Tests for listing page fetching and parsing."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from listing_scraper import (
    SourceUnavailable,
    fetch_listing_html,
    is_epc_image_url,
    parse_floor_area,
    parse_listing_html,
    scrape_listing,
)

URL = "https://www.rightmove.co.uk/properties/123456789"


def _page_model_html(**overrides):
    data = {
        "text": {
            "pageTitle": "2 bedroom detached bungalow for sale in Harrogate",
            "description": "<p>A well presented <b>detached bungalow</b>.</p><p>Council tax band C.</p>",
        },
        "keyFeatures": ["Two bedrooms", "  Driveway  parking "],
        "images": [{"url": "https://media.example/1.jpg"}, {"url": "https://media.example/2.jpg"}],
        "floorplans": [{"url": "https://media.example/FLP_00.png"}],
        "epcGraphs": [{"url": "https://media.example/EPC_00.png"}],
        "location": {"latitude": 53.99, "longitude": -1.54},
        "address": {"displayAddress": "Oak Lane, Harrogate, HG1"},
        "prices": {"primaryPrice": "£325,000"},
        "livingCosts": {"councilTaxBand": "c"},
        "sizings": [{"unit": "sqm", "minimumSize": 80}, {"unit": "sqft", "minimumSize": 861}],
        "features": {
            "parking": [{"displayText": "Driveway"}, {"displayText": "Garage"}],
            "garden": [{"displayText": "Ask agent"}],
        },
    }
    data.update(overrides)
    blob = json.dumps({"propertyData": data})
    return (
        "<html><head><title>Listing</title></head><body>"
        "<h1>Oak Lane, Harrogate, HG1</h1>"
        f"<script>window.PAGE_MODEL = {blob};</script>"
        "</body></html>"
    )


DOM_HTML = """
<html>
<head>
  <meta property="og:title" content="3 bedroom semi-detached house for sale">
  <title>ignored - Rightmove</title>
</head>
<body>
  <h1>Station Road, Didsbury, Manchester</h1>
  <div itemprop="description">Spacious family home with a ground floor WC.</div>
  <ul class="key-features"><li>Garden</li><li>Approx. 1,050 sq ft</li></ul>
  <span data-testid="price">£450,000</span>
  <img src="https://media.example/photo1.jpg">
  <img src="https://media.example/agent-logo.png">
  <img src="https://media.example/plan.png" alt="Floor plan">
  <img src="https://media.example/EPC_00_0000.png">
  <script>var p = {"latitude": 53.41, "longitude": -2.23, "displayAddress": "Station Road, Manchester"};</script>
</body>
</html>
"""


class TestPageModel:
    def test_structured_fields(self):
        listing = parse_listing_html(URL, _page_model_html())
        assert listing.title == "2 bedroom detached bungalow for sale in Harrogate"
        assert "detached bungalow" in listing.description
        assert "<b>" not in listing.description
        assert listing.features == ("Two bedrooms", "Driveway parking")
        assert listing.image_urls == ("https://media.example/1.jpg", "https://media.example/2.jpg")
        assert listing.floorplan_url == "https://media.example/FLP_00.png"
        assert listing.epc_image_urls == ("https://media.example/EPC_00.png",)
        assert listing.coordinates == (53.99, -1.54)
        assert listing.script_address == "Oak Lane, Harrogate, HG1"
        assert listing.location_text == "Oak Lane, Harrogate, HG1"
        assert listing.price_text == "£325,000"
        assert listing.council_tax_band == "C"
        assert listing.floor_area_sqft == 861.0
        assert listing.address_headings[0] == "Oak Lane, Harrogate, HG1"

    def test_feature_counts(self):
        listing = parse_listing_html(URL, _page_model_html())
        assert listing.parking_spaces == 2
        assert listing.gardens == -1

    def test_no_parking_is_zero(self):
        listing = parse_listing_html(URL, _page_model_html(features={"parking": ["None"]}))
        assert listing.parking_spaces == 0
        assert listing.gardens is None

    def test_next_data_blob(self):
        blob = json.dumps({"props": {"pageProps": {"propertyData": {
            "text": {"pageTitle": "Flat for sale", "description": "Lift to all floors."},
        }}}})
        html = f'<html><body><script id="__NEXT_DATA__" type="application/json">{blob}</script></body></html>'
        listing = parse_listing_html(URL, html)
        assert listing.title == "Flat for sale"
        assert listing.description == "Lift to all floors."

    def test_full_text_is_lowercased(self):
        listing = parse_listing_html(URL, _page_model_html())
        assert "two bedrooms" in listing.full_text
        assert listing.full_text == listing.full_text.lower()


class TestDomFallbacks:
    def test_fields(self):
        listing = parse_listing_html(URL, DOM_HTML)
        assert listing.title == "3 bedroom semi-detached house for sale"
        assert listing.description == "Spacious family home with a ground floor WC."
        assert listing.features == ("Garden", "Approx. 1,050 sq ft")
        assert listing.price_text == "£450,000"
        assert listing.floor_area_sqft == 1050.0
        assert listing.coordinates == (53.41, -2.23)
        assert listing.script_address == "Station Road, Manchester"
        assert listing.address_headings[0] == "Station Road, Didsbury, Manchester"

    def test_images(self):
        listing = parse_listing_html(URL, DOM_HTML)
        assert "https://media.example/photo1.jpg" in listing.image_urls
        assert "https://media.example/agent-logo.png" not in listing.image_urls
        assert listing.floorplan_url == "https://media.example/plan.png"
        assert listing.epc_image_urls == ("https://media.example/EPC_00_0000.png",)

    def test_page_text_excludes_scripts(self):
        listing = parse_listing_html(URL, DOM_HTML)
        assert "displayAddress" not in listing.page_text
        assert "Spacious family home" in listing.page_text

    def test_price_placeholder(self):
        html = "<html><body><h1>Flat</h1><p>Price on application</p></body></html>"
        assert parse_listing_html(URL, html).price_text == "Price on application"

    def test_council_tax_from_text(self):
        html = "<html><body><p>Freehold. Council Tax Band: E</p></body></html>"
        assert parse_listing_html(URL, html).council_tax_band == "E"


class TestFloorArea:
    @pytest.mark.parametrize("text,expected", [
        ("Approx 1,200 sq ft", 1200.0),
        ("861 sq. ft", 861.0),
        ("totalling 950ft² in all", 950.0),
        ("100 sq m", 1076.4),
        ("no size given", None),
    ])
    def test_parse(self, text, expected):
        assert parse_floor_area(text) == expected


class TestEpcImageUrl:
    @pytest.mark.parametrize("url,expected", [
        ("https://media.example/123_EPC_00_0000.png", True),
        ("https://media.example/energy-performance-certificate.jpg", True),
        ("https://media.example/IMG_00_0000.jpg", False),
    ])
    def test_patterns(self, url, expected):
        assert is_epc_image_url(url) is expected


class TestFetch:
    def _session(self, status=200, text="<html></html>"):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=status, text=text)
        return session

    def test_ok(self):
        assert fetch_listing_html(URL, session=self._session(text="<p>hi</p>")) == "<p>hi</p>"

    def test_http_error(self):
        with pytest.raises(SourceUnavailable, match="HTTP 404"):
            fetch_listing_html(URL, session=self._session(status=404))

    def test_network_error(self):
        session = MagicMock()
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(SourceUnavailable):
            fetch_listing_html(URL, session=session)

    def test_empty_page_is_not_a_listing(self):
        with pytest.raises(SourceUnavailable, match="did not contain"):
            scrape_listing(URL, session=self._session(text="<html><body></body></html>"))

    def test_scrape(self):
        listing = scrape_listing(URL, session=self._session(text=_page_model_html()))
        assert listing.url == URL
        assert listing.title.startswith("2 bedroom")

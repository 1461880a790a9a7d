"""Tests for the Flask API surface: URL validation, error mapping, health."""

from unittest.mock import patch

import pytest

from app import validate_listing_url
from property_evaluator import AggregationImpossible, AnalysisTimeout, SourceUnavailable

URL = "https://www.rightmove.co.uk/properties/123456789"

PAYLOAD = {
    "property": {"title": "2 bedroom bungalow", "price": "£325,000", "location": "Harrogate", "url": URL},
    "analysis": {"overall": 3.8, "rating": "Good", "summary": "This bungalow offers good accessibility."},
}


class TestValidateListingUrl:
    @pytest.mark.parametrize("url", [
        URL,
        "http://rightmove.co.uk/properties/1",
        "  https://www.rightmove.co.uk/properties/1  ",
    ])
    def test_accepted(self, url):
        assert validate_listing_url(url) is None

    @pytest.mark.parametrize("url,message", [
        (None, "A listing URL is required"),
        ("   ", "A listing URL is required"),
        ("rightmove.co.uk/properties/1", "Invalid URL"),
        ("ftp://www.rightmove.co.uk/x", "Invalid URL"),
        ("https://www.zoopla.co.uk/for-sale/details/1", "Only rightmove.co.uk listings are supported"),
        ("https://rightmove.co.uk.evil.example/properties/1", "Only rightmove.co.uk listings are supported"),
        ("https://notrightmove.co.uk/properties/1", "Only rightmove.co.uk listings are supported"),
    ])
    def test_rejected(self, url, message):
        assert validate_listing_url(url) == message


class TestAnalyzeEndpoint:
    def test_missing_url(self, client):
        resp = client.post("/api/analyze", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "A listing URL is required"

    def test_wrong_domain(self, client):
        resp = client.post("/api/analyze", json={"url": "https://example.com/house"})
        assert resp.status_code == 400

    def test_success(self, client):
        with patch("app.analyze_url", return_value=PAYLOAD) as analyze:
            resp = client.post("/api/analyze", json={"url": URL + "  "})
        assert resp.status_code == 200
        assert resp.get_json()["analysis"]["overall"] == 3.8
        assert analyze.call_args[0][0] == URL
        assert analyze.call_args.kwargs["cache"] is not None

    def test_source_unavailable(self, client):
        with patch("app.analyze_url", side_effect=SourceUnavailable("Listing page returned HTTP 410")):
            resp = client.post("/api/analyze", json={"url": URL})
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Could not fetch the listing: Listing page returned HTTP 410"

    def test_timeout(self, client):
        with patch("app.analyze_url", side_effect=AnalysisTimeout("deadline passed")):
            resp = client.post("/api/analyze", json={"url": URL})
        assert resp.status_code == 500
        assert "took too long" in resp.get_json()["error"]

    def test_nothing_scored(self, client):
        with patch("app.analyze_url", side_effect=AggregationImpossible("No category could be scored")):
            resp = client.post("/api/analyze", json={"url": URL})
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "No category could be scored"

    def test_unexpected_error_is_generic(self, client):
        with patch("app.analyze_url", side_effect=KeyError("secret internals")):
            resp = client.post("/api/analyze", json={"url": URL})
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Analysis failed"

    def test_get_not_allowed(self, client):
        resp = client.get("/api/analyze")
        assert resp.status_code == 405
        assert resp.get_json()["error"] == "Method not allowed"


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_healthz_ok(self, client, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "k")
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok", "missing_keys": []}

    def test_healthz_degraded(self, client, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["ANTHROPIC_API_KEY"]

    def test_unknown_route(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

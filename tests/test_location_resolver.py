"""Tests for the listing location resolver."""

from conftest import make_listing
from keyword_tables import KEYWORD_TABLES
from location_resolver import contradicts_coordinates, resolve_location

LONDON = (51.5072, -0.1276)
MANCHESTER = (53.4808, -2.2426)


class TestContradiction:
    def test_mismatched_city(self):
        reason = contradicts_coordinates("Deansgate, Manchester M3", LONDON, KEYWORD_TABLES)
        assert reason == "names Manchester but coordinates are in London"

    def test_matching_city(self):
        assert contradicts_coordinates("Camden Road, London NW1", LONDON) is None

    def test_unknown_city_cannot_contradict(self):
        assert contradicts_coordinates("Mill Lane, Little Snoring", LONDON) is None

    def test_no_coordinates(self):
        assert contradicts_coordinates("Deansgate, Manchester", None) is None


class TestResolveLocation:
    def test_heading_wins(self):
        listing = make_listing(
            address_headings=("Property for sale", "Camden Road, London NW1"),
            script_address="Somewhere else, London",
        )
        result = resolve_location(listing)
        assert result.location == "Camden Road, London NW1"
        assert result.strategy == "heading"
        assert result.confidence == 90

    def test_city_mismatch_moves_to_next_strategy(self):
        listing = make_listing(
            coordinates=LONDON,
            address_headings=("Deansgate, Manchester M3",),
            script_address="Camden Road, London NW1",
        )
        result = resolve_location(listing)
        assert result.location == "Camden Road, London NW1"
        assert result.strategy == "script_address"
        assert result.rejected[0][0] == "Deansgate, Manchester M3"

    def test_street_pattern_in_page_text(self):
        listing = make_listing(page_text="Marketed by Smith & Co. 14 Station Road, Didsbury, Manchester")
        result = resolve_location(listing)
        assert result.strategy == "street_pattern"
        assert "Station Road" in result.location

    def test_title_place(self):
        listing = make_listing(title="2 bedroom bungalow for sale in Harrogate, North Yorkshire")
        result = resolve_location(listing)
        assert result.strategy == "title_place"
        assert result.location == "Harrogate, North Yorkshire"

    def test_fallback_to_location_text(self):
        result = resolve_location(make_listing(location_text="Harrogate"))
        assert result.location == "Harrogate"
        assert result.confidence == 0

    def test_rejected_candidate_not_used_as_fallback(self):
        listing = make_listing(
            coordinates=MANCHESTER,
            script_address="Camden Road, London",
            location_text="Camden Road, London",
        )
        result = resolve_location(listing)
        assert result.location == "Location not specified"

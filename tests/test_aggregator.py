"""Tests for composite scoring and the narrative summary."""

import pytest

from accessible_features import detect_features
from aggregator import (
    AggregationImpossible,
    CategoryScore,
    aggregate,
    category_from_payload,
    generate_summary,
    property_descriptor,
)
from conftest import make_listing
from epc_resolver import EPCResult
from listing_analyzers import CostResult
from proximity import ProximityResult, RouteHazards


def _cat(key, score):
    return CategoryScore(key=key, label=key, score=score, rating="")


class TestAggregate:
    def test_null_category_excluded(self):
        composite = aggregate([
            _cat("gp_proximity", 5),
            _cat("epc_rating", None),
            _cat("accessible_features", 3),
            _cat("public_transport", 4),
        ])
        assert composite.overall == 4.0
        assert composite.rating == "Good"

    def test_half_up_rounding(self):
        composite = aggregate([_cat("a", 2.5), _cat("b", 2.0)])
        # 2.25 -> 2.3, not banker's 2.2
        assert composite.overall == 2.3

    def test_nothing_scored(self):
        with pytest.raises(AggregationImpossible):
            aggregate([_cat("epc_rating", None)])

    def test_category_lookup(self):
        composite = aggregate([_cat("gp_proximity", 5)])
        assert composite.category("gp_proximity").score == 5
        assert composite.category("missing") is None


class TestCategoryFromPayload:
    def test_extra_fields_preserved(self):
        cat = category_from_payload("epc_rating", {
            "score": 4, "rating": "Good", "details": "EPC rating C", "grade": "C",
        })
        assert cat.label == "Energy Efficiency (EPC)"
        assert cat.to_dict() == {"score": 4, "rating": "Good", "details": "EPC rating C", "grade": "C"}

    def test_rating_defaults_from_score(self):
        assert category_from_payload("room_accommodation", {"score": None}).rating == "No data"


class TestDescriptor:
    def test_bedrooms_and_type(self):
        assert property_descriptor("2 bedroom detached bungalow for sale", "Harrogate") == (
            "This 2 bedroom detached bungalow in Harrogate"
        )

    def test_unknown_type(self):
        assert property_descriptor("Land for sale", "Location not specified") == "This property"


class TestSummary:
    def _gp(self):
        return ProximityResult(
            service="medical", name="Oak Lane Surgery", raw_duration_min=4,
            adjusted_duration_min=6, hazards=RouteHazards(stairs=True), score=3.5,
        )

    def test_clauses(self):
        features = detect_features(make_listing(title="2 bedroom detached bungalow"))
        composite = aggregate([_cat("gp_proximity", 3.5), _cat("accessible_features", features.score)])
        summary = generate_summary(
            composite,
            title="2 bedroom detached bungalow for sale",
            location="Harrogate",
            epc=EPCResult(grade="C", confidence=95, rationale="", method="Clear text", score=4),
            features=features,
            gp=self._gp(),
            cost=CostResult(council_tax_band="C"),
        )
        assert summary.startswith("This 2 bedroom detached bungalow in Harrogate offers good accessibility")
        assert "Oak Lane Surgery, is about 6 minutes' walk" in summary
        assert "stairs or steps" in summary
        assert "level access to the entrance" in summary
        assert "could not be verified" in summary
        assert "council tax band C" in summary
        assert "The EPC rating is C (clear text, 95% confidence)." in summary
        assert summary.endswith("check the gaps noted above at a viewing.")

    def test_missing_values_never_mentioned(self):
        composite = aggregate([_cat("room_accommodation", 5)])
        summary = generate_summary(composite, title="House for sale")
        assert "GP" not in summary
        assert "council tax" not in summary
        assert "EPC rating could not be determined" in summary
        assert "well suited" in summary

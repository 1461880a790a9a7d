"""Tests for the accessible-feature detector."""

from unittest.mock import MagicMock

import pytest

from accessible_features import (
    LevelClass,
    Provenance,
    classify_levels,
    detect_features,
    entrance_photos,
    feature_details,
    parse_balcony_reply,
    parse_entrance_reply,
)
from conftest import make_listing
from evidence import EvidenceNotFound
from scoring_config import SCORING_MODEL
from vision_client import ClassifierUnavailable, VisionClassifier

SINGLE_LEVEL_FLAGS = ("step_free_internal", "downstairs_bedroom", "downstairs_bathroom", "ground_floor_entry")


def _flags(result):
    return {f.key: f for f in result.flags}


class TestClassifyLevels:
    def test_bungalow_is_single_level(self):
        assert classify_levels("a detached bungalow").level == LevelClass.SINGLE_LEVEL

    def test_stairs_override_bungalow(self):
        text = "detached bungalow with stairs to the first floor bedroom"
        assessment = classify_levels(text)
        assert assessment.level == LevelClass.MULTI_LEVEL
        assert "stairs to" in assessment.multi_level_hits

    def test_chalet_bungalow_is_multi_level(self):
        assert classify_levels("a chalet bungalow").level == LevelClass.MULTI_LEVEL

    def test_first_floor_flat(self):
        assert classify_levels("first floor flat with lovely views").level == LevelClass.UPPER_FLOOR

    def test_first_floor_storey_in_house_is_multi(self):
        text = "3 bedroom semi-detached house. first floor: three bedrooms and bathroom."
        assessment = classify_levels(text)
        assert assessment.level == LevelClass.MULTI_LEVEL
        assert "first floor" in assessment.multi_level_hits
        assert assessment.upper_floor_hits == []

    def test_first_floor_storey_in_flat_is_upper(self):
        assert classify_levels("2 bedroom flat on the first floor").level == LevelClass.UPPER_FLOOR

    def test_ground_floor_flat_with_storey_word_stays_single(self):
        text = "ground floor flat in a building with a first floor above"
        assert classify_levels(text).level == LevelClass.SINGLE_LEVEL

    def test_lift_without_single_level_is_multi(self):
        assert classify_levels("apartment served by a lift").level == LevelClass.MULTI_LEVEL

    def test_lift_does_not_match_inside_words(self):
        assert classify_levels("an uplifting outlook").lift_hits == []

    def test_unknown(self):
        assert classify_levels("a lovely home").level == LevelClass.UNKNOWN


class TestBungalow:
    def test_two_bedroom_bungalow_scores_four_of_eight(self):
        listing = make_listing(title="2 bedroom detached bungalow for sale")
        result = detect_features(listing)
        flags = _flags(result)
        for key in SINGLE_LEVEL_FLAGS:
            assert flags[key].present, key
        assert result.count >= 4
        assert result.score == 2.5
        assert flags["downstairs_bathroom"].provenance == Provenance.INFERRED
        assert flags["step_free_internal"].provenance == Provenance.TEXT

    def test_stairs_suppress_single_level(self):
        listing = make_listing(
            title="3 bedroom detached bungalow for sale",
            description="Hallway with stairs to the first floor bedroom and shower room.",
        )
        flags = _flags(detect_features(listing))
        assert not flags["step_free_internal"].present
        assert flags["step_free_internal"].detail.startswith("Multi-level")
        assert flags["downstairs_bathroom"].provenance != Provenance.INFERRED

    def test_stairlift_gives_step_free_internal(self):
        listing = make_listing(
            title="3 bedroom detached bungalow for sale",
            description="Hallway with stairs to the first floor bedroom and a stairlift.",
        )
        result = detect_features(listing)
        flag = _flags(result)["step_free_internal"]
        assert result.levels.level == LevelClass.MULTI_LEVEL
        assert flag.present
        assert flag.provenance == Provenance.TEXT
        assert flag.detail.startswith("Multi-level via lift/stairlift")
        assert "stairlift" in flag.detail

    def test_level_access_unverified_without_vision(self):
        listing = make_listing(title="2 bedroom bungalow for sale")
        result = detect_features(listing)
        flag = _flags(result)["external_level_access"]
        assert not flag.present
        assert flag.provenance == Provenance.UNVERIFIED
        assert result.unverified_warnings


class TestHouseWithUpperStorey:
    LISTING = dict(
        title="3 bedroom semi-detached house for sale",
        description="Ground floor: hallway, lounge, kitchen. First floor: three bedrooms and bathroom.",
    )

    def test_house_is_multi_level_not_upper_floor(self):
        result = detect_features(make_listing(**self.LISTING))
        assert result.levels.level == LevelClass.MULTI_LEVEL
        assert not _flags(result)["step_free_internal"].present

    def test_dwelling_type_sets_ground_floor_entry(self):
        flag = _flags(detect_features(make_listing(**self.LISTING)))["ground_floor_entry"]
        assert flag.present
        assert flag.provenance == Provenance.TEXT
        assert "house" in flag.detail

    def test_level_access_unverified_without_vision(self):
        flag = _flags(detect_features(make_listing(**self.LISTING)))["external_level_access"]
        assert not flag.present
        assert flag.provenance == Provenance.UNVERIFIED

    def test_entrance_photo_checked_with_vision(self):
        vision = MagicMock(spec=VisionClassifier)
        vision.classify_image.return_value = (
            '{"entrance_visible": true, "door_height_px": 400, "step_count": 0, "rise_px": 2}'
        )
        listing = make_listing(image_urls=("https://x/front.jpg",), **self.LISTING)
        flag = _flags(detect_features(listing, vision=vision))["external_level_access"]
        assert flag.present
        assert flag.provenance == Provenance.VISION
        assert vision.classify_image.call_args.args[0] == "https://x/front.jpg"

    def test_first_floor_flat_has_no_ground_floor_entry(self):
        listing = make_listing(title="2 bedroom first floor flat for sale")
        assert not _flags(detect_features(listing))["ground_floor_entry"].present


class TestKeywordCriteria:
    def test_ground_floor_bedroom_keyword(self):
        listing = make_listing(description="Three storey townhouse with a ground floor bedroom.")
        flags = _flags(detect_features(listing))
        assert flags["downstairs_bedroom"].present
        assert flags["downstairs_bedroom"].provenance == Provenance.TEXT

    def test_proximity_window(self):
        listing = make_listing(description="On the ground floor there is a large double bedroom.")
        flag = _flags(detect_features(listing))["downstairs_bedroom"]
        assert flag.present
        assert "near bedroom" in flag.detail

    def test_communal_garden_is_not_a_garden(self):
        listing = make_listing(description="Residents enjoy well kept communal gardens.")
        flag = _flags(detect_features(listing))["garden_access"]
        assert not flag.present
        assert flag.provenance == Provenance.TEXT

    def test_structured_parking_count(self):
        listing = make_listing(parking_spaces=2)
        flag = _flags(detect_features(listing))["private_parking"]
        assert flag.present
        assert "2 parking" in flag.detail

    def test_ask_agent_parking_falls_back_to_keywords(self):
        listing = make_listing(parking_spaces=-1, features=("Driveway",))
        assert _flags(detect_features(listing))["private_parking"].present

    def test_on_street_parking_rejected(self):
        listing = make_listing(description="Unrestricted on-street parking nearby.")
        assert not _flags(detect_features(listing))["private_parking"].present

    def test_level_access_keyword(self):
        listing = make_listing(features=("Step-free access to the front door",))
        flag = _flags(detect_features(listing))["external_level_access"]
        assert flag.present
        assert flag.provenance == Provenance.TEXT


class TestVisionCriteria:
    def test_balcony_from_floorplan(self):
        vision = MagicMock(spec=VisionClassifier)
        vision.classify_image.return_value = "FOUND"
        listing = make_listing(floorplan_url="https://x/floorplan.png")
        flag = _flags(detect_features(listing, vision=vision))["balcony_terrace"]
        assert flag.present
        assert flag.provenance == Provenance.VISION

    def test_entrance_photo_level(self):
        vision = MagicMock(spec=VisionClassifier)
        vision.classify_image.return_value = (
            '{"entrance_visible": true, "door_height_px": 400, "step_count": 0, "rise_px": 2}'
        )
        listing = make_listing(title="2 bedroom bungalow", image_urls=("https://x/front.jpg",))
        flag = _flags(detect_features(listing, vision=vision))["external_level_access"]
        assert flag.present
        assert flag.provenance == Provenance.VISION

    def test_entrance_photo_failure_stays_unverified(self):
        vision = MagicMock(spec=VisionClassifier)
        vision.classify_image.side_effect = ClassifierUnavailable("timeout")
        listing = make_listing(title="2 bedroom bungalow", image_urls=("https://x/front.jpg",))
        flag = _flags(detect_features(listing, vision=vision))["external_level_access"]
        assert not flag.present
        assert flag.provenance == Provenance.UNVERIFIED

    def test_entrance_photos_skip_floorplans_and_epc(self):
        listing = make_listing(
            image_urls=("https://x/1.jpg", "https://x/FLOORPLAN_1.png", "https://x/EPC_00.png"),
        )
        assert entrance_photos(listing, 5) == ["https://x/1.jpg"]


class TestParseEntranceReply:
    def _reply(self, **payload):
        import json
        return json.dumps(payload)

    def test_steps_detected(self):
        ev = parse_entrance_reply(self._reply(entrance_visible=True, step_count=2), SCORING_MODEL)
        assert ev.value is False
        assert "2 steps" in ev.rationale

    def test_small_rise_is_level(self):
        # 3px of a 400px door is about 1.5 cm.
        ev = parse_entrance_reply(
            self._reply(entrance_visible=True, door_height_px=400, step_count=0, rise_px=3), SCORING_MODEL,
        )
        assert ev.value is True

    def test_large_rise_is_not_level(self):
        ev = parse_entrance_reply(
            self._reply(entrance_visible=True, door_height_px=400, step_count=0, rise_px=20), SCORING_MODEL,
        )
        assert ev.value is False

    def test_no_entrance(self):
        with pytest.raises(EvidenceNotFound):
            parse_entrance_reply(self._reply(entrance_visible=False), SCORING_MODEL)

    def test_not_json(self):
        with pytest.raises(EvidenceNotFound):
            parse_entrance_reply("I can see a door", SCORING_MODEL)


class TestParseBalconyReply:
    @pytest.mark.parametrize("reply,expected", [
        ("FOUND", True), ("found.", True), ("NOT_FOUND", False), ("UNCLEAR", None),
    ])
    def test_tokens(self, reply, expected):
        assert parse_balcony_reply(reply) is expected

    def test_unknown_reply(self):
        with pytest.raises(EvidenceNotFound):
            parse_balcony_reply("maybe")


class TestDetails:
    def test_payload(self):
        result = detect_features(make_listing(title="2 bedroom bungalow"))
        payload = feature_details(result)
        assert payload["details"].endswith("/8 accessibility features found")
        assert payload["level_classification"] == "single_level"
        assert len(payload["flags"]) == 8
        assert "level access to the entrance" in payload["missing_critical"]

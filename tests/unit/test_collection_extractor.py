"""
Unit tests for MTO collection extraction.
"""
import pytest

from pipeline.collection_extractor import CollectionExtractor


@pytest.mark.unit
class TestCollectionExtractor:
    """Tests for CollectionExtractor class."""

    def test_known_collection(self, extractor):
        assert extractor.extract("MTO Hoxton Sep 2025") == "hoxton"

    def test_requires_mto_token(self, extractor):
        assert extractor.extract("Hoxton Sep 2025") is None
        assert extractor.extract("Standard replenishment") is None

    def test_blank_input(self, extractor):
        assert extractor.extract(None) is None
        assert extractor.extract("") is None

    def test_known_list_order_decides(self, extractor):
        # "laura/tiff" is listed before "laura" and "tiff"
        assert extractor.extract("MTO Laura/Tiff Oct 2025") == "laura/tiff"
        assert extractor.extract("mto tiff nov") == "tiff"

    def test_known_collection_anywhere_in_text(self, extractor):
        assert extractor.extract("Spring programme - Forte - MTO") == "forte"

    def test_fallback_cuts_at_month(self, extractor):
        assert extractor.extract("MTO: Greenwich Oct 2025") == "greenwich"

    def test_fallback_without_date(self, extractor):
        assert extractor.extract("mto-bespoke line 2026") == "bespoke line"

    def test_fallback_trims_trailing_commas(self, extractor):
        assert extractor.extract("MTO Greenwich, ") == "greenwich"
        assert extractor.extract("MTO Greenwich / ") == "greenwich /"

    def test_fallback_keeps_leading_month_token(self, extractor):
        assert extractor.extract("MTO Sep 2025") == "sep"
        assert CollectionExtractor([]).extract("MTO May Flowers") == "may flowers"

    def test_fallback_nothing_after_mto(self, extractor):
        assert extractor.extract("MTO 2025") is None
        assert extractor.extract("MTO") is None

    def test_custom_known_collections_are_normalised(self):
        extractor = CollectionExtractor(["  Alpha ", "", "BETA"])
        assert extractor.known_collections == ["alpha", "beta"]
        assert extractor.extract("MTO ALPHA run") == "alpha"
        assert extractor.extract("MTO beta / alpha") == "alpha"

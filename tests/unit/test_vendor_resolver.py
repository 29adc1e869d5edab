"""
Unit tests for vendor resolution.
"""
import pytest

from models.vendor import Vendor
from pipeline.vendor_resolver import VendorResolver, _normalise_name, load_vendors_csv


@pytest.mark.unit
class TestVendorResolver:
    """Tests for VendorResolver class."""

    def test_normalise_name(self):
        assert _normalise_name("  Vendor One ") == "vendor one"
        assert _normalise_name("") is None
        assert _normalise_name("   ") is None
        assert _normalise_name(None) is None

    def test_resolve_canonical_name_ignores_case_and_padding(self, resolver):
        assert resolver.resolve("Vendor One") == 1
        assert resolver.resolve("  VENDOR ONE  ") == 1

    def test_resolve_alias(self, resolver):
        assert resolver.resolve("V1 Inc.") == 1
        assert resolver.resolve("v1 inc.") == 1
        assert resolver.resolve("Riches") == 2

    def test_unknown_or_blank_name_is_unresolved(self, resolver):
        assert resolver.resolve("Nobody Ltd") is None
        assert resolver.resolve("") is None
        assert resolver.resolve(None) is None

    def test_internal_whitespace_is_significant(self, resolver):
        assert resolver.resolve("Vendor  One") is None

    def test_canonical_name_beats_alias(self):
        """A raw name that is one vendor's name and another's alias goes to the name owner."""
        resolver = VendorResolver([
            Vendor(id=10, name="Northwind", aliases=[]),
            Vendor(id=11, name="Northwind Trading", aliases=["Northwind"]),
        ])
        assert resolver.resolve("northwind") == 10

    def test_first_vendor_keeps_a_shared_alias(self):
        resolver = VendorResolver([
            Vendor(id=20, name="Alpha", aliases=["AB"]),
            Vendor(id=21, name="Beta", aliases=["AB"]),
        ])
        assert resolver.resolve("ab") == 20

    def test_load_vendors_from_csv(self, sample_vendors_csv):
        vendors = load_vendors_csv(sample_vendors_csv)

        # the row with a non-numeric id is skipped
        assert [v.id for v in vendors] == [1, 2, 3]
        assert vendors[0].aliases == ["V1 Inc.", "V1 Incorporated"]
        assert vendors[2].aliases == []
        assert vendors[1].vendor_code == "V2"

    def test_missing_csv_gives_empty_registry(self, temp_dir):
        resolver = VendorResolver.from_csv(temp_dir / "missing.csv")
        assert resolver.vendors == []
        assert resolver.resolve("Vendor One") is None

    def test_from_repository(self, repository):
        resolver = VendorResolver.from_repository(repository)
        assert resolver.resolve("V1 Incorporated") == 1
        assert resolver.resolve("Acme Textiles") == 3

    def test_suggest_ranks_close_names(self, resolver):
        suggestions = resolver.suggest("Riches Furnture")

        assert suggestions
        assert suggestions[0].vendor_id == 2
        assert suggestions[0].vendor_name == "Riches Furniture"
        assert suggestions[0].score >= 75

    def test_suggest_lists_each_vendor_once(self, resolver):
        suggestions = resolver.suggest("V1 Inc")
        ids = [s.vendor_id for s in suggestions]
        assert ids.count(1) == 1

    def test_suggest_nothing_similar(self, resolver):
        assert resolver.suggest("Completely Unrelated Holdings") == []
        assert resolver.suggest(None) == []

    def test_suggest_never_resolves(self, resolver):
        resolver.suggest("Riches Furnture")
        assert resolver.resolve("Riches Furnture") is None

"""
Tests for variant deduplication and sales-volume parsing.
"""
import pytest

from app.services.dedup import dedupe_variants, parse_sales_volume


class TestParseSalesVolume:
    """Amazon's free-text sales badges become comparable integers."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("10K+ bought in past month", 10000),
            ("1.5k+ bought", 1500),
            ("800+ bought in past month", 800),
            ("1,200 sold", 1200),
            ("50", 50),
            ("New", 0),
            ("", 0),
            (None, 0),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_sales_volume(text) == expected


class TestDedupeVariants:
    """Variants sharing a parent collapse to the best-selling child."""

    def test_keeps_highest_sales_child(self):
        records = [
            {"asin": "A1", "parent_asin": "P", "sales_volume": "100+ bought"},
            {"asin": "A2", "parent_asin": "P", "sales_volume": "2K+ bought"},
            {"asin": "A3", "parent_asin": "P", "sales_volume": "900+ bought"},
        ]
        result = dedupe_variants(records)
        assert [r["asin"] for r in result] == ["A2"]

    def test_standalone_records_pass_through(self):
        records = [{"asin": "S1"}, {"asin": "S2", "parent_asin": "S2"}, {"asin": "S3"}]
        result = dedupe_variants(records)
        assert [r["asin"] for r in result] == ["S1", "S2", "S3"]

    def test_ties_keep_first_candidate(self):
        records = [
            {"asin": "A1", "parent_asin": "P", "sales_volume": "500+ bought"},
            {"asin": "A2", "parent_asin": "P", "sales_volume": "500+ bought"},
        ]
        assert dedupe_variants(records)[0]["asin"] == "A1"

    def test_parent_record_folds_into_its_group(self):
        records = [
            {"asin": "P", "sales_volume": "3K+ bought"},
            {"asin": "S1"},
            {"asin": "A1", "parent_asin": "P", "sales_volume": "1K+ bought"},
        ]
        result = dedupe_variants(records)
        # The parent wins on sales volume and is not emitted twice
        assert [r["asin"] for r in result] == ["S1", "P"]

    def test_output_follows_first_appearance(self):
        records = [
            {"asin": "S1"},
            {"asin": "A1", "parent_asin": "P1", "sales_volume": "10+"},
            {"asin": "S2"},
            {"asin": "B1", "parent_asin": "P2", "sales_volume": "10+"},
            {"asin": "A2", "parent_asin": "P1", "sales_volume": "20+"},
        ]
        result = dedupe_variants(records)
        assert [r["asin"] for r in result] == ["S1", "A2", "S2", "B1"]

    def test_error_records_prefer_real_candidates(self):
        records = [
            {"asin": "A1", "parent_asin": "P", "error": "timed out", "source": "error"},
            {"asin": "A2", "parent_asin": "P", "sales_volume": None},
        ]
        result = dedupe_variants(records)
        assert [r["asin"] for r in result] == ["A2"]

    def test_all_error_group_yields_one_error_record(self):
        records = [
            {"asin": "A1", "parent_asin": "P", "error": "x", "source": "error"},
            {"asin": "A2", "parent_asin": "P", "error": "y", "source": "error"},
        ]
        result = dedupe_variants(records)
        assert len(result) == 1
        assert result[0]["error"] == "x"

    def test_error_records_without_parent_are_kept(self):
        records = [{"asin": "E1", "error": "Lookup failed", "source": "error"}, {"asin": "S1"}]
        assert [r["asin"] for r in dedupe_variants(records)] == ["E1", "S1"]

    def test_never_grows_and_has_no_duplicate_asins(self):
        records = [
            {"asin": "A1", "parent_asin": "P"},
            {"asin": "A1", "parent_asin": "P"},
            {"asin": "S1"},
            {"asin": "S1"},
        ]
        result = dedupe_variants(records)
        asins = [r["asin"] for r in result]
        assert len(result) <= len(records)
        assert len(asins) == len(set(asins))

    def test_empty_input(self):
        assert dedupe_variants([]) == []

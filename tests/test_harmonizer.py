"""Tests for input harmonization and organism tagging."""

import polars as pl
import pytest
from polars.testing import assert_frame_equal

from deflux.utils.errors import AmbiguousAnnotationError, SchemaMismatchError
from deflux.utils.harmonizer import DataHarmonizer, split_wide
from deflux.utils.organism import classify_organism


def _long_input():
    return pl.DataFrame({
        "PEPTIDE_ID": ["pepA", "pepA", "pepA", "pepB", "pepB", "pepB"],
        "PROTEIN_ID": ["P1_HUMAN"] * 3 + ["P2_YEAST"] * 3,
        "SAMPLE": ["S1", "S2", "S3"] * 2,
        "SIGNAL": [100.0, 200.0, 0.0, 50.0, 60.0, 70.0],
    })


def _wide_input():
    return pl.DataFrame({
        "PEPTIDE_ID": ["pepA", "pepB"],
        "PROTEIN_ID": ["P1_HUMAN", "P2_YEAST"],
        "S1": [100.0, 50.0],
        "S2": [200.0, 60.0],
        "S3": [0.0, 70.0],
    })


class TestLayouts:
    """Long and wide inputs converge on the same canonical table."""

    def test_long_and_wide_agree(self):
        """The same data in both layouts harmonizes identically."""
        long_out = DataHarmonizer({"samples": ["S1", "S2", "S3"]}).harmonize(_long_input())
        wide_out = DataHarmonizer(
            {"input_layout": "wide", "samples": ["S1", "S2", "S3"]}
        ).harmonize(_wide_input())

        assert_frame_equal(long_out, wide_out)

    def test_zero_is_missing(self):
        """A zero signal is 'not observed', never a measured zero."""
        wide = DataHarmonizer({"samples": ["S1", "S2", "S3"]}).harmonize(_long_input())
        row = wide.filter(pl.col("PEPTIDE_ID") == "pepA")
        assert row.get_column("S3")[0] is None
        assert row.get_column("S1")[0] == 100.0

    def test_sample_order_follows_first_appearance(self):
        """Without a sample list, samples keep their order of appearance."""
        harmonizer = DataHarmonizer({})
        wide = harmonizer.harmonize(_long_input())
        assert harmonizer.resolved_samples == ["S1", "S2", "S3"]
        assert wide.columns[-4:-1] == ["S1", "S2", "S3"]

    def test_sample_mapping_renames_runs(self):
        """A samples mapping renames source runs to sample IDs and drops unlisted runs."""
        harmonizer = DataHarmonizer({"samples": {"S2": "ctrl", "S1": "trt"}})
        wide = harmonizer.harmonize(_long_input())
        assert harmonizer.resolved_samples == ["ctrl", "trt"]
        assert "S3" not in wide.columns
        row = wide.filter(pl.col("PEPTIDE_ID") == "pepA")
        assert row.get_column("ctrl")[0] == 200.0
        assert row.get_column("trt")[0] == 100.0

    def test_rows_sorted_by_feature(self):
        """Canonical rows are sorted by PEPTIDE_ID."""
        df = _long_input().with_columns(
            pl.col("PEPTIDE_ID").replace({"pepA": "zeta", "pepB": "alpha"})
        )
        wide = DataHarmonizer({}).harmonize(df)
        assert wide.get_column("PEPTIDE_ID").to_list() == ["alpha", "zeta"]

    def test_round_trip(self):
        """to_wide(to_long(x)) gives x back."""
        harmonizer = DataHarmonizer({"samples": ["S1", "S2", "S3"]})
        wide = harmonizer.harmonize(_long_input())
        again = harmonizer.to_wide(harmonizer.to_long(wide, ["S1", "S2", "S3"]), ["S1", "S2", "S3"])
        assert_frame_equal(wide, again)


class TestMissingValues:
    """Sentinel resolution and aggregation of repeated measurements."""

    def test_text_sentinels(self):
        """Tool-specific sentinels in text columns become null."""
        df = pl.DataFrame({
            "PEPTIDE_ID": ["p1", "p2", "p3"],
            "PROTEIN_ID": ["X", "Y", "Z"],
            "S1": ["1.5", "Filtered", "NA"],
            "S2": ["NaN", "2.5", "N/A"],
        })
        wide = DataHarmonizer({"input_layout": "wide", "samples": ["S1", "S2"]}).harmonize(df)

        # p3 has no observed value at all
        assert wide.get_column("PEPTIDE_ID").to_list() == ["p1", "p2"]
        assert wide.get_column("S1").to_list() == [1.5, None]
        assert wide.get_column("S2").to_list() == [None, 2.5]

    def test_extra_sentinel_from_config(self):
        df = pl.DataFrame({
            "PEPTIDE_ID": ["p1", "p2"],
            "PROTEIN_ID": ["X", "Y"],
            "S1": ["1.0", "n.d."],
            "S2": ["2.0", "3.0"],
        })
        wide = DataHarmonizer(
            {"input_layout": "wide", "samples": ["S1", "S2"], "missing_values": ["n.d."]}
        ).harmonize(df)
        assert wide.get_column("S1").to_list() == [1.0, None]

    def test_unknown_text_raises(self):
        """Text that is neither a number nor a known sentinel is an error."""
        df = pl.DataFrame({
            "PEPTIDE_ID": ["p1"],
            "PROTEIN_ID": ["X"],
            "S1": ["abc"],
        })
        with pytest.raises(ValueError, match="non-numeric"):
            DataHarmonizer({"input_layout": "wide", "samples": ["S1"]}).harmonize(df)

    def test_duplicates_are_summed(self):
        """Repeated (feature, sample) rows are aggregated, sum by default."""
        df = pl.concat([_long_input(), _long_input().head(1)])
        wide = DataHarmonizer({}).harmonize(df)
        assert wide.filter(pl.col("PEPTIDE_ID") == "pepA").get_column("S1")[0] == 200.0

    def test_aggregate_option(self):
        df = pl.concat([_long_input(), _long_input().head(1)])
        wide = DataHarmonizer({"aggregate": "max"}).harmonize(df)
        assert wide.filter(pl.col("PEPTIDE_ID") == "pepA").get_column("S1")[0] == 100.0


class TestSchema:
    """Column mapping and schema errors."""

    def test_configured_sample_absent(self):
        with pytest.raises(SchemaMismatchError, match="S9"):
            DataHarmonizer({"samples": ["S1", "S9"]}).harmonize(_long_input())

    def test_wide_requires_samples(self):
        with pytest.raises(SchemaMismatchError):
            DataHarmonizer({"input_layout": "wide"}).harmonize(_wide_input())

    def test_missing_required_column(self):
        with pytest.raises(SchemaMismatchError, match="PROTEIN_ID"):
            DataHarmonizer({}).harmonize(_long_input().drop("PROTEIN_ID"))

    def test_tool_preset(self):
        """Spectronaut column names are mapped by the preset."""
        df = _long_input().rename({
            "PEPTIDE_ID": "EG.PrecursorId",
            "PROTEIN_ID": "PG.ProteinGroups",
            "SAMPLE": "R.FileName",
            "SIGNAL": "FG.Quantity",
        })
        wide = DataHarmonizer({"tool": "spectronaut"}).harmonize(df)
        assert wide.get_column("PEPTIDE_ID").to_list() == ["pepA", "pepB"]
        assert wide.get_column("PROTEIN_ID").to_list() == ["P1_HUMAN", "P2_YEAST"]

    def test_unknown_tool(self):
        with pytest.raises(ValueError, match="Unknown tool"):
            DataHarmonizer({"tool": "skyline"})

    def test_one_source_column_for_both_ids(self):
        """Gene-level tables map one column to both PEPTIDE_ID and PROTEIN_ID."""
        df = pl.DataFrame({
            "gene_id": ["g2", "g1"],
            "c1": [10, 20],
            "c2": [30, 40],
        })
        harmonizer = DataHarmonizer({
            "input_layout": "wide",
            "peptide_id_column": "gene_id",
            "protein_id_column": "gene_id",
            "samples": ["c1", "c2"],
        })
        wide = harmonizer.harmonize(df)
        assert wide.get_column("PEPTIDE_ID").to_list() == ["g1", "g2"]
        assert wide.get_column("PROTEIN_ID").to_list() == ["g1", "g2"]

    def test_split_wide(self):
        """Split into a float matrix and an annotation table sharing the PEPTIDE_ID index."""
        harmonizer = DataHarmonizer({"samples": ["S1", "S2", "S3"]})
        wide = harmonizer.harmonize(_long_input())
        matrix, annotation = split_wide(wide, harmonizer.resolved_samples)

        assert list(matrix.columns) == ["S1", "S2", "S3"]
        assert list(matrix.index) == ["pepA", "pepB"]
        assert matrix.isna().sum().sum() == 1
        assert annotation.index.equals(matrix.index)
        assert list(annotation["ORGANISM"]) == ["human", "yeast"]


class TestOrganism:
    """Organism classification from identifier strings."""

    def test_single_organism(self):
        assert classify_organism("P1_HUMAN;P2_HUMAN") == "human"

    def test_strain_mnemonic(self):
        assert classify_organism("Q1_YEAS7") == "yeast"
        assert classify_organism("Q2_ECOL6") == "ecoli"

    def test_conflict_is_ambiguous(self):
        assert classify_organism("P1_HUMAN;P2_YEAST") == "ambiguous"
        assert classify_organism("P1_HUMAN;P2_YEAS8") == "ambiguous"

    def test_conflict_across_columns(self):
        """Several source columns are pooled before classification."""
        assert classify_organism(["P1_HUMAN", "P2_ECOLI"]) == "ambiguous"
        assert classify_organism(["P1_HUMAN", None]) == "human"

    def test_nothing_to_match(self):
        assert classify_organism(None) == "unknown"
        assert classify_organism("P12345") == "unknown"
        assert classify_organism(" ; ") == "unknown"

    def test_strict_raises(self):
        with pytest.raises(AmbiguousAnnotationError):
            classify_organism("P1_HUMAN;P2_YEAST", strict=True)

    def test_custom_patterns(self):
        patterns = {"arabidopsis": r"_ARATH$"}
        assert classify_organism("P1_ARATH", patterns) == "arabidopsis"
        assert classify_organism("P1_HUMAN", patterns) == "unknown"

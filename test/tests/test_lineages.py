"""Tests for TaxonomyTable."""

import polars as pl
import pytest

from microbiome_asv.utils.taxonomy import TaxonomicRanks
from microbiome_asv.wrangle.lineages import RANK_COLUMNS, TaxonomyTable


class TestTaxonomyTableInitialization:
    """Test construction from lineages, exports and frames."""

    def test_from_lineages(self, sample_lineages):
        table = TaxonomyTable.from_lineages(sample_lineages)

        assert len(table) == 6
        assert table.taxonomy.columns == ["feature_id"] + RANK_COLUMNS
        row = table.taxonomy.filter(pl.col("feature_id") == "asv03")
        assert row["genus"][0] == "Bacteroides"
        assert row["species"][0] is None

    def test_from_qiime_tsv(self, taxonomy_tsv):
        table = TaxonomyTable.from_qiime_tsv(taxonomy_tsv)

        assert "confidence" in table.taxonomy.columns
        assert table.taxonomy["confidence"].to_list() == [0.98] * 6

    def test_missing_rank_columns_added(self):
        table = TaxonomyTable(pl.DataFrame({"feature_id": ["f1"], "genus": ["Prevotella"]}))
        assert table.taxonomy["domain"][0] is None
        assert table.taxonomy["genus"][0] == "Prevotella"

    def test_duplicate_ids(self):
        df = pl.DataFrame({"feature_id": ["f1", "f1"], "genus": ["A", "B"]})
        with pytest.raises(ValueError, match="Duplicate"):
            TaxonomyTable(df)

    def test_requires_feature_id(self):
        with pytest.raises(ValueError, match="feature_id"):
            TaxonomyTable(pl.DataFrame({"genus": ["A"]}))


class TestTaxonomyTableLabels:
    """Test rank labels with parent fallback."""

    def test_labels_at_genus(self, sample_taxonomy):
        labels = dict(sample_taxonomy.labels("genus").iter_rows())

        assert labels["asv01"] == "Lactobacillus"
        assert labels["asv02"] == "f__Lachnospiraceae"
        assert labels["asv06"] == "o__Chloroplast"

    def test_labels_at_phylum(self, sample_taxonomy):
        labels = dict(sample_taxonomy.labels(TaxonomicRanks.PHYLUM).iter_rows())
        assert labels["asv03"] == labels["asv04"] == "Bacteroidota"

    def test_unassigned_label(self):
        table = TaxonomyTable(pl.DataFrame({"feature_id": ["f1"]}))
        assert table.labels("genus")["label"][0] == "Unassigned"

    def test_lineage_strings(self, sample_taxonomy):
        lineages = sample_taxonomy.lineage_strings(TaxonomicRanks.GENUS)
        assert lineages["asv01"] == (
            "d__Bacteria;p__Firmicutes;c__Bacilli;o__Lactobacillales;"
            "f__Lactobacillaceae;g__Lactobacillus"
        )


class TestTaxonomyTableFiltering:
    def test_exclude_case_insensitive(self, sample_taxonomy):
        kept = sample_taxonomy.exclude(["chloroplast", "Mitochondria"])
        assert "asv06" not in kept.get_features()
        assert len(kept) == 5

    def test_exclude_nothing(self, sample_taxonomy):
        assert sample_taxonomy.exclude([]) is sample_taxonomy

    def test_require_assigned(self, sample_taxonomy):
        assigned = sample_taxonomy.require_assigned("genus")
        assert set(assigned.get_features()) == {"asv01", "asv03", "asv04", "asv05"}

    def test_keep_features(self, sample_taxonomy):
        assert sample_taxonomy.keep_features(["asv02"]).get_features() == ["asv02"]

    def test_save_and_load(self, sample_taxonomy, tmp_path):
        sample_taxonomy.save(tmp_path)
        loaded = TaxonomyTable.load(tmp_path)
        assert loaded.taxonomy.equals(sample_taxonomy.taxonomy)

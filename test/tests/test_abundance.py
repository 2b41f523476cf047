"""Tests for AsvTable and CountMatrix."""

import numpy as np
import polars as pl
import pytest

from microbiome_asv.wrangle.abundance import AsvTable
from microbiome_asv.wrangle.matrix import CountMatrix


class TestAsvTableInitialization:
    """Test construction, standardisation and validation."""

    def test_from_csv(self, counts_csv):
        table = AsvTable(counts_csv)

        assert isinstance(table.counts, pl.LazyFrame)
        assert table.counts.collect_schema().names() == ["sample", "feature_id", "count"]
        assert len(table.get_samples()) == 8
        assert len(table.get_features()) == 6

    def test_alternative_column_names(self):
        df = pl.DataFrame(
            {"sample-id": ["S1", "S1"], "OTU ID": ["f1", "f2"], "reads": [5, 0]}
        )
        table = AsvTable(df)

        # zeros are dropped
        assert table.counts.collect().height == 1

    def test_duplicates_collapsed(self):
        df = pl.DataFrame(
            {"sample": ["S1", "S1"], "feature_id": ["f1", "f1"], "count": [2, 3]}
        )
        assert AsvTable(df).counts.collect()["count"].to_list() == [5]

    def test_zero_padded_ids_from_csv(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("sample,feature_id,count\n01,001,4\n02,001,7\n")
        table = AsvTable(path)

        assert table.get_samples() == ["01", "02"]
        assert table.get_features() == ["001"]

    def test_negative_counts(self):
        df = pl.DataFrame({"sample": ["S1"], "feature_id": ["f1"], "count": [-1]})
        with pytest.raises(ValueError, match="non-negative"):
            AsvTable(df)

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="Missing required fields"):
            AsvTable(pl.DataFrame({"sample": ["S1"], "count": [1]}))

    def test_from_biom_tsv(self, biom_tsv):
        table = AsvTable.from_biom_tsv(biom_tsv)

        assert table.get_samples() == ["A1", "A2", "A3", "A4", "B1", "B2", "B3", "B4"]
        sizes = table.library_sizes()
        assert sizes.filter(pl.col("sample") == "A1")["reads"][0] == 1150

    def test_from_wide(self):
        wide = pl.DataFrame({"feature": ["f1", "f2"], "S1": [1, 0], "S2": [3, 4]})
        table = AsvTable.from_wide(wide)
        assert table.counts.collect().height == 3


class TestAsvTableSummaries:
    """Test per-sample and per-feature summaries."""

    def test_library_sizes(self, sample_counts):
        sizes = sample_counts.library_sizes()

        assert sizes.columns == ["sample", "reads", "features"]
        row = sizes.filter(pl.col("sample") == "B1")
        assert row["reads"][0] == 1190
        assert row["features"][0] == 6

    def test_feature_totals_sorted(self, sample_counts):
        totals = sample_counts.feature_totals()
        assert totals["reads"].is_sorted(descending=True)
        assert totals["feature_id"][0] == "asv05"
        assert totals["reads"][0] == 2540

    def test_prevalence(self, sample_counts):
        prevalence = sample_counts.prevalence()
        assert prevalence["prevalence"].to_list() == [1.0] * 6

    def test_relative_abundance_sums_to_one(self, sample_counts):
        rel = sample_counts.relative_abundance()
        sums = rel.group_by("sample").agg(pl.col("relabund").sum())
        assert np.allclose(sums["relabund"].to_numpy(), 1.0)


class TestAsvTableFiltering:
    """Test pruning and rarefaction."""

    def test_prune_samples(self, sample_counts):
        pruned = sample_counts.prune_samples(1170)
        # A1=1150, A2=1160, A3=1140, A4=1170; treated all above 1170
        assert pruned.get_samples() == ["A4", "B1", "B2", "B3", "B4"]

    def test_prune_features_by_count(self, sample_counts):
        pruned = sample_counts.prune_features(min_count=300)
        assert "asv06" not in pruned.get_features()

    def test_keep_features(self, sample_counts):
        kept = sample_counts.keep_features(["asv01", "asv05"])
        assert kept.get_features() == ["asv01", "asv05"]

    def test_rarefy_depth(self, sample_counts):
        rarefied = sample_counts.rarefy(1000, seed=1)
        sizes = rarefied.library_sizes()
        assert sizes["reads"].to_list() == [1000] * 8

    def test_rarefy_is_seeded(self, sample_counts):
        a = sample_counts.rarefy(500, seed=3).counts.collect()
        b = sample_counts.rarefy(500, seed=3).counts.collect()
        assert a.equals(b)

    def test_rarefy_drops_shallow_samples(self, sample_counts):
        rarefied = sample_counts.rarefy(1160, seed=1)
        assert "A1" not in rarefied.get_samples()
        assert "A4" in rarefied.get_samples()

    def test_rarefy_too_deep(self, sample_counts):
        with pytest.raises(ValueError, match="No samples"):
            sample_counts.rarefy(10**6)

    def test_filter_by_sample(self, sample_counts):
        filtered = sample_counts._filter_by_sample(pl.DataFrame({"sample": ["A1"]}))
        assert filtered.get_samples() == ["A1"]


class TestAsvTableSaveLoad:
    def test_save_and_load(self, sample_counts, tmp_path):
        sample_counts.save(tmp_path / "counts")
        loaded = AsvTable.load(tmp_path / "counts")
        assert loaded.counts.collect().equals(sample_counts.counts.collect())


class TestCountMatrix:
    """Test the dense hand-off matrix."""

    def test_to_matrix(self, sample_counts):
        matrix = sample_counts.to_matrix()

        assert matrix.shape == (8, 6)
        assert matrix.sample_ids[0] == "A1"
        assert matrix.values[0, 0] == 400
        assert matrix.values.dtype == np.int64

    def test_explicit_order_with_absent_ids(self, sample_counts):
        matrix = sample_counts.to_matrix(
            sample_order=["B4", "A1"], feature_order=["asv05", "missing"]
        )
        assert matrix.values.tolist() == [[620, 0], [20, 0]]

    def test_proportions_and_presence(self):
        matrix = CountMatrix(["s1", "s2"], ["f1", "f2"], [[1, 3], [0, 0]])

        props = matrix.proportions()
        assert props.values.tolist() == [[0.25, 0.75], [0.0, 0.0]]
        assert matrix.presence_absence().values.tolist() == [[1, 1], [0, 0]]

    def test_subset_and_long(self):
        matrix = CountMatrix(["s1", "s2"], ["f1", "f2"], [[1, 0], [2, 5]])

        sub = matrix.subset(sample_ids=["s2"])
        assert sub.values.tolist() == [[2, 5]]
        assert matrix.to_long().height == 3
        with pytest.raises(ValueError, match="Unknown ids"):
            matrix.subset(feature_ids=["f9"])

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            CountMatrix(["s1"], ["f1", "f2"], [[1, 2, 3]])

"""Tests for alpha diversity."""

import numpy as np
import pytest

from conftest import COUNTS
from microbiome_asv.analysis.alpha import compare_alpha, compute_alpha_diversity, plot_alpha

LEVELS = ["control", "high_fat"]


@pytest.fixture
def matrix(sample_counts):
    return sample_counts.to_matrix()


@pytest.fixture
def proportions():
    return COUNTS / COUNTS.sum(axis=1, keepdims=True)


class TestComputeAlphaDiversity:
    def test_richness(self, matrix):
        alpha = compute_alpha_diversity(matrix, ["observed_features", "chao1"])

        assert alpha.columns == ["sample", "observed_features", "chao1"]
        assert alpha["observed_features"].to_list() == [6.0] * 8
        # no singletons, so Chao1 equals the observed richness
        assert np.allclose(alpha["chao1"].to_numpy(), 6.0)

    def test_shannon_natural_log(self, matrix, proportions):
        alpha = compute_alpha_diversity(matrix, ["shannon"])
        expected = -(proportions * np.log(proportions)).sum(axis=1)
        assert np.allclose(alpha["shannon"].to_numpy(), expected)

    def test_simpson_and_inverse(self, matrix, proportions):
        alpha = compute_alpha_diversity(matrix, ["simpson", "inverse_simpson"])
        dominance = (proportions ** 2).sum(axis=1)

        assert np.allclose(alpha["simpson"].to_numpy(), 1 - dominance)
        assert np.allclose(alpha["inverse_simpson"].to_numpy(), 1 / dominance)

    def test_faith_pd(self, sample_dataset):
        matrix = sample_dataset.counts.to_matrix()
        alpha = compute_alpha_diversity(matrix, ["faith_pd"], tree=sample_dataset.tree)
        # every sample holds every feature: the total branch length
        assert np.allclose(alpha["faith_pd"].to_numpy(), 1.67)

    def test_faith_pd_needs_tree(self, matrix):
        with pytest.raises(ValueError, match="requires a tree"):
            compute_alpha_diversity(matrix, ["faith_pd"])

    def test_unknown_metric(self, matrix):
        with pytest.raises(ValueError):
            compute_alpha_diversity(matrix, ["margalef_plus"])


class TestCompareAlpha:
    def test_groups_separate(self, matrix, sample_groups):
        alpha = compute_alpha_diversity(matrix, ["simpson", "inverse_simpson"])
        stats = compare_alpha(alpha, sample_groups, "diet", LEVELS)

        assert stats.columns == [
            "metric", "median_control", "median_high_fat", "statistic", "pvalue", "padj",
        ]
        assert stats["metric"].to_list() == ["simpson", "inverse_simpson"]
        # control samples are more even than every high-fat sample
        assert stats["statistic"].to_list() == [16.0, 16.0]
        assert np.allclose(stats["pvalue"].to_numpy(), 2 / 70)
        assert (stats["padj"] >= stats["pvalue"]).all()

    def test_constant_metric_leaves_others_adjusted(self, matrix, sample_groups):
        alpha = compute_alpha_diversity(matrix, ["observed_features", "simpson"])
        stats = compare_alpha(alpha, sample_groups, "diet", LEVELS)

        simpson = stats.filter(stats["metric"] == "simpson").row(0, named=True)
        assert not np.isnan(simpson["padj"])
        assert simpson["padj"] < 0.1

    def test_needs_two_levels(self, matrix, sample_groups):
        alpha = compute_alpha_diversity(matrix, ["shannon"])
        with pytest.raises(ValueError, match="Exactly two"):
            compare_alpha(alpha, sample_groups, "diet", ["control"])


class TestPlotAlpha:
    def test_outputs(self, matrix, sample_groups, tmp_path):
        alpha = compute_alpha_diversity(matrix, ["observed_features", "shannon"])
        stats = compare_alpha(alpha, sample_groups, "diet", LEVELS)

        written = plot_alpha(
            alpha, sample_groups, "diet", LEVELS,
            tmp_path / "alpha.png", tmp_path / "alpha.html", stats=stats,
        )
        assert [p.name for p in written] == ["alpha.png", "alpha.html"]
        assert all(p.exists() for p in written)

"""Within-sample (alpha) diversity and two-group comparisons."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
import polars as pl
from scipy.stats import mannwhitneyu
from skbio import TreeNode
from skbio.diversity import alpha_diversity
from statsmodels.stats.multitest import multipletests

from microbiome_asv.core.config import AlphaMetric
from microbiome_asv.utils.plotting import group_colours, save_figure, save_interactive
from microbiome_asv.wrangle.matrix import CountMatrix

logger = logging.getLogger(__name__)

METRIC_LABELS = {
    AlphaMetric.OBSERVED: "Observed features",
    AlphaMetric.CHAO1: "Chao1",
    AlphaMetric.SHANNON: "Shannon",
    AlphaMetric.SIMPSON: "Simpson",
    AlphaMetric.INVERSE_SIMPSON: "Inverse Simpson",
    AlphaMetric.FAITH_PD: "Faith's PD",
}


def _metric_values(
    metric: AlphaMetric, matrix: CountMatrix, tree: Optional[TreeNode]
) -> np.ndarray:
    counts = matrix.values
    if metric is AlphaMetric.OBSERVED:
        return (counts > 0).sum(axis=1).astype(np.float64)
    if metric is AlphaMetric.SHANNON:
        return alpha_diversity(
            "shannon", counts, ids=matrix.sample_ids, base=np.e
        ).to_numpy()
    if metric is AlphaMetric.INVERSE_SIMPSON:
        simpson = alpha_diversity("simpson", counts, ids=matrix.sample_ids).to_numpy()
        with np.errstate(divide="ignore"):
            return 1.0 / (1.0 - simpson)
    if metric is AlphaMetric.FAITH_PD:
        return alpha_diversity(
            "faith_pd",
            counts,
            ids=matrix.sample_ids,
            taxa=matrix.feature_ids,
            tree=tree,
        ).to_numpy()
    return alpha_diversity(metric.value, counts, ids=matrix.sample_ids).to_numpy()


def compute_alpha_diversity(
    matrix: CountMatrix,
    metrics: Sequence[Union[str, AlphaMetric]],
    tree: Optional[TreeNode] = None,
) -> pl.DataFrame:
    """Alpha diversity per sample.

    Args:
        matrix: Integer samples x features counts (usually rarefied)
        metrics: Metric names or AlphaMetric members
        tree: Rooted tree, required for Faith's PD

    Returns:
        DataFrame with ``sample`` and one column per metric

    Raises:
        ValueError: If a tree-based metric is requested without a tree
    """
    metrics = [AlphaMetric(m) for m in metrics]
    columns = {"sample": matrix.sample_ids}
    for metric in metrics:
        if metric.requires_tree and tree is None:
            raise ValueError(f"Alpha metric '{metric.value}' requires a tree")
        columns[metric.value] = _metric_values(metric, matrix, tree)
    return pl.DataFrame(columns)


def compare_alpha(
    alpha: pl.DataFrame,
    groups: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
) -> pl.DataFrame:
    """Mann-Whitney U test (two-sided) per metric between two groups.

    P-values are Benjamini-Hochberg adjusted across metrics.

    Args:
        alpha: Output of ``compute_alpha_diversity``
        groups: ``sample`` and ``group_column`` per sample
        group_column: Grouping column
        levels: The two group values (reference first)

    Returns:
        DataFrame with ``metric``, per-group median, ``statistic``,
        ``pvalue`` and ``padj``
    """
    if len(levels) != 2:
        raise ValueError(f"Exactly two groups are compared, got: {list(levels)}")
    reference, test = levels
    merged = alpha.join(groups, on="sample", how="inner")
    metrics = [c for c in alpha.columns if c != "sample"]

    rows = []
    for metric in metrics:
        ref_values = merged.filter(pl.col(group_column) == reference)[metric].drop_nans().to_numpy()
        test_values = merged.filter(pl.col(group_column) == test)[metric].drop_nans().to_numpy()
        if len(ref_values) == 0 or len(test_values) == 0:
            raise ValueError(f"Group without samples for metric '{metric}'")
        statistic, pvalue = mannwhitneyu(ref_values, test_values, alternative="two-sided")
        rows.append(
            {
                "metric": metric,
                f"median_{reference}": float(np.median(ref_values)),
                f"median_{test}": float(np.median(test_values)),
                "statistic": float(statistic),
                "pvalue": float(pvalue),
            }
        )

    result = pl.DataFrame(rows)
    pvalues = result["pvalue"].to_numpy()
    # constant metrics give NaN p-values; keep them out of the correction
    tested = ~np.isnan(pvalues)
    padj = np.full(len(pvalues), np.nan)
    if tested.any():
        padj[tested] = multipletests(pvalues[tested], method="fdr_bh")[1]
    return result.with_columns(pl.Series("padj", padj))


def plot_alpha(
    alpha: pl.DataFrame,
    groups: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
    png_path: Union[str, Path],
    html_path: Optional[Union[str, Path]] = None,
    stats: Optional[pl.DataFrame] = None,
) -> List[Path]:
    """Boxplots with points, one panel per metric."""
    merged = alpha.join(groups, on="sample", how="inner")
    metrics = [c for c in alpha.columns if c != "sample"]
    colours = group_colours(levels)
    padj = {}
    if stats is not None:
        padj = dict(zip(stats["metric"].to_list(), stats["padj"].to_list()))

    fig, axes = plt.subplots(1, len(metrics), figsize=(3.2 * len(metrics), 4), squeeze=False)
    rng = np.random.default_rng(0)
    for ax, metric in zip(axes[0], metrics):
        data = [
            merged.filter(pl.col(group_column) == level)[metric].drop_nans().to_numpy()
            for level in levels
        ]
        box = ax.boxplot(data, patch_artist=True, widths=0.6, showfliers=False)
        for patch, level in zip(box["boxes"], levels):
            patch.set_facecolor(colours[level])
            patch.set_alpha(0.5)
        for i, values in enumerate(data, start=1):
            jitter = rng.uniform(-0.12, 0.12, size=len(values))
            ax.scatter(np.full(len(values), i) + jitter, values, s=12, color="black", alpha=0.6)
        ax.set_xticks(range(1, len(levels) + 1))
        ax.set_xticklabels(levels)
        title = METRIC_LABELS[AlphaMetric(metric)]
        if metric in padj:
            title += f"\n(padj = {padj[metric]:.3g})"
        ax.set_title(title, fontsize=10)
        ax.grid(axis="y", alpha=0.3)
    written = [save_figure(fig, png_path)]

    if html_path is not None:
        long = merged.unpivot(
            index=["sample", group_column], on=metrics, variable_name="metric", value_name="value"
        ).to_pandas()
        ifig = px.box(
            long,
            x=group_column,
            y="value",
            color=group_column,
            facet_col="metric",
            points="all",
            hover_data=["sample"],
            color_discrete_map=colours,
            category_orders={group_column: list(levels), "metric": metrics},
        )
        ifig.update_yaxes(matches=None, showticklabels=True)
        written.append(save_interactive(ifig, html_path))
    return written

"""Between-sample (beta) diversity, ordination and permutation tests."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import plotly.express as px
import polars as pl
from scipy.spatial.distance import pdist, squareform
from skbio import DistanceMatrix, TreeNode
from skbio.diversity import beta_diversity
from skbio.stats.distance import permanova, permdisp
from skbio.stats.ordination import pcoa

from microbiome_asv.core.config import BetaMetric
from microbiome_asv.utils.plotting import group_colours, save_figure, save_interactive
from microbiome_asv.wrangle.matrix import CountMatrix

logger = logging.getLogger(__name__)

PERMDISP_DIMENSIONS = 10

METRIC_LABELS = {
    BetaMetric.BRAY_CURTIS: "Bray-Curtis",
    BetaMetric.JACCARD: "Jaccard",
    BetaMetric.UNWEIGHTED_UNIFRAC: "Unweighted UniFrac",
    BetaMetric.WEIGHTED_UNIFRAC: "Weighted UniFrac",
}


def distance_matrix(
    matrix: CountMatrix,
    metric: Union[str, BetaMetric],
    tree: Optional[TreeNode] = None,
) -> DistanceMatrix:
    """Pairwise sample distances.

    Bray-Curtis is computed on relative abundances and Jaccard on
    presence/absence. UniFrac runs on the integer counts against the tree;
    the weighted variant is normalised to [0, 1].

    Raises:
        ValueError: If a UniFrac metric is requested without a tree
    """
    metric = BetaMetric(metric)
    if metric.requires_tree and tree is None:
        raise ValueError(f"Beta metric '{metric.value}' requires a tree")

    if metric is BetaMetric.BRAY_CURTIS:
        condensed = pdist(matrix.proportions().values, metric="braycurtis")
    elif metric is BetaMetric.JACCARD:
        condensed = pdist(matrix.presence_absence().values.astype(bool), metric="jaccard")
    else:
        kwargs = {"normalized": True} if metric is BetaMetric.WEIGHTED_UNIFRAC else {}
        return beta_diversity(
            metric.value,
            matrix.values,
            ids=matrix.sample_ids,
            taxa=matrix.feature_ids,
            tree=tree,
            **kwargs,
        )
    return DistanceMatrix(squareform(condensed), ids=matrix.sample_ids)


def ordinate(dm: DistanceMatrix) -> Tuple[pl.DataFrame, List[float]]:
    """Principal coordinates of a distance matrix.

    Returns:
        Tuple of a ``sample, PC1, PC2`` frame and the fraction of
        variance explained by each of the two axes
    """
    result = pcoa(dm)
    coords = result.samples.iloc[:, :2]
    explained = [float(v) for v in result.proportion_explained.iloc[:2]]
    frame = pl.DataFrame(
        {
            "sample": [str(s) for s in coords.index],
            "PC1": coords.iloc[:, 0].to_numpy(),
            "PC2": coords.iloc[:, 1].to_numpy(),
        }
    )
    return frame, explained


def permutation_tests(
    dm: DistanceMatrix,
    groups: pl.DataFrame,
    group_column: str,
    permutations: int = 999,
    seed: int = 100,
) -> pl.DataFrame:
    """PERMANOVA (location) and PERMDISP (dispersion) on the group factor.

    Returns:
        DataFrame with ``test``, ``statistic``, ``pvalue``,
        ``permutations`` and ``sample_size``
    """
    grouping = (
        groups.filter(pl.col("sample").is_in(list(dm.ids)))
        .to_pandas()
        .set_index("sample")[group_column]
        .reindex(list(dm.ids))
    )
    # PERMDISP's PCoA cannot keep more axes than there are samples
    dispersion_axes = min(PERMDISP_DIMENSIONS, dm.shape[0] - 1)
    tests = (
        ("PERMANOVA", permanova(dm, grouping, permutations=permutations, seed=seed)),
        (
            "PERMDISP",
            permdisp(
                dm,
                grouping,
                permutations=permutations,
                dimensions=dispersion_axes,
                seed=seed,
            ),
        ),
    )
    rows = []
    for name, res in tests:
        rows.append(
            {
                "test": name,
                "statistic": float(res["test statistic"]),
                "pvalue": float(res["p-value"]),
                "permutations": int(res["number of permutations"]),
                "sample_size": int(res["sample size"]),
            }
        )
    return pl.DataFrame(rows)


def plot_ordination(
    coords: pl.DataFrame,
    explained: Sequence[float],
    groups: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
    title: str,
    png_path: Union[str, Path],
    html_path: Optional[Union[str, Path]] = None,
) -> List[Path]:
    """PCoA scatter coloured by group; axes show percent variance."""
    merged = coords.join(groups, on="sample", how="inner")
    colours = group_colours(levels)
    xlabel = f"PC1 ({explained[0] * 100:.1f}%)"
    ylabel = f"PC2 ({explained[1] * 100:.1f}%)"

    fig, ax = plt.subplots(figsize=(6, 5))
    for level in levels:
        data = merged.filter(pl.col(group_column) == level)
        ax.scatter(
            data["PC1"].to_numpy(),
            data["PC2"].to_numpy(),
            label=level,
            color=colours[level],
            alpha=0.8,
            s=40,
        )
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.legend(title=group_column)
    ax.grid(alpha=0.3)
    written = [save_figure(fig, png_path)]

    if html_path is not None:
        ifig = px.scatter(
            merged.to_pandas(),
            x="PC1",
            y="PC2",
            color=group_column,
            hover_name="sample",
            color_discrete_map=colours,
            category_orders={group_column: list(levels)},
            title=title,
            labels={"PC1": xlabel, "PC2": ylabel},
        )
        written.append(save_interactive(ifig, html_path))
    return written

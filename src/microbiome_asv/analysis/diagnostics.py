"""Read-count diagnostics: library sizes, rarefaction curves, depth choice."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
import polars as pl

from microbiome_asv.utils.plotting import group_colours, save_figure, save_interactive
from microbiome_asv.wrangle.abundance import AsvTable

logger = logging.getLogger(__name__)


def library_size_table(
    counts: AsvTable, groups: pl.DataFrame, group_column: str
) -> pl.DataFrame:
    """Reads and observed features per sample with its group label."""
    return (
        counts.library_sizes()
        .join(groups, on="sample", how="left")
        .sort([group_column, "reads"], nulls_last=True)
    )


def library_size_summary(
    library_sizes: pl.DataFrame, group_column: str
) -> pl.DataFrame:
    """Min, median, mean, max and total reads, overall and per group."""
    stats = [
        pl.len().alias("n_samples"),
        pl.col("reads").min().alias("min"),
        pl.col("reads").median().alias("median"),
        pl.col("reads").mean().round(1).alias("mean"),
        pl.col("reads").max().alias("max"),
        pl.col("reads").sum().alias("total"),
    ]
    overall = library_sizes.select(stats).with_columns(pl.lit("all").alias(group_column))
    per_group = (
        library_sizes.filter(pl.col(group_column).is_not_null())
        .group_by(group_column)
        .agg(stats)
        .sort(group_column)
    )
    columns = [group_column, "n_samples", "min", "median", "mean", "max", "total"]
    return pl.concat(
        [overall.select(columns), per_group.select(columns)], how="vertical_relaxed"
    )


def rarefaction_curves(
    counts: AsvTable,
    steps: int = 20,
    max_depth: Optional[int] = None,
    seed: int = 100,
) -> pl.DataFrame:
    """Observed features when subsampling each sample to increasing depths.

    Depths are evenly spaced from 1 to ``max_depth`` (the largest library
    by default); a sample contributes points up to its own library size.

    Returns:
        DataFrame with ``sample``, ``depth`` and ``observed_features``
    """
    matrix = counts.to_matrix()
    totals = matrix.row_sums()
    if max_depth is None:
        max_depth = int(totals.max()) if len(totals) else 0
    depths = np.unique(np.linspace(1, max(max_depth, 1), steps).astype(np.int64))

    rng = np.random.default_rng(seed)
    rows = {"sample": [], "depth": [], "observed_features": []}
    for i, sample in enumerate(matrix.sample_ids):
        sample_counts = matrix.values[i]
        for depth in depths[depths <= totals[i]]:
            drawn = rng.multivariate_hypergeometric(sample_counts, int(depth))
            rows["sample"].append(sample)
            rows["depth"].append(int(depth))
            rows["observed_features"].append(int((drawn > 0).sum()))
        # end each curve at the full library
        rows["sample"].append(sample)
        rows["depth"].append(int(totals[i]))
        rows["observed_features"].append(int((sample_counts > 0).sum()))
    return pl.DataFrame(
        rows,
        schema={"sample": pl.Utf8, "depth": pl.Int64, "observed_features": pl.Int64},
    ).unique(["sample", "depth"], keep="last", maintain_order=True)


def recommend_depth(
    library_sizes: pl.DataFrame,
    group_column: str,
    min_retained: float = 0.9,
) -> int:
    """Largest rarefaction depth keeping enough samples.

    Candidates are the observed library sizes. A depth qualifies when at
    least ``min_retained`` of samples have that many reads and every group
    keeps at least one sample.

    Raises:
        ValueError: If the table is empty
    """
    if library_sizes.height == 0:
        raise ValueError("No samples to choose a rarefaction depth from")
    reads = library_sizes["reads"].to_numpy()
    labels = library_sizes[group_column].to_list()
    group_set = {g for g in labels if g is not None}

    best = int(reads.min())
    for depth in np.unique(reads):
        kept = reads >= depth
        if kept.mean() < min_retained:
            break
        kept_groups = {g for g, k in zip(labels, kept) if k and g is not None}
        if kept_groups == group_set:
            best = int(depth)
    logger.info(
        f"Recommended rarefaction depth {best} "
        f"(retains {(reads >= best).sum()}/{len(reads)} samples)"
    )
    return best


def plot_library_sizes(
    library_sizes: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
    figures_dir: Union[str, Path],
    interactive_dir: Optional[Union[str, Path]] = None,
    depth: Optional[int] = None,
) -> List[Path]:
    """Histogram of library sizes and per-sample bars coloured by group."""
    figures_dir = Path(figures_dir)
    colours = group_colours(levels)
    written = []

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.hist(library_sizes["reads"].to_numpy(), bins=min(30, max(library_sizes.height, 1)),
            color="#4C72B0", edgecolor="white")
    if depth is not None:
        ax.axvline(depth, color="red", ls="--", lw=1, label=f"depth = {depth}")
        ax.legend()
    ax.set_xlabel("Reads per sample")
    ax.set_ylabel("Samples")
    ax.set_title("Library sizes")
    written.append(save_figure(fig, figures_dir / "library_size_histogram.png"))

    ordered = library_sizes.sort("reads")
    fig, ax = plt.subplots(figsize=(max(6, 0.25 * ordered.height + 2), 4))
    bar_colours = [colours.get(g, "#999999") for g in ordered[group_column].to_list()]
    ax.bar(ordered["sample"].to_list(), ordered["reads"].to_numpy(), color=bar_colours)
    if depth is not None:
        ax.axhline(depth, color="red", ls="--", lw=1)
    ax.set_ylabel("Reads")
    ax.tick_params(axis="x", rotation=90, labelsize=7)
    handles = [plt.Rectangle((0, 0), 1, 1, color=colours[g]) for g in levels]
    ax.legend(handles, levels, title=group_column)
    ax.set_title("Reads per sample")
    written.append(save_figure(fig, figures_dir / "library_sizes.png"))

    if interactive_dir is not None:
        ifig = px.bar(
            ordered.to_pandas(),
            x="sample",
            y="reads",
            color=group_column,
            hover_data=["features"],
            color_discrete_map=colours,
            category_orders={group_column: list(levels)},
            title="Reads per sample",
        )
        written.append(save_interactive(ifig, Path(interactive_dir) / "library_sizes.html"))
    return written


def plot_rarefaction_curves(
    curves: pl.DataFrame,
    groups: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
    png_path: Union[str, Path],
    html_path: Optional[Union[str, Path]] = None,
    depth: Optional[int] = None,
) -> List[Path]:
    """One line per sample, coloured by group."""
    merged = curves.join(groups, on="sample", how="left")
    colours = group_colours(levels)

    fig, ax = plt.subplots(figsize=(7, 5))
    for (sample,), data in merged.group_by(["sample"], maintain_order=True):
        group = data[group_column][0]
        ax.plot(
            data["depth"].to_numpy(),
            data["observed_features"].to_numpy(),
            color=colours.get(group, "#999999"),
            lw=1,
            alpha=0.8,
        )
    if depth is not None:
        ax.axvline(depth, color="red", ls="--", lw=1)
    handles = [plt.Line2D([0], [0], color=colours[g]) for g in levels]
    ax.legend(handles, levels, title=group_column)
    ax.set_xlabel("Reads sampled")
    ax.set_ylabel("Observed features")
    ax.set_title("Rarefaction curves")
    ax.grid(alpha=0.3)
    written = [save_figure(fig, png_path)]

    if html_path is not None:
        ifig = px.line(
            merged.to_pandas(),
            x="depth",
            y="observed_features",
            color=group_column,
            line_group="sample",
            hover_name="sample",
            color_discrete_map=colours,
            category_orders={group_column: list(levels)},
            title="Rarefaction curves",
        )
        written.append(save_interactive(ifig, html_path))
    return written

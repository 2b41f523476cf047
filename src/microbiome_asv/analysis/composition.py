"""Relative abundance of the most abundant taxa per sample."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
import polars as pl

from microbiome_asv.utils.plotting import save_figure, save_interactive
from microbiome_asv.utils.taxonomy import TaxonomicRanks
from microbiome_asv.wrangle.dataset import AmpliconDataset

logger = logging.getLogger(__name__)

OTHER = "Other"


def taxon_abundance(
    dataset: AmpliconDataset,
    rank: Union[str, TaxonomicRanks] = "phylum",
    top_n: int = 15,
) -> pl.DataFrame:
    """Relative abundance per sample aggregated at ``rank``.

    The ``top_n`` taxa by mean relative abundance are kept; the rest are
    pooled as ``Other``.

    Returns:
        DataFrame with ``sample``, ``taxon`` and ``relabund``; rows of each
        sample sum to 1
    """
    if dataset.taxonomy is None or dataset.counts is None:
        raise ValueError("Composition needs counts and taxonomy")
    labels = dataset.taxonomy.labels(rank).rename({"label": "taxon"})
    abundance = (
        dataset.counts.relative_abundance()
        .join(labels, on="feature_id", how="inner")
        .group_by(["sample", "taxon"])
        .agg(pl.col("relabund").sum())
    )
    n_samples = abundance["sample"].n_unique()
    top = (
        abundance.group_by("taxon")
        .agg((pl.col("relabund").sum() / n_samples).alias("mean"))
        .sort(["mean", "taxon"], descending=[True, False])
        .head(top_n)["taxon"]
        .to_list()
    )
    return (
        abundance.with_columns(
            pl.when(pl.col("taxon").is_in(top))
            .then(pl.col("taxon"))
            .otherwise(pl.lit(OTHER))
            .alias("taxon")
        )
        .group_by(["sample", "taxon"])
        .agg(pl.col("relabund").sum())
        .sort(["sample", "taxon"])
    )


def _taxon_order(abundance: pl.DataFrame) -> List[str]:
    """Taxa by decreasing total abundance, ``Other`` last."""
    order = (
        abundance.group_by("taxon")
        .agg(pl.col("relabund").sum())
        .sort(["relabund", "taxon"], descending=[True, False])["taxon"]
        .to_list()
    )
    if OTHER in order:
        order.remove(OTHER)
        order.append(OTHER)
    return order


def plot_composition(
    abundance: pl.DataFrame,
    groups: pl.DataFrame,
    group_column: str,
    levels: Sequence[str],
    rank: str,
    png_path: Union[str, Path],
    html_path: Optional[Union[str, Path]] = None,
) -> List[Path]:
    """Stacked relative abundance bars per sample, one panel per group."""
    merged = abundance.join(groups, on="sample", how="inner")
    taxa = _taxon_order(merged)
    cmap = plt.get_cmap("tab20")
    colours = {t: cmap(i % 20) for i, t in enumerate(taxa)}
    if OTHER in colours:
        colours[OTHER] = (0.75, 0.75, 0.75, 1.0)

    widths = [max(merged.filter(pl.col(group_column) == lv)["sample"].n_unique(), 1) for lv in levels]
    fig, axes = plt.subplots(
        1, len(levels), figsize=(max(6, 0.35 * sum(widths) + 4), 5),
        sharey=True, squeeze=False, gridspec_kw={"width_ratios": widths},
    )
    for ax, level in zip(axes[0], levels):
        data = merged.filter(pl.col(group_column) == level)
        samples = sorted(data["sample"].unique().to_list())
        wide = data.pivot(on="taxon", index="sample", values="relabund").fill_null(0.0)
        bottom = np.zeros(len(samples))
        for taxon in taxa:
            if taxon not in wide.columns:
                continue
            lookup = dict(zip(wide["sample"].to_list(), wide[taxon].to_list()))
            heights = np.array([lookup.get(s, 0.0) for s in samples])
            ax.bar(samples, heights, bottom=bottom, color=colours[taxon], label=taxon, width=0.85)
            bottom += heights
        ax.set_title(level)
        ax.tick_params(axis="x", rotation=90, labelsize=7)
    axes[0][0].set_ylabel("Relative abundance")
    handles = [plt.Rectangle((0, 0), 1, 1, color=colours[t]) for t in taxa]
    fig.legend(handles, taxa, title=rank.capitalize(), loc="center left",
               bbox_to_anchor=(1.0, 0.5), fontsize=8)
    written = [save_figure(fig, png_path)]

    if html_path is not None:
        ifig = px.bar(
            merged.to_pandas(),
            x="sample",
            y="relabund",
            color="taxon",
            facet_col=group_column,
            category_orders={"taxon": taxa, group_column: list(levels)},
            labels={"relabund": "Relative abundance", "taxon": rank.capitalize()},
        )
        ifig.update_xaxes(matches=None)
        written.append(save_interactive(ifig, html_path))
    return written

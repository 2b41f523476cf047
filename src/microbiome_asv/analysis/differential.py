"""Two-group differential abundance with pydeseq2."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import plotly.express as px
import polars as pl
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from microbiome_asv.core.config import DifferentialParams
from microbiome_asv.utils.plotting import save_figure, save_interactive
from microbiome_asv.utils.taxonomy import TaxonomicRanks
from microbiome_asv.wrangle.dataset import AmpliconDataset
from microbiome_asv.wrangle.lineages import RANK_COLUMNS

logger = logging.getLogger(__name__)

# Internal factor so arbitrary metadata column names and group values
# never reach the design formula
CONDITION = "condition"
REFERENCE_LEVEL = "reference"
TEST_LEVEL = "test"

RESULT_COLUMNS = {
    "baseMean": "base_mean",
    "log2FoldChange": "log2_fold_change",
    "lfcSE": "lfc_se",
    "stat": "stat",
    "pvalue": "pvalue",
    "padj": "padj",
}


def _deseq_inputs(
    dataset: AmpliconDataset, group_column: str, reference: str, test: str
):
    """Counts (samples x features) and condition frames for pydeseq2."""
    groups = dataset.metadata.get_groups(group_column)
    groups = groups.filter(pl.col(group_column).is_in([reference, test]))
    for level in (reference, test):
        if groups.filter(pl.col(group_column) == level).height == 0:
            raise ValueError(f"No samples in group '{level}' of '{group_column}'")

    samples = groups["sample"].to_list()
    matrix = dataset.counts.to_matrix(sample_order=samples)
    counts = pd.DataFrame(
        matrix.values.astype(np.int64),
        index=matrix.sample_ids,
        columns=matrix.feature_ids,
    )
    conditions = groups.with_columns(
        pl.when(pl.col(group_column) == reference)
        .then(pl.lit(REFERENCE_LEVEL))
        .otherwise(pl.lit(TEST_LEVEL))
        .alias(CONDITION)
    )
    metadata = conditions.select("sample", CONDITION).to_pandas().set_index("sample")
    return counts, metadata.loc[counts.index]


def differential_abundance(
    dataset: AmpliconDataset,
    group_column: str,
    reference: str,
    test: str,
    params: Optional[DifferentialParams] = None,
) -> pl.DataFrame:
    """DESeq2 Wald test of ``test`` against ``reference``.

    Counts are agglomerated to ``params.rank`` first when set. Features
    with fewer than ``params.min_count`` total reads are removed before
    fitting. Fold changes are ``log2(test / reference)``.

    Args:
        dataset: Dataset with raw (not rarefied) counts, taxonomy and metadata
        group_column: Metadata column holding the two groups
        reference: Reference group value
        test: Test group value
        params: Agglomeration rank, significance level and count filter

    Returns:
        DataFrame with ``feature_id``, ``base_mean``, ``log2_fold_change``,
        ``lfc_se``, ``stat``, ``pvalue``, ``padj`` and the taxonomy
        columns, sorted by ``padj`` (missing values last)

    Raises:
        ValueError: If metadata is missing, a group is empty or no feature
            passes the count filter
    """
    params = params or DifferentialParams()
    if dataset.metadata is None:
        raise ValueError("Differential abundance needs sample metadata")
    if params.rank:
        dataset = dataset.agglomerate(params.rank)
    dataset = dataset.prune_features(min_count=max(params.min_count, 1))
    if not dataset.get_feature_ids():
        raise ValueError(
            f"No features with at least {params.min_count} reads remain"
        )

    counts, metadata = _deseq_inputs(dataset, group_column, reference, test)
    logger.info(
        f"DESeq2: {counts.shape[1]} features, {counts.shape[0]} samples "
        f"({test} vs {reference})"
    )
    dds = DeseqDataSet(
        counts=counts,
        metadata=metadata,
        design=f"~{CONDITION}",
        refit_cooks=True,
        quiet=True,
    )
    dds.deseq2()
    stats = DeseqStats(
        dds,
        contrast=[CONDITION, TEST_LEVEL, REFERENCE_LEVEL],
        alpha=params.alpha,
        quiet=True,
    )
    stats.summary()

    res = stats.results_df.rename(columns=RESULT_COLUMNS)
    res.index.name = "feature_id"
    results = pl.from_pandas(res.reset_index()).with_columns(
        pl.col("feature_id").cast(pl.Utf8),
        *[pl.col(c).cast(pl.Float64).fill_nan(None) for c in RESULT_COLUMNS.values()],
    )
    if dataset.taxonomy is not None:
        results = results.join(dataset.taxonomy.taxonomy.select(["feature_id"] + RANK_COLUMNS),
                               on="feature_id", how="left")
    return results.sort(["padj", "pvalue"], nulls_last=True)


def significant(results: pl.DataFrame, alpha: float = 0.01) -> pl.DataFrame:
    """Rows with an adjusted p-value below ``alpha``."""
    return results.filter(pl.col("padj").is_not_null() & (pl.col("padj") < alpha))


def _plot_frame(results: pl.DataFrame) -> pl.DataFrame:
    """Significant rows with genus and phylum labels for plotting."""
    genus = pl.coalesce(
        [pl.col(r.name) for r in TaxonomicRanks.GENUS.iter_up()]
        + [pl.col("feature_id")]
    )
    return (
        results.with_columns(
            genus.alias("genus_label"),
            pl.col("phylum").fill_null("Unassigned").alias("phylum_label"),
        )
        .sort(["phylum_label", "log2_fold_change"])
    )


def plot_differential(
    results: pl.DataFrame,
    alpha: float,
    reference: str,
    test: str,
    png_path: Union[str, Path],
    html_path: Optional[Union[str, Path]] = None,
) -> List[Path]:
    """Log2 fold change of significant features by genus, coloured by phylum.

    An empty figure with a note is written when nothing is significant.
    """
    data = _plot_frame(significant(results, alpha))
    phyla = data["phylum_label"].unique(maintain_order=True).to_list()
    cmap = plt.get_cmap("tab20")
    colours = {p: cmap(i % 20) for i, p in enumerate(phyla)}
    xlabel = f"log2 fold change ({test} / {reference})"

    fig, ax = plt.subplots(figsize=(8, max(3, 0.3 * data.height + 1.5)))
    if data.height == 0:
        ax.text(0.5, 0.5, f"No features with padj < {alpha}", ha="center",
                va="center", transform=ax.transAxes)
        ax.set_axis_off()
    else:
        genera = data["genus_label"].unique(maintain_order=True).to_list()
        positions = {g: i for i, g in enumerate(genera)}
        for phylum in phyla:
            rows = data.filter(pl.col("phylum_label") == phylum)
            ax.scatter(
                rows["log2_fold_change"].to_numpy(),
                [positions[g] for g in rows["genus_label"].to_list()],
                color=colours[phylum],
                label=phylum,
                s=40,
                edgecolor="black",
                linewidth=0.3,
            )
        ax.axvline(0, color="grey", lw=0.8)
        ax.set_yticks(range(len(genera)))
        ax.set_yticklabels(genera, fontsize=8)
        ax.set_xlabel(xlabel)
        ax.legend(title="Phylum", loc="center left", bbox_to_anchor=(1.0, 0.5), fontsize=8)
        ax.grid(axis="x", alpha=0.3)
    ax.set_title(f"Differentially abundant features (padj < {alpha})")
    written = [save_figure(fig, png_path)]

    if html_path is not None:
        ifig = px.scatter(
            data.to_pandas(),
            x="log2_fold_change",
            y="genus_label",
            color="phylum_label",
            hover_name="feature_id",
            hover_data=["base_mean", "padj"],
            labels={
                "log2_fold_change": xlabel,
                "genus_label": "Genus",
                "phylum_label": "Phylum",
            },
            title=f"Differentially abundant features (padj < {alpha})",
        )
        written.append(save_interactive(ifig, html_path))
    return written

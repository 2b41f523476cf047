"""QIIME 2 command wrappers and readers for their exported files.

Every wrapper builds the command line and hands it to ``run_cmd`` with a
numbered step log under ``logs``. Readers turn ``qiime tools export``
output into the package's own tables.
"""

import logging
from pathlib import Path
from typing import Optional

import polars as pl
from skbio import TreeNode

from microbiome_asv.core.config import DenoiseParams, FilterParams
from microbiome_asv.pipeline.external import run_cmd
from microbiome_asv.utils.io import header_overrides
from microbiome_asv.wrangle.abundance import AsvTable
from microbiome_asv.wrangle.lineages import TaxonomyTable

logger = logging.getLogger(__name__)


# QIIME steps

def qiime_import_paired(
    *, manifest: Path, out_artifact: Path, logs: Path
) -> None:
    """Import paired-end reads using a paired manifest."""
    cmd = [
        "qiime", "tools", "import",
        "--type", "SampleData[PairedEndSequencesWithQuality]",
        "--input-path", str(manifest),
        "--output-path", str(out_artifact),
        "--input-format", "PairedEndFastqManifestPhred33V2",
    ]
    run_cmd(cmd=cmd, log_file=logs / "01_import.log", logger=logger)


def qiime_dada2_denoise_paired(
    *,
    in_qza: Path,
    table_qza: Path,
    repseqs_qza: Path,
    stats_qza: Path,
    params: DenoiseParams,
    filter_params: FilterParams,
    threads: int,
    logs: Path,
) -> None:
    """Run DADA2 paired-end denoising in QIIME 2.

    Reads arrive already filtered and trimmed, so DADA2's own trimming and
    truncation are switched off; the expected-error and quality thresholds
    are passed through unchanged and have no further effect.
    """
    cmd = [
        "qiime", "dada2", "denoise-paired",
        "--i-demultiplexed-seqs", str(in_qza),
        "--p-trim-left-f", "0",
        "--p-trim-left-r", "0",
        "--p-trunc-len-f", "0",
        "--p-trunc-len-r", "0",
        "--p-max-ee-f", str(filter_params.max_ee[0]),
        "--p-max-ee-r", str(filter_params.max_ee[1]),
        "--p-trunc-q", str(filter_params.trunc_q),
        "--p-min-overlap", str(params.min_overlap),
        "--p-pooling-method", params.pooling_method,
        "--p-chimera-method", params.chimera_method,
        "--p-min-fold-parent-over-abundance", str(params.min_fold_parent_over_abundance),
        "--p-n-reads-learn", str(params.n_reads_learn),
        "--p-n-threads", str(threads),
        "--o-table", str(table_qza),
        "--o-representative-sequences", str(repseqs_qza),
        "--o-denoising-stats", str(stats_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "02_dada2_paired.log", logger=logger)


def qiime_taxonomy_sklearn(
    *,
    repseqs_qza: Path,
    classifier_qza: Path,
    taxonomy_qza: Path,
    confidence: float,
    threads: int,
    logs: Path,
) -> None:
    """Assign taxonomy using a pre-trained sklearn classifier artefact."""
    cmd = [
        "qiime", "feature-classifier", "classify-sklearn",
        "--i-classifier", str(classifier_qza),
        "--i-reads", str(repseqs_qza),
        "--p-confidence", str(confidence),
        "--p-n-jobs", str(threads),
        "--o-classification", str(taxonomy_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "03_taxonomy_sklearn.log", logger=logger)


def qiime_phylogeny_mafft_fasttree(
    *,
    repseqs_qza: Path,
    aligned_qza: Path,
    masked_qza: Path,
    unrooted_qza: Path,
    rooted_qza: Path,
    threads: int,
    logs: Path,
) -> None:
    """Build a phylogenetic tree using MAFFT alignment and FastTree."""
    cmd = [
        "qiime", "phylogeny", "align-to-tree-mafft-fasttree",
        "--i-sequences", str(repseqs_qza),
        "--p-n-threads", str(threads),
        "--o-alignment", str(aligned_qza),
        "--o-masked-alignment", str(masked_qza),
        "--o-tree", str(unrooted_qza),
        "--o-rooted-tree", str(rooted_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "04_phylogeny_mafft_fasttree.log", logger=logger)


def qiime_export(
    *, artifact: Path, out_dir: Path, logs: Path, step: str
) -> Path:
    """Export the payload of an artefact into ``out_dir``."""
    out_dir.mkdir(parents=True, exist_ok=True)
    cmd = [
        "qiime", "tools", "export",
        "--input-path", str(artifact),
        "--output-path", str(out_dir),
    ]
    run_cmd(cmd=cmd, log_file=logs / f"05_export_{step}.log", logger=logger)
    return out_dir


def biom_to_tsv(*, biom_fp: Path, tsv_fp: Path, logs: Path) -> Path:
    """Convert an exported BIOM table to TSV."""
    cmd = [
        "biom", "convert",
        "--to-tsv",
        "--input-fp", str(biom_fp),
        "--output-fp", str(tsv_fp),
    ]
    run_cmd(cmd=cmd, log_file=logs / "05_biom_convert.log", logger=logger)
    return tsv_fp


# Readers for exported files

def read_feature_table(tsv_fp: Path) -> AsvTable:
    """ASV counts from a ``biom convert --to-tsv`` file."""
    return AsvTable.from_biom_tsv(tsv_fp)


def read_taxonomy(tsv_fp: Path) -> TaxonomyTable:
    """Taxonomy from an exported ``taxonomy.tsv``."""
    return TaxonomyTable.from_qiime_tsv(tsv_fp)


def read_tree(newick_fp: Path) -> TreeNode:
    """Rooted tree from an exported ``tree.nwk``."""
    newick_fp = Path(newick_fp)
    if not newick_fp.exists():
        raise FileNotFoundError(f"Tree file not found: {newick_fp}")
    return TreeNode.read(str(newick_fp), format="newick")


def read_denoising_stats(stats_fp: Path) -> pl.DataFrame:
    """Per-sample read counts from an exported DADA2 ``stats.tsv``.

    The export carries a ``#q2:types`` row under the header and
    percentage columns next to each count; only the counts are kept.

    Returns:
        DataFrame with ``sample``, ``dada2_input``, ``dada2_filtered``,
        ``denoised``, ``merged`` and ``non_chimeric``
    """
    stats_fp = Path(stats_fp)
    if not stats_fp.exists():
        raise FileNotFoundError(f"Denoising stats not found: {stats_fp}")
    df = pl.read_csv(
        stats_fp,
        separator="\t",
        comment_prefix="#",
        schema_overrides=header_overrides(stats_fp, ["sample-id"], "\t"),
    )
    renames = {
        "sample-id": "sample",
        "input": "dada2_input",
        "filtered": "dada2_filtered",
        "non-chimeric": "non_chimeric",
    }
    missing = [c for c in list(renames) + ["denoised", "merged"] if c not in df.columns]
    if missing:
        raise ValueError(f"Denoising stats missing columns {missing}: {stats_fp}")
    return df.rename(renames).select(
        pl.col("sample").cast(pl.Utf8),
        *[
            pl.col(c).cast(pl.Int64)
            for c in ["dada2_input", "dada2_filtered", "denoised", "merged", "non_chimeric"]
        ],
    )


def build_read_tracking(
    filter_stats: pl.DataFrame, denoise_stats: Optional[pl.DataFrame]
) -> pl.DataFrame:
    """Combine filter and DADA2 counts into the read-tracking table.

    Samples removed by the filter keep a row with zeros downstream.

    Returns:
        DataFrame with ``sample``, ``input``, ``filtered``, ``denoised``,
        ``merged``, ``non_chimeric`` and ``percent_retained``
    """
    tracking = filter_stats.select(
        "sample",
        pl.col("reads_in").alias("input"),
        pl.col("reads_out").alias("filtered"),
    )
    steps = ["denoised", "merged", "non_chimeric"]
    if denoise_stats is not None:
        tracking = tracking.join(
            denoise_stats.select(["sample"] + steps), on="sample", how="left"
        )
    else:
        tracking = tracking.with_columns(
            [pl.lit(None, dtype=pl.Int64).alias(c) for c in steps]
        )
    tracking = tracking.with_columns([pl.col(c).fill_null(0) for c in steps])
    return tracking.with_columns(
        pl.when(pl.col("input") > 0)
        .then(100.0 * pl.col("non_chimeric") / pl.col("input"))
        .otherwise(0.0)
        .round(2)
        .alias("percent_retained")
    ).sort("sample")

"""Per-cycle read quality profiles from FASTQ files."""

import logging
from itertools import islice
from pathlib import Path
from typing import Dict, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import polars as pl
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from microbiome_asv.utils.io import open_text
from microbiome_asv.utils.plotting import save_figure

logger = logging.getLogger(__name__)

PHRED_OFFSET = 33
MAX_PHRED = 93


def _quantile_from_histogram(hist: np.ndarray, q: float) -> np.ndarray:
    """Per-row quantile of a (cycles x scores) count histogram."""
    totals = hist.sum(axis=1)
    cumulative = hist.cumsum(axis=1)
    target = np.ceil(q * totals)[:, None]
    # First score whose cumulative count reaches the target
    result = (cumulative < np.maximum(target, 1)).sum(axis=1).astype(np.float64)
    result[totals == 0] = np.nan
    return result


def quality_profile(
    path: Union[str, Path],
    max_reads: Optional[int] = None,
    chunk_size: int = 10000,
) -> pl.DataFrame:
    """Summarise Phred scores per sequencing cycle.

    The file is streamed in chunks into a cycles x scores histogram, so
    memory depends on read length only.

    Args:
        path: FASTQ file (plain or gzip)
        max_reads: Stop after this many reads (all reads if None)
        chunk_size: Records decoded per chunk

    Returns:
        DataFrame with ``cycle`` (1-based), ``mean``, ``q25``, ``median``,
        ``q75``, ``n_reads`` and ``fraction_reads`` (share of reads at least
        that long)
    """
    hist = np.zeros((0, MAX_PHRED + 1), dtype=np.int64)
    n_reads = 0

    with open_text(path) as handle:
        records = FastqGeneralIterator(handle)
        while max_reads is None or n_reads < max_reads:
            limit = chunk_size
            if max_reads is not None:
                limit = min(chunk_size, max_reads - n_reads)
            chunk = list(islice(records, limit))
            if not chunk:
                break
            longest = max(len(q) for _, _, q in chunk)
            if longest > hist.shape[0]:
                hist = np.vstack(
                    [hist, np.zeros((longest - hist.shape[0], MAX_PHRED + 1), dtype=np.int64)]
                )
            for _, _, qual in chunk:
                scores = (
                    np.frombuffer(qual.encode("ascii"), dtype=np.uint8).astype(np.int16)
                    - PHRED_OFFSET
                )
                hist[np.arange(len(scores)), np.clip(scores, 0, MAX_PHRED)] += 1
            n_reads += len(chunk)

    if n_reads == 0:
        logger.warning(f"No reads in {path}")
        return pl.DataFrame(
            schema={
                "cycle": pl.Int64,
                "mean": pl.Float64,
                "q25": pl.Float64,
                "median": pl.Float64,
                "q75": pl.Float64,
                "n_reads": pl.Int64,
                "fraction_reads": pl.Float64,
            }
        )

    per_cycle = hist.sum(axis=1)
    scores = np.arange(MAX_PHRED + 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean = (hist * scores).sum(axis=1) / per_cycle

    return pl.DataFrame(
        {
            "cycle": np.arange(1, hist.shape[0] + 1),
            "mean": mean,
            "q25": _quantile_from_histogram(hist, 0.25),
            "median": _quantile_from_histogram(hist, 0.5),
            "q75": _quantile_from_histogram(hist, 0.75),
            "n_reads": per_cycle,
            "fraction_reads": per_cycle / n_reads,
        }
    )


def plot_quality_profiles(
    profiles: Dict[str, pl.DataFrame], out_path: Union[str, Path]
) -> Path:
    """Draw one quality panel per file.

    Mean quality is green, the median solid orange, quartiles dashed orange
    and the fraction of reads reaching each cycle red on the right axis.

    Args:
        profiles: Panel title -> ``quality_profile`` output
        out_path: PNG destination

    Returns:
        The written path
    """
    n = max(len(profiles), 1)
    ncols = min(n, 2)
    nrows = int(np.ceil(n / ncols))
    fig, axes = plt.subplots(
        nrows, ncols, figsize=(6 * ncols, 4 * nrows), squeeze=False
    )
    for ax, (title, profile) in zip(axes.flat, profiles.items()):
        cycle = profile["cycle"].to_numpy()
        ax.plot(cycle, profile["mean"].to_numpy(), color="#66C2A5", lw=1.5, label="mean")
        ax.plot(cycle, profile["median"].to_numpy(), color="#FC8D62", lw=1.2, label="median")
        ax.plot(cycle, profile["q25"].to_numpy(), color="#FC8D62", lw=0.8, ls="--", label="quartiles")
        ax.plot(cycle, profile["q75"].to_numpy(), color="#FC8D62", lw=0.8, ls="--")
        ax.set_ylim(0, 42)
        ax.set_xlabel("Cycle")
        ax.set_ylabel("Quality score")
        ax.set_title(title, fontsize=9)
        reads_ax = ax.twinx()
        reads_ax.plot(cycle, profile["fraction_reads"].to_numpy(), color="red", lw=0.8)
        reads_ax.set_ylim(0, 1.05)
        reads_ax.set_ylabel("Fraction of reads", color="red")
        ax.grid(alpha=0.3)
    for ax in list(axes.flat)[len(profiles):]:
        ax.set_visible(False)
    if profiles:
        axes.flat[0].legend(loc="lower left", fontsize=8)
    return save_figure(fig, out_path)

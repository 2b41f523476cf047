"""Quality filtering and trimming of paired-end reads."""

import logging
from itertools import islice
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from microbiome_asv.core.config import FilterParams
from microbiome_asv.pipeline.reads import ReadPair
from microbiome_asv.utils.io import open_text

logger = logging.getLogger(__name__)

PHRED_OFFSET = 33

FORWARD_FILTERED = "{sample}_F_filt.fastq.gz"
REVERSE_FILTERED = "{sample}_R_filt.fastq.gz"


def expected_errors(qual: str) -> float:
    """Expected number of errors of a read: ``sum(10^(-Q/10))``."""
    scores = np.frombuffer(qual.encode("ascii"), dtype=np.uint8).astype(np.float64)
    return float(np.power(10.0, -(scores - PHRED_OFFSET) / 10.0).sum())


def filter_read(
    seq: str,
    qual: str,
    trim_left: int = 0,
    trunc_len: int = 0,
    trunc_q: int = 2,
    max_n: int = 0,
    min_len: int = 20,
    max_ee: float = 2.0,
) -> Optional[Tuple[str, str]]:
    """Apply the filter chain to one read.

    Steps, in order:

    1. truncate at the first base with quality <= ``trunc_q``
    2. discard reads shorter than ``trunc_len``, cut the rest to
       ``trunc_len`` (0 disables)
    3. remove the first ``trim_left`` bases
    4. discard reads shorter than ``min_len``
    5. discard reads with more than ``max_n`` ``N`` bases
    6. discard reads with more than ``max_ee`` expected errors

    ``trunc_len`` counts from the start of the raw read, so a read that
    passes both trimming steps has ``trunc_len - trim_left`` bases.

    Returns:
        The filtered ``(sequence, quality)`` or None if the read fails
    """
    scores = np.frombuffer(qual.encode("ascii"), dtype=np.uint8).astype(np.int16) - PHRED_OFFSET
    low = np.flatnonzero(scores <= trunc_q)
    if low.size:
        end = int(low[0])
        seq, qual = seq[:end], qual[:end]

    if trunc_len > 0:
        if len(seq) < trunc_len:
            return None
        seq, qual = seq[:trunc_len], qual[:trunc_len]

    if trim_left > 0:
        seq, qual = seq[trim_left:], qual[trim_left:]

    if len(seq) < max(min_len, 1):
        return None
    if seq.upper().count("N") > max_n:
        return None
    if expected_errors(qual) > max_ee:
        return None
    return seq, qual


def _filter_pair_files(
    pair: ReadPair,
    forward_out: Path,
    reverse_out: Path,
    params: FilterParams,
) -> Tuple[int, int]:
    """Filter one sample; returns (reads_in, reads_out)."""
    forward_kwargs = dict(
        trim_left=params.trim_left[0],
        trunc_len=params.trunc_len[0],
        trunc_q=params.trunc_q,
        max_n=params.max_n,
        min_len=params.min_len,
        max_ee=params.max_ee[0],
    )
    reverse_kwargs = dict(forward_kwargs)
    reverse_kwargs.update(
        trim_left=params.trim_left[1],
        trunc_len=params.trunc_len[1],
        max_ee=params.max_ee[1],
    )

    reads_in = 0
    reads_out = 0
    with open_text(pair.forward) as fwd_in, open_text(pair.reverse) as rev_in, \
            open_text(forward_out, "wt") as fwd_out, open_text(reverse_out, "wt") as rev_out:
        fwd_records = FastqGeneralIterator(fwd_in)
        rev_records = FastqGeneralIterator(rev_in)
        while True:
            fwd_chunk = list(islice(fwd_records, params.chunk_size))
            rev_chunk = list(islice(rev_records, params.chunk_size))
            if len(fwd_chunk) != len(rev_chunk):
                raise ValueError(
                    f"Forward and reverse files of sample '{pair.sample}' "
                    f"have different numbers of reads"
                )
            if not fwd_chunk:
                break
            reads_in += len(fwd_chunk)
            for (f_title, f_seq, f_qual), (r_title, r_seq, r_qual) in zip(fwd_chunk, rev_chunk):
                fwd = filter_read(f_seq, f_qual, **forward_kwargs)
                if fwd is None:
                    continue
                rev = filter_read(r_seq, r_qual, **reverse_kwargs)
                if rev is None:
                    continue
                fwd_out.write(f"@{f_title}\n{fwd[0]}\n+\n{fwd[1]}\n")
                rev_out.write(f"@{r_title}\n{rev[0]}\n+\n{rev[1]}\n")
                reads_out += 1
    return reads_in, reads_out


def filter_and_trim(
    pairs: Sequence[ReadPair],
    out_dir: Union[str, Path],
    params: Optional[FilterParams] = None,
) -> Tuple[pl.DataFrame, List[ReadPair]]:
    """Filter and trim every read pair into gzip FASTQ files.

    A pair is written only if both mates pass. Samples without surviving
    reads are reported and left out of the returned pairs.

    Args:
        pairs: Raw read pairs
        out_dir: Directory for the filtered files
        params: Filter parameters (defaults if None)

    Returns:
        Tuple of a ``sample, reads_in, reads_out`` table and the filtered
        read pairs of samples with at least one read left
    """
    params = params or FilterParams()
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    rows = []
    filtered_pairs: List[ReadPair] = []
    for pair in pairs:
        forward_out = out_dir / FORWARD_FILTERED.format(sample=pair.sample)
        reverse_out = out_dir / REVERSE_FILTERED.format(sample=pair.sample)
        reads_in, reads_out = _filter_pair_files(pair, forward_out, reverse_out, params)
        logger.info(f"{pair.sample}: {reads_out}/{reads_in} read pairs passed filtering")
        rows.append({"sample": pair.sample, "reads_in": reads_in, "reads_out": reads_out})
        if reads_out == 0:
            logger.warning(f"No reads passed the filter for sample {pair.sample}; excluded")
            forward_out.unlink()
            reverse_out.unlink()
            continue
        filtered_pairs.append(
            ReadPair(sample=pair.sample, forward=forward_out, reverse=reverse_out)
        )

    stats = pl.DataFrame(
        rows,
        schema={"sample": pl.Utf8, "reads_in": pl.Int64, "reads_out": pl.Int64},
    )
    return stats, filtered_pairs

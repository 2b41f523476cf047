"""Discovery of paired-end FASTQ files and QIIME 2 manifest writing."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Union

logger = logging.getLogger(__name__)

MANIFEST_HEADER = (
    "sample-id\tforward-absolute-filepath\treverse-absolute-filepath\n"
)


@dataclass(frozen=True)
class ReadPair:
    """Forward and reverse FASTQ files of one sample."""
    sample: str
    forward: Path
    reverse: Path


def sample_name(path: Union[str, Path]) -> str:
    """Sample name of a read file: the file name up to the first underscore."""
    return Path(path).name.split("_", 1)[0]


def discover_read_pairs(
    input_dir: Union[str, Path],
    forward_suffix: str = "_R1_001.fastq.gz",
    reverse_suffix: str = "_R2_001.fastq.gz",
) -> List[ReadPair]:
    """Find forward/reverse FASTQ files and pair them by sample name.

    Args:
        input_dir: Directory holding the raw reads (not searched recursively)
        forward_suffix: File name suffix of forward reads
        reverse_suffix: File name suffix of reverse reads

    Returns:
        Read pairs sorted by sample name

    Raises:
        FileNotFoundError: If the directory does not exist or holds no
            forward reads
        ValueError: If a file has no mate or two files map to one sample
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Read directory not found: {input_dir}")

    forward = sorted(input_dir.glob(f"*{forward_suffix}"))
    reverse = sorted(input_dir.glob(f"*{reverse_suffix}"))
    if not forward:
        raise FileNotFoundError(
            f"No files ending in '{forward_suffix}' under {input_dir}"
        )

    reverse_by_stem: Dict[str, Path] = {
        p.name[: -len(reverse_suffix)]: p for p in reverse
    }
    pairs: Dict[str, ReadPair] = {}
    for fwd in forward:
        stem = fwd.name[: -len(forward_suffix)]
        rev = reverse_by_stem.pop(stem, None)
        if rev is None:
            raise ValueError(f"Forward file has no reverse mate: {fwd}")
        sample = sample_name(fwd)
        if sample in pairs:
            raise ValueError(
                f"Duplicate sample name '{sample}': {pairs[sample].forward.name} and {fwd.name}"
            )
        pairs[sample] = ReadPair(sample=sample, forward=fwd, reverse=rev)

    if reverse_by_stem:
        raise ValueError(
            f"Reverse files have no forward mate: {sorted(reverse_by_stem.values())}"
        )

    logger.info(f"Found {len(pairs)} read pairs in {input_dir}")
    return [pairs[s] for s in sorted(pairs)]


def write_manifest(pairs: Sequence[ReadPair], out_path: Union[str, Path]) -> Path:
    """Write a QIIME 2 ``PairedEndFastqManifestPhred33V2`` TSV.

    Args:
        pairs: Read pairs to list
        out_path: Destination TSV path

    Returns:
        The manifest path
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as fh:
        fh.write(MANIFEST_HEADER)
        for pair in pairs:
            fh.write(
                f"{pair.sample}\t{pair.forward.resolve()}\t{pair.reverse.resolve()}\n"
            )
    return out_path

"""Sequence and table file helpers.

FASTA reading and writing is built on Biopython; text files may be
gzip-compressed.
"""

import gzip
from pathlib import Path
from typing import Dict, Iterable, Iterator, Sequence, TextIO, Tuple, Union

import polars as pl
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord


def header_overrides(
    path: Union[str, Path], names: Sequence[str], separator: str
) -> Dict[str, pl.DataType]:
    """String dtype overrides for the identifier columns present in a table.

    Keeps ids such as ``01`` from being inferred as integers.
    """
    with open_text(path) as fh:
        header = fh.readline().rstrip("\r\n").split(separator)
    present = {h.strip().strip('"') for h in header}
    return {name: pl.Utf8 for name in names if name in present}


def read_fasta(path: Union[str, Path]) -> Dict[str, str]:
    """Read a FASTA file into an ordered id -> upper-case sequence mapping.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a record id occurs twice
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    sequences: Dict[str, str] = {}
    with open_text(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            if record.id in sequences:
                raise ValueError(f"Duplicate FASTA id '{record.id}' in {path}")
            sequences[record.id] = str(record.seq).upper()
    return sequences


def iter_fasta_records(path: Union[str, Path]) -> Iterator[Tuple[str, str, str]]:
    """Yield ``(id, header, upper-case sequence)`` for every record.

    Ids need not be unique: DADA2 formatted reference databases use the
    lineage as the header, shared by every sequence of a genus.
    """
    with open_text(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            yield record.id, record.description, str(record.seq).upper()


def write_fasta(sequences: Dict[str, str], path: Union[str, Path]) -> None:
    """Write an id -> sequence mapping as FASTA."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records: Iterable[SeqRecord] = (
        SeqRecord(Seq(seq), id=seq_id, description="")
        for seq_id, seq in sequences.items()
    )
    SeqIO.write(records, str(path), "fasta")


def open_text(path: Union[str, Path], mode: str = "rt") -> TextIO:
    """Open a sequence file for text I/O, gzip-compressed if it ends in ``.gz``."""
    path = Path(path)
    if "r" in mode and not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if path.suffix == ".gz":
        return gzip.open(path, mode)
    return open(path, mode)

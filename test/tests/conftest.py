"""Shared pytest fixtures for microbiome_asv tests."""

import gzip
import logging

import numpy as np
import polars as pl
import pytest

from microbiome_asv.wrangle.abundance import AsvTable
from microbiome_asv.wrangle.dataset import AmpliconDataset
from microbiome_asv.wrangle.lineages import TaxonomyTable
from microbiome_asv.wrangle.metadata import SampleMetadata

# Configure debug logging for tests
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

FEATURES = ["asv01", "asv02", "asv03", "asv04", "asv05", "asv06"]
CONTROL = ["A1", "A2", "A3", "A4"]
TREATED = ["B1", "B2", "B3", "B4"]

# Rows are samples (A1..A4, B1..B4), columns FEATURES. asv05 is enriched in
# the treated group; asv06 is a chloroplast.
COUNTS = np.array(
    [
        [400, 300, 250, 150, 20, 30],
        [380, 320, 260, 140, 25, 35],
        [420, 280, 240, 160, 15, 25],
        [390, 310, 270, 130, 30, 40],
        [150, 120, 200, 100, 600, 20],
        [160, 110, 210, 90, 650, 30],
        [140, 130, 190, 110, 580, 25],
        [170, 100, 220, 95, 620, 35],
    ]
)

LINEAGES = {
    "asv01": "d__Bacteria; p__Firmicutes; c__Bacilli; o__Lactobacillales; f__Lactobacillaceae; g__Lactobacillus; s__",
    "asv02": "d__Bacteria; p__Firmicutes; c__Clostridia; o__Lachnospirales; f__Lachnospiraceae; g__; s__",
    "asv03": "d__Bacteria; p__Bacteroidota; c__Bacteroidia; o__Bacteroidales; f__Bacteroidaceae; g__Bacteroides; s__",
    "asv04": "d__Bacteria; p__Bacteroidota; c__Bacteroidia; o__Bacteroidales; f__Bacteroidaceae; g__Bacteroides; s__",
    "asv05": "d__Bacteria; p__Proteobacteria; c__Gammaproteobacteria; o__Enterobacterales; f__Enterobacteriaceae; g__Escherichia-Shigella; s__",
    "asv06": "d__Bacteria; p__Cyanobacteria; c__Cyanobacteriia; o__Chloroplast; f__; g__; s__",
}

NEWICK = (
    "(((asv01:0.10,asv02:0.20):0.15,(asv03:0.05,asv04:0.07):0.25):0.05,"
    "(asv05:0.30,asv06:0.40):0.10);\n"
)

SEQUENCES = {
    "asv01": "TACGTAGGTGGCAAGCGTTGTCCGGATTTATTGGGCGTAAAGCGAGCGCAG",
    "asv02": "TACGTAGGGGGCAAGCGTTATCCGGATTTACTGGGTGTAAAGGGAGCGTAG",
    "asv03": "TACGGAGGATCCGAGCGTTATCCGGATTTATTGGGTTTAAAGGGAGCGTAG",
    "asv04": "TACGGAGGATCCAAGCGTTATCCGGATTTATTGGGTTTAAAGGGAGCGCAG",
    "asv05": "TACGGAGGGTGCAAGCGTTAATCGGAATTACTGGGCGTAAAGCGCACGCAG",
    "asv06": "GGAATTTTCCGCAATGGGCGAAAGCCTGACGGAGCAATGCCGCGTGGAGGT",
}


# Data fixtures - small synthetic tables


@pytest.fixture
def sample_counts_data():
    """Long-form counts for 8 samples x 6 features."""
    samples = CONTROL + TREATED
    rows = {"sample": [], "feature_id": [], "count": []}
    for i, sample in enumerate(samples):
        for j, feature in enumerate(FEATURES):
            rows["sample"].append(sample)
            rows["feature_id"].append(feature)
            rows["count"].append(int(COUNTS[i, j]))
    return rows


@pytest.fixture
def sample_metadata_data():
    """Sample metadata with the grouping column ``diet``."""
    return {
        "sample-id": CONTROL + TREATED,
        "diet": ["control"] * 4 + ["high_fat"] * 4,
        "age_weeks": [8, 9, 8, 10, 8, 9, 10, 9],
    }


@pytest.fixture
def sample_lineages():
    return dict(LINEAGES)


@pytest.fixture
def sample_sequences():
    return dict(SEQUENCES)


# File fixtures - write data to temporary files


@pytest.fixture
def counts_csv(tmp_path, sample_counts_data):
    """Write long counts to CSV and return path."""
    path = tmp_path / "counts.csv"
    pl.DataFrame(sample_counts_data).write_csv(path)
    return path


@pytest.fixture
def metadata_tsv(tmp_path, sample_metadata_data):
    """QIIME 2 style metadata TSV with a ``#q2:types`` directive row."""
    path = tmp_path / "metadata.tsv"
    lines = ["sample-id\tdiet\tage_weeks", "#q2:types\tcategorical\tnumeric"]
    for sample, diet, age in zip(
        sample_metadata_data["sample-id"],
        sample_metadata_data["diet"],
        sample_metadata_data["age_weeks"],
    ):
        lines.append(f"{sample}\t{diet}\t{age}")
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def tree_nwk(tmp_path):
    """Rooted newick tree over the six features, with branch lengths."""
    path = tmp_path / "tree.nwk"
    path.write_text(NEWICK)
    return path


@pytest.fixture
def biom_tsv(tmp_path):
    """``biom convert --to-tsv`` style export of the count table."""
    path = tmp_path / "feature-table.tsv"
    samples = CONTROL + TREATED
    lines = ["# Constructed from biom file", "#OTU ID\t" + "\t".join(samples)]
    for j, feature in enumerate(FEATURES):
        values = "\t".join(f"{float(v)}" for v in COUNTS[:, j])
        lines.append(f"{feature}\t{values}")
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def taxonomy_tsv(tmp_path):
    """QIIME 2 ``taxonomy.tsv`` export."""
    path = tmp_path / "taxonomy.tsv"
    lines = ["Feature ID\tTaxon\tConfidence"]
    for feature, lineage in LINEAGES.items():
        lines.append(f"{feature}\t{lineage}\t0.98")
    path.write_text("\n".join(lines) + "\n")
    return path


# Instance fixtures


@pytest.fixture
def sample_counts(sample_counts_data):
    return AsvTable(pl.DataFrame(sample_counts_data))


@pytest.fixture
def sample_taxonomy():
    return TaxonomyTable.from_lineages(LINEAGES)


@pytest.fixture
def sample_metadata(sample_metadata_data):
    return SampleMetadata(pl.DataFrame(sample_metadata_data))


@pytest.fixture
def sample_dataset(sample_counts, sample_taxonomy, sample_metadata, tree_nwk):
    """Complete dataset: counts, taxonomy, sequences, tree and metadata."""
    return AmpliconDataset(
        counts=sample_counts,
        taxonomy=sample_taxonomy,
        sequences=SEQUENCES,
        tree=tree_nwk,
        metadata=sample_metadata,
    )


@pytest.fixture
def sample_groups(sample_metadata):
    """``sample`` and ``diet`` per sample."""
    return sample_metadata.get_groups("diet")


# FASTQ fixtures


def write_fastq(path, records):
    """Write (title, seq, qual) records to a gzip FASTQ file."""
    with gzip.open(path, "wt") as fh:
        for title, seq, qual in records:
            fh.write(f"@{title}\n{seq}\n+\n{qual}\n")


@pytest.fixture
def raw_reads_dir(tmp_path):
    """Two samples of paired gzip FASTQ files, Illumina naming.

    Each sample has 10 pairs of 60 bp reads at Q40; in sample A1 the last
    two forward reads drop to Q2 after 30 bases.
    """
    raw = tmp_path / "raw"
    raw.mkdir()
    rng = np.random.default_rng(1)
    for sample in ("A1", "B1"):
        forward, reverse = [], []
        for i in range(10):
            fseq = "".join(rng.choice(list("ACGT"), size=60))
            rseq = "".join(rng.choice(list("ACGT"), size=60))
            fqual = "I" * 60
            if sample == "A1" and i >= 8:
                fqual = "I" * 30 + "#" * 30
            forward.append((f"{sample}.{i} 1:N:0", fseq, fqual))
            reverse.append((f"{sample}.{i} 2:N:0", rseq, "I" * 60))
        write_fastq(raw / f"{sample}_S1_L001_R1_001.fastq.gz", forward)
        write_fastq(raw / f"{sample}_S1_L001_R2_001.fastq.gz", reverse)
    return raw

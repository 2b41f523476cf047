"""Naive-Bayes k-mer taxonomy classifier and exact species matching.

The classifier follows the RDP approach: a multinomial naive-Bayes model
over k-mer presence, trained with one class per genus-level lineage. Each
query is classified from all its k-mers and then from random subsets of
1/8 of them; the fraction of subset calls agreeing with the full call down
to a rank is the bootstrap confidence at that rank.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from sklearn.feature_extraction.text import HashingVectorizer
from sklearn.naive_bayes import MultinomialNB

from microbiome_asv.core.config import ClassifierParams
from microbiome_asv.utils.io import iter_fasta_records, read_fasta
from microbiome_asv.utils.taxonomy import (
    TaxonomicRanks,
    format_lineage,
    parse_lineage,
)
from microbiome_asv.wrangle.lineages import RANK_COLUMNS, TaxonomyTable

logger = logging.getLogger(__name__)

# Ranks the naive-Bayes model resolves; species come from exact matching
CLASSIFIED_RANKS = [r for r in TaxonomicRanks.iter_from_domain() if r <= TaxonomicRanks.GENUS]

VALID_BASES = frozenset("ACGT")


def kmers(sequence: str, k: int) -> List[str]:
    """Unique k-mers of ``sequence`` that contain only A, C, G and T."""
    sequence = sequence.upper()
    seen = set()
    result = []
    for i in range(len(sequence) - k + 1):
        word = sequence[i:i + k]
        if word in seen or not VALID_BASES.issuperset(word):
            continue
        seen.add(word)
        result.append(word)
    return result


def _identity(doc: List[str]) -> List[str]:
    return doc


def read_reference_taxonomy(path: Union[str, Path]) -> Dict[str, str]:
    """Read an ``id<TAB>lineage`` table, with or without a header row."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference taxonomy not found: {path}")
    df = pl.read_csv(
        path,
        separator="\t",
        has_header=False,
        infer_schema_length=0,
        comment_prefix="#",
        truncate_ragged_lines=True,
    )
    if df.width < 2:
        raise ValueError(f"Reference taxonomy needs two columns: {path}")
    ids = df[:, 0].to_list()
    lineages = df[:, 1].to_list()
    if ids and ids[0].strip().lower() in ("feature id", "featureid", "id"):
        ids, lineages = ids[1:], lineages[1:]
    return dict(zip(ids, lineages))


def load_reference(
    fasta: Union[str, Path], taxonomy: Optional[Union[str, Path]] = None
) -> Tuple[List[str], List[str]]:
    """Reference sequences with their lineages.

    With a taxonomy table, sequences are matched to lineages by id and
    sequences without a lineage are skipped. Without one, the FASTA header
    itself is taken as the lineage (DADA2 training-set layout).

    Returns:
        Tuple of sequence list and lineage list of equal length
    """
    if taxonomy is None:
        # ">Bacteria;Firmicutes;..." or ">ID Bacteria;Firmicutes;..."; headers repeat
        seqs, lineages = [], []
        for seq_id, header, sequence in iter_fasta_records(fasta):
            seqs.append(sequence)
            lineages.append(header[len(seq_id):].strip() or seq_id)
        return seqs, lineages

    sequences = read_fasta(fasta)
    lineages = read_reference_taxonomy(taxonomy)
    missing = [i for i in sequences if i not in lineages]
    if missing:
        logger.warning(f"{len(missing)} reference sequences have no lineage and are skipped")
    ids = [i for i in sequences if i in lineages]
    return [sequences[i] for i in ids], [lineages[i] for i in ids]


class NaiveBayesClassifier:
    """Bootstrapped k-mer naive-Bayes classifier to genus level.

    Args:
        params: Classifier settings (k-mer size, bootstraps, confidence)
        seed: Seed for the bootstrap k-mer subsets
    """

    def __init__(self, params: Optional[ClassifierParams] = None, seed: int = 100):
        self.params = params or ClassifierParams()
        self.seed = seed
        self.vectorizer = HashingVectorizer(
            analyzer=_identity,
            n_features=self.params.n_features,
            alternate_sign=False,
            norm=None,
            binary=True,
        )
        self.model = MultinomialNB(alpha=self.params.smoothing)
        self._class_names: Optional[np.ndarray] = None

    @property
    def is_fitted(self) -> bool:
        return self._class_names is not None

    def fit(
        self, sequences: Sequence[str], lineages: Sequence[str]
    ) -> "NaiveBayesClassifier":
        """Train on reference sequences and their lineage strings.

        Lineages are cut to genus; each distinct genus-level lineage is one
        class.
        """
        if len(sequences) != len(lineages):
            raise ValueError("sequences and lineages must have the same length")
        if not sequences:
            raise ValueError("Empty reference")

        labels = [
            format_lineage(parse_lineage(lineage), TaxonomicRanks.GENUS)
            for lineage in lineages
        ]
        X = self.vectorizer.transform(
            kmers(seq, self.params.kmer_size) for seq in sequences
        )
        self.model.fit(X, labels)

        # names per class and rank for agreement checks
        self._class_names = np.array(
            [
                [parse_lineage(label)[rank.name] or "" for rank in CLASSIFIED_RANKS]
                for label in self.model.classes_
            ],
            dtype=object,
        )
        logger.info(
            f"Trained classifier on {len(sequences)} references, "
            f"{len(self.model.classes_)} genus-level classes"
        )
        return self

    @classmethod
    def from_reference(
        cls,
        fasta: Union[str, Path],
        taxonomy: Optional[Union[str, Path]] = None,
        params: Optional[ClassifierParams] = None,
        seed: int = 100,
    ) -> "NaiveBayesClassifier":
        """Build and train from reference files."""
        sequences, lineages = load_reference(fasta, taxonomy)
        return cls(params, seed=seed).fit(sequences, lineages)

    def _predict_indices(self, docs: List[List[str]]) -> np.ndarray:
        X = self.vectorizer.transform(docs)
        return np.argmax(self.model.predict_joint_log_proba(X), axis=1)

    def classify_one(
        self, sequence: str, rng: np.random.Generator
    ) -> Tuple[Dict[str, Optional[str]], Optional[float]]:
        """Classify one sequence.

        Returns:
            Tuple of rank -> name mapping (unconfident ranks None) and the
            bootstrap confidence of the deepest assigned rank
        """
        assigned: Dict[str, Optional[str]] = {c: None for c in RANK_COLUMNS}
        words = kmers(sequence, self.params.kmer_size)
        if not words:
            return assigned, None

        full = self._predict_indices([words])[0]
        subset_size = max(1, len(words) // 8)
        boot_docs = [
            [words[j] for j in rng.choice(len(words), size=subset_size, replace=False)]
            for _ in range(self.params.bootstraps)
        ]
        boot = self._predict_indices(boot_docs)

        agree = self._class_names[boot] == self._class_names[full]
        # A bootstrap supports a rank only if it agrees at every broader rank
        support = np.logical_and.accumulate(agree, axis=1).mean(axis=0)

        confidence = None
        for i, rank in enumerate(CLASSIFIED_RANKS):
            name = self._class_names[full, i]
            if support[i] < self.params.min_confidence or not name:
                break
            assigned[rank.name] = name
            confidence = float(support[i])
        return assigned, confidence

    def classify(self, sequences: Dict[str, str]) -> TaxonomyTable:
        """Classify feature sequences into a TaxonomyTable."""
        if not self.is_fitted:
            raise ValueError("Classifier has not been trained")
        rng = np.random.default_rng(self.seed)
        rows = []
        for feature_id, sequence in sequences.items():
            assigned, confidence = self.classify_one(sequence, rng)
            row = {"feature_id": feature_id, **assigned, "confidence": confidence}
            rows.append(row)

        schema = {"feature_id": pl.Utf8, **{c: pl.Utf8 for c in RANK_COLUMNS}}
        schema["confidence"] = pl.Float64
        table = TaxonomyTable(pl.DataFrame(rows, schema=schema))
        n_genus = table.taxonomy["genus"].is_not_null().sum()
        logger.info(f"Classified {len(rows)} sequences; {n_genus} assigned to genus")
        return table


def _species_reference(
    fasta: Union[str, Path]
) -> Dict[str, List[Tuple[str, str]]]:
    """Genus -> [(binomial, sequence)] from ``>ID Genus species`` headers."""
    by_genus: Dict[str, List[Tuple[str, str]]] = {}
    for _, header, sequence in iter_fasta_records(fasta):
        tokens = header.split()
        if len(tokens) < 3:
            continue
        genus, epithet = tokens[1], tokens[2]
        by_genus.setdefault(genus, []).append((f"{genus} {epithet}", sequence))
    return by_genus


def assign_species(
    taxonomy: TaxonomyTable,
    sequences: Dict[str, str],
    species_reference: Union[str, Path],
) -> TaxonomyTable:
    """Add species by exact sequence matching.

    A feature gets a species when its sequence occurs verbatim inside
    reference sequences of exactly one species of the genus it was already
    assigned to. Ambiguous or genus-discordant hits leave species empty.

    Args:
        taxonomy: Genus-level assignments
        sequences: feature_id -> sequence
        species_reference: FASTA with ``>ID Genus species`` headers

    Returns:
        TaxonomyTable with the ``species`` column filled where possible
    """
    by_genus = _species_reference(species_reference)
    genus_of = dict(
        zip(taxonomy.taxonomy["feature_id"].to_list(), taxonomy.taxonomy["genus"].to_list())
    )

    species: Dict[str, Optional[str]] = {}
    for feature_id, sequence in sequences.items():
        genus = genus_of.get(feature_id)
        if genus is None:
            continue
        hits = {
            name for name, ref in by_genus.get(genus, []) if sequence.upper() in ref
        }
        if len(hits) == 1:
            species[feature_id] = hits.pop()

    logger.info(f"Exact species match for {len(species)} of {len(sequences)} sequences")
    if not species:
        return taxonomy
    updated = taxonomy.taxonomy.with_columns(
        pl.col("feature_id")
        .replace_strict(species, default=None, return_dtype=pl.Utf8)
        .alias("species")
    )
    return TaxonomyTable(updated)

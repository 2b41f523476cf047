"""Per-feature taxonomy table."""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import polars as pl

from microbiome_asv.utils.taxonomy import (
    TaxonomicRanks,
    format_lineage,
    parse_lineage,
)

logger = logging.getLogger(__name__)

RANK_COLUMNS = TaxonomicRanks.column_names()


def _as_rank(rank: Union[str, TaxonomicRanks]) -> TaxonomicRanks:
    if isinstance(rank, str):
        return TaxonomicRanks.from_name(rank)
    return rank


class TaxonomyTable:
    """One row per feature with a column per taxonomic rank.

    Columns: ``feature_id``, ``domain`` ... ``species`` (nullable strings)
    and optionally ``confidence`` (float, the classifier's support for the
    deepest assigned rank).

    Attributes:
        taxonomy: Polars DataFrame
    """

    def __init__(self, taxonomy: Union[pl.DataFrame, pl.LazyFrame, Path, str]):
        if isinstance(taxonomy, (str, Path)):
            taxonomy = pl.read_csv(taxonomy, infer_schema_length=0)
        elif isinstance(taxonomy, pl.LazyFrame):
            taxonomy = taxonomy.collect()

        if "feature_id" not in taxonomy.columns:
            raise ValueError("Taxonomy table requires a 'feature_id' column")

        for column in RANK_COLUMNS:
            if column not in taxonomy.columns:
                taxonomy = taxonomy.with_columns(
                    pl.lit(None, dtype=pl.Utf8).alias(column)
                )
        columns = ["feature_id"] + RANK_COLUMNS
        casts = [pl.col(c).cast(pl.Utf8) for c in columns]
        if "confidence" in taxonomy.columns:
            columns.append("confidence")
            casts.append(pl.col("confidence").cast(pl.Float64))

        taxonomy = taxonomy.select(casts)
        duplicated = taxonomy.filter(pl.col("feature_id").is_duplicated())
        if duplicated.height:
            raise ValueError(
                f"Duplicate feature ids in taxonomy: {duplicated['feature_id'].unique().to_list()[:10]}"
            )
        self.taxonomy = taxonomy

    @classmethod
    def from_lineages(
        cls,
        lineages: Dict[str, Optional[str]],
        confidence: Optional[Dict[str, float]] = None,
    ) -> "TaxonomyTable":
        """Build from a feature_id -> lineage string mapping."""
        rows = []
        for feature_id, lineage in lineages.items():
            row = {"feature_id": feature_id}
            row.update(parse_lineage(lineage))
            if confidence is not None:
                row["confidence"] = confidence.get(feature_id)
            rows.append(row)
        schema = {"feature_id": pl.Utf8, **{c: pl.Utf8 for c in RANK_COLUMNS}}
        if confidence is not None:
            schema["confidence"] = pl.Float64
        return cls(pl.DataFrame(rows, schema=schema))

    @classmethod
    def from_qiime_tsv(cls, path: Union[Path, str]) -> "TaxonomyTable":
        """Read a QIIME 2 ``taxonomy.tsv`` export (Feature ID, Taxon, Confidence)."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Taxonomy TSV not found: {path}")
        df = pl.read_csv(
            path, separator="\t", comment_prefix="#", infer_schema_length=0
        )
        id_col = df.columns[0]
        if "Taxon" not in df.columns:
            raise ValueError(f"Taxonomy TSV has no 'Taxon' column: {path}")
        lineages = dict(zip(df[id_col].to_list(), df["Taxon"].to_list()))
        confidence = None
        if "Confidence" in df.columns:
            confidence = {
                k: float(v) if v not in (None, "") else None
                for k, v in zip(df[id_col].to_list(), df["Confidence"].to_list())
            }
        return cls.from_lineages(lineages, confidence)

    def save(self, path: Union[Path, str]) -> None:
        """Write ``taxonomy.csv`` into a directory."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        self.taxonomy.write_csv(path / "taxonomy.csv")

    @classmethod
    def load(cls, path: Union[Path, str]) -> "TaxonomyTable":
        path = Path(path)
        taxonomy_path = path / "taxonomy.csv" if path.is_dir() else path
        if not taxonomy_path.exists():
            raise FileNotFoundError(f"taxonomy.csv not found in {path}")
        return cls(taxonomy_path)

    def get_features(self) -> List[str]:
        return self.taxonomy["feature_id"].to_list()

    def keep_features(self, feature_ids: Sequence[str]) -> "TaxonomyTable":
        return TaxonomyTable(
            self.taxonomy.filter(pl.col("feature_id").is_in(list(feature_ids)))
        )

    def label_expr(self, rank: Union[str, TaxonomicRanks]) -> pl.Expr:
        """Expression for the deepest assigned name at or above ``rank``.

        Unassigned ranks fall back to the nearest assigned parent, carrying
        that parent's prefix (``f__Lachnospiraceae`` for a genus-less ASV),
        so features are never pooled into a single null label. Features
        with no assignment at all become ``Unassigned``.
        """
        rank = _as_rank(rank)
        expressions = [pl.col(rank.name)]
        for parent in rank.iter_up():
            if parent is rank:
                continue
            expressions.append(pl.lit(parent.prefix) + pl.col(parent.name))
        expressions.append(pl.lit("Unassigned"))
        return pl.coalesce(expressions)

    def labels(self, rank: Union[str, TaxonomicRanks]) -> pl.DataFrame:
        """``feature_id`` and ``label`` at ``rank``."""
        return self.taxonomy.select(
            "feature_id", self.label_expr(rank).alias("label")
        )

    def lineage_strings(
        self, rank: Union[str, TaxonomicRanks] = TaxonomicRanks.SPECIES
    ) -> Dict[str, str]:
        """feature_id -> prefixed lineage string down to ``rank``."""
        rank = _as_rank(rank)
        return {
            row["feature_id"]: format_lineage(row, rank)
            for row in self.taxonomy.iter_rows(named=True)
        }

    def exclude(self, patterns: Sequence[str]) -> "TaxonomyTable":
        """Drop features whose name at any rank matches one of ``patterns``.

        Matching is case-insensitive substring search, which removes
        organelle reads (``Chloroplast`` order, ``Mitochondria`` family)
        wherever the reference places them.
        """
        if not patterns:
            return self
        regex = "(?i)" + "|".join(re.escape(p) for p in patterns)
        hit = pl.any_horizontal(
            [pl.col(c).fill_null("").str.contains(regex) for c in RANK_COLUMNS]
        )
        kept = self.taxonomy.filter(~hit)
        removed = self.taxonomy.height - kept.height
        if removed:
            logger.info(f"Excluded {removed} features matching {list(patterns)}")
        return TaxonomyTable(kept)

    def require_assigned(
        self, rank: Union[str, TaxonomicRanks]
    ) -> "TaxonomyTable":
        """Keep only features assigned at ``rank``."""
        rank = _as_rank(rank)
        return TaxonomyTable(
            self.taxonomy.filter(pl.col(rank.name).is_not_null())
        )

    def __len__(self) -> int:
        return self.taxonomy.height

    def __repr__(self) -> str:
        return f"TaxonomyTable(n_features={self.taxonomy.height})"

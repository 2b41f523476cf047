"""ASV abundance table in long form."""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set, Type, Union

import numpy as np
import polars as pl

from microbiome_asv.utils.io import header_overrides
from microbiome_asv.wrangle.matrix import CountMatrix

logger = logging.getLogger(__name__)


class Fields(Enum):
    "Base class for field definitions with validation properties."

    def __init__(
        self,
        column_name: str,
        dtype: Any,
        required: bool,
        description: str,
        alternatives: Optional[List[str]] = None,
    ):
        self.column_name = column_name
        self.dtype = dtype
        self.required = required
        self.description = description
        self.alternatives = alternatives or []
        self.all_names = [column_name] + self.alternatives

    def find_column_name(self, lf: pl.LazyFrame) -> Optional[str]:
        """Find the actual column name in the LazyFrame from possible
        alternatives."""
        schema_names = lf.collect_schema().names()
        for name in self.all_names:
            if name in schema_names:
                return name
        return None


class AbundanceFields(Fields):
    """Enumeration of abundance table fields with validation properties."""

    SAMPLE = (
        "sample",
        pl.Utf8,
        True,
        "Sample identifier",
        ["sample-id", "sample_id", "acc"],
    )
    FEATURE = (
        "feature_id",
        pl.Utf8,
        True,
        "ASV identifier (hash, label or sequence)",
        ["feature-id", "Feature ID", "asv", "OTU ID", "#OTU ID"],
    )
    COUNT = (
        "count",
        pl.Int64,
        True,
        "Read count",
        ["counts", "abundance", "reads"],
    )


class AsvTable:
    """Long-form ASV count container (LazyFrame only).

    Stores one row per non-zero (sample, feature) pair with exactly three
    columns:
    - sample: Sample identifier
    - feature_id: ASV identifier
    - count: Integer read count

    Attributes:
        counts: Polars LazyFrame
    """

    def __init__(
        self,
        counts: Union[Path, str, pl.LazyFrame, pl.DataFrame],
    ):
        """Initialize AsvTable with validation and standardization.

        Args:
            counts: Path to a long-form CSV or a LazyFrame/DataFrame

        Raises:
            ValueError: If required columns are missing or counts are negative
        """
        lf = self._load_and_standardize(counts, AbundanceFields)
        lf = lf.select(
            pl.col("sample").cast(pl.Utf8),
            pl.col("feature_id").cast(pl.Utf8),
            pl.col("count").cast(pl.Int64),
        )
        negative = lf.filter(pl.col("count") < 0).collect()
        if negative.height:
            raise ValueError(
                f"Counts must be non-negative; {negative.height} negative entries found"
            )
        # Collapse duplicate pairs and drop zeros
        self.counts = (
            lf.group_by(["sample", "feature_id"])
            .agg(pl.col("count").sum())
            .filter(pl.col("count") > 0)
            .sort(["sample", "feature_id"])
        )

    def _load_data(
        self, data_source: Union[Path, str, pl.LazyFrame, pl.DataFrame]
    ) -> pl.LazyFrame:
        """Load data from various sources into a LazyFrame.

        Args:
            data_source: Path to file, existing LazyFrame, or DataFrame

        Returns:
            LazyFrame
        """
        if isinstance(data_source, pl.LazyFrame):
            return data_source
        elif isinstance(data_source, pl.DataFrame):
            return data_source.lazy()
        elif isinstance(data_source, (str, Path)):
            id_columns = AbundanceFields.SAMPLE.all_names + AbundanceFields.FEATURE.all_names
            return pl.scan_csv(
                data_source,
                schema_overrides=header_overrides(data_source, id_columns, ","),
            )
        else:
            raise ValueError(
                f"Unsupported data source type: {type(data_source)}"
            )

    def _validate_and_standardize_fields(
        self, lf: pl.LazyFrame, field_enum: Type[Enum]
    ) -> pl.LazyFrame:
        """Validate required fields and standardize column names.

        Args:
            lf: LazyFrame to validate and standardize
            field_enum: Enum class with field definitions

        Returns:
            LazyFrame with standardized column names
        """
        missing_required = []
        rename_mapping = {}

        for field in field_enum:  # type: ignore
            actual_column = field.find_column_name(lf)  # type: ignore
            if actual_column:
                if actual_column != field.column_name:  # type: ignore
                    rename_mapping[actual_column] = field.column_name  # type: ignore
            elif field.required:  # type: ignore
                missing_required.append(
                    f"{field.column_name} (tried: {field.all_names})"  # type: ignore
                )

        if missing_required:
            raise ValueError(f"Missing required fields: {missing_required}")

        if rename_mapping:
            lf = lf.rename(rename_mapping)

        return lf

    def _load_and_standardize(
        self,
        data_source: Union[Path, str, pl.LazyFrame, pl.DataFrame],
        field_enum: Type[Enum],
    ) -> pl.LazyFrame:
        lf = self._load_data(data_source)
        return self._validate_and_standardize_fields(lf, field_enum)

    @classmethod
    def from_wide(
        cls, df: pl.DataFrame, feature_column: Optional[str] = None
    ) -> "AsvTable":
        """Create AsvTable from a features-as-rows, samples-as-columns frame.

        This is the layout of a BIOM table converted to TSV.

        Args:
            df: Wide DataFrame
            feature_column: Column holding feature IDs (defaults to first column)

        Returns:
            AsvTable instance
        """
        feature_column = feature_column or df.columns[0]
        if feature_column not in df.columns:
            raise ValueError(
                f"Specified feature_column '{feature_column}' not found in DataFrame columns"
            )
        sample_columns = [c for c in df.columns if c != feature_column]
        if not sample_columns:
            raise ValueError("Wide table has no sample columns")

        long_df = (
            df.with_columns(
                [pl.col(c).cast(pl.Float64) for c in sample_columns]
            )
            .unpivot(
                index=feature_column,
                on=sample_columns,
                variable_name="sample",
                value_name="count",
            )
            .rename({feature_column: "feature_id"})
            .with_columns(pl.col("count").round(0).cast(pl.Int64))
        )
        return cls(long_df)

    @classmethod
    def from_biom_tsv(cls, path: Union[Path, str]) -> "AsvTable":
        """Read a ``biom convert --to-tsv`` export.

        The export starts with a ``# Constructed from biom file`` comment
        line followed by a ``#OTU ID`` header.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"BIOM TSV not found: {path}")

        with path.open("r", encoding="utf-8") as fh:
            first = fh.readline()
        skip = 1 if first.startswith("# ") or first.startswith("# Constructed") else 0

        df = pl.read_csv(
            path,
            separator="\t",
            skip_rows=skip,
            infer_schema_length=0,
        )
        return cls.from_wide(df, feature_column=df.columns[0])

    @classmethod
    def scan(cls, counts: Union[Path, str]) -> "AsvTable":
        """Lazily load AsvTable from a file or a saved directory.

        Args:
            counts: Path to counts CSV file or directory containing counts.csv

        Returns:
            AsvTable instance
        """
        counts_path = Path(counts)
        if counts_path.is_dir():
            counts_path = counts_path / "counts.csv"
        return cls(counts=str(counts_path))

    def save(self, path: Union[Path, str]) -> None:
        """Save AsvTable to ``counts.csv`` in a directory."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        self.counts.collect().write_csv(path / "counts.csv")

    @classmethod
    def load(cls, path: Union[Path, str]) -> "AsvTable":
        """Load AsvTable from directory containing counts.csv."""
        path = Path(path)
        counts_path = path / "counts.csv"
        if not counts_path.exists():
            raise FileNotFoundError(f"counts.csv not found in {path}")
        return cls.scan(counts_path)

    def _new(self, lf: pl.LazyFrame) -> "AsvTable":
        new_instance = self.__class__.__new__(self.__class__)
        new_instance.counts = lf
        return new_instance

    def _filter_by_sample(
        self, samples: Union[pl.LazyFrame, pl.DataFrame]
    ) -> "AsvTable":
        """Create new AsvTable filtered by sample IDs.

        Args:
            samples: LazyFrame containing sample IDs to keep

        Returns:
            New AsvTable instance with filtered data
        """
        logger.debug("Filtering counts by sample")
        if isinstance(samples, pl.DataFrame):
            samples = samples.lazy()
        return self._new(
            self.counts.join(samples.select("sample"), on="sample", how="semi")
        )

    def keep_features(self, feature_ids: Sequence[str]) -> "AsvTable":
        """Restrict the table to the given feature IDs."""
        keep = pl.DataFrame({"feature_id": list(feature_ids)}, schema={"feature_id": pl.Utf8})
        return self._new(
            self.counts.join(keep.lazy(), on="feature_id", how="semi")
        )

    def _get_sample_list(self) -> Set[str]:
        return set(self.get_samples())

    def get_samples(self) -> List[str]:
        """Get sorted list of unique sample identifiers."""
        return (
            self.counts.select("sample")
            .unique()
            .sort("sample")
            .collect()
            .to_series()
            .to_list()
        )

    def get_features(self) -> List[str]:
        """Get sorted list of unique feature identifiers."""
        return (
            self.counts.select("feature_id")
            .unique()
            .sort("feature_id")
            .collect()
            .to_series()
            .to_list()
        )

    def library_sizes(self) -> pl.DataFrame:
        """Total reads and number of observed features per sample."""
        return (
            self.counts.group_by("sample")
            .agg(
                pl.col("count").sum().alias("reads"),
                pl.col("feature_id").n_unique().alias("features"),
            )
            .sort("sample")
            .collect()
        )

    def feature_totals(self) -> pl.DataFrame:
        """Total reads per feature, largest first."""
        return (
            self.counts.group_by("feature_id")
            .agg(pl.col("count").sum().alias("reads"))
            .sort(["reads", "feature_id"], descending=[True, False])
            .collect()
        )

    def prevalence(self) -> pl.DataFrame:
        """Number and fraction of samples in which each feature occurs."""
        n_samples = max(len(self.get_samples()), 1)
        return (
            self.counts.group_by("feature_id")
            .agg(pl.col("sample").n_unique().alias("n_samples"))
            .with_columns(
                (pl.col("n_samples") / n_samples).alias("prevalence")
            )
            .sort("feature_id")
            .collect()
        )

    def prune_samples(self, min_reads: int) -> "AsvTable":
        """Drop samples with fewer than ``min_reads`` total reads."""
        passing = (
            self.counts.group_by("sample")
            .agg(pl.col("count").sum().alias("reads"))
            .filter(pl.col("reads") >= min_reads)
            .select("sample")
        )
        pruned = self._filter_by_sample(passing)
        dropped = self._get_sample_list() - pruned._get_sample_list()
        if dropped:
            logger.info(
                f"Dropped {len(dropped)} samples below {min_reads} reads: {sorted(dropped)}"
            )
        return pruned

    def prune_features(
        self, min_count: int = 1, min_prevalence: float = 0.0
    ) -> "AsvTable":
        """Drop features below a total count or a prevalence fraction.

        Args:
            min_count: Minimum total reads across all samples
            min_prevalence: Minimum fraction of samples containing the feature

        Returns:
            New AsvTable instance
        """
        n_samples = max(len(self.get_samples()), 1)
        passing = (
            self.counts.group_by("feature_id")
            .agg(
                pl.col("count").sum().alias("reads"),
                pl.col("sample").n_unique().alias("n_samples"),
            )
            .filter(
                (pl.col("reads") >= min_count)
                & ((pl.col("n_samples") / n_samples) >= min_prevalence)
            )
            .select("feature_id")
        )
        return self._new(self.counts.join(passing, on="feature_id", how="semi"))

    def relative_abundance(self) -> pl.DataFrame:
        """Long-form table with a ``relabund`` column (per-sample proportions)."""
        return (
            self.counts.with_columns(
                (pl.col("count") / pl.col("count").sum().over("sample")).alias(
                    "relabund"
                )
            )
            .sort(["sample", "feature_id"])
            .collect()
        )

    def rarefy(self, depth: int, seed: int = 100) -> "AsvTable":
        """Subsample every sample to ``depth`` reads without replacement.

        Samples with fewer than ``depth`` reads are dropped. Features that
        end up absent everywhere disappear with the zero rows.

        Args:
            depth: Target reads per sample
            seed: Seed for the numpy random generator

        Returns:
            New rarefied AsvTable instance
        """
        if depth <= 0:
            raise ValueError("Rarefaction depth must be positive")
        matrix = self.to_matrix()
        keep = matrix.row_sums() >= depth
        dropped = [s for s, k in zip(matrix.sample_ids, keep) if not k]
        if dropped:
            logger.info(
                f"Rarefaction to {depth} drops {len(dropped)} samples: {dropped}"
            )
        if not keep.any():
            raise ValueError(f"No samples have at least {depth} reads")

        rng = np.random.default_rng(seed)
        rows = [
            rng.multivariate_hypergeometric(matrix.values[i], depth)
            for i in np.flatnonzero(keep)
        ]
        rarefied = CountMatrix(
            [s for s, k in zip(matrix.sample_ids, keep) if k],
            matrix.feature_ids,
            np.vstack(rows),
        )
        return AsvTable(rarefied.to_long())

    def to_matrix(
        self,
        sample_order: Optional[Sequence[str]] = None,
        feature_order: Optional[Sequence[str]] = None,
    ) -> CountMatrix:
        """Dense samples x features integer matrix."""
        return CountMatrix.from_long(
            self.counts.collect(),
            value_column="count",
            sample_order=sample_order,
            feature_order=feature_order,
        )

    def __repr__(self) -> str:
        return (
            f"AsvTable(n_samples={len(self.get_samples())}, "
            f"n_features={len(self.get_features())})"
        )

"""Sample metadata container keyed by sample identifier."""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set, Union

import pandas as pd
import polars as pl

from microbiome_asv.utils.io import header_overrides

logger = logging.getLogger(__name__)


class MetadataFields(Enum):
    """Enumeration of metadata fields with validation properties."""

    def __init__(
        self,
        column_name: str,
        dtype,
        required: bool,
        description: str,
        alternatives: List[str] = None,
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


class CoreMetadataFields(MetadataFields):
    """Fields every sample metadata table must provide."""

    # Format: (column_name, polars_dtype, is_required, description, alternative_names)
    SAMPLE = (
        "sample",
        pl.Utf8,
        True,
        "Unique sample identifier",
        [
            "sample-id",
            "sample_id",
            "sampleid",
            "#SampleID",
            "SampleID",
            "sample-name",
            "id",
        ],
    )


class SampleMetadata:
    """Wide-form sample metadata container (LazyFrame only).

    One row per sample; the identifier column is standardised to ``sample``
    and cast to string. Any other column is an experimental variable.

    Attributes:
        metadata: Polars LazyFrame
    """

    def __init__(
        self,
        metadata: Union[Path, str, pl.LazyFrame, pl.DataFrame],
    ):
        """Initialize SampleMetadata with validation and standardization.

        Args:
            metadata: Path to a metadata file (TSV unless the suffix is
                ``.csv``) or LazyFrame/DataFrame with a sample column

        Raises:
            ValueError: If the sample identifier column is missing
        """
        lf = self._load_data(metadata)
        lf = self._validate_and_standardize(lf, CoreMetadataFields)
        self.metadata = lf.with_columns(pl.col("sample").cast(pl.Utf8))

    def _load_data(
        self, data_source: Union[Path, str, pl.LazyFrame, pl.DataFrame]
    ) -> pl.LazyFrame:
        """Load data from various sources.

        QIIME 2 metadata files may carry a ``#q2:types`` directive row right
        after the header; it is dropped here.

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
            path = Path(data_source)
            if not path.exists():
                raise FileNotFoundError(f"Metadata file not found: {path}")
            separator = "," if path.suffix.lower() == ".csv" else "\t"
            with open(path, "r", encoding="utf-8") as fh:
                fh.readline()
                has_directives = fh.readline().startswith("#q2:")
            return pl.read_csv(
                path,
                separator=separator,
                skip_rows_after_header=1 if has_directives else 0,
                schema_overrides=header_overrides(
                    path, CoreMetadataFields.SAMPLE.all_names, separator
                ),
                infer_schema_length=10000,
                null_values=["", "NA", "NaN"],
            ).lazy()
        else:
            raise ValueError(
                f"Unsupported data source type: {type(data_source)}"
            )

    def _validate_and_standardize(
        self, lf: pl.LazyFrame, field_enum
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

        # Find actual columns and build rename mapping
        for field in field_enum:
            actual_column = field.find_column_name(lf)
            if actual_column:
                # Only rename if the actual column name is different from standard
                if actual_column != field.column_name:
                    rename_mapping[actual_column] = field.column_name
            elif field.required:
                missing_required.append(
                    f"{field.column_name} (tried: {field.all_names})"
                )

        if missing_required:
            raise ValueError(f"Missing required fields: {missing_required}")

        # Rename columns to standard names
        if rename_mapping:
            lf = lf.rename(rename_mapping)

        return lf

    @classmethod
    def scan(cls, metadata: Union[Path, str]) -> "SampleMetadata":
        """Load SampleMetadata from a tab-delimited (or CSV) file.

        Args:
            metadata: Path to metadata file

        Returns:
            SampleMetadata instance
        """
        return cls(metadata=metadata)

    def _filter_by_sample(
        self, samples: Union[pl.LazyFrame, pl.DataFrame]
    ) -> "SampleMetadata":
        """Create new SampleMetadata filtered by sample IDs.

        Args:
            samples: LazyFrame containing sample IDs to keep

        Returns:
            New SampleMetadata instance with filtered data
        """
        logger.debug("Filtering metadata")
        if isinstance(samples, pl.DataFrame):
            samples = samples.lazy()

        new_instance = SampleMetadata.__new__(SampleMetadata)
        new_instance.metadata = self.metadata.join(
            samples.select(pl.col("sample").cast(pl.Utf8)),
            on="sample",
            how="semi",
        )
        return new_instance

    def _get_sample_list(self) -> Set[str]:
        """Extract sample IDs from this metadata instance.

        Returns:
            Set of sample IDs
        """
        return set(self.get_samples())

    def get_samples(self) -> List[str]:
        """Sample identifiers in file order."""
        return self.metadata.select("sample").collect().to_series().to_list()

    def columns(self) -> List[str]:
        """Names of all metadata columns."""
        return self.metadata.collect_schema().names()

    def require_columns(self, columns: Sequence[str]) -> None:
        """Raise ValueError if any of ``columns`` is absent."""
        missing = [c for c in columns if c not in self.columns()]
        if missing:
            raise ValueError(f"Missing metadata columns: {missing}")

    def get_groups(self, column: str) -> pl.DataFrame:
        """Return ``sample`` and ``column`` (as string) for non-null rows."""
        self.require_columns([column])
        return (
            self.metadata.select(
                "sample", pl.col(column).cast(pl.Utf8).alias(column)
            )
            .filter(pl.col(column).is_not_null())
            .collect()
        )

    def filter_by_values(
        self, column: str, values: Sequence[Any]
    ) -> "SampleMetadata":
        """Keep samples whose ``column`` value is one of ``values``.

        Values are compared as strings so numeric group codes in the YAML
        configuration match numeric metadata columns.

        Args:
            column: Metadata column to filter on
            values: Allowed values

        Returns:
            Filtered SampleMetadata instance
        """
        self.require_columns([column])
        allowed = [str(v) for v in values]
        passing_samples = self.metadata.filter(
            pl.col(column).cast(pl.Utf8).is_in(allowed)
        ).select("sample")
        return self._filter_by_sample(passing_samples)

    def to_pandas(self) -> pd.DataFrame:
        """Metadata as a pandas DataFrame indexed by sample.

        This is the shape scikit-bio and pydeseq2 expect.
        """
        df = self.metadata.collect().to_pandas()
        return df.set_index("sample")

    def save(self, path: Union[Path, str]) -> None:
        """Save SampleMetadata to CSV in a directory.

        Args:
            path: Directory path to save files (will be created if doesn't exist)
        """
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        self.metadata.collect().write_csv(path / "metadata.csv")

    @classmethod
    def load(cls, path: Union[Path, str]) -> "SampleMetadata":
        """Load SampleMetadata from directory containing metadata.csv.

        Args:
            path: Directory path containing metadata.csv

        Returns:
            SampleMetadata instance
        """
        path = Path(path)

        metadata_path = path / "metadata.csv"
        if not metadata_path.exists():
            raise FileNotFoundError(f"Required files not found in {path}")

        return cls.scan(metadata=str(metadata_path))

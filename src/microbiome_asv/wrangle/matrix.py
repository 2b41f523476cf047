"""Dense sample x feature count matrix used at the statistics boundary."""

from typing import Any, List, Optional, Sequence

import numpy as np
import pandas as pd
import polars as pl

# standardised error messages
ERR_MATRIX_ROWS = "Count matrix rows ({rows}) must match sample_ids length ({n})"
ERR_MATRIX_COLS = "Count matrix cols ({cols}) must match feature_ids length ({n})"


class CountMatrix:
    """Samples x features matrix with ordered identifiers.

    scikit-bio, scipy and pydeseq2 all want a dense 2-D array plus id
    vectors; this class is that hand-off point. Values are usually integer
    read counts, but relative abundances are allowed.
    """

    def __init__(
        self,
        sample_ids: Sequence[str],
        feature_ids: Sequence[str],
        values: Any,
    ):
        """Initialize CountMatrix with validation.

        Args:
            sample_ids: Ordered sample IDs (rows)
            feature_ids: Ordered feature IDs (columns)
            values: 2-D array-like of shape (n_samples, n_features)

        Raises:
            ValueError: If dimensions don't match
        """
        values = np.asarray(values)
        if values.ndim != 2:
            raise ValueError(f"Count matrix must be 2-D, got {values.ndim}-D")
        if values.shape[0] != len(sample_ids):
            raise ValueError(
                ERR_MATRIX_ROWS.format(rows=values.shape[0], n=len(sample_ids))
            )
        if values.shape[1] != len(feature_ids):
            raise ValueError(
                ERR_MATRIX_COLS.format(cols=values.shape[1], n=len(feature_ids))
            )

        self.sample_ids: List[str] = list(sample_ids)
        self.feature_ids: List[str] = list(feature_ids)
        self.values = values

        # Cache indices for O(1) lookups
        self._sample_idx = {s: i for i, s in enumerate(self.sample_ids)}
        self._feature_idx = {f: i for i, f in enumerate(self.feature_ids)}

    @property
    def shape(self):
        return self.values.shape

    @classmethod
    def from_long(
        cls,
        df: pl.DataFrame,
        value_column: str = "count",
        sample_order: Optional[Sequence[str]] = None,
        feature_order: Optional[Sequence[str]] = None,
    ) -> "CountMatrix":
        """Pivot a long ``sample, feature_id, <value>`` frame into a matrix.

        Missing combinations become zero. Explicit orders may include ids
        absent from ``df`` (all-zero rows/columns).
        """
        samples = (
            list(sample_order)
            if sample_order is not None
            else sorted(df["sample"].unique().to_list())
        )
        features = (
            list(feature_order)
            if feature_order is not None
            else sorted(df["feature_id"].unique().to_list())
        )
        sample_idx = {s: i for i, s in enumerate(samples)}
        feature_idx = {f: i for i, f in enumerate(features)}

        dtype = np.int64 if df.schema[value_column].is_integer() else np.float64
        values = np.zeros((len(samples), len(features)), dtype=dtype)
        subset = df.filter(
            pl.col("sample").is_in(samples) & pl.col("feature_id").is_in(features)
        )
        rows = np.array(
            [sample_idx[s] for s in subset["sample"].to_list()], dtype=np.int64
        )
        cols = np.array(
            [feature_idx[f] for f in subset["feature_id"].to_list()],
            dtype=np.int64,
        )
        if len(rows):
            np.add.at(values, (rows, cols), subset[value_column].to_numpy())
        return cls(samples, features, values)

    def to_long(self, value_column: str = "count") -> pl.DataFrame:
        """Back to long form, dropping zeros."""
        rows, cols = np.nonzero(self.values)
        return pl.DataFrame(
            {
                "sample": [self.sample_ids[i] for i in rows],
                "feature_id": [self.feature_ids[j] for j in cols],
                value_column: self.values[rows, cols],
            }
        )

    def to_pandas(self) -> pd.DataFrame:
        """Samples-as-rows pandas DataFrame (pydeseq2 layout)."""
        return pd.DataFrame(
            self.values, index=self.sample_ids, columns=self.feature_ids
        )

    def subset(
        self,
        sample_ids: Optional[Sequence[str]] = None,
        feature_ids: Optional[Sequence[str]] = None,
    ) -> "CountMatrix":
        """Select and reorder rows and/or columns by id."""
        sample_ids = list(sample_ids) if sample_ids is not None else self.sample_ids
        feature_ids = (
            list(feature_ids) if feature_ids is not None else self.feature_ids
        )
        missing = [s for s in sample_ids if s not in self._sample_idx]
        missing += [f for f in feature_ids if f not in self._feature_idx]
        if missing:
            raise ValueError(f"Unknown ids requested: {missing[:10]}")
        rows = [self._sample_idx[s] for s in sample_ids]
        cols = [self._feature_idx[f] for f in feature_ids]
        return CountMatrix(
            sample_ids, feature_ids, self.values[np.ix_(rows, cols)]
        )

    def row_sums(self) -> np.ndarray:
        return self.values.sum(axis=1)

    def proportions(self) -> "CountMatrix":
        """Row-normalise to relative abundances (all-zero rows stay zero)."""
        totals = self.row_sums().astype(np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            props = np.where(
                totals[:, None] > 0, self.values / totals[:, None], 0.0
            )
        return CountMatrix(self.sample_ids, self.feature_ids, props)

    def presence_absence(self) -> "CountMatrix":
        return CountMatrix(
            self.sample_ids, self.feature_ids, (self.values > 0).astype(np.int64)
        )

    def __repr__(self) -> str:
        return (
            f"CountMatrix(n_samples={len(self.sample_ids)}, "
            f"n_features={len(self.feature_ids)})"
        )

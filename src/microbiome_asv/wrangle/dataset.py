"""Combined ASV table, taxonomy, sequences, tree and sample metadata."""

import json
import logging
import shutil
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import polars as pl
from skbio import TreeNode

from microbiome_asv.utils.io import read_fasta, write_fasta
from microbiome_asv.utils.taxonomy import TaxonomicRanks
from microbiome_asv.wrangle.abundance import AsvTable
from microbiome_asv.wrangle.lineages import RANK_COLUMNS, TaxonomyTable
from microbiome_asv.wrangle.metadata import SampleMetadata

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"


class AmpliconDataset:
    """Global container for the output of the denoising pipeline.

    Can be initialized empty and components added iteratively, or with all
    data at once. Every time a component is added the sample and feature
    sets are re-synchronised:

    - samples: strict intersection of count-table and metadata samples
    - features: count-table features that are also in the taxonomy table
      and the tree (whichever of those are present)

    Examples:
        # Builder pattern
        dataset = (AmpliconDataset()
                   .add_counts(AsvTable.from_biom_tsv('feature-table.tsv'))
                   .add_taxonomy(TaxonomyTable.from_qiime_tsv('taxonomy.tsv'))
                   .add_tree('tree.nwk')
                   .add_metadata('metadata.tsv'))

        # Reload a saved dataset
        dataset = AmpliconDataset.load('results/run01/dataset')
    """

    def __init__(
        self,
        counts: Optional[Union[AsvTable, str, Path, pl.LazyFrame, pl.DataFrame]] = None,
        taxonomy: Optional[Union[TaxonomyTable, pl.DataFrame]] = None,
        sequences: Optional[Dict[str, str]] = None,
        tree: Optional[Union[TreeNode, str, Path]] = None,
        metadata: Optional[Union[SampleMetadata, str, Path, pl.DataFrame]] = None,
        read_tracking: Optional[pl.DataFrame] = None,
    ):
        """Initialize AmpliconDataset with optional components.

        Args:
            counts: AsvTable instance or data source
            taxonomy: TaxonomyTable instance or DataFrame
            sequences: Representative sequence per feature ID
            tree: Rooted tree (TreeNode or newick path)
            metadata: SampleMetadata instance or data source
            read_tracking: Per-sample read counts through the pipeline
        """
        self.counts: Optional[AsvTable] = None
        self.taxonomy: Optional[TaxonomyTable] = None
        self.sequences: Dict[str, str] = {}
        self.tree: Optional[TreeNode] = None
        self.metadata: Optional[SampleMetadata] = None
        self.read_tracking: Optional[pl.DataFrame] = read_tracking
        self._sample_ids: Optional[List[str]] = None
        self._feature_ids: Optional[List[str]] = None

        if counts is not None:
            self.counts = counts if isinstance(counts, AsvTable) else AsvTable(counts)
        if taxonomy is not None:
            self.taxonomy = (
                taxonomy
                if isinstance(taxonomy, TaxonomyTable)
                else TaxonomyTable(taxonomy)
            )
        if sequences:
            self.sequences = dict(sequences)
        if tree is not None:
            self.tree = self._load_tree(tree)
        if metadata is not None:
            self.metadata = self._load_metadata(metadata)

        self._sync()

    # Builders

    def add_counts(
        self, counts: Union[AsvTable, str, Path, pl.LazyFrame, pl.DataFrame]
    ) -> "AmpliconDataset":
        """Add the ASV count table. Returns self for chaining."""
        self.counts = counts if isinstance(counts, AsvTable) else AsvTable(counts)
        self._sync()
        return self

    def add_taxonomy(
        self, taxonomy: Union[TaxonomyTable, pl.DataFrame]
    ) -> "AmpliconDataset":
        """Add the taxonomy table. Returns self for chaining."""
        self.taxonomy = (
            taxonomy
            if isinstance(taxonomy, TaxonomyTable)
            else TaxonomyTable(taxonomy)
        )
        self._sync()
        return self

    def add_sequences(self, sequences: Dict[str, str]) -> "AmpliconDataset":
        """Add representative sequences. Returns self for chaining."""
        self.sequences = dict(sequences)
        self._sync()
        return self

    def add_tree(self, tree: Union[TreeNode, str, Path]) -> "AmpliconDataset":
        """Add the phylogenetic tree. Returns self for chaining."""
        self.tree = self._load_tree(tree)
        self._sync()
        return self

    def add_metadata(
        self, metadata: Union[SampleMetadata, str, Path, pl.DataFrame]
    ) -> "AmpliconDataset":
        """Add sample metadata. Returns self for chaining."""
        self.metadata = self._load_metadata(metadata)
        self._sync()
        return self

    def add_read_tracking(self, read_tracking: pl.DataFrame) -> "AmpliconDataset":
        self.read_tracking = read_tracking
        return self

    @staticmethod
    def _load_tree(tree: Union[TreeNode, str, Path]) -> TreeNode:
        if isinstance(tree, TreeNode):
            return tree
        path = Path(tree)
        if not path.exists():
            raise FileNotFoundError(f"Tree file not found: {path}")
        return TreeNode.read(str(path), format="newick")

    @staticmethod
    def _load_metadata(
        metadata: Union[SampleMetadata, str, Path, pl.DataFrame]
    ) -> SampleMetadata:
        if isinstance(metadata, SampleMetadata):
            return metadata
        return SampleMetadata(metadata)

    # Synchronisation

    def get_sample_ids(self) -> List[str]:
        """Canonical sample IDs after synchronization."""
        return self._sample_ids.copy() if self._sample_ids else []

    def get_feature_ids(self) -> List[str]:
        """Canonical feature IDs after synchronization."""
        return self._feature_ids.copy() if self._feature_ids else []

    def _sync(self) -> None:
        """Synchronize sample and feature IDs across all components.

        Components are filtered in place to the canonical sets; anything
        dropped is reported at WARNING level.
        """
        logger.debug("Starting sample/feature synchronization across components")

        if self.counts is None:
            self._sample_ids = (
                self.metadata.get_samples() if self.metadata is not None else None
            )
            self._feature_ids = (
                self.taxonomy.get_features() if self.taxonomy is not None else None
            )
            return

        # Samples
        count_samples = self.counts._get_sample_list()
        samples = set(count_samples)
        if self.metadata is not None:
            meta_samples = self.metadata._get_sample_list()
            samples &= meta_samples
            only_meta = meta_samples - samples
            if only_meta:
                logger.warning(
                    f"{len(only_meta)} metadata samples have no counts: {sorted(only_meta)[:10]}"
                )
        only_counts = count_samples - samples
        if only_counts:
            logger.warning(
                f"{len(only_counts)} count-table samples have no metadata: {sorted(only_counts)[:10]}"
            )

        # Features
        count_features = set(self.counts.get_features())
        features = set(count_features)
        if self.taxonomy is not None:
            features &= set(self.taxonomy.get_features())
        if self.tree is not None:
            tips = {tip.name for tip in self.tree.tips()}
            missing_in_tree = features - tips
            if missing_in_tree:
                logger.warning(
                    f"{len(missing_in_tree)} features are not tips of the tree and are dropped"
                )
            features &= tips
        dropped_features = count_features - features
        if dropped_features and self.taxonomy is not None:
            logger.warning(
                f"{len(dropped_features)} features dropped during synchronization"
            )

        self._sample_ids = sorted(samples)
        self._feature_ids = sorted(features)

        if not self._sample_ids:
            logger.warning("No samples shared between counts and metadata")

        self._filter_components_to_canonical()

        logger.debug(
            f"Synchronized dataset: {len(self._sample_ids)} samples, "
            f"{len(self._feature_ids)} features"
        )

    def _filter_components_to_canonical(self) -> None:
        """Filter all components to the canonical sample and feature sets."""
        samples_df = pl.DataFrame(
            {"sample": self._sample_ids}, schema={"sample": pl.Utf8}
        )
        self.counts = self.counts._filter_by_sample(samples_df).keep_features(
            self._feature_ids
        )
        if self.metadata is not None:
            self.metadata = self.metadata._filter_by_sample(samples_df)
        if self.taxonomy is not None:
            self.taxonomy = self.taxonomy.keep_features(self._feature_ids)
        if self.sequences:
            keep = set(self._feature_ids)
            self.sequences = {
                k: v for k, v in self.sequences.items() if k in keep
            }
        if self.tree is not None:
            tips = {tip.name for tip in self.tree.tips()}
            if tips != set(self._feature_ids) and len(self._feature_ids) >= 2:
                self.tree = self.tree.shear(self._feature_ids)

    def _replace(self, **components: Any) -> "AmpliconDataset":
        """New dataset with some components swapped out."""
        current = {
            "counts": self.counts,
            "taxonomy": self.taxonomy,
            "sequences": self.sequences,
            "tree": self.tree,
            "metadata": self.metadata,
            "read_tracking": self.read_tracking,
        }
        current.update(components)
        return AmpliconDataset(**current)

    # Transformations

    def _require_counts(self) -> AsvTable:
        if self.counts is None:
            raise ValueError("Dataset has no count table")
        return self.counts

    def _require_taxonomy(self) -> TaxonomyTable:
        if self.taxonomy is None:
            raise ValueError("Dataset has no taxonomy table")
        return self.taxonomy

    def prune_samples(self, min_reads: int) -> "AmpliconDataset":
        """Drop samples with fewer than ``min_reads`` reads."""
        return self._replace(counts=self._require_counts().prune_samples(min_reads))

    def prune_features(
        self, min_count: int = 1, min_prevalence: float = 0.0
    ) -> "AmpliconDataset":
        """Drop rare features (see ``AsvTable.prune_features``)."""
        return self._replace(
            counts=self._require_counts().prune_features(min_count, min_prevalence)
        )

    def exclude_taxa(self, patterns: Sequence[str]) -> "AmpliconDataset":
        """Drop features whose lineage matches any of ``patterns``."""
        return self._replace(taxonomy=self._require_taxonomy().exclude(patterns))

    def subset_groups(
        self, column: str, groups: Sequence[Any]
    ) -> "AmpliconDataset":
        """Keep samples whose metadata ``column`` is in ``groups``."""
        if self.metadata is None:
            raise ValueError("Dataset has no sample metadata")
        return self._replace(metadata=self.metadata.filter_by_values(column, groups))

    def rarefy(self, depth: int, seed: int = 100) -> "AmpliconDataset":
        """Rarefy the count table; other components follow via sync."""
        return self._replace(counts=self._require_counts().rarefy(depth, seed=seed))

    def agglomerate(self, rank: Union[str, TaxonomicRanks]) -> "AmpliconDataset":
        """Sum counts of features sharing a taxon label at ``rank``.

        The label of a feature is its name at ``rank`` or, if unassigned,
        the nearest assigned parent (see ``TaxonomyTable.label_expr``). The
        result carries no tree and no sequences.

        Args:
            rank: Taxonomic rank to agglomerate to

        Returns:
            New AmpliconDataset keyed by taxon label
        """
        if isinstance(rank, str):
            rank = TaxonomicRanks.from_name(rank)
        counts = self._require_counts()
        taxonomy = self._require_taxonomy()

        labels = taxonomy.labels(rank)
        glom_counts = (
            counts.counts.join(labels.lazy(), on="feature_id", how="inner")
            .group_by(["sample", "label"])
            .agg(pl.col("count").sum())
            .rename({"label": "feature_id"})
        )

        keep_columns = [r.name for r in rank.iter_up()]
        drop_columns = [c for c in RANK_COLUMNS if c not in keep_columns]
        glom_taxonomy = (
            taxonomy.taxonomy.join(labels, on="feature_id")
            .group_by("label", maintain_order=True)
            .agg([pl.col(c).first() for c in keep_columns])
            .rename({"label": "feature_id"})
            .with_columns([pl.lit(None, dtype=pl.Utf8).alias(c) for c in drop_columns])
        )
        return AmpliconDataset(
            counts=AsvTable(glom_counts),
            taxonomy=TaxonomyTable(glom_taxonomy),
            metadata=self.metadata,
            read_tracking=self.read_tracking,
        )

    def rename_features(self, prefix: str = "ASV") -> "AmpliconDataset":
        """Replace feature IDs with ``<prefix>1..n`` ordered by total reads.

        The original identifiers are kept in ``feature_map`` on the result.
        """
        totals = self._require_counts().feature_totals()
        mapping = {
            old: f"{prefix}{i}"
            for i, old in enumerate(totals["feature_id"].to_list(), start=1)
        }
        lf = self.counts.counts.with_columns(
            pl.col("feature_id").replace_strict(mapping)
        )
        taxonomy = None
        if self.taxonomy is not None:
            taxonomy = TaxonomyTable(
                self.taxonomy.taxonomy.with_columns(
                    pl.col("feature_id").replace_strict(mapping, default=None)
                ).filter(pl.col("feature_id").is_not_null())
            )
        sequences = {
            mapping[k]: v for k, v in self.sequences.items() if k in mapping
        }
        tree = None
        if self.tree is not None:
            tree = self.tree.copy()
            for tip in tree.tips():
                if tip.name in mapping:
                    tip.name = mapping[tip.name]

        renamed = AmpliconDataset(
            counts=AsvTable(lf),
            taxonomy=taxonomy,
            sequences=sequences,
            tree=tree,
            metadata=self.metadata,
            read_tracking=self.read_tracking,
        )
        renamed.feature_map = pl.DataFrame(
            {"feature_id": list(mapping.values()), "original_id": list(mapping.keys())}
        )
        return renamed

    def merged_frame(self) -> pl.DataFrame:
        """Long counts joined with taxonomy and metadata (psmelt style)."""
        df = self._require_counts().relative_abundance()
        if self.taxonomy is not None:
            df = df.join(self.taxonomy.taxonomy, on="feature_id", how="left")
        if self.metadata is not None:
            df = df.join(self.metadata.metadata.collect(), on="sample", how="left")
        return df

    # Serialisation

    def save(self, path: Union[Path, str], compress: bool = False) -> Path:
        """Save AmpliconDataset to a directory of human-readable files.

        Directory Structure:
            dataset/
                counts.csv
                taxonomy.csv (if present)
                sequences.fasta (if present)
                tree.nwk (if present)
                read_tracking.csv (if present)
                metadata/
                    metadata.csv
                manifest.json

        Args:
            path: Directory or tar.gz path to save dataset
            compress: If True, package directory into tar.gz archive

        Returns:
            The directory or archive written
        """
        path = Path(path)

        if compress and str(path).endswith(".tar.gz"):
            work_dir = Path(str(path)[:-7])
        elif compress:
            work_dir = path
            path = Path(str(path) + ".tar.gz")
        else:
            work_dir = path

        work_dir.mkdir(parents=True, exist_ok=True)

        manifest: Dict[str, Any] = {
            "version": MANIFEST_VERSION,
            "created": datetime.now().isoformat(),
            "components": {},
            "sample_ids": self.get_sample_ids(),
            "n_features": len(self.get_feature_ids()),
        }

        if self.counts is not None:
            self.counts.save(work_dir)
            manifest["components"]["counts"] = {"file": "counts.csv"}

        if self.taxonomy is not None:
            self.taxonomy.save(work_dir)
            manifest["components"]["taxonomy"] = {"file": "taxonomy.csv"}

        if self.sequences:
            write_fasta(self.sequences, work_dir / "sequences.fasta")
            manifest["components"]["sequences"] = {
                "file": "sequences.fasta",
                "n_sequences": len(self.sequences),
            }

        if self.tree is not None:
            self.tree.write(str(work_dir / "tree.nwk"), format="newick")
            manifest["components"]["tree"] = {"file": "tree.nwk"}

        if self.read_tracking is not None:
            self.read_tracking.write_csv(work_dir / "read_tracking.csv")
            manifest["components"]["read_tracking"] = {"file": "read_tracking.csv"}

        if self.metadata is not None:
            self.metadata.save(work_dir / "metadata")
            manifest["components"]["metadata"] = {
                "files": ["metadata/metadata.csv"],
                "n_samples": len(self.metadata.get_samples()),
            }

        with open(work_dir / "manifest.json", "w") as f:
            json.dump(manifest, f, indent=2)

        if compress:
            with tarfile.open(path, "w:gz") as tar:
                tar.add(work_dir, arcname=work_dir.name)
            shutil.rmtree(work_dir)

        logger.info(f"Saved dataset to {path}")
        return path

    @classmethod
    def load(cls, path: Union[Path, str]) -> "AmpliconDataset":
        """Load AmpliconDataset from a directory or tar.gz archive.

        Args:
            path: Directory or tar.gz path containing a saved dataset

        Returns:
            AmpliconDataset instance with all saved components
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Dataset not found: {path}")

        if str(path).endswith(".tar.gz") or (
            path.is_file() and tarfile.is_tarfile(path)
        ):
            temp_dir = Path(tempfile.mkdtemp())
            try:
                with tarfile.open(path, "r:gz") as tar:
                    tar.extractall(temp_dir)
                extracted = list(temp_dir.iterdir())[0]
                return cls._load_from_directory(extracted)
            finally:
                shutil.rmtree(temp_dir)
        return cls._load_from_directory(path)

    @classmethod
    def _load_from_directory(cls, path: Path) -> "AmpliconDataset":
        """Internal method to load from an uncompressed directory."""
        manifest_path = path / "manifest.json"
        if not manifest_path.exists():
            raise FileNotFoundError(f"manifest.json not found in {path}")

        with open(manifest_path, "r") as f:
            manifest = json.load(f)
        components = manifest["components"]

        # Read eagerly so the temporary directory of an archive can go away
        counts = None
        if "counts" in components:
            counts = AsvTable(
                pl.read_csv(
                    path / "counts.csv",
                    schema_overrides={"sample": pl.Utf8, "feature_id": pl.Utf8},
                ).lazy()
            )
        taxonomy = None
        if "taxonomy" in components:
            taxonomy = TaxonomyTable.load(path)
        sequences = None
        if "sequences" in components:
            sequences = read_fasta(path / "sequences.fasta")
        tree = None
        if "tree" in components:
            tree = TreeNode.read(str(path / "tree.nwk"), format="newick")
        read_tracking = None
        if "read_tracking" in components:
            read_tracking = pl.read_csv(
                path / "read_tracking.csv", schema_overrides={"sample": pl.Utf8}
            )
        metadata = None
        if "metadata" in components:
            metadata = SampleMetadata(
                pl.read_csv(
                    path / "metadata" / "metadata.csv",
                    schema_overrides={"sample": pl.Utf8},
                )
            )

        return cls(
            counts=counts,
            taxonomy=taxonomy,
            sequences=sequences,
            tree=tree,
            metadata=metadata,
            read_tracking=read_tracking,
        )

    def __repr__(self) -> str:
        parts = [
            f"n_samples={len(self.get_sample_ids())}",
            f"n_features={len(self.get_feature_ids())}",
            f"taxonomy={self.taxonomy is not None}",
            f"tree={self.tree is not None}",
            f"metadata={self.metadata is not None}",
        ]
        return f"AmpliconDataset({', '.join(parts)})"

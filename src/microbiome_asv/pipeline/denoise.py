"""Stage A orchestration: raw FASTQ to a saved AmpliconDataset."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import polars as pl

from microbiome_asv.core.config import (
    ClassificationMethod,
    ClassifierParams,
    Config,
    DenoiseParams,
    FilterParams,
    PhylogenyParams,
    ReadParams,
    RunParams,
)
from microbiome_asv.pipeline.classify import NaiveBayesClassifier, assign_species
from microbiome_asv.pipeline.external import require_executable
from microbiome_asv.pipeline.filtering import filter_and_trim
from microbiome_asv.pipeline.qiime import (
    biom_to_tsv,
    build_read_tracking,
    qiime_dada2_denoise_paired,
    qiime_export,
    qiime_import_paired,
    qiime_phylogeny_mafft_fasttree,
    qiime_taxonomy_sklearn,
    read_denoising_stats,
    read_feature_table,
    read_taxonomy,
    read_tree,
)
from microbiome_asv.pipeline.quality import plot_quality_profiles, quality_profile
from microbiome_asv.pipeline.reads import ReadPair, discover_read_pairs, write_manifest
from microbiome_asv.utils.io import read_fasta
from microbiome_asv.utils.logging import add_file_handler, log_section, setup_logging
from microbiome_asv.wrangle.abundance import AsvTable
from microbiome_asv.wrangle.dataset import AmpliconDataset
from microbiome_asv.wrangle.lineages import TaxonomyTable

logger = logging.getLogger(__name__)


class PipelinePaths:
    """Filesystem layout of one pipeline run.

    Attributes:
        root: Run output directory
        logs: Run log and per-step tool logs
        filtered: Filtered FASTQ files
        qza: QIIME 2 artefacts
        exports: Files exported from artefacts
        figures: Quality profile plots
        dataset: Saved AmpliconDataset
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.logs = self.root / "logs"
        self.filtered = self.root / "filtered"
        self.qza = self.root / "artifacts_qza"
        self.exports = self.root / "exports"
        self.figures = self.root / "figures"
        self.dataset = self.root / "dataset"

    def mkdirs(self) -> None:
        """Create all output directories if they do not already exist."""
        for p in (self.logs, self.filtered, self.qza, self.exports, self.figures):
            p.mkdir(parents=True, exist_ok=True)


class DenoisePipeline:
    """Runs the denoising pipeline from a YAML configuration.

    Steps: read discovery, quality profiles, filter-and-trim, DADA2
    denoising, taxonomy assignment, tree building, read tracking, and
    assembly of the saved dataset.

    Examples:
        pipeline = DenoisePipeline(Config('config/pipeline.yaml'))
        dataset = pipeline.run()
    """

    def __init__(self, config: Union[Config, str, Path]):
        if not isinstance(config, Config):
            config = Config(config)
        self.config = config
        self.run_params = RunParams.from_config(config.section("run"))
        self.read_params = ReadParams.from_config(config.section("reads"))
        self.filter_params = FilterParams.from_config(config.section("filter"))
        self.denoise_params = DenoiseParams.from_config(config.section("denoise"))
        self.classifier_params = ClassifierParams.from_config(config.section("taxonomy"))
        self.phylogeny_params = PhylogenyParams.from_config(config.section("phylogeny"))
        self.paths = PipelinePaths(self.run_params.output_dir)

    def check_inputs(self) -> None:
        """Fail early on missing executables or reference files.

        Raises:
            FileNotFoundError: If a tool or reference file is missing
            ValueError: If the taxonomy method lacks its reference
        """
        require_executable("qiime")
        require_executable("biom")

        params = self.classifier_params
        if params.method == ClassificationMethod.QIIME.value:
            if not params.classifier:
                raise ValueError("taxonomy.classifier is required for method 'qiime'")
            references = [params.classifier]
        else:
            if not params.reference_fasta:
                raise ValueError("taxonomy.reference_fasta is required for method 'native'")
            references = [params.reference_fasta, params.reference_taxonomy]
        references.append(params.species_reference)
        references.append(self.read_params.metadata)
        for ref in references:
            if ref is not None and not Path(ref).exists():
                raise FileNotFoundError(f"Input file not found: {ref}")

    def run(self) -> AmpliconDataset:
        """Execute every step and save the dataset.

        Returns:
            The assembled AmpliconDataset
        """
        setup_logging(self.run_params.log_level)
        self.paths.mkdirs()
        handler = add_file_handler(self.paths.logs / "run.log")
        try:
            logger.info(f"Run: {self.run_params.name}")
            logger.info(f"Output directory: {self.paths.root.resolve()}")
            self.check_inputs()

            pairs = self.discover()
            self.profile_quality(pairs)
            filter_stats, filtered = self.filter(pairs)
            counts, sequences, denoise_stats = self.denoise(filtered)
            taxonomy = self.assign_taxonomy(sequences)
            tree = self.build_tree() if self.phylogeny_params.enabled else None
            tracking = build_read_tracking(filter_stats, denoise_stats)
            logger.info(f"Read tracking:\n{tracking}")

            log_section(logger, "Assemble dataset")
            dataset = AmpliconDataset(
                counts=counts,
                taxonomy=taxonomy,
                sequences=sequences,
                tree=tree,
                metadata=self.read_params.metadata,
                read_tracking=tracking,
            )
            dataset.save(self.paths.dataset, compress=self.run_params.compress)
            logger.info(f"Finished: {dataset}")
            return dataset
        finally:
            logging.getLogger("microbiome_asv").removeHandler(handler)
            handler.close()

    # Steps

    def discover(self) -> List[ReadPair]:
        log_section(logger, "Discover reads")
        return discover_read_pairs(
            self.read_params.input_dir,
            self.read_params.forward_suffix,
            self.read_params.reverse_suffix,
        )

    def profile_quality(self, pairs: List[ReadPair]) -> Optional[Path]:
        """Plot quality profiles for the first few samples."""
        n = self.read_params.quality_profile_samples
        if n <= 0 or not pairs:
            return None
        log_section(logger, "Quality profiles")
        profiles: Dict[str, pl.DataFrame] = {}
        for pair in pairs[:n]:
            for path in (pair.forward, pair.reverse):
                profiles[path.name] = quality_profile(
                    path, max_reads=self.read_params.quality_profile_reads
                )
        return plot_quality_profiles(
            profiles, self.paths.figures / "quality_profiles.png"
        )

    def filter(self, pairs: List[ReadPair]):
        log_section(logger, "Filter and trim")
        stats, filtered = filter_and_trim(pairs, self.paths.filtered, self.filter_params)
        logger.info(f"Filter summary:\n{stats}")
        if not filtered:
            raise ValueError("No sample has reads left after filtering")
        return stats, filtered

    def denoise(self, filtered: List[ReadPair]):
        """Import filtered reads, run DADA2 and read the exports back.

        Returns:
            Tuple of AsvTable, feature_id -> sequence mapping and the DADA2
            per-sample stats
        """
        log_section(logger, "Denoise (DADA2)")
        manifest = write_manifest(filtered, self.paths.root / "manifest.tsv")
        demux = self.paths.qza / "paired-demux.qza"
        qiime_import_paired(manifest=manifest, out_artifact=demux, logs=self.paths.logs)

        table_qza = self.paths.qza / "table.qza"
        repseqs_qza = self.paths.qza / "rep-seqs.qza"
        stats_qza = self.paths.qza / "denoising-stats.qza"
        qiime_dada2_denoise_paired(
            in_qza=demux,
            table_qza=table_qza,
            repseqs_qza=repseqs_qza,
            stats_qza=stats_qza,
            params=self.denoise_params,
            filter_params=self.filter_params,
            threads=self.run_params.threads,
            logs=self.paths.logs,
        )

        table_dir = qiime_export(
            artifact=table_qza, out_dir=self.paths.exports / "table",
            logs=self.paths.logs, step="table",
        )
        tsv = biom_to_tsv(
            biom_fp=table_dir / "feature-table.biom",
            tsv_fp=table_dir / "feature-table.tsv",
            logs=self.paths.logs,
        )
        counts: AsvTable = read_feature_table(tsv)

        repseqs_dir = qiime_export(
            artifact=repseqs_qza, out_dir=self.paths.exports / "rep-seqs",
            logs=self.paths.logs, step="rep_seqs",
        )
        sequences = read_fasta(repseqs_dir / "dna-sequences.fasta")

        stats_dir = qiime_export(
            artifact=stats_qza, out_dir=self.paths.exports / "denoising-stats",
            logs=self.paths.logs, step="denoising_stats",
        )
        stats = read_denoising_stats(stats_dir / "stats.tsv")
        logger.info(f"DADA2 inferred {len(sequences)} ASVs")
        return counts, sequences, stats

    def assign_taxonomy(self, sequences: Dict[str, str]) -> TaxonomyTable:
        """Classify ASVs with the configured method, then add species."""
        log_section(logger, "Assign taxonomy")
        params = self.classifier_params
        if params.method == ClassificationMethod.QIIME.value:
            taxonomy_qza = self.paths.qza / "taxonomy.qza"
            qiime_taxonomy_sklearn(
                repseqs_qza=self.paths.qza / "rep-seqs.qza",
                classifier_qza=Path(params.classifier),
                taxonomy_qza=taxonomy_qza,
                confidence=params.min_confidence,
                threads=self.run_params.threads,
                logs=self.paths.logs,
            )
            export_dir = qiime_export(
                artifact=taxonomy_qza, out_dir=self.paths.exports / "taxonomy",
                logs=self.paths.logs, step="taxonomy",
            )
            taxonomy = read_taxonomy(export_dir / "taxonomy.tsv")
        else:
            classifier = NaiveBayesClassifier.from_reference(
                params.reference_fasta,
                params.reference_taxonomy,
                params=params,
                seed=self.run_params.seed,
            )
            taxonomy = classifier.classify(sequences)

        if params.species_reference:
            taxonomy = assign_species(taxonomy, sequences, params.species_reference)
        return taxonomy

    def build_tree(self):
        """Align ASVs and fit a rooted tree (MAFFT + FastTree)."""
        log_section(logger, "Phylogeny")
        rooted_qza = self.paths.qza / "rooted-tree.qza"
        qiime_phylogeny_mafft_fasttree(
            repseqs_qza=self.paths.qza / "rep-seqs.qza",
            aligned_qza=self.paths.qza / "aligned-rep-seqs.qza",
            masked_qza=self.paths.qza / "masked-aligned-rep-seqs.qza",
            unrooted_qza=self.paths.qza / "unrooted-tree.qza",
            rooted_qza=rooted_qza,
            threads=self.run_params.threads,
            logs=self.paths.logs,
        )
        tree_dir = qiime_export(
            artifact=rooted_qza, out_dir=self.paths.exports / "tree",
            logs=self.paths.logs, step="tree",
        )
        return read_tree(tree_dir / "tree.nwk")

"""Stage B orchestration: saved dataset to plots and statistics tables."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import polars as pl

from microbiome_asv.analysis.alpha import compare_alpha, compute_alpha_diversity, plot_alpha
from microbiome_asv.analysis.beta import (
    METRIC_LABELS as BETA_LABELS,
    distance_matrix,
    ordinate,
    permutation_tests,
    plot_ordination,
)
from microbiome_asv.analysis.composition import plot_composition, taxon_abundance
from microbiome_asv.analysis.diagnostics import (
    library_size_summary,
    library_size_table,
    plot_library_sizes,
    plot_rarefaction_curves,
    rarefaction_curves,
    recommend_depth,
)
from microbiome_asv.analysis.differential import (
    differential_abundance,
    plot_differential,
    significant,
)
from microbiome_asv.core.config import (
    AlphaMetric,
    AnalysisParams,
    BetaMetric,
    Config,
    RunParams,
)
from microbiome_asv.utils.logging import add_file_handler, log_section, setup_logging
from microbiome_asv.wrangle.dataset import AmpliconDataset

logger = logging.getLogger(__name__)


class AnalysisWorkflow:
    """Runs the downstream analysis from a YAML configuration.

    Steps: read-count diagnostics, rarefaction, composition, alpha and beta
    diversity, and differential abundance between the two configured groups.
    Every statistics table is logged and written as TSV.

    Examples:
        workflow = AnalysisWorkflow(Config('config/pipeline.yaml'))
        tables = workflow.run()
        tables['alpha_tests']
    """

    def __init__(self, config: Union[Config, str, Path]):
        if not isinstance(config, Config):
            config = Config(config)
        self.config = config
        self.run_params = RunParams.from_config(config.section("run"))
        self.params = AnalysisParams.from_config(config.section("analysis"))

        run_root = Path(self.run_params.output_dir)
        self.dataset_path = Path(self.params.dataset or run_root / "dataset")
        self.output_dir = Path(self.params.output_dir or run_root / "analysis")
        self.tables_dir = self.output_dir / "tables"
        self.figures_dir = self.output_dir / "figures"
        self.interactive_dir = self.output_dir / "interactive"
        self.logs_dir = self.output_dir / "logs"

        self.tables: Dict[str, pl.DataFrame] = {}
        self.levels: List[str] = list(self.params.groups)

    def run(self) -> Dict[str, pl.DataFrame]:
        """Execute every analysis step.

        Returns:
            Mapping of table name to the statistics table written for it
        """
        setup_logging(self.run_params.log_level)
        for p in (self.tables_dir, self.figures_dir, self.interactive_dir, self.logs_dir):
            p.mkdir(parents=True, exist_ok=True)
        handler = add_file_handler(self.logs_dir / "run.log")
        try:
            logger.info(f"Analysis of {self.dataset_path} -> {self.output_dir.resolve()}")
            dataset = self.prepare()
            depth = self.diagnostics(dataset)
            rarefied = dataset.rarefy(depth, seed=self.run_params.seed)
            logger.info(f"Rarefied dataset: {rarefied}")

            self.composition(rarefied)
            self.alpha_diversity(rarefied)
            self.beta_diversity(rarefied)
            self.differential(dataset)
            logger.info(f"Finished analysis; tables in {self.tables_dir}")
            return self.tables
        finally:
            logging.getLogger("microbiome_asv").removeHandler(handler)
            handler.close()

    # Steps

    def prepare(self) -> AmpliconDataset:
        """Load the dataset and restrict it to the samples under comparison."""
        log_section(logger, "Prepare dataset")
        dataset = AmpliconDataset.load(self.dataset_path)
        if self.params.metadata:
            dataset = dataset.add_metadata(self.params.metadata)
        if dataset.metadata is None:
            raise ValueError(
                "No sample metadata: set analysis.metadata or reads.metadata"
            )
        column = self.params.group_column
        dataset.metadata.require_columns([column])

        if not self.levels:
            values = sorted(dataset.metadata.get_groups(column)[column].unique().to_list())
            if len(values) != 2:
                raise ValueError(
                    f"analysis.groups not set and '{column}' has {len(values)} values: {values}"
                )
            self.levels = values
            logger.info(f"Comparing groups {self.levels} (reference first)")

        dataset = dataset.subset_groups(column, self.levels)
        dataset = dataset.exclude_taxa(self.params.exclude_taxa)
        dataset = dataset.prune_samples(self.params.min_reads)
        self._require_both_groups(dataset)
        logger.info(f"Dataset for analysis: {dataset}")
        return dataset

    def diagnostics(self, dataset: AmpliconDataset) -> int:
        """Library sizes, read tracking and rarefaction curves.

        Returns:
            The rarefaction depth to use
        """
        log_section(logger, "Read-count diagnostics")
        column = self.params.group_column
        groups = self._groups(dataset)
        sizes = library_size_table(dataset.counts, groups, column)
        self._emit("library_sizes", sizes)
        self._emit("library_size_summary", library_size_summary(sizes, column))
        if dataset.read_tracking is not None:
            self._emit("read_tracking", dataset.read_tracking)

        depth = self.params.rarefaction_depth
        if depth is None:
            depth = recommend_depth(sizes, column, self.params.min_retained)
        else:
            logger.info(f"Configured rarefaction depth {depth}")

        curves = rarefaction_curves(dataset.counts, seed=self.run_params.seed)
        plot_library_sizes(
            sizes, column, self.levels, self.figures_dir, self.interactive_dir, depth=depth
        )
        plot_rarefaction_curves(
            curves,
            groups,
            column,
            self.levels,
            self.figures_dir / "rarefaction_curves.png",
            self.interactive_dir / "rarefaction_curves.html",
            depth=depth,
        )
        return depth

    def composition(self, dataset: AmpliconDataset) -> None:
        log_section(logger, "Composition")
        rank = self.params.composition_rank
        abundance = taxon_abundance(dataset, rank, self.params.top_n_taxa)
        plot_composition(
            abundance,
            self._groups(dataset),
            self.params.group_column,
            self.levels,
            rank,
            self.figures_dir / f"composition_{rank}.png",
            self.interactive_dir / f"composition_{rank}.html",
        )

    def alpha_diversity(self, dataset: AmpliconDataset) -> None:
        log_section(logger, "Alpha diversity")
        metrics = self._usable_metrics(
            [AlphaMetric(m) for m in self.params.alpha_metrics], dataset
        )
        alpha = compute_alpha_diversity(dataset.counts.to_matrix(), metrics, dataset.tree)
        groups = self._groups(dataset)
        column = self.params.group_column
        self._emit("alpha_diversity", alpha.join(groups, on="sample", how="left"))
        stats = compare_alpha(alpha, groups, column, self.levels)
        self._emit("alpha_tests", stats)
        plot_alpha(
            alpha,
            groups,
            column,
            self.levels,
            self.figures_dir / "alpha_diversity.png",
            self.interactive_dir / "alpha_diversity.html",
            stats=stats,
        )

    def beta_diversity(self, dataset: AmpliconDataset) -> None:
        log_section(logger, "Beta diversity")
        metrics = self._usable_metrics(
            [BetaMetric(m) for m in self.params.beta_metrics], dataset
        )
        matrix = dataset.counts.to_matrix()
        groups = self._groups(dataset)
        column = self.params.group_column

        tests = []
        for metric in metrics:
            dm = distance_matrix(matrix, metric, dataset.tree)
            coords, explained = ordinate(dm)
            plot_ordination(
                coords,
                explained,
                groups,
                column,
                self.levels,
                f"PCoA ({BETA_LABELS[metric]})",
                self.figures_dir / f"pcoa_{metric.value}.png",
                self.interactive_dir / f"pcoa_{metric.value}.html",
            )
            result = permutation_tests(
                dm, groups, column, self.params.permutations, self.run_params.seed
            )
            tests.append(result.select(pl.lit(metric.value).alias("metric"), pl.all()))
        if tests:
            self._emit("beta_tests", pl.concat(tests))

    def differential(self, dataset: AmpliconDataset) -> None:
        log_section(logger, "Differential abundance")
        reference, test = self.levels
        params = self.params.differential
        results = differential_abundance(
            dataset, self.params.group_column, reference, test, params
        )
        self._emit("differential_abundance", results, log=False)
        hits = significant(results, params.alpha)
        logger.info(f"{hits.height} features with padj < {params.alpha}")
        self._log_table("differential_abundance (significant)", hits)
        plot_differential(
            results,
            params.alpha,
            reference,
            test,
            self.figures_dir / "differential_abundance.png",
            self.interactive_dir / "differential_abundance.html",
        )

    # Helpers

    def _groups(self, dataset: AmpliconDataset) -> pl.DataFrame:
        return dataset.metadata.get_groups(self.params.group_column)

    def _require_both_groups(self, dataset: AmpliconDataset) -> None:
        present = set(self._groups(dataset)[self.params.group_column].to_list())
        missing = [g for g in self.levels if g not in present]
        if missing:
            raise ValueError(f"No samples left in groups {missing}")

    def _usable_metrics(self, metrics: list, dataset: AmpliconDataset) -> list:
        """Drop tree-based metrics, with a warning, when there is no tree."""
        if dataset.tree is not None:
            return metrics
        skipped = [m.value for m in metrics if m.requires_tree]
        if skipped:
            logger.warning(f"Dataset has no tree; skipping {skipped}")
        return [m for m in metrics if not m.requires_tree]

    def _log_table(self, name: str, table: pl.DataFrame) -> None:
        with pl.Config(tbl_rows=50, tbl_cols=-1, tbl_width_chars=200):
            logger.info(f"{name}:\n{table}")

    def _emit(self, name: str, table: pl.DataFrame, log: bool = True) -> Optional[Path]:
        """Record a statistics table, log it and write it as TSV."""
        self.tables[name] = table
        if log:
            self._log_table(name, table)
        path = self.tables_dir / f"{name}.tsv"
        table.write_csv(path, separator="\t")
        return path

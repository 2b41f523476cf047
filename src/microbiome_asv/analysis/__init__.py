"""Downstream analysis: diagnostics, diversity and differential abundance."""

from .alpha import compare_alpha, compute_alpha_diversity, plot_alpha
from .beta import distance_matrix, ordinate, permutation_tests, plot_ordination
from .composition import plot_composition, taxon_abundance
from .diagnostics import (
    library_size_summary,
    library_size_table,
    plot_library_sizes,
    plot_rarefaction_curves,
    rarefaction_curves,
    recommend_depth,
)
from .differential import differential_abundance, plot_differential, significant
from .workflow import AnalysisWorkflow

__all__ = [
    "library_size_table",
    "library_size_summary",
    "rarefaction_curves",
    "recommend_depth",
    "plot_library_sizes",
    "plot_rarefaction_curves",
    "taxon_abundance",
    "plot_composition",
    "compute_alpha_diversity",
    "compare_alpha",
    "plot_alpha",
    "distance_matrix",
    "ordinate",
    "permutation_tests",
    "plot_ordination",
    "differential_abundance",
    "significant",
    "plot_differential",
    "AnalysisWorkflow",
]

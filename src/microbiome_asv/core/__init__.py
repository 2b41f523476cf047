"""Core configuration for microbiome ASV workflows."""

from .config import (
    AlphaMetric,
    AnalysisParams,
    BetaMetric,
    ClassificationMethod,
    ClassifierParams,
    Config,
    DenoiseParams,
    DifferentialParams,
    FilterParams,
    PhylogenyParams,
    ReadParams,
    RunParams,
)

__all__ = [
    "AlphaMetric",
    "BetaMetric",
    "ClassificationMethod",
    "Config",
    "RunParams",
    "ReadParams",
    "FilterParams",
    "DenoiseParams",
    "ClassifierParams",
    "PhylogenyParams",
    "DifferentialParams",
    "AnalysisParams",
]

"""Denoising pipeline: raw paired-end reads to an AmpliconDataset."""

from .classify import NaiveBayesClassifier, assign_species
from .denoise import DenoisePipeline, PipelinePaths
from .external import require_executable, run_cmd
from .filtering import filter_and_trim, filter_read
from .quality import plot_quality_profiles, quality_profile
from .reads import ReadPair, discover_read_pairs, write_manifest

__all__ = [
    "ReadPair",
    "discover_read_pairs",
    "write_manifest",
    "quality_profile",
    "plot_quality_profiles",
    "filter_and_trim",
    "filter_read",
    "run_cmd",
    "require_executable",
    "NaiveBayesClassifier",
    "assign_species",
    "DenoisePipeline",
    "PipelinePaths",
]

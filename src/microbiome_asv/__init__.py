"""microbiomeASV.

Amplicon sequence variant workflows for 16S rRNA studies: denoising paired
reads into an ASV table with taxonomy and a tree, and the downstream
diversity and differential-abundance analysis of two sample groups.
"""

# Key utilities
from .utils.logging import get_logger, setup_logging

# Core data structures
from .utils.taxonomy import TaxonomicRanks
from .wrangle import AmpliconDataset, AsvTable, SampleMetadata, TaxonomyTable

__version__ = "0.1.0"

__all__ = [
    "AmpliconDataset",
    "AsvTable",
    "TaxonomyTable",
    "SampleMetadata",
    "TaxonomicRanks",
    "setup_logging",
    "get_logger",
]

# Configure default logging
setup_logging()

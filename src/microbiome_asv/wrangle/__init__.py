"""Amplicon data model: metadata, ASV counts, taxonomy and the combined dataset."""

from .abundance import AsvTable
from .dataset import AmpliconDataset
from .lineages import TaxonomyTable
from .matrix import CountMatrix
from .metadata import SampleMetadata

__all__ = [
    "SampleMetadata",
    "AsvTable",
    "TaxonomyTable",
    "CountMatrix",
    "AmpliconDataset",
]

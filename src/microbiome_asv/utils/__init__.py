"""Generic utilities for microbiome ASV workflows."""

from .logging import add_file_handler, get_logger, log_section, setup_logging
from .taxonomy import TaxonomicRanks, format_lineage, parse_lineage

__all__ = [
    "TaxonomicRanks",
    "parse_lineage",
    "format_lineage",
    "setup_logging",
    "get_logger",
    "add_file_handler",
    "log_section",
]

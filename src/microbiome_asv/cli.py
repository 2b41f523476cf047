"""Command-line entry point: ``microbiome-asv denoise|analyze --config FILE``."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from microbiome_asv.analysis.workflow import AnalysisWorkflow
from microbiome_asv.core.config import Config
from microbiome_asv.pipeline.denoise import DenoisePipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line argument parser.

    Returns:
        An ``argparse.ArgumentParser`` with one sub-command per stage.
    """
    p = argparse.ArgumentParser(
        prog="microbiome-asv",
        description="16S amplicon workflow: DADA2 denoising and downstream analysis.",
        allow_abbrev=False,
    )
    sub = p.add_subparsers(dest="command", required=True)

    denoise = sub.add_parser(
        "denoise",
        help="Raw paired FASTQ to a saved dataset (ASV table, taxonomy, tree).",
    )
    analyze = sub.add_parser(
        "analyze",
        help="Diagnostics, diversity and differential abundance of a saved dataset.",
    )
    for sp in (denoise, analyze):
        sp.add_argument(
            "--config",
            required=True,
            type=Path,
            help="YAML configuration file.",
        )
    denoise.add_argument(
        "--check-only",
        action="store_true",
        help="Only verify that tools and reference files are available.",
    )
    return p


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: parse arguments and run the requested stage."""
    args = build_parser().parse_args(argv)
    try:
        config = Config(args.config)
        if args.command == "denoise":
            pipeline = DenoisePipeline(config)
            if args.check_only:
                pipeline.check_inputs()
                logger.info("All inputs found")
            else:
                pipeline.run()
        else:
            AnalysisWorkflow(config).run()
    except (FileNotFoundError, ValueError) as exc:
        logger.error(f"{exc}")
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

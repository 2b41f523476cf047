"""Figure output helpers shared by the pipeline and the analysis."""

import logging
from pathlib import Path
from typing import Dict, List, Sequence, Union

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
from matplotlib.colors import to_hex  # noqa: E402

logger = logging.getLogger(__name__)

DPI = 150


def save_figure(fig, path: Union[str, Path], dpi: int = DPI) -> Path:
    """Write a matplotlib figure to ``path`` and close it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.debug(f"Wrote figure {path}")
    return path


def save_interactive(fig, path: Union[str, Path]) -> Path:
    """Write a plotly figure as a standalone HTML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.write_html(str(path))
    logger.debug(f"Wrote interactive figure {path}")
    return path


def group_colours(groups: Sequence[str]) -> Dict[str, str]:
    """Stable colour per group label from the tab10 palette."""
    palette: List[str] = [
        to_hex(c) for c in plt.get_cmap("tab10").colors
    ]
    return {g: palette[i % len(palette)] for i, g in enumerate(groups)}

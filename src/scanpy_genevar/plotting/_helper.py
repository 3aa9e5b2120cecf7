"""Helper functions for plotting operations."""

from typing import Optional

import matplotlib.pyplot as plt
import numpy as np

# Default scaling factors
DEFAULT_SIZE_SCALE = 1.0
DEFAULT_SIZE_MULTIPLIER = 10.0

# Point colors of the mean-variance plot
FEATURE_COLOR = "#ababab"
HVG_COLOR = "#1f77b4"
SPIKE_COLOR = "#d62728"
TREND_COLOR = "#2ca02c"


def _get_default_figsize() -> tuple[float, float]:
    """`figure.figsize` rcParam."""
    return plt.rcParams["figure.figsize"]


def _get_default_fontsize() -> float:
    """`font.size` rcParam."""
    return plt.rcParams["font.size"]


def _get_scaled_marker_size(
    n_points: int,
    figsize: Optional[tuple[float, float]] = None,
    scale: float = DEFAULT_SIZE_SCALE,
) -> float:
    """Marker area for `n_points` scatter points on a figure of `figsize` inches."""
    figsize = figsize if figsize is not None else _get_default_figsize()
    area = figsize[0] * figsize[1]
    fontsize = _get_default_fontsize()

    min_size = fontsize / area
    scaled_size = (fontsize * DEFAULT_SIZE_MULTIPLIER * area) / np.sqrt(
        max(n_points, 1)
    )
    return min(max(min_size, scaled_size), fontsize * DEFAULT_SIZE_MULTIPLIER) * scale


from typing import Optional, Union

import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import scanpy as sc
from scanpy.plotting._utils import savefig_or_show

from .._constants import DEFAULT_KEY
from .._validate import validate_var_flag
from ..get import model_gene_var_df
from ._helper import (
    FEATURE_COLOR,
    HVG_COLOR,
    SPIKE_COLOR,
    TREND_COLOR,
    _get_scaled_marker_size,
)


def mean_var_trend(
    adata: sc.AnnData,
    key: str = DEFAULT_KEY,
    batch: Optional[str] = None,
    highlight_hvg: bool = True,
    marker_size: Optional[float] = None,
    ax: Optional[mpl.axes.Axes] = None,
    show: Optional[bool] = None,
    save: Union[str, bool, None] = None,
) -> Optional[mpl.axes.Axes]:
    """
    Plot the variance of log-expression values against their mean.

    The fitted technical trend is drawn over all features; spike-in
    transcripts used for the fit and highly variable genes are highlighted.

    Args:
        adata: Annotated data matrix processed with `pp.model_gene_var`
        key: Key of the results in `adata.uns`
        batch: Plot the features and trend of a single batch
        highlight_hvg: Color highly variable genes
        marker_size: Size of the feature markers
        ax: Axes to draw into
        show: Show the plot
        save: Save the plot, see `scanpy.pl`

    Returns:
        Axes if `show=False`
    """
    df = model_gene_var_df(adata, key=key, batch=batch)
    uns = adata.uns[key]
    trends = uns["trend"]
    if batch is None:
        trend_names = list(trends.keys())
    else:
        assert str(batch) in trends.keys(), f"no trend stored for batch {batch}."
        trend_names = [str(batch)]

    if ax is None:
        _, ax = plt.subplots()
    s = (
        _get_scaled_marker_size(df.shape[0], figsize=ax.figure.get_size_inches())
        if marker_size is None
        else marker_size
    )

    spike_key = uns["params"].get("spike_key")
    spikes = np.zeros(df.shape[0], dtype=bool)
    if spike_key is not None:
        idx = adata.var_names.get_indexer(df.index)
        spikes = validate_var_flag(adata.var, spike_key)[idx] & (idx >= 0)
    hvg = np.zeros(df.shape[0], dtype=bool)
    if highlight_hvg and "highly_variable" in df.columns:
        hvg = df["highly_variable"].fillna(False).to_numpy(dtype=bool) & ~spikes

    other = ~(spikes | hvg)
    ax.scatter(
        df["mean"].to_numpy()[other],
        df["total"].to_numpy()[other],
        s=s,
        c=FEATURE_COLOR,
        linewidths=0,
        rasterized=True,
        label="features",
    )
    if np.any(hvg):
        ax.scatter(
            df["mean"].to_numpy()[hvg],
            df["total"].to_numpy()[hvg],
            s=s,
            c=HVG_COLOR,
            linewidths=0,
            rasterized=True,
            label="highly variable",
        )
    if np.any(spikes):
        ax.scatter(
            df["mean"].to_numpy()[spikes],
            df["total"].to_numpy()[spikes],
            s=s * 2,
            c=SPIKE_COLOR,
            linewidths=0,
            label="spike-ins",
        )

    # a shared trend is stored once per batch
    drawn = list()
    for name in trend_names:
        xs = np.asarray(trends[name]["mean"])
        ys = np.asarray(trends[name]["var"])
        if any(np.array_equal(ys, y) for y in drawn):
            continue
        drawn.append(ys)
        ax.plot(
            xs,
            ys,
            c=TREND_COLOR,
            linewidth=1.0,
            label="trend" if len(drawn) == 1 else None,
        )

    ax.set_xlabel("mean of log-expression")
    ax.set_ylabel("variance of log-expression")
    if batch is not None:
        ax.set_title(str(batch))
    ax.legend(frameon=False, markerscale=2)

    savefig_or_show("mean_var_trend", show=show, save=save)
    if isinstance(show, bool) and not show:
        return ax


__all__ = [
    "mean_var_trend",
]

"""
Technical trend from simulated counts.

Without spike-ins, the technical component can be taken from the
mean-variance relationship of log-normalized Poisson (or negative binomial)
counts simulated at the observed size factors.
"""

from typing import Literal, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from .._constants import DEFAULT_FDR, DEFAULT_KEY, DEFAULT_MIN_MEAN, DEFAULT_SPAN
from .._validate import validate_groupby, validate_size_factors
from ._data import (
    ExpressionData,
    FeatureStats,
    center_size_factors,
    compute_feature_stats,
    get_mean_var,
)
from ._loess_fit import TrendFitter, TrendFunction
from ._model_gene_var import _write_results, model_gene_var_data
from ._normalize import library_size_factors, log_normalize


def simulate_mean_var(
    mean_range: tuple[float, float],
    size_factors: np.ndarray,
    npts: int = 1000,
    dispersion: float = 0.0,
    pseudo_count: float = 1.0,
    random_state: Union[int, np.random.Generator, None] = 0,
) -> FeatureStats:
    """
    Mean and variance of log-normalized simulated counts.

    Args:
        mean_range: Smallest and largest expected normalized count
        size_factors: Centered size factors of the cells to simulate
        npts: Number of simulated features, log-spaced over `mean_range`
        dispersion: Negative binomial dispersion, 0 for Poisson
        pseudo_count: Pseudo-count of the log-transformation
        random_state: Seed or generator

    Returns:
        Statistics of the simulated features
    """
    lo, hi = mean_range
    assert 0 < lo <= hi, f"invalid mean range for simulation: {mean_range}"
    assert dispersion >= 0, f"'dispersion' must be non-negative: {dispersion}"
    rng = np.random.default_rng(random_state)

    pts = np.exp(np.linspace(np.log(lo), np.log(hi), npts))
    sf = np.asarray(size_factors, dtype=np.float64)
    expected = np.outer(sf, pts)
    if dispersion == 0:
        counts = rng.poisson(lam=expected)
    else:
        size = 1.0 / dispersion
        prob = size / (size + expected)
        counts = rng.negative_binomial(n=size, p=prob)

    means, variances = get_mean_var(
        log_normalize(counts, sf, pseudo_count=pseudo_count)
    )
    return FeatureStats(
        names=pd.Index([f"sim_{i}" for i in range(npts)]),
        means=means,
        variances=variances,
        n_cells=len(sf),
    )


def _poisson_trend(
    stats: FeatureStats,
    size_factors: np.ndarray,
    fitter: TrendFitter,
    pseudo_count: float,
    **kwargs,
) -> TrendFunction:
    expressed = stats.means[stats.means > 0]
    assert len(expressed) > 0, "no expressed features to derive a simulation range."
    mean_range = (
        np.exp2(np.nanmin(expressed)) - pseudo_count,
        np.exp2(np.nanmax(expressed)) - pseudo_count,
    )
    mean_range = (max(mean_range[0], 1e-3), max(mean_range[1], 1e-3))
    sim = simulate_mean_var(
        mean_range, size_factors, pseudo_count=pseudo_count, **kwargs
    )
    return fitter.fit(sim)


def model_gene_var_by_poisson(
    adata: sc.AnnData,
    layer: Optional[str] = "counts",
    size_factors_key: Optional[str] = None,
    batch_key: Optional[str] = None,
    dispersion: float = 0.0,
    npts: int = 1000,
    pseudo_count: float = 1.0,
    random_state: Union[int, np.random.Generator, None] = 0,
    flavor: Literal["parametric", "lowess", "both"] = "both",
    span: float = DEFAULT_SPAN,
    min_mean: float = DEFAULT_MIN_MEAN,
    use_density_weights: bool = True,
    test: Literal["chisq", "normal"] = "chisq",
    equiweight: bool = False,
    method: Literal["fisher", "stouffer", "berger"] = "fisher",
    fdr: float = DEFAULT_FDR,
    key_added: str = DEFAULT_KEY,
    inplace: bool = True,
) -> Optional[pd.DataFrame]:
    """
    Model gene variance with a technical trend from simulated counts.

    Counts are log-normalized with centered size factors; the technical
    trend of each batch is fitted to Poisson (or negative binomial) counts
    simulated at that batch's size factors.

    Args:
        adata: Annotated data matrix with raw counts
        layer: Layer holding counts, `adata.X` if `None`
        size_factors_key: Column of `adata.obs` with size factors, library
            size factors are used if not given
        batch_key: Column of `adata.obs` with batch labels
        dispersion: Negative binomial dispersion, 0 for Poisson noise
        npts: Number of simulated features
        pseudo_count: Pseudo-count of the log-transformation
        random_state: Seed or generator for the simulation
        flavor: Trend type
        span: Loess span
        min_mean: Minimum mean of simulated features used for fitting
        use_density_weights: Weight points by inverse density when fitting
        test: Significance test
        equiweight: Weight batches equally instead of by cell number
        method: Method for combining p-values across batches
        fdr: FDR threshold for calling highly variable genes
        key_added: Key in `adata.uns` for fit diagnostics
        inplace: Write results to `adata` instead of returning them

    Returns:
        Decomposition table if `inplace=False`
    """
    start = logg.info("modelling gene variance against simulated counts")
    counts = _get_obs_rep(adata, layer=layer)
    sf = (
        library_size_factors(counts)
        if size_factors_key is None
        else validate_size_factors(adata, size_factors_key)
    )
    batch = None
    if batch_key is not None:
        validate_groupby(adata, batch_key)
        batch = adata.obs[batch_key].to_numpy()
    sf = center_size_factors(sf, batch)

    data = ExpressionData(
        X=log_normalize(counts, sf, pseudo_count=pseudo_count),
        var_names=pd.Index(adata.var_names),
        obs_names=pd.Index(adata.obs_names),
        is_spike=np.zeros(adata.n_vars, dtype=bool),
        size_factors=sf,
        batch=batch,
    )
    fitter = TrendFitter(
        flavor=flavor,
        span=span,
        min_mean=min_mean,
        use_density_weights=use_density_weights,
    )
    rng = np.random.default_rng(random_state)

    stats = compute_feature_stats(data)
    trends = dict()
    for b, b_stats in stats.items():
        trends[b] = _poisson_trend(
            b_stats,
            data.size_factors[data.cells_in(b)],
            fitter,
            pseudo_count,
            npts=npts,
            dispersion=dispersion,
            random_state=rng,
        )

    res = model_gene_var_data(
        data,
        test=test,
        equiweight=equiweight,
        method=method,
        trends=trends,
        stats=stats,
    )
    params = dict(
        flavor=flavor,
        span=span,
        min_mean=min_mean,
        test=test,
        method=method,
        fdr=fdr,
        batch_key=batch_key,
        dispersion=dispersion,
        trend_per_batch=True,
    )
    return _write_results(adata, data, res, params, fdr, key_added, inplace, start)


__all__ = [
    "model_gene_var_by_poisson",
    "simulate_mean_var",
]

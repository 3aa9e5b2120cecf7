"""
Gene variance modelling on top of scanpy.

The variance of log-expression values of each feature is decomposed into a
technical component, taken from a mean-variance trend fitted to spike-in
transcripts (or to all features), and a biological component. Data from
several batches is modelled per batch and combined afterwards.
"""

from collections.abc import Mapping
from typing import Any, Literal, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from .._constants import (
    DEFAULT_FDR,
    DEFAULT_KEY,
    DEFAULT_MIN_MEAN,
    DEFAULT_SPAN,
    TREND_GRID_POINTS,
    VAR_COLS,
)
from ._combine import combine_batches
from ._data import ExpressionData, FeatureStats, compute_feature_stats
from ._decompose import decompose_variance, select_hvgs
from ._loess_fit import TrendFitter, TrendFunction


def _fit_trends(
    data: ExpressionData,
    stats: Mapping[Any, Any],
    fitter: TrendFitter,
    trend_per_batch: bool = False,
) -> dict:
    fit_subset = data.is_spike if data.has_spikes else None
    if fit_subset is None:
        logg.info("    no spike-ins provided, fitting trend to all features")

    if trend_per_batch:
        trends = dict()
        for b, s in stats.items():
            mask = data.cells_in(b)
            trends[b] = fitter.fit(
                s,
                subset=fit_subset,
                size_factors=(
                    None if data.size_factors is None else data.size_factors[mask]
                ),
            )
        return trends

    # technical trend is assumed to be shared by all batches
    shared = fitter.fit(
        list(stats.values()),
        subset=fit_subset,
        size_factors=data.size_factors,
        batch=data.batch,
    )
    return {b: shared for b in stats.keys()}


def model_gene_var_data(
    data: ExpressionData,
    flavor: Literal["parametric", "lowess", "both"] = "both",
    span: float = DEFAULT_SPAN,
    min_mean: float = DEFAULT_MIN_MEAN,
    use_density_weights: bool = True,
    test: Literal["chisq", "normal"] = "chisq",
    trend_per_batch: bool = False,
    equiweight: bool = False,
    method: Literal["fisher", "stouffer", "berger"] = "fisher",
    subset_min_mean: bool = False,
    trends: Optional[Mapping[Any, TrendFunction]] = None,
    stats: Optional[Mapping[Any, FeatureStats]] = None,
    n_jobs: Optional[int] = None,
) -> dict[str, Any]:
    """
    Model gene variance of an `ExpressionData` record.

    Returns:
        Dict with the final decomposition table ('result'), the per-batch
        tables ('per_batch'), the trend per batch ('trends'), the feature
        statistics per batch ('stats') and the combined record ('combined',
        `None` for a single batch)
    """
    if stats is None:
        stats = compute_feature_stats(data, n_jobs=n_jobs)
    if trends is None:
        fitter = TrendFitter(
            flavor=flavor,
            span=span,
            min_mean=min_mean,
            use_density_weights=use_density_weights,
        )
        trends = _fit_trends(data, stats, fitter, trend_per_batch=trend_per_batch)

    per_batch = {
        b: decompose_variance(
            s,
            trends[b],
            test=test,
            min_mean=(min_mean if subset_min_mean else None),
        )
        for b, s in stats.items()
    }

    combined = None
    if len(per_batch) == 1:
        result = next(iter(per_batch.values()))
    else:
        logg.info(f"    combining {len(per_batch)} batches using {method}'s method")
        combined = combine_batches(
            per_batch,
            weights={b: s.n_cells for b, s in stats.items()},
            method=method,
            equiweight=equiweight,
        )
        result = combined.summary
    return dict(
        result=result,
        per_batch=per_batch,
        trends=trends,
        stats=stats,
        combined=combined,
    )


def _trend_uns(trend: TrendFunction) -> dict:
    xs, ys = trend.grid(TREND_GRID_POINTS)
    return dict(
        mean=xs,
        var=ys,
        fit_mean=np.asarray(trend.means),
        fit_var=np.asarray(trend.variances),
        std_dev=trend.std_dev,
    )


def _batch_name(b: Any) -> str:
    return "all" if b is None else str(b)


def model_gene_var(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    use_raw: Optional[bool] = None,
    spike_key: Optional[str] = None,
    batch_key: Optional[str] = None,
    size_factors_key: Optional[str] = None,
    flavor: Literal["parametric", "lowess", "both"] = "both",
    span: float = DEFAULT_SPAN,
    min_mean: float = DEFAULT_MIN_MEAN,
    use_density_weights: bool = True,
    test: Literal["chisq", "normal"] = "chisq",
    trend_per_batch: bool = False,
    equiweight: bool = False,
    method: Literal["fisher", "stouffer", "berger"] = "fisher",
    subset_min_mean: bool = False,
    fdr: float = DEFAULT_FDR,
    key_added: str = DEFAULT_KEY,
    inplace: bool = True,
    n_jobs: Optional[int] = None,
) -> Optional[pd.DataFrame]:
    """
    Model the per-gene variance of log-expression values.

    Args:
        adata: Annotated data matrix with log-normalized expression
        layer: Layer holding log-expression values
        use_raw: Use `adata.raw`
        spike_key: Boolean column of `adata.var` marking spike-in transcripts;
            the trend is fitted to all features if not given
        batch_key: Column of `adata.obs` with batch (e.g. plate) labels
        size_factors_key: Column of `adata.obs` with size factors, only
            checked for centering
        flavor: Trend type, 'both' fits a parametric curve smoothed by loess
        span: Loess span
        min_mean: Minimum mean of features used for trend fitting
        use_density_weights: Weight points by inverse density when fitting
        test: Significance test, 'chisq' or 'normal'
        trend_per_batch: Fit a separate trend in each batch
        equiweight: Weight batches equally instead of by cell number
        method: Method for combining p-values across batches
        subset_min_mean: Only report features passing `min_mean`
        fdr: FDR threshold for calling highly variable genes
        key_added: Key in `adata.uns` for fit diagnostics
        inplace: Write results to `adata` instead of returning them
        n_jobs: Number of jobs for per-batch statistics

    Returns:
        Decomposition table if `inplace=False`
    """
    if not isinstance(adata, sc.AnnData):
        raise ValueError("`pp.model_gene_var` expects an `AnnData` argument.")

    start = logg.info(
        "modelling gene variance"
        + ("" if batch_key is None else f" per batch using batch key: {batch_key}")
    )
    data = ExpressionData.from_anndata(
        adata,
        layer=layer,
        use_raw=use_raw,
        spike_key=spike_key,
        batch_key=batch_key,
        size_factors_key=size_factors_key,
    )
    res = model_gene_var_data(
        data,
        flavor=flavor,
        span=span,
        min_mean=min_mean,
        use_density_weights=use_density_weights,
        test=test,
        trend_per_batch=trend_per_batch,
        equiweight=equiweight,
        method=method,
        subset_min_mean=subset_min_mean,
        n_jobs=n_jobs,
    )
    params = dict(
        flavor=flavor,
        span=span,
        min_mean=min_mean,
        test=test,
        method=method,
        fdr=fdr,
        spike_key=spike_key,
        batch_key=batch_key,
        trend_per_batch=trend_per_batch,
    )
    return _write_results(adata, data, res, params, fdr, key_added, inplace, start)


def _write_results(
    adata: sc.AnnData,
    data: ExpressionData,
    res: dict,
    params: dict,
    fdr: float,
    key_added: str,
    inplace: bool,
    start,
) -> Optional[pd.DataFrame]:
    df = res["result"].reindex(data.var_names)
    df["highly_variable"] = select_hvgs(df, fdr=fdr)
    logg.info(
        f"    found {int(df['highly_variable'].sum())} highly variable genes "
        f"at FDR {fdr}"
    )
    logg.info("    finished", time=start)

    if not inplace:
        return df

    df = df.reindex(adata.var_names)
    for k, col in VAR_COLS.items():
        adata.var[col] = df[k].to_numpy()
    adata.var["highly_variable"] = df["highly_variable"].fillna(False).to_numpy(
        dtype=bool
    )
    adata.uns[key_added] = dict(
        params={k: v for k, v in params.items() if v is not None},
        trend={_batch_name(b): _trend_uns(t) for b, t in res["trends"].items()},
        per_batch={_batch_name(b): x for b, x in res["per_batch"].items()},
    )
    logg.hint(
        "added\n"
        "    'highly_variable', boolean vector (adata.var)\n"
        "    'means', float vector (adata.var)\n"
        "    'variances', float vector (adata.var)\n"
        "    'tech_var', float vector (adata.var)\n"
        "    'bio_var', float vector (adata.var)\n"
        "    'p_value', float vector (adata.var)\n"
        "    'FDR', float vector (adata.var)\n"
        f"    '{key_added}', fit diagnostics (adata.uns)"
    )


__all__ = [
    "model_gene_var",
    "model_gene_var_data",
]

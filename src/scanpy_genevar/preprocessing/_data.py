"""
Immutable containers for log-expression data and per-feature statistics.

Size factors, spike-in flags and batch labels are carried as explicit
fields of a frozen record instead of mutable metadata on the AnnData.
Subsetting always returns a new record with size factors re-centered
within each batch, so centering cannot be lost by call order.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from .._constants import SIZE_FACTOR_TOL
from ..get import obs_categories
from .._validate import (
    validate_groupby,
    validate_layer_and_raw,
    validate_size_factors,
    validate_var_flag,
)


def _batch_levels(batch: Optional[np.ndarray]) -> list:
    if batch is None:
        return [None]
    return list(pd.unique(np.asarray(batch)))


def center_size_factors(
    size_factors: Sequence[float], batch: Optional[Sequence[Any]] = None
) -> np.ndarray:
    """Scale size factors to unit mean, separately within each batch."""
    sf = np.asarray(size_factors, dtype=np.float64)
    if batch is None:
        return sf / np.mean(sf)
    _batch = np.asarray(batch)
    assert len(_batch) == len(sf), (
        f"'batch' ({len(_batch)}) and size factors ({len(sf)}) differ in length."
    )
    out = np.empty_like(sf)
    for b in _batch_levels(_batch):
        mask = _batch == b
        out[mask] = sf[mask] / np.mean(sf[mask])
    return out


def check_size_factor_centering(
    size_factors: Optional[Sequence[float]],
    batch: Optional[Sequence[Any]] = None,
    tol: float = SIZE_FACTOR_TOL,
) -> bool:
    """
    Check that size factors have unit mean within every batch.

    Off-centered size factors distort the log-scale of spike-ins relative to
    endogenous genes. A warning is logged for every offending batch; the
    return value is `False` if any batch is off-center.
    """
    if size_factors is None:
        return True
    sf = np.asarray(size_factors, dtype=np.float64)
    _batch = None if batch is None else np.asarray(batch)
    centered = True
    for b in _batch_levels(_batch):
        mask = np.ones(len(sf), dtype=bool) if b is None else (_batch == b)
        if not np.any(mask):
            continue
        sf_mean = np.mean(sf[mask])
        if abs(sf_mean - 1.0) > tol:
            centered = False
            where = "" if b is None else f" in batch '{b}'"
            logg.warning(
                f"size factors{where} are not centered at unity "
                f"(mean={sf_mean:.3f}), variance estimates may be inaccurate."
            )
    return centered


@dataclass(frozen=True, eq=False)
class FeatureStats:
    """Mean and variance of log-expression per feature, from one set of cells."""

    names: pd.Index
    means: np.ndarray
    variances: np.ndarray
    n_cells: int
    batch: Optional[Any] = None

    def __post_init__(self):
        assert len(self.means) == len(self.variances) == len(self.names), (
            "'names', 'means' and 'variances' must have equal length."
        )

    def __len__(self) -> int:
        return len(self.names)

    @property
    def resid_df(self) -> int:
        return self.n_cells - 1

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            dict(mean=self.means, total=self.variances), index=self.names
        )


def get_mean_var(X) -> tuple[np.ndarray, np.ndarray]:
    """Per-column mean and unbiased variance of a cells x features matrix."""
    from scanpy.preprocessing._utils import _get_mean_var

    n_cells = X.shape[0]
    if n_cells < 2:
        means = (
            np.asarray(X.mean(axis=0)).ravel()
            if n_cells > 0
            else np.full(X.shape[1], np.nan)
        )
        return means.astype(np.float64), np.full(X.shape[1], np.nan)
    means, variances = _get_mean_var(X, axis=0)
    return np.asarray(means, dtype=np.float64), np.asarray(variances, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class ExpressionData:
    """
    Read-only view of a normalized log-expression matrix and its metadata.

    `X` is oriented cells x features like `AnnData.X`.
    """

    X: Any
    var_names: pd.Index
    obs_names: pd.Index
    is_spike: np.ndarray
    size_factors: Optional[np.ndarray] = None
    batch: Optional[np.ndarray] = None
    _levels: list = field(default_factory=list, repr=False, compare=False)

    def __post_init__(self):
        n_obs, n_vars = self.X.shape
        assert len(self.var_names) == n_vars, "'var_names' does not match X."
        assert len(self.obs_names) == n_obs, "'obs_names' does not match X."
        assert len(self.is_spike) == n_vars, "'is_spike' does not match X."
        if self.size_factors is not None:
            assert len(self.size_factors) == n_obs, "'size_factors' does not match X."
        if self.batch is not None:
            assert len(self.batch) == n_obs, "'batch' does not match X."
        if not self._levels:
            object.__setattr__(self, "_levels", _batch_levels(self.batch))

    @property
    def shape(self) -> tuple[int, int]:
        return self.X.shape

    @property
    def has_spikes(self) -> bool:
        return bool(np.any(self.is_spike))

    def batches(self) -> list:
        return list(self._levels)

    def cells_in(self, batch: Optional[Any] = None) -> np.ndarray:
        if batch is None or self.batch is None:
            return np.ones(self.shape[0], dtype=bool)
        return np.asarray(self.batch) == batch

    def n_cells(self) -> dict:
        return {b: int(np.sum(self.cells_in(b))) for b in self.batches()}

    def subset_cells(self, mask: np.ndarray) -> "ExpressionData":
        _mask = np.asarray(mask)
        if _mask.dtype == bool:
            assert len(_mask) == self.shape[0], "cell mask does not match X."
        X = self.X[_mask]
        batch = None if self.batch is None else np.asarray(self.batch)[_mask]
        sf = (
            None
            if self.size_factors is None
            else center_size_factors(self.size_factors[_mask], batch)
        )
        return replace(
            self,
            X=X,
            obs_names=self.obs_names[_mask],
            size_factors=sf,
            batch=batch,
            _levels=(
                []
                if batch is None
                else [b for b in self._levels if np.any(batch == b)]
            ),
        )

    @classmethod
    def from_anndata(
        cls,
        adata: sc.AnnData,
        layer: Optional[str] = None,
        use_raw: Optional[bool] = None,
        spike_key: Optional[str] = None,
        batch_key: Optional[str] = None,
        size_factors_key: Optional[str] = None,
    ) -> "ExpressionData":
        _layer, _use_raw = validate_layer_and_raw(adata, layer, use_raw)
        X = _get_obs_rep(adata, layer=_layer, use_raw=_use_raw)
        var = adata.raw.var if _use_raw else adata.var
        var_names = adata.raw.var_names if _use_raw else adata.var_names
        if spike_key is None:
            is_spike = np.zeros(len(var_names), dtype=bool)
        else:
            is_spike = validate_var_flag(var, spike_key)
        batch = None
        levels = []
        if batch_key is not None:
            validate_groupby(adata, batch_key)
            batch = adata.obs[batch_key].to_numpy()
            levels = [b for b in obs_categories(adata, batch_key) if np.any(batch == b)]
        sf = (
            None
            if size_factors_key is None
            else validate_size_factors(adata, size_factors_key)
        )
        return cls(
            X=X,
            var_names=pd.Index(var_names),
            obs_names=pd.Index(adata.obs_names),
            is_spike=is_spike,
            size_factors=sf,
            batch=batch,
            _levels=levels,
        )


def _batch_feature_stats(data: ExpressionData, batch: Optional[Any]) -> FeatureStats:
    mask = data.cells_in(batch)
    X = data.X if batch is None else data.X[mask]
    means, variances = get_mean_var(X)
    return FeatureStats(
        names=data.var_names,
        means=means,
        variances=variances,
        n_cells=int(X.shape[0]),
        batch=batch,
    )


def compute_feature_stats(
    data: ExpressionData, n_jobs: Optional[int] = None
) -> dict:
    """
    Per-batch feature statistics.

    Batches are processed independently; with `n_jobs > 1` they are
    distributed with joblib.
    """
    from joblib import Parallel, delayed
    from tqdm import tqdm

    from .._utilities import tqdm_joblib

    batches = data.batches()
    _n_jobs = sc.settings.n_jobs if n_jobs is None else n_jobs
    if len(batches) == 1 or _n_jobs == 1:
        return {b: _batch_feature_stats(data, b) for b in batches}

    with tqdm_joblib(tqdm(total=len(batches), mininterval=0.5, miniters=1)) as _:
        res = Parallel(n_jobs=_n_jobs)(
            delayed(_batch_feature_stats)(data, b) for b in batches
        )
    return {x.batch: x for x in res}


__all__ = [
    "ExpressionData",
    "FeatureStats",
    "center_size_factors",
    "check_size_factor_centering",
    "compute_feature_stats",
    "get_mean_var",
]

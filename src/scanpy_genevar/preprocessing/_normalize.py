from typing import Optional, Union

import numpy as np
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep, _set_obs_rep
from scipy import sparse

from .._validate import validate_groupby, validate_size_factors
from ._data import center_size_factors


def log_normalize(
    X: Union[np.ndarray, sparse.spmatrix],
    size_factors: np.ndarray,
    pseudo_count: float = 1.0,
) -> Union[np.ndarray, sparse.spmatrix]:
    """log2 of counts divided by size factors, plus a pseudo-count."""
    inv = 1.0 / np.asarray(size_factors, dtype=np.float64)
    assert len(inv) == X.shape[0], "size factors do not match number of cells."
    if sparse.issparse(X):
        if pseudo_count == 1.0:
            Xn = sparse.csr_matrix(sparse.diags(inv) @ X, dtype=np.float64)
            Xn.data = np.log2(Xn.data + 1.0)
            return Xn
        X = X.toarray()
    Xn = np.asarray(X, dtype=np.float64) * inv[:, None]
    return np.log2(Xn + pseudo_count)


def library_size_factors(X: Union[np.ndarray, sparse.spmatrix]) -> np.ndarray:
    lib = np.asarray(X.sum(axis=1), dtype=np.float64).ravel()
    if np.any(lib <= 0):
        raise ValueError("cells with zero total counts have no library size factor.")
    return lib / np.mean(lib)


def log_norm_counts(
    adata: sc.AnnData,
    size_factors_key: Optional[str] = None,
    batch_key: Optional[str] = None,
    layer: Optional[str] = None,
    pseudo_count: float = 1.0,
    key_added: Optional[str] = None,
    inplace: bool = True,
) -> Optional[Union[np.ndarray, sparse.spmatrix]]:
    """
    Log-normalize counts with centered size factors.

    Size factors are taken from `adata.obs[size_factors_key]` or computed from
    library sizes, and centered at unity within each batch of `batch_key`
    before use. Centered size factors are written to
    `adata.obs['size_factors']`.

    Args:
        adata: Annotated data matrix with counts
        size_factors_key: Column of `adata.obs` with size factors
        batch_key: Column of `adata.obs` with batch labels
        layer: Layer holding counts, `adata.X` if not given
        pseudo_count: Pseudo-count added before taking the log
        key_added: Layer for the log-expression values, `adata.X` if not given
        inplace: Write results to `adata` instead of returning them

    Returns:
        Log-expression matrix if `inplace=False`
    """
    start = logg.info("log-normalizing counts")
    X = _get_obs_rep(adata, layer=layer)
    if size_factors_key is None:
        sf = library_size_factors(X)
    else:
        sf = validate_size_factors(adata, size_factors_key)
    batch = None
    if batch_key is not None:
        validate_groupby(adata, batch_key)
        batch = adata.obs[batch_key].to_numpy()
    sf = center_size_factors(sf, batch)
    Xn = log_normalize(X, sf, pseudo_count=pseudo_count)
    logg.info("    finished", time=start)

    if not inplace:
        return Xn
    adata.obs["size_factors"] = sf
    _set_obs_rep(adata, Xn, layer=key_added)
    logg.hint(
        "added\n"
        "    'size_factors', centered size factors (adata.obs)\n"
        + (
            "    log-expression values (adata.X)"
            if key_added is None
            else f"    '{key_added}', log-expression values (adata.layers)"
        )
    )


__all__ = [
    "library_size_factors",
    "log_norm_counts",
    "log_normalize",
]

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Optional

import numpy as np
import pandas as pd
from scanpy import logging as logg
from scipy import stats

from .._constants import COMBINE_FIELDS, DECOMP_COLS
from .._errors import AllBatchesMissingError
from ._decompose import adjust_pvalues


@dataclass(frozen=True, eq=False)
class CombinedVariance:
    """Batch-combined decomposition with the per-batch tables it came from."""

    summary: pd.DataFrame
    per_batch: Mapping[Any, pd.DataFrame]
    weights: Mapping[Any, float]

    def to_dataframe(self) -> pd.DataFrame:
        blocks = {"combined": self.summary}
        blocks.update(
            {str(b): df.reindex(self.summary.index) for b, df in self.per_batch.items()}
        )
        return pd.concat(blocks, axis=1)


def _union_index(frames: list[pd.DataFrame]) -> pd.Index:
    idx = frames[0].index
    for df in frames[1:]:
        idx = idx.union(df.index, sort=False)
    return idx


def _combine_pvalues(
    p: np.ndarray,
    valid: np.ndarray,
    w: np.ndarray,
    method: Literal["fisher", "stouffer", "berger"],
) -> np.ndarray:
    n_valid = valid.sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        if method == "fisher":
            # -2 * sum(log(p)) ~ chi2(2k)
            logp = np.where(valid, np.log(p), 0.0)
            statistic = -2 * logp.sum(axis=1)
            res = stats.chi2.sf(statistic, 2 * n_valid)
        elif method == "stouffer":
            z = np.where(valid, stats.norm.isf(p), 0.0)
            _w = np.where(valid, w, 0.0)
            statistic = (z * _w).sum(axis=1) / np.sqrt((_w**2).sum(axis=1))
            res = stats.norm.sf(statistic)
        else:
            res = np.where(valid, p, -np.inf).max(axis=1)
    return np.where(n_valid > 0, res, np.nan)


def combine_batches(
    per_batch: Mapping[Any, pd.DataFrame],
    weights: Optional[Mapping[Any, float]] = None,
    method: Literal["fisher", "stouffer", "berger"] = "fisher",
    equiweight: bool = False,
    drop_missing: bool = True,
) -> CombinedVariance:
    """
    Combine per-batch variance decompositions.

    Means and variance components are averaged with weights proportional to
    `weights` (typically the number of cells per batch); p-values are
    combined with `method`. A batch only contributes to a feature where its
    statistics and p-value are finite, and weights are renormalized over the
    contributing batches.

    Args:
        per_batch: Decomposition table per batch
        weights: Weight per batch, equal weights if not given
        method: 'fisher', 'stouffer' (weighted z) or 'berger' (maximum p)
        equiweight: Ignore `weights` and weight batches equally
        drop_missing: Drop features without any contributing batch instead
            of raising `AllBatchesMissingError`

    Returns:
        The combined summary table with per-batch tables attached
    """
    assert method in ["fisher", "stouffer", "berger"], (
        f"invalid 'method' provided: {method}."
    )
    assert len(per_batch) > 0, "no batches to combine."
    batches = list(per_batch.keys())
    frames = [per_batch[b] for b in batches]
    index = _union_index(frames)

    if equiweight or weights is None:
        w = np.ones(len(batches))
    else:
        w = np.array([weights[b] for b in batches], dtype=np.float64)
    assert np.all(w >= 0) and np.any(w > 0), "batch weights must be non-negative."

    aligned = [df.reindex(index) for df in frames]
    values = {
        k: np.column_stack([df[k].to_numpy(dtype=np.float64) for df in aligned])
        for k in COMBINE_FIELDS + ["p_value"]
    }
    valid = np.ones(values["mean"].shape, dtype=bool)
    for k in ["mean", "total", "tech", "p_value"]:
        valid &= np.isfinite(values[k])
    valid &= w[None, :] > 0

    n_batches = valid.sum(axis=1)
    missing = n_batches == 0
    if np.any(missing):
        if not drop_missing:
            raise AllBatchesMissingError(index[missing])
        logg.warning(
            f"dropping {int(missing.sum())} features without valid statistics "
            "in any batch"
        )

    W = np.where(valid, w[None, :], 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        W = W / W.sum(axis=1, keepdims=True)

    res = {}
    for k in COMBINE_FIELDS:
        res[k] = np.where(valid, values[k] * W, 0.0).sum(axis=1)
    # keep tech + bio == total exact after averaging
    res["bio"] = res["total"] - res["tech"]
    with np.errstate(divide="ignore", invalid="ignore"):
        res["statistic"] = res["total"] / res["tech"]
    res["p_value"] = _combine_pvalues(
        values["p_value"], valid, np.broadcast_to(w, valid.shape), method
    )

    summary = pd.DataFrame(res, index=index)
    summary["n_batches"] = n_batches
    summary = summary.loc[~missing].copy()
    summary["FDR"] = adjust_pvalues(summary["p_value"].to_numpy())

    return CombinedVariance(
        summary=summary[DECOMP_COLS + ["n_batches"]],
        per_batch=dict(zip(batches, frames)),
        weights=dict(zip(batches, w.tolist())),
    )


__all__ = [
    "CombinedVariance",
    "combine_batches",
]

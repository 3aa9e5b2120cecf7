from typing import Literal, Optional

import numpy as np
import pandas as pd
from scanpy import logging as logg
from scipy import stats

from .._constants import DECOMP_COLS, DEFAULT_FDR
from ._data import FeatureStats
from ._loess_fit import TrendFunction


def adjust_pvalues(p_values: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg adjustment.

    NaN p-values are kept as NaN and do not count towards the number of tests.
    """
    _p = np.asarray(p_values, dtype=np.float64)
    fdr = np.full_like(_p, np.nan)
    mask = ~np.isnan(_p)
    if np.any(mask):
        fdr[mask] = stats.false_discovery_control(_p[mask], method="bh")
    return fdr


def variance_pvalues(
    total: np.ndarray,
    tech: np.ndarray,
    df: int,
    test: Literal["chisq", "normal"] = "chisq",
    std_dev: Optional[float] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Test whether the total variance exceeds the technical variance.

    Args:
        total: Total variance per feature
        tech: Technical (null) variance per feature
        df: Residual degrees of freedom of the variance estimates
        test: 'chisq' treats `ratio * df` as chi-squared with `df` degrees of
            freedom, 'normal' tests `ratio - 1` against a normal distribution
            with the trend's robust scale `std_dev`
        std_dev: Scale for the 'normal' test

    Returns:
        Ratio of total to technical variance and one-sided p-values
    """
    assert test in ["chisq", "normal"], f"invalid 'test' provided: {test}."
    _total = np.asarray(total, dtype=np.float64)
    _tech = np.asarray(tech, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = _total / _tech
    ratio[~np.isfinite(ratio)] = np.nan

    if df < 1:
        logg.warning("no residual degrees of freedom, p-values set to NaN")
        return ratio, np.full_like(ratio, np.nan)
    if test == "chisq":
        p_value = stats.chi2.sf(ratio * df, df)
    else:
        assert std_dev is not None, "'std_dev' is required for the normal test."
        if not (np.isfinite(std_dev) and std_dev > 0):
            logg.warning(f"invalid trend scale {std_dev}, p-values set to NaN")
            return ratio, np.full_like(ratio, np.nan)
        p_value = stats.norm.sf(ratio - 1, scale=std_dev)
    return ratio, p_value


def decompose_variance(
    feature_stats: FeatureStats,
    trend: TrendFunction,
    test: Literal["chisq", "normal"] = "chisq",
    subset: Optional[np.ndarray] = None,
    min_mean: Optional[float] = None,
) -> pd.DataFrame:
    """
    Split total variance into technical and biological components.

    No mean-based filtering is applied unless `min_mean` is given, so
    low-abundance features keep their (possibly weak) biological signal.
    Negative biological components are reported as-is.

    Args:
        feature_stats: Feature statistics of one batch
        trend: Fitted technical trend
        test: Significance test, see `variance_pvalues`
        subset: Boolean mask of features to report
        min_mean: Only report features with at least this mean

    Returns:
        DataFrame in the feature order of `feature_stats` with columns
        'mean', 'total', 'tech', 'bio', 'statistic', 'p_value' and 'FDR'
    """
    keep = np.ones(len(feature_stats), dtype=bool)
    if subset is not None:
        _subset = np.asarray(subset, dtype=bool)
        assert len(_subset) == len(feature_stats), (
            "'subset' does not match feature statistics."
        )
        keep &= _subset
    if min_mean is not None:
        keep &= feature_stats.means >= min_mean

    xm = feature_stats.means[keep]
    xv = feature_stats.variances[keep]
    tech = trend(xm)
    bio = xv - tech
    ratio, p_value = variance_pvalues(
        xv, tech, df=feature_stats.resid_df, test=test, std_dev=trend.std_dev
    )

    df = pd.DataFrame(
        dict(
            mean=xm,
            total=xv,
            tech=tech,
            bio=bio,
            statistic=ratio,
            p_value=p_value,
            FDR=adjust_pvalues(p_value),
        ),
        index=feature_stats.names[keep],
    )
    return df[DECOMP_COLS]


def select_hvgs(
    df: pd.DataFrame,
    fdr: float = DEFAULT_FDR,
    min_bio: float = 0.0,
    n_top: Optional[int] = None,
) -> pd.Series:
    """
    Flag highly variable genes in a decomposition table.

    With `n_top`, the features with the largest biological component are
    taken; otherwise those with `FDR <= fdr` and `bio > min_bio`.
    """
    if n_top is not None:
        top = df["bio"].dropna().sort_values(ascending=False).head(n_top).index
        return pd.Series(df.index.isin(top), index=df.index, name="highly_variable")
    sel = (df["FDR"] <= fdr) & (df["bio"] > min_bio)
    return sel.fillna(False).astype(bool).rename("highly_variable")


__all__ = [
    "adjust_pvalues",
    "decompose_variance",
    "select_hvgs",
    "variance_pvalues",
]

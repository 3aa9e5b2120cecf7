import numpy as np
import pandas as pd
import pytest

from scanpy_genevar.preprocessing import (
    FeatureStats,
    TrendFitter,
    adjust_pvalues,
    decompose_variance,
    select_hvgs,
)
from scanpy_genevar.preprocessing._decompose import variance_pvalues


def _stats(n: int = 80, n_cells: int = 100, seed: int = 0) -> FeatureStats:
    rng = np.random.default_rng(seed)
    means = rng.uniform(0.2, 6.0, size=n)
    variances = means / (1 + means) * rng.lognormal(0, 0.1, size=n)
    variances[:5] *= 4.0
    return FeatureStats(
        names=pd.Index([f"g{i}" for i in range(n)]),
        means=means,
        variances=variances,
        n_cells=n_cells,
    )


def test_components_add_up():
    stats = _stats()
    trend = TrendFitter().fit(stats)
    df = decompose_variance(stats, trend)

    assert list(df.columns) == [
        "mean",
        "total",
        "tech",
        "bio",
        "statistic",
        "p_value",
        "FDR",
    ]
    assert df.index.equals(stats.names)
    np.testing.assert_allclose(df["tech"] + df["bio"], df["total"])
    np.testing.assert_allclose(df["tech"], trend(stats.means))
    assert df[["p_value", "FDR"]].stack().between(0, 1).all()
    assert (df["FDR"] >= df["p_value"]).all()


def test_inflated_features_are_significant():
    stats = _stats()
    df = decompose_variance(stats, TrendFitter().fit(stats))
    hvg = select_hvgs(df, fdr=0.05)
    assert hvg.iloc[:5].all()
    assert hvg.iloc[5:].mean() < 0.1


def test_negative_biological_component_is_kept():
    stats = _stats()
    df = decompose_variance(stats, TrendFitter().fit(stats))
    assert (df["bio"] < 0).any()
    assert not select_hvgs(df)[df["bio"] < 0].any()


def test_min_mean_subsets_report():
    stats = _stats()
    trend = TrendFitter().fit(stats)
    df = decompose_variance(stats, trend, min_mean=1.0)
    assert (df["mean"] >= 1.0).all()
    assert len(df) == int(np.sum(stats.means >= 1.0))


def test_chisq_pvalues():
    ratio, p = variance_pvalues(np.array([2.0, 1.0]), np.array([1.0, 1.0]), df=49)
    np.testing.assert_allclose(ratio, [2.0, 1.0])
    assert p[0] < 1e-4
    assert 0.3 < p[1] < 0.6


def test_zero_tech_gives_nan():
    ratio, p = variance_pvalues(np.array([1.0]), np.array([0.0]), df=10)
    assert np.isnan(ratio[0])
    assert np.isnan(p[0])


def test_no_degrees_of_freedom_gives_nan():
    _, p = variance_pvalues(np.array([2.0, 3.0]), np.array([1.0, 1.0]), df=0)
    assert np.isnan(p).all()


def test_normal_test_uses_trend_scale():
    _, p_narrow = variance_pvalues(
        np.array([1.5]), np.array([1.0]), df=10, test="normal", std_dev=0.1
    )
    _, p_wide = variance_pvalues(
        np.array([1.5]), np.array([1.0]), df=10, test="normal", std_dev=1.0
    )
    assert p_narrow[0] < p_wide[0]


def test_bh_adjustment():
    p = np.array([0.01, 0.04, 0.03, 0.2, np.nan])
    fdr = adjust_pvalues(p)
    assert np.isnan(fdr[-1])
    np.testing.assert_allclose(fdr[:4], [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.2])
    assert np.all(fdr[:4] >= p[:4])


def test_bh_preserves_order():
    rng = np.random.default_rng(4)
    p = rng.uniform(size=100)
    fdr = adjust_pvalues(p)
    order = np.argsort(p)
    assert np.all(np.diff(fdr[order]) >= 0)
    assert np.all(fdr <= 1.0)


def test_select_top_n():
    df = pd.DataFrame(
        {"bio": [0.5, 2.0, -1.0, 1.0], "FDR": [0.5, 0.01, 0.9, 0.01]},
        index=list("abcd"),
    )
    assert select_hvgs(df, n_top=2).tolist() == [False, True, False, True]
    assert select_hvgs(df, fdr=0.05).tolist() == [False, True, False, True]
    assert select_hvgs(df, fdr=0.05, min_bio=1.5).tolist() == [
        False,
        True,
        False,
        False,
    ]


def test_bh_single_value():
    assert adjust_pvalues(np.array([0.3]))[0] == pytest.approx(0.3)

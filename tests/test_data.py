import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scanpy_genevar.preprocessing import (
    ExpressionData,
    center_size_factors,
    check_size_factor_centering,
    compute_feature_stats,
)


def _data(sparse_X: bool = False) -> ExpressionData:
    rng = np.random.default_rng(0)
    X = rng.poisson(2.0, size=(30, 8)).astype(np.float64)
    return ExpressionData(
        X=sparse.csr_matrix(X) if sparse_X else X,
        var_names=pd.Index([f"g{i}" for i in range(8)]),
        obs_names=pd.Index([f"c{i}" for i in range(30)]),
        is_spike=np.array([False] * 6 + [True] * 2),
        size_factors=center_size_factors(rng.uniform(0.5, 2.0, size=30)),
        batch=np.repeat(["x", "y", "z"], 10),
    )


def test_center_size_factors_per_batch():
    sf = np.array([1.0, 3.0, 10.0, 30.0])
    batch = np.array(["a", "a", "b", "b"])
    out = center_size_factors(sf, batch)
    np.testing.assert_allclose(out, [0.5, 1.5, 0.5, 1.5])
    assert check_size_factor_centering(out, batch)


def test_off_center_size_factors_are_flagged():
    sf = np.array([1.0, 3.0, 0.5, 1.5])
    batch = np.array(["a", "a", "b", "b"])
    assert not check_size_factor_centering(sf, batch)
    assert check_size_factor_centering(None)


def test_subset_recenters_size_factors():
    data = _data()
    mask = np.zeros(30, dtype=bool)
    mask[[0, 1, 2, 12, 13, 14, 15]] = True
    sub = data.subset_cells(mask)

    assert sub.shape == (7, 8)
    assert sub.batches() == ["x", "y"]
    for b in sub.batches():
        assert np.mean(sub.size_factors[sub.cells_in(b)]) == pytest.approx(1.0)
    # the original record is untouched
    assert data.shape == (30, 8)
    assert data.batches() == ["x", "y", "z"]


def test_record_is_immutable():
    data = _data()
    with pytest.raises(AttributeError):
        data.size_factors = None


@pytest.mark.parametrize("sparse_X", [False, True])
def test_feature_stats_per_batch(sparse_X):
    data = _data(sparse_X)
    stats = compute_feature_stats(data, n_jobs=1)
    assert list(stats.keys()) == ["x", "y", "z"]

    X = data.X.toarray() if sparse_X else data.X
    first = stats["x"]
    assert first.n_cells == 10
    assert first.resid_df == 9
    np.testing.assert_allclose(first.means, X[:10].mean(axis=0))
    np.testing.assert_allclose(first.variances, X[:10].var(axis=0, ddof=1))


def test_single_cell_batch_has_no_variance():
    data = _data().subset_cells(np.arange(30) < 11)
    stats = compute_feature_stats(data, n_jobs=1)
    assert stats["y"].n_cells == 1
    assert np.isnan(stats["y"].variances).all()


def test_from_anndata_validates_keys(counts_adata):
    with pytest.raises(KeyError):
        ExpressionData.from_anndata(counts_adata, spike_key="missing")
    with pytest.raises(KeyError):
        ExpressionData.from_anndata(counts_adata, batch_key="missing")
    counts_adata.var["is_spike_str"] = counts_adata.var["is_spike"].astype(str)
    with pytest.raises(TypeError):
        ExpressionData.from_anndata(counts_adata, spike_key="is_spike_str")


def test_from_anndata(counts_adata):
    data = ExpressionData.from_anndata(
        counts_adata, spike_key="is_spike", batch_key="batch", size_factors_key="sf"
    )
    assert data.shape == counts_adata.shape
    assert data.has_spikes
    assert data.batches() == ["plate1", "plate2"]
    assert data.n_cells() == {"plate1": 100, "plate2": 100}

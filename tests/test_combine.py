import numpy as np
import pandas as pd
import pytest

from scanpy_genevar import AllBatchesMissingError
from scanpy_genevar.preprocessing import adjust_pvalues, combine_batches


def _table(mean, total, tech, p, index) -> pd.DataFrame:
    mean, total, tech, p = map(np.asarray, (mean, total, tech, p))
    return pd.DataFrame(
        dict(
            mean=mean,
            total=total,
            tech=tech,
            bio=total - tech,
            statistic=total / tech,
            p_value=p,
            FDR=adjust_pvalues(p),
        ),
        index=pd.Index(index),
    )


def test_single_batch_is_unchanged():
    df = _table([1.0, 2.0], [1.5, 3.0], [1.0, 2.0], [0.01, 0.2], ["a", "b"])
    res = combine_batches({"b1": df}, weights={"b1": 30})
    summary = res.summary
    np.testing.assert_allclose(summary["p_value"], df["p_value"])
    np.testing.assert_allclose(summary["FDR"], df["FDR"])
    for k in ["mean", "total", "tech", "bio"]:
        np.testing.assert_allclose(summary[k], df[k])


def test_weighted_average_of_components():
    b1 = _table([1.0], [2.0], [1.0], [0.1], ["a"])
    b2 = _table([3.0], [6.0], [3.0], [0.1], ["a"])
    res = combine_batches({"b1": b1, "b2": b2}, weights={"b1": 10, "b2": 30})
    row = res.summary.loc["a"]
    assert row["mean"] == pytest.approx(2.5)
    assert row["total"] == pytest.approx(5.0)
    assert row["tech"] == pytest.approx(2.5)
    assert row["bio"] == pytest.approx(row["total"] - row["tech"])
    assert row["n_batches"] == 2


def test_equiweight_ignores_weights():
    b1 = _table([1.0], [2.0], [1.0], [0.1], ["a"])
    b2 = _table([3.0], [6.0], [3.0], [0.1], ["a"])
    res = combine_batches(
        {"b1": b1, "b2": b2}, weights={"b1": 10, "b2": 30}, equiweight=True
    )
    assert res.summary.loc["a", "mean"] == pytest.approx(2.0)


def test_fisher_combination():
    b1 = _table([1.0], [2.0], [1.0], [0.01], ["a"])
    b2 = _table([1.0], [2.0], [1.0], [0.02], ["a"])
    res = combine_batches({"b1": b1, "b2": b2}, method="fisher")
    # chi2 with 4 degrees of freedom has a closed-form survival function
    x = -2 * np.log(0.01 * 0.02)
    expected = np.exp(-x / 2) * (1 + x / 2)
    assert res.summary.loc["a", "p_value"] == pytest.approx(expected)
    assert res.summary.loc["a", "p_value"] < 0.01


def test_berger_takes_maximum():
    b1 = _table([1.0], [2.0], [1.0], [0.01], ["a"])
    b2 = _table([1.0], [2.0], [1.0], [0.2], ["a"])
    res = combine_batches({"b1": b1, "b2": b2}, method="berger")
    assert res.summary.loc["a", "p_value"] == pytest.approx(0.2)


def test_stouffer_between_inputs():
    b1 = _table([1.0], [2.0], [1.0], [0.01], ["a"])
    b2 = _table([1.0], [2.0], [1.0], [0.2], ["a"])
    res = combine_batches({"b1": b1, "b2": b2}, method="stouffer")
    assert 0.0 < res.summary.loc["a", "p_value"] < 0.2


def test_missing_batch_is_skipped_per_feature():
    b1 = _table([1.0, 2.0], [2.0, 4.0], [1.0, 2.0], [0.01, 0.02], ["a", "b"])
    b2 = _table([3.0], [6.0], [3.0], [0.5], ["a"])
    res = combine_batches({"b1": b1, "b2": b2}, weights={"b1": 1, "b2": 1})
    row = res.summary.loc["b"]
    assert row["n_batches"] == 1
    assert row["mean"] == pytest.approx(2.0)
    assert row["p_value"] == pytest.approx(0.02)


def test_features_missing_everywhere():
    b1 = _table([1.0, 2.0], [2.0, 4.0], [1.0, 2.0], [0.01, np.nan], ["a", "b"])
    b2 = _table([3.0, 1.0], [6.0, 2.0], [3.0, 1.0], [0.5, np.nan], ["a", "b"])
    with pytest.raises(AllBatchesMissingError) as err:
        combine_batches({"b1": b1, "b2": b2}, drop_missing=False)
    assert err.value.features == ["b"]

    res = combine_batches({"b1": b1, "b2": b2})
    assert res.summary.index.tolist() == ["a"]


def test_to_dataframe_has_batch_blocks():
    b1 = _table([1.0], [2.0], [1.0], [0.01], ["a"])
    b2 = _table([3.0], [6.0], [3.0], [0.5], ["a"])
    out = combine_batches({"b1": b1, "b2": b2}).to_dataframe()
    assert set(out.columns.get_level_values(0)) == {"combined", "b1", "b2"}
    assert out.loc["a", ("b2", "mean")] == pytest.approx(3.0)

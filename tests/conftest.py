import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc

N_CELLS = 200
N_GENES = 120
N_SPIKES = 40
N_VARIABLE = 10


def _simulate_counts(seed: int = 0):
    rng = np.random.default_rng(seed)
    sf = rng.lognormal(mean=0.0, sigma=0.3, size=N_CELLS)
    sf = sf / sf.mean()

    gene_means = np.exp(rng.uniform(np.log(0.5), np.log(50.0), size=N_GENES))
    spike_means = np.exp(np.linspace(np.log(0.5), np.log(100.0), N_SPIKES))

    lam = np.outer(sf, gene_means)
    # strongly bimodal genes carry biological variance
    on = rng.uniform(size=(N_CELLS, N_VARIABLE)) < 0.5
    lam[:, :N_VARIABLE] = np.outer(sf, np.full(N_VARIABLE, 0.5)) + on * np.outer(
        sf, np.full(N_VARIABLE, 40.0)
    )
    genes = rng.poisson(lam)
    spikes = rng.poisson(np.outer(sf, spike_means))
    return np.hstack([genes, spikes]).astype(np.float32), sf


@pytest.fixture
def counts_adata() -> ad.AnnData:
    X, sf = _simulate_counts()
    var = pd.DataFrame(
        {"is_spike": np.r_[np.zeros(N_GENES, bool), np.ones(N_SPIKES, bool)]},
        index=[f"gene_{i}" for i in range(N_GENES)]
        + [f"ERCC_{i}" for i in range(N_SPIKES)],
    )
    obs = pd.DataFrame(
        {
            "sf": sf,
            "batch": pd.Categorical(np.repeat(["plate1", "plate2"], N_CELLS // 2)),
        },
        index=[f"cell_{i}" for i in range(N_CELLS)],
    )
    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = adata.X.copy()
    return adata


@pytest.fixture
def lognorm_adata(counts_adata) -> ad.AnnData:
    sc.settings.verbosity = 0
    from scanpy_genevar.preprocessing import log_norm_counts

    log_norm_counts(counts_adata, size_factors_key="sf")
    return counts_adata

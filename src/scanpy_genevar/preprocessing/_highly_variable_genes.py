"""
Highly variable gene selection with scanpy-compatible output.

Genes are ranked by their biological variance component from
`model_gene_var`; the selection either keeps all genes significant at a
given FDR or the top genes by biological variance.
"""

from typing import Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from .._constants import DEFAULT_FDR
from ._decompose import select_hvgs
from ._model_gene_var import model_gene_var


def highly_variable_genes(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    use_raw: Optional[bool] = None,
    spike_key: Optional[str] = None,
    batch_key: Optional[str] = None,
    n_top_genes: Optional[int] = None,
    fdr: float = DEFAULT_FDR,
    min_bio: float = 0.0,
    subset: bool = False,
    inplace: bool = True,
    **kwargs,
) -> Optional[pd.DataFrame]:
    """
    Annotate highly variable genes.

    Args:
        adata: Annotated data matrix with log-normalized expression
        layer: Layer holding log-expression values
        use_raw: Use `adata.raw`
        spike_key: Boolean column of `adata.var` marking spike-in transcripts
        batch_key: Column of `adata.obs` with batch labels
        n_top_genes: Select this many genes by biological variance instead of
            using the FDR threshold
        fdr: FDR threshold
        min_bio: Minimum biological variance of selected genes
        subset: Subset `adata` to the highly variable genes
        inplace: Write results to `adata` instead of returning them
        **kwargs: Passed to `model_gene_var`

    Returns:
        DataFrame with 'highly_variable', 'means', 'variances',
        'variances_norm' and test results if `inplace=False`
    """
    if not isinstance(adata, sc.AnnData):
        raise ValueError("`pp.highly_variable_genes` expects an `AnnData` argument.")

    start = logg.info("extracting highly variable genes")
    res = model_gene_var(
        adata,
        layer=layer,
        use_raw=use_raw,
        spike_key=spike_key,
        batch_key=batch_key,
        fdr=fdr,
        inplace=False,
        **kwargs,
    )
    df = pd.DataFrame(
        dict(
            means=res["mean"],
            variances=res["total"],
            variances_norm=res["bio"],
            p_value=res["p_value"],
            FDR=res["FDR"],
        ),
        index=res.index,
    )
    # spike-ins are never reported as highly variable genes
    spikes = np.zeros(len(df), dtype=bool)
    if spike_key is not None:
        spikes = (
            adata.var[spike_key]
            .reindex(df.index, fill_value=False)
            .to_numpy(dtype=bool)
        )
    hvg = select_hvgs(res.loc[~spikes], fdr=fdr, min_bio=min_bio, n_top=n_top_genes)
    df["highly_variable"] = hvg.reindex(df.index, fill_value=False).to_numpy(
        dtype=bool
    )
    logg.info(
        f"    {int(df['highly_variable'].sum())} highly variable genes selected"
    )
    logg.info("    finished", time=start)

    if not inplace:
        if subset:
            df = df.loc[df["highly_variable"]]
        return df

    df = df.reindex(adata.var_names)
    adata.uns["hvg"] = {"flavor": "scran"}
    logg.hint(
        "added\n"
        "    'highly_variable', boolean vector (adata.var)\n"
        "    'means', float vector (adata.var)\n"
        "    'variances', float vector (adata.var)\n"
        "    'variances_norm', float vector (adata.var)"
    )
    adata.var["highly_variable"] = df["highly_variable"].fillna(False).to_numpy(
        dtype=bool
    )
    adata.var["means"] = df["means"].to_numpy()
    adata.var["variances"] = df["variances"].to_numpy()
    adata.var["variances_norm"] = df["variances_norm"].to_numpy().astype(
        np.float32, copy=False
    )
    if subset:
        adata._inplace_subset_var(adata.var["highly_variable"].to_numpy())

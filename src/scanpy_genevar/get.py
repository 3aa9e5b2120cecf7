from collections.abc import Iterable
from os import PathLike
from typing import Optional, Union

import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from ._constants import DEFAULT_KEY, VAR_COLS


def obs_categories(
    adata: sc.AnnData,
    key: str,
) -> Iterable[str]:
    return list(
        adata.obs[key].cat.categories
        if isinstance(adata.obs[key].dtype, pd.CategoricalDtype)
        else adata.obs[key].unique()
    )


def model_gene_var_df(
    adata: sc.AnnData,
    key: str = DEFAULT_KEY,
    batch: Optional[str] = None,
) -> pd.DataFrame:
    """
    Variance decomposition stored by `pp.model_gene_var`.

    Args:
        adata: Annotated data matrix
        key: Key of the results in `adata.uns`
        batch: Return the table of this batch instead of the combined one

    Returns:
        DataFrame with 'mean', 'total', 'tech', 'bio', 'p_value', 'FDR' and
        'highly_variable', sorted by decreasing biological variance
    """
    if key not in adata.uns.keys():
        raise KeyError(
            f"Could not find key {key} in .uns, run `pp.model_gene_var` first."
        )
    if batch is not None:
        per_batch = adata.uns[key]["per_batch"]
        if str(batch) not in per_batch.keys():
            raise KeyError(f"Could not find batch {batch} in .uns['{key}'].")
        df = pd.DataFrame(per_batch[str(batch)])
    else:
        missing = [x for x in VAR_COLS.values() if x not in adata.var.keys()]
        if len(missing) > 0:
            raise KeyError(f"Could not find {missing} in .var.columns.")
        df = pd.DataFrame(
            {k: adata.var[v].to_numpy() for k, v in VAR_COLS.items()},
            index=adata.var_names,
        )
        df["highly_variable"] = adata.var["highly_variable"].to_numpy()
    return df.sort_values("bio", ascending=False)


def write_variance_table(
    data: Union[sc.AnnData, pd.DataFrame],
    path: Union[str, PathLike],
    sep: str = "\t",
    key: str = DEFAULT_KEY,
    float_format: Optional[str] = None,
) -> None:
    """Write a variance decomposition table to a delimited text file."""
    df = model_gene_var_df(data, key=key) if isinstance(data, sc.AnnData) else data
    df.to_csv(path, sep=sep, index_label="feature", float_format=float_format)
    logg.info(f"wrote {df.shape[0]} features to {path}")


__all__ = [
    "model_gene_var_df",
    "obs_categories",
    "write_variance_table",
]

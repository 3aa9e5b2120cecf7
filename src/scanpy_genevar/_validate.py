from typing import Optional

import numpy as np
import pandas as pd
import scanpy as sc
from pandas.api.types import is_bool_dtype, is_numeric_dtype
from scanpy import logging as logg


def validate_var_flag(var: pd.DataFrame, key: str) -> np.ndarray:
    if key not in var.keys():
        raise KeyError(f"Could not find key {key} in .var.columns.")
    if not is_bool_dtype(var[key]):
        raise TypeError(f"Key {key} in .var.columns is not boolean dtype.")
    return var[key].to_numpy(dtype=bool)


def validate_size_factors(adata: sc.AnnData, key: str) -> np.ndarray:
    if key not in adata.obs.keys():
        raise KeyError(f"Could not find key {key} in .obs.columns.")
    if not is_numeric_dtype(adata.obs[key]):
        raise TypeError(f"Key {key} in .obs.columns is not numeric dtype.")
    sf = adata.obs[key].to_numpy(dtype=np.float64)
    if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
        raise ValueError(f"Size factors in .obs['{key}'] must be finite and positive.")
    return sf


def validate_groupby(adata: sc.AnnData, groupby: str) -> None:
    if groupby not in adata.obs.keys():
        raise KeyError(f"Could not find key {groupby} in .obs.columns.")
    elif is_numeric_dtype(adata.obs[groupby]) and not is_bool_dtype(
        adata.obs[groupby]
    ):
        logg.warning(f"Key {groupby} in .obs.columns is numeric, treating as labels.")
    elif str(adata.obs[groupby].dtype) != "category":
        logg.debug(f"Key {groupby} in .obs.columns is not 'category' dtype.")
    return


def validate_layer_and_raw(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    use_raw: Optional[bool] = None,
) -> tuple[Optional[str], bool]:
    _use_raw = (
        use_raw
        if isinstance(use_raw, bool)
        else (True if (layer is None and adata.raw is not None) else False)
    )
    assert not _use_raw or layer is None, (
        "Cannot specify use_raw=True and a layer at the same time."
    )
    if layer is not None and layer not in adata.layers.keys():
        raise KeyError(f"Could not find layer {layer} in .layers.")
    if _use_raw:
        logg.info("Using .raw.")
    return layer, _use_raw

from ._combine import CombinedVariance, combine_batches
from ._data import (
    ExpressionData,
    FeatureStats,
    center_size_factors,
    check_size_factor_centering,
    compute_feature_stats,
)
from ._decompose import adjust_pvalues, decompose_variance, select_hvgs
from ._highly_variable_genes import highly_variable_genes
from ._loess_fit import TrendFitter, TrendFunction
from ._model_gene_var import model_gene_var, model_gene_var_data
from ._normalize import log_norm_counts
from ._poisson import model_gene_var_by_poisson

__all__ = [
    "CombinedVariance",
    "ExpressionData",
    "FeatureStats",
    "TrendFitter",
    "TrendFunction",
    "adjust_pvalues",
    "center_size_factors",
    "check_size_factor_centering",
    "combine_batches",
    "compute_feature_stats",
    "decompose_variance",
    "highly_variable_genes",
    "log_norm_counts",
    "model_gene_var",
    "model_gene_var_by_poisson",
    "model_gene_var_data",
    "select_hvgs",
]

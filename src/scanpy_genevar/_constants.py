DEFAULT_SPAN = 0.3
DEFAULT_MIN_MEAN = 0.1
DEFAULT_FDR = 0.05
MIN_VARIANCE = 1e-8
SIZE_FACTOR_TOL = 0.05

# minimum qualifying points per fitting flavor
MIN_POINTS_LOWESS = 2
MIN_POINTS_PARAMETRIC = 4

# degree-1 loess needs this many points overall and per neighbourhood
MIN_POINTS_LOESS = 15
MIN_LOESS_NEIGHBOURS = 5

DECOMP_COLS = ["mean", "total", "tech", "bio", "statistic", "p_value", "FDR"]
COMBINE_FIELDS = ["mean", "total", "tech", "bio"]

# adata.var columns written by pp.model_gene_var
VAR_COLS = {
    "mean": "means",
    "total": "variances",
    "tech": "tech_var",
    "bio": "bio_var",
    "p_value": "p_value",
    "FDR": "FDR",
}

DEFAULT_KEY = "model_gene_var"
TREND_GRID_POINTS = 200

from ._mean_var import mean_var_trend

__all__ = [
    "mean_var_trend",
]

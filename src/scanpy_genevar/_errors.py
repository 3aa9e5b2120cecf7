class GeneVarError(ValueError):
    """Base class for errors raised while modelling gene variance."""


class InsufficientDataError(GeneVarError):
    """Too few features remain for fitting a mean-variance trend."""

    def __init__(self, n_found: int, n_required: int, context: str = "trend fitting"):
        self.n_found = n_found
        self.n_required = n_required
        super().__init__(
            f"need at least {n_required} features for {context}, "
            f"found {n_found}. Consider lowering 'min_mean' or using flavor='lowess'."
        )


class AllBatchesMissingError(GeneVarError):
    """A feature has no valid statistics in any batch."""

    def __init__(self, features):
        self.features = list(features)
        _shown = ", ".join(str(x) for x in self.features[:5])
        _more = "" if len(self.features) <= 5 else f" (+{len(self.features) - 5} more)"
        super().__init__(
            f"no batch contributes valid statistics for feature(s): {_shown}{_more}"
        )


__all__ = [
    "GeneVarError",
    "InsufficientDataError",
    "AllBatchesMissingError",
]

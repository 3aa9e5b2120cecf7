from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterable, Literal, Optional, Union

import numba
import numpy as np
from scanpy import logging as logg

from .._constants import (
    DEFAULT_MIN_MEAN,
    DEFAULT_SPAN,
    MIN_LOESS_NEIGHBOURS,
    MIN_POINTS_LOESS,
    MIN_POINTS_LOWESS,
    MIN_POINTS_PARAMETRIC,
    MIN_VARIANCE,
)
from .._errors import InsufficientDataError
from ._data import FeatureStats, check_size_factor_centering


@numba.njit()
def _weighted_median(x: np.ndarray, w: np.ndarray) -> float:
    sorted_idx = np.argsort(x)
    x_sorted = x[sorted_idx]
    w_cum = np.cumsum(w[sorted_idx])
    w_total = w_cum[-1]

    med_idx = np.searchsorted(w_cum, (w_total / 2))
    if med_idx >= (len(x) - 1):
        return x_sorted[-1]
    elif w_cum[med_idx] == (w_total / 2):
        return (x_sorted[med_idx] + x_sorted[med_idx + 1]) / 2
    else:
        return x_sorted[med_idx]


def weighted_median(
    x: np.ndarray, w: Optional[np.ndarray] = None, na_rm: bool = False
) -> float:
    _x = np.asarray(x, dtype=np.float64)
    _w = None if w is None else np.asarray(w, dtype=np.float64)
    if na_rm:
        mask = ~np.isnan(_x)
        _x = _x[mask]
        _w = None if _w is None else _w[mask]
    if len(_x) == 0:
        return np.nan
    if _w is None:
        return float(np.median(_x))
    return float(_weighted_median(_x, _w))


def inverse_density_weights(
    x: np.ndarray,
    bw_method: Union[Literal["scott", "silverman"], float] = "silverman",
) -> np.ndarray:
    from scipy.stats import gaussian_kde

    _x = np.asarray(x)
    if np.ptp(_x) == 0:
        return np.ones_like(_x, dtype=np.float64)
    density = gaussian_kde(_x, bw_method=bw_method)(_x)
    w = 1.0 / np.clip(density, a_min=1e-10, a_max=None)
    return w / np.mean(w)


def weighted_lowess(
    x: np.ndarray,
    y: np.ndarray,
    w: Optional[np.ndarray] = None,
    span: float = DEFAULT_SPAN,
    iter: int = 3,
    surface: Optional[Literal["interpolate", "direct"]] = None,
) -> Dict[str, np.ndarray]:
    from skmisc import loess

    _x = np.asarray(x, dtype=np.float64)
    _y = np.asarray(y, dtype=np.float64)
    _w = None if w is None else np.asarray(w, dtype=np.float64)
    # kd-tree interpolation is inaccurate for very few points
    _surface = surface if surface is not None else (
        "interpolate" if len(_x) >= 100 else "direct"
    )
    params = dict(weights=_w, span=span, degree=1, iterations=iter, surface=_surface)

    model = loess.loess(_x, _y, **params)
    model.fit()
    fitted = model.predict(_x, stderror=False).values

    return {
        "fitted": fitted,
        "residual": _y - fitted,
        "x": _x,
        "y": _y,
        "weights": _w,
    }


def _collapse_ties(x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # PCHIP needs strictly increasing knots; pooled batches can repeat means
    ux, inv = np.unique(x, return_inverse=True)
    uy = np.bincount(inv, weights=y) / np.bincount(inv)
    return ux, uy


@dataclass(frozen=True, eq=False)
class TrendFunction:
    """
    Fitted mean-variance trend.

    Evaluates the expected technical variance at any mean log-expression.
    Below the smallest fitted mean the trend falls linearly to zero at the
    origin; above the largest fitted mean it is held constant.
    """

    func: Callable = field(repr=False)
    means: np.ndarray = field(repr=False)
    variances: np.ndarray = field(repr=False)
    std_dev: float = np.nan
    flavor: str = "both"
    span: float = DEFAULT_SPAN

    @property
    def left_edge(self) -> float:
        return float(np.min(self.means))

    @property
    def right_edge(self) -> float:
        return float(np.max(self.means))

    def __call__(self, x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        _x = np.asarray(x, dtype=np.float64)
        is_scalar = _x.ndim == 0
        _x = np.atleast_1d(_x)

        out = np.full(_x.shape, np.nan)
        finite = np.isfinite(_x)
        left, right = self.left_edge, self.right_edge
        out[finite] = self.func(np.clip(_x[finite], left, right))
        below = finite & (_x < left)
        if left > 0:
            out[below] *= np.clip(_x[below], 0.0, None) / left

        return float(out[0]) if is_scalar else out

    def grid(self, npts: int = 200) -> tuple[np.ndarray, np.ndarray]:
        xs = np.linspace(0.0, self.right_edge, npts)
        return xs, self(xs)


class TrendFitter:
    """Class for fitting mean-variance trends."""

    do_parametric: bool = True
    do_lowess: bool = True
    use_density_weights: bool = True
    span: float = DEFAULT_SPAN
    min_mean: float = DEFAULT_MIN_MEAN

    def __init__(
        self,
        flavor: Literal["parametric", "lowess", "both"] = "both",
        span: float = DEFAULT_SPAN,
        min_mean: float = DEFAULT_MIN_MEAN,
        use_density_weights: bool = True,
        min_features: Optional[int] = None,
    ):
        assert flavor in ["parametric", "lowess", "both"], (
            f"invalid 'flavor' provided: {flavor}."
        )
        assert (span > 0.0) and (span <= 1.0), f"'span' must be between 0 and 1: {span}"
        self.flavor = flavor
        if flavor == "parametric":
            self.do_lowess = False
        elif flavor == "lowess":
            self.do_parametric = False
        self.span = span
        self.min_mean = min_mean
        self.use_density_weights = use_density_weights
        _required = MIN_POINTS_PARAMETRIC if self.do_parametric else MIN_POINTS_LOWESS
        self.min_features = (
            _required if min_features is None else max(min_features, _required)
        )

    @staticmethod
    def correct_logged_expectation(
        x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray], func: Callable
    ) -> Dict[str, Any]:
        """
        Adjust for scale shift due to fitting to log-values.

        Args:
            x: x values
            y: y values
            w: Weights
            func: Function to generate trend

        Returns:
            Dict with trend function and standard deviation
        """
        with np.errstate(divide="ignore", invalid="ignore"):
            leftovers = y / func(x)
        # a zero trend gives infinite ratios
        keep = np.isfinite(leftovers)
        leftovers = leftovers[keep]
        _w = None if w is None else w[keep]
        med = weighted_median(leftovers, _w)

        return dict(
            trend_func=partial(TrendFitter._rescale, func=func, scale=med),
            std_dev=weighted_median(np.abs(leftovers / med - 1), _w) * 1.4826,
        )

    @staticmethod
    def get_init_params(
        vars: np.ndarray,
        means: np.ndarray,
        left_n: int = 100,
        left_prop: float = 0.1,
        grid_length: int = 10,
        b_grid_range: float = 5,
        n_grid_max: float = 7,
    ) -> Dict[str, float]:
        """
        Get starting parameters for non-linear curve fitting.

        The slope at the origin is estimated from the lowest-abundance
        points; the remaining parameters come from a grid search.
        """
        n = len(vars)
        sorted_idx = np.argsort(means)

        _left_n = min(left_n, int(n * left_prop))
        keep_idx = sorted_idx[: max(1, _left_n)]
        _vars = vars[keep_idx]
        _means = means[keep_idx]

        # Linear regression through origin
        slope = np.sum(_means * _vars) / np.sum(_means**2)

        b_grid, n_grid = np.meshgrid(
            np.exp2(np.linspace(-b_grid_range, b_grid_range, grid_length)),
            np.exp2(np.linspace(0, n_grid_max, grid_length)),
        )
        b_flat = b_grid.flatten()
        n_flat = n_grid.flatten()

        best_ss = np.inf
        best_idx = 0
        with np.errstate(over="ignore", invalid="ignore"):
            for i in range(b_flat.shape[0]):
                _b = b_flat[i]
                _n = n_flat[i]
                pred = (slope * _b * means) / (_b + np.power(means, _n))
                resd = vars - pred
                _ss = np.dot(resd, resd)
                if _ss < best_ss:
                    best_ss = _ss
                    best_idx = i
        return dict(
            n=max(1e-8, n_flat[best_idx] - 1),
            b=b_flat[best_idx],
            a=b_flat[best_idx] * slope,
        )

    @staticmethod
    def _nls_model(x: np.ndarray, a: float, b: float, n: float) -> np.ndarray:
        # y = (a*x)/(x^(1+n) + b)
        with np.errstate(over="ignore"):
            return (a * x) / (b + np.power(x, 1 + n))

    @staticmethod
    def _unit_param(x: np.ndarray) -> np.ndarray:
        return np.ones_like(x, dtype=np.float64)

    @staticmethod
    def _lowess_unscale(
        x: np.ndarray, loess_func: Callable, param_func: Callable
    ) -> np.ndarray:
        return np.exp(loess_func(x)) * param_func(x)

    @staticmethod
    def _interpolate(
        x: np.ndarray, knots: np.ndarray, fitted: np.ndarray
    ) -> np.ndarray:
        return np.interp(x, knots, fitted)

    @staticmethod
    def _rescale(x: np.ndarray, func: Callable, scale: float) -> np.ndarray:
        return func(x) * scale

    def _fit_parametric(
        self, means: np.ndarray, vars: np.ndarray, w: Optional[np.ndarray]
    ) -> Callable:
        from scipy import optimize

        model_params = TrendFitter.get_init_params(vars, means)
        try:
            opt_params, _ = optimize.curve_fit(
                TrendFitter._nls_model,
                means,
                vars,
                p0=[model_params["a"], model_params["b"], model_params["n"]],
                sigma=(None if w is None else (1 / np.sqrt(w))),
                method="trf",
                bounds=([0, 0, 0], [np.inf, np.inf, np.inf]),
                ftol=1e-8,
                xtol=1e-8,
                gtol=1e-8,
                max_nfev=500,
            )
            return partial(
                TrendFitter._nls_model,
                a=opt_params[0],
                b=opt_params[1],
                n=opt_params[2],
            )
        except RuntimeError:
            logg.warning("non-linear curve fitting failed, using initial estimates")
            return partial(
                TrendFitter._nls_model,
                a=model_params["a"],
                b=model_params["b"],
                n=model_params["n"],
            )

    def _effective_span(self, n: int) -> float:
        # local linear fits need a few points in every neighbourhood
        min_span = min(1.0, MIN_LOESS_NEIGHBOURS / n)
        if self.span < min_span:
            logg.warning(
                f"'span' {self.span} is too small for {n} points, using {min_span:.3f}"
            )
            return min_span
        return self.span

    def fit_trend_var(
        self,
        means: np.ndarray,
        vars: np.ndarray,
        **kwargs,
    ) -> TrendFunction:
        """
        Fit a trend to variances against means.

        Points with non-finite or near-zero variance, or with a mean below
        `min_mean`, are not used for fitting.
        """
        means = np.asarray(means, dtype=np.float64)
        vars = np.asarray(vars, dtype=np.float64)
        valid = (
            np.isfinite(means)
            & np.isfinite(vars)
            & (vars > MIN_VARIANCE)
            & (means >= self.min_mean)
        )
        means = means[valid]
        vars = vars[valid]
        n_unique = len(np.unique(means))
        if n_unique < self.min_features:
            raise InsufficientDataError(n_unique, self.min_features)
        logg.debug(f"fitting {self.flavor} trend to {len(means)} points")

        w = (
            inverse_density_weights(means, bw_method=1.0)
            if self.use_density_weights
            else None
        )

        to_fit = np.log(vars)
        _param_func = TrendFitter._unit_param

        if self.do_parametric:
            _param_func = self._fit_parametric(means, vars, w)
            fitted_values = np.clip(_param_func(means), 1e-300, None)
            to_fit = to_fit - np.log(fitted_values)

        _unscaled_func = _param_func
        span = self.span
        if self.do_lowess:
            from scipy.interpolate import PchipInterpolator

            if len(means) < MIN_POINTS_LOESS:
                # too few points for local regression, interpolate instead
                logg.warning(
                    f"only {len(means)} points for loess, "
                    "interpolating linearly between them"
                )
                span = np.nan
                knots, fitted = _collapse_ties(means, to_fit)
                loess_func = partial(
                    TrendFitter._interpolate, knots=knots, fitted=fitted
                )
            else:
                span = self._effective_span(len(means))
                try:
                    lfit = weighted_lowess(means, to_fit, w=w, span=span, **kwargs)
                except ValueError as e:
                    raise InsufficientDataError(
                        len(means), MIN_POINTS_LOESS, context="loess smoothing"
                    ) from e
                knots, fitted = _collapse_ties(means, lfit["fitted"])
                loess_func = PchipInterpolator(x=knots, y=fitted, extrapolate=True)
            _unscaled_func = partial(
                TrendFitter._lowess_unscale,
                loess_func=loess_func,
                param_func=_param_func,
            )

        res = TrendFitter.correct_logged_expectation(means, vars, w, _unscaled_func)
        return TrendFunction(
            func=res["trend_func"],
            means=means,
            variances=vars,
            std_dev=float(res["std_dev"]),
            flavor=self.flavor,
            span=span,
        )

    def fit(
        self,
        stats: Union[FeatureStats, Iterable[FeatureStats]],
        subset: Optional[np.ndarray] = None,
        size_factors: Optional[np.ndarray] = None,
        batch: Optional[np.ndarray] = None,
        **kwargs,
    ) -> TrendFunction:
        """
        Fit a trend to the selected features of one or more batches.

        Args:
            stats: Feature statistics; several batches are pooled into one fit
            subset: Boolean mask of features used for fitting, e.g. spike-ins
            size_factors: Cell size factors, checked for centering only
            batch: Batch labels of the cells, for the centering check

        Returns:
            The fitted trend
        """
        _stats = [stats] if isinstance(stats, FeatureStats) else list(stats)
        assert len(_stats) > 0, "no feature statistics provided."
        check_size_factor_centering(size_factors, batch)

        means, vars = [], []
        for s in _stats:
            sel = (
                np.ones(len(s), dtype=bool)
                if subset is None
                else np.asarray(subset, dtype=bool)
            )
            assert len(sel) == len(s), "'subset' does not match feature statistics."
            means.append(s.means[sel])
            vars.append(s.variances[sel])
        return self.fit_trend_var(np.concatenate(means), np.concatenate(vars), **kwargs)


__all__ = [
    "TrendFitter",
    "TrendFunction",
    "inverse_density_weights",
    "weighted_lowess",
    "weighted_median",
]

"""
Polychoric correlation estimator for ordinal x ordinal contingency tables.

Three estimation methods are available (Drasgow, 2006):

- ``two_step`` (default): thresholds from the one-way marginals, then rho by
  maximum likelihood with a 1-D Brent search.
- ``joint``: rho and thresholds by maximum likelihood at the same time,
  starting from the two-step solution. Uses analytic derivatives (Olsson,
  1979) with a conjugate-gradient minimizer by default, or a Nelder-Mead
  simplex without derivatives.
- ``polychoric_series`` (alias ``series``): the AS87 series estimate of
  Martinson and Hamdan (1975). Its results can diverge noticeably from the
  maximum-likelihood methods.

Example
-------
>>> est = PolychoricEstimator([[1, 10, 20], [20, 20, 50]], method="joint")
>>> est.r, est.alpha, est.beta, est.chi_square

Requires: numpy, scipy, pandas
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, FrozenSet, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.stats import chi2

from polychoric_likelihood import MAX_CORRELATION, PROBABILITY_FLOOR, LikelihoodModel, split_parameters
from polychoric_optimizers import (BACKENDS, select_gradient_minimizer, select_scalar_minimizer,
                                   select_simplex_minimizer)
from polychoric_series import polychoric_series
from polychoric_tables import (ParameterError, PolychoricError, compute_thresholds, crosstab,
                               validate_table)

# -----------------------------------
# Logging configuration
# -----------------------------------
logger = logging.getLogger(__name__)
if not logger.hasHandlers():
    logger.addHandler(logging.StreamHandler())
logger.setLevel(logging.INFO)

# -----------------------------------
# Constants
# -----------------------------------
METHODS = ("two_step", "joint", "polychoric_series")
METHOD_ALIASES = {"series": "polychoric_series"}
DEFAULT_METHOD = "two_step"
DEFAULT_EPSILON = 1e-6
DEFAULT_MAX_ITERATIONS = 300
DEFAULT_GRADIENT_TOLERANCE = 1e-3
MINIMIZER_TYPE_TWO_STEP = "brent"
MINIMIZER_TYPE_JOINT_DERIVATIVE = "conjugate_pr"
MINIMIZER_TYPE_JOINT_NO_DERIVATIVE = "nmsimplex"


def _is_number(value: Any, integral: bool = False) -> bool:
    """True for real numbers (integers only when `integral`), never for bools."""
    if isinstance(value, (bool, np.bool_)):
        return False
    if integral:
        return isinstance(value, (int, np.integer))
    return isinstance(value, (int, float, np.integer, np.floating))


# -----------------------------------
# Data structures
# -----------------------------------
@dataclass(frozen=True)
class PolychoricConfig:
    """Estimation settings. Invalid values raise ParameterError on construction."""
    method: str = DEFAULT_METHOD
    epsilon: float = DEFAULT_EPSILON
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    minimizer_type_two_step: str = MINIMIZER_TYPE_TWO_STEP
    minimizer_type_joint_derivative: str = MINIMIZER_TYPE_JOINT_DERIVATIVE
    minimizer_type_joint_no_derivative: str = MINIMIZER_TYPE_JOINT_NO_DERIVATIVE
    joint_derivatives: bool = True
    gradient_tolerance: float = DEFAULT_GRADIENT_TOLERANCE
    backend: str = "auto"
    debug: bool = False

    def __post_init__(self):
        if not isinstance(self.method, str):
            raise ParameterError(f"method must be a string, got {self.method!r}.")
        method = METHOD_ALIASES.get(self.method, self.method)
        if method not in METHODS:
            raise ParameterError(
                f"Unknown method '{self.method}'. Choose one of {METHODS + tuple(METHOD_ALIASES)}.")
        object.__setattr__(self, "method", method)

        for name in ("epsilon", "gradient_tolerance"):
            value = getattr(self, name)
            if not _is_number(value) or not np.isfinite(value) or value <= 0:
                raise ParameterError(f"{name} must be a positive number, got {value!r}.")
        if not _is_number(self.max_iterations, integral=True) or self.max_iterations < 1:
            raise ParameterError(
                f"max_iterations must be a positive integer, got {self.max_iterations!r}.")
        for name in ("joint_derivatives", "debug"):
            if not isinstance(getattr(self, name), (bool, np.bool_)):
                raise ParameterError(f"{name} must be True or False, got {getattr(self, name)!r}.")
        for name in ("minimizer_type_two_step", "minimizer_type_joint_derivative",
                     "minimizer_type_joint_no_derivative", "backend"):
            if not isinstance(getattr(self, name), str):
                raise ParameterError(f"{name} must be a string, got {getattr(self, name)!r}.")
        if self.backend not in BACKENDS:
            raise ParameterError(f"Unknown backend '{self.backend}'. Choose one of {BACKENDS}.")

        # Capability check: fails here if no implementation offers the minimizer type
        select_scalar_minimizer(self.minimizer_type_two_step, self.backend)
        select_gradient_minimizer(self.minimizer_type_joint_derivative, self.backend)
        select_simplex_minimizer(self.minimizer_type_joint_no_derivative, self.backend)

    @classmethod
    def from_options(cls, **options) -> "PolychoricConfig":
        """Build a config from keyword options, rejecting unknown names."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ParameterError(f"Unknown options: {unknown}. Valid options: {sorted(known)}.")
        return cls(**options)

    def replace(self, **changes) -> "PolychoricConfig":
        return PolychoricConfig.from_options(**{**asdict(self), **changes})


@dataclass
class PolychoricResult:
    """Container for polychoric correlation results."""
    rho: float
    alpha: np.ndarray
    beta: np.ndarray
    loglike_model: float
    iteration: int
    converged: bool
    method: str
    log: str = field(default="", repr=False)

    def __post_init__(self):
        # threshold arrays are stored as read-only copies
        self.alpha = np.array(self.alpha, dtype=float)
        self.beta = np.array(self.beta, dtype=float)
        self.alpha.setflags(write=False)
        self.beta.setflags(write=False)

    def __repr__(self) -> str:
        """String representation of results."""
        result = f"Polychoric correlation: {self.rho:.4f} ({self.method}, {self.iteration} iterations"
        if not self.converged:
            result += ", not converged"
        return result + ")"

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items()}


class _JointObjective:
    """Negative log-likelihood and gradient over [rho, alpha..., beta...]."""

    def __init__(self, table: np.ndarray):
        self.table = table
        self.n_row, self.n_col = table.shape
        self._key = None
        self._model = None

    def model(self, params: np.ndarray) -> LikelihoodModel:
        key = np.asarray(params, dtype=float).tobytes()
        if key != self._key:
            rho, alpha, beta = split_parameters(params, self.n_row, self.n_col)
            self._model = LikelihoodModel(alpha, beta, rho, self.table)
            self._key = key
        return self._model

    def value(self, params: np.ndarray) -> float:
        return -self.model(params).loglike()

    def gradient(self, params: np.ndarray) -> np.ndarray:
        return -self.model(params).gradient()


# -----------------------------------
# Estimator
# -----------------------------------
class PolychoricEstimator:
    """
    Polychoric correlation of a contingency table.

    Results are computed lazily on first access and cached; changing any
    setting through `configure` or the setters discards the cache.

    Parameters
    ----------
    table : array-like
        R x C table of counts with R, C >= 2 and no empty row or column.
    config : PolychoricConfig, optional
        Settings object. Mutually exclusive with keyword options.
    **options
        Fields of PolychoricConfig (method, epsilon, max_iterations, ...).
    """

    def __init__(self, table: Union[np.ndarray, Sequence[Sequence[float]]],
                 config: Optional[PolychoricConfig] = None, **options):
        if config is not None and options:
            raise ParameterError("Pass either a config object or keyword options, not both.")
        self._table = validate_table(table)
        self._n_row, self._n_col = self._table.shape
        self._marginals = compute_thresholds(self._table)
        self._result: Optional[PolychoricResult] = None
        self._valid = False
        self._apply_config(config if config is not None else PolychoricConfig.from_options(**options))

    @classmethod
    def from_vectors(cls, x: Sequence, y: Sequence, config: Optional[PolychoricConfig] = None,
                     **options) -> "PolychoricEstimator":
        """Estimator for two parallel sequences of ordinal category labels."""
        return cls(crosstab(x, y), config=config, **options)

    # -- configuration -----------------------------------------------------
    def _apply_config(self, config: PolychoricConfig) -> None:
        self._config = config
        self._scalar_cls = select_scalar_minimizer(config.minimizer_type_two_step, config.backend)
        self._gradient_cls = select_gradient_minimizer(config.minimizer_type_joint_derivative,
                                                       config.backend)
        self._simplex_cls = select_simplex_minimizer(config.minimizer_type_joint_no_derivative,
                                                     config.backend)
        self._valid = False

    def configure(self, **changes) -> "PolychoricEstimator":
        """Change settings; cached results are recomputed on next access."""
        self._apply_config(self._config.replace(**changes))
        return self

    @property
    def config(self) -> PolychoricConfig:
        return self._config

    @property
    def method(self) -> str:
        return self._config.method

    @method.setter
    def method(self, value: str) -> None:
        self.configure(method=value)

    @property
    def epsilon(self) -> float:
        return self._config.epsilon

    @epsilon.setter
    def epsilon(self, value: float) -> None:
        self.configure(epsilon=value)

    @property
    def max_iterations(self) -> int:
        return self._config.max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self.configure(max_iterations=value)

    @property
    def table(self) -> np.ndarray:
        return self._table

    @property
    def is_computed(self) -> bool:
        return self._valid and self._result is not None

    # -- estimation --------------------------------------------------------
    def compute(self) -> PolychoricResult:
        """Run the configured method, or return the cached result if still valid."""
        if self.is_computed:
            return self._result

        method = self._config.method
        if method == "two_step":
            result = self._compute_two_step()
        elif method == "joint":
            if self._config.joint_derivatives:
                result = self._compute_joint_with_derivatives()
            else:
                result = self._compute_joint_without_derivatives()
        elif method == "polychoric_series":
            result = self._compute_series()
        else:
            raise ParameterError(f"Method '{method}' is not implemented.")

        if self._config.debug:
            logger.info(result.log)
        else:
            logger.debug(result.log)
        if not result.converged:
            logger.warning(f"{method} estimation did not converge in {result.iteration} iterations; "
                           f"reporting the last iterate (r = {result.rho:.6f}).")

        self._result = result
        self._valid = True
        return result

    def _compute_two_step(self) -> PolychoricResult:
        m = self._marginals
        config = self._config

        def objective(rho: float) -> float:
            return -LikelihoodModel(m.alpha, m.beta, rho, self._table).loglike()

        minimizer = self._scalar_cls(config.minimizer_type_two_step, config.epsilon,
                                     config.max_iterations)
        res = minimizer.minimize(objective, -MAX_CORRELATION, MAX_CORRELATION, guess=0.0)
        log = f"Two step minimization using {minimizer.name} method\n{res.trace}"
        return PolychoricResult(rho=float(np.clip(res.x, -MAX_CORRELATION, MAX_CORRELATION)),
                                alpha=m.alpha.copy(), beta=m.beta.copy(),
                                loglike_model=-res.fun, iteration=res.iterations,
                                converged=res.converged, method="two_step", log=log)

    def _joint_result(self, start: PolychoricResult, res, title: str) -> PolychoricResult:
        rho, alpha, beta = split_parameters(res.x, self._n_row, self._n_col)
        log = f"{start.log}\n{title}\n{res.trace}"
        return PolychoricResult(rho=rho, alpha=np.array(alpha), beta=np.array(beta),
                                loglike_model=-res.fun, iteration=res.iterations,
                                converged=res.converged, method="joint", log=log)

    def _compute_joint_with_derivatives(self) -> PolychoricResult:
        """Joint ML using the analytic gradient. Starts from the two-step solution."""
        start = self._compute_two_step()
        config = self._config
        x0 = np.concatenate(([start.rho], start.alpha, start.beta))
        objective = _JointObjective(self._table)

        minimizer = self._gradient_cls(config.minimizer_type_joint_derivative,
                                       config.gradient_tolerance, config.max_iterations)
        res = minimizer.minimize(objective.value, objective.gradient, x0)
        return self._joint_result(start, res, f"Joint MLE using {minimizer.name} with derivatives")

    def _compute_joint_without_derivatives(self) -> PolychoricResult:
        """Joint ML with a derivative-free simplex search (initial step 1.0 per axis)."""
        start = self._compute_two_step()
        config = self._config
        x0 = np.concatenate(([start.rho], start.alpha, start.beta))
        objective = _JointObjective(self._table)

        minimizer = self._simplex_cls(config.minimizer_type_joint_no_derivative,
                                      config.epsilon, config.max_iterations)
        res = minimizer.minimize(objective.value, x0)
        return self._joint_result(start, res, f"Joint MLE using {minimizer.name} without derivatives")

    def _compute_series(self) -> PolychoricResult:
        est = polychoric_series(self._table)
        loglike = LikelihoodModel(est.alpha, est.beta, est.rho, self._table).loglike()
        roots = ", ".join(f"{root:.6g}" for root in est.roots)
        log = (f"Polychoric series (AS87)\n"
               f"phisq = {est.phisq:.6f}, covariance = {est.covariance:+.6f}\n"
               f"roots: {roots}\n"
               f"selected r = {est.rho:.7f}")
        return PolychoricResult(rho=est.rho, alpha=est.alpha, beta=est.beta,
                                loglike_model=loglike, iteration=0, converged=True,
                                method="polychoric_series", log=log)

    # -- results -----------------------------------------------------------
    @property
    def result(self) -> PolychoricResult:
        return self.compute()

    @property
    def r(self) -> float:
        """The polychoric correlation."""
        return self.compute().rho

    @property
    def alpha(self) -> np.ndarray:
        """Row thresholds."""
        return self.compute().alpha

    @property
    def beta(self) -> np.ndarray:
        """Column thresholds."""
        return self.compute().beta

    threshold_x = alpha
    threshold_y = beta

    @property
    def iteration(self) -> int:
        return self.compute().iteration

    @property
    def log(self) -> str:
        return self.compute().log

    @property
    def loglike_model(self) -> float:
        return self.compute().loglike_model

    # -- diagnostics -------------------------------------------------------
    def loglike_data(self) -> float:
        """Log-likelihood of the saturated model (observed cell proportions)."""
        proportions = self._table / self._marginals.total
        proportions = np.where(proportions > 0.0, proportions, PROBABILITY_FLOOR)
        return float(np.sum(self._table * np.log(proportions)))

    def expected(self) -> np.ndarray:
        """Cell counts expected under independence of the two variables."""
        m = self._marginals
        return np.outer(m.row_sums, m.col_sums) / m.total

    def fitted_counts(self) -> np.ndarray:
        """Cell counts implied by the fitted bivariate normal model."""
        res = self.compute()
        model = LikelihoodModel(res.alpha, res.beta, res.rho, self._table)
        return self._marginals.total * model.cell_probabilities()

    @property
    def chi_square(self) -> float:
        """Likelihood-ratio test of bivariate normality against the saturated model."""
        return -2.0 * (self.compute().loglike_model - self.loglike_data())

    @property
    def chi_square_df(self) -> int:
        return self._n_row * self._n_col - self._n_row - self._n_col

    @property
    def chi_square_pvalue(self) -> float:
        """Upper-tail p-value of `chi_square`; NaN when there are no degrees of freedom."""
        if self.chi_square_df <= 0:
            return float("nan")
        return float(chi2.sf(self.chi_square, self.chi_square_df))

    def standard_error(self) -> Optional[float]:
        """
        Standard error of r from the curvature of the negative log-likelihood
        in rho, holding the thresholds at their estimates. None when r is too
        close to the correlation bound for a central difference, or when the
        curvature is not positive.
        """
        res = self.compute()
        h = max(1e-4, 1e-2 * (1.0 - abs(res.rho)))
        if abs(res.rho) + h > MAX_CORRELATION:
            logger.warning(f"r = {res.rho:.6f} is on the correlation bound; no standard error.")
            return None

        def nll_at(r):
            return -LikelihoodModel(res.alpha, res.beta, r, self._table).loglike()

        d2f = (nll_at(res.rho + h) - 2.0 * nll_at(res.rho) + nll_at(res.rho - h)) / (h * h)
        if d2f <= 0 or not np.isfinite(d2f):
            logger.warning("Curvature of the log-likelihood is not positive; no standard error.")
            return None
        return float(np.sqrt(1.0 / d2f))

    def __repr__(self) -> str:
        state = repr(self._result) if self.is_computed else "not computed"
        return f"PolychoricEstimator({self._n_row}x{self._n_col}, method={self.method!r}, {state})"


# -----------------------------------
# Public API
# -----------------------------------
def polychoric(x: Union[np.ndarray, Sequence], y: Optional[Sequence] = None, **options) -> float:
    """
    Polychoric correlation of two ordinal vectors, or of a contingency table
    passed as `x` when `y` is None. Options are PolychoricConfig fields.
    """
    if y is None:
        return PolychoricEstimator(x, **options).r
    return PolychoricEstimator.from_vectors(x, y, **options).r


# Alias kept for callers of the R-style name.
polychor = polychoric


def _pair_correlation(x: np.ndarray, y: np.ndarray,
                      config: PolychoricConfig) -> Optional[float]:
    """Correlation of one variable pair, or None when the pair cannot be estimated."""
    try:
        return PolychoricEstimator.from_vectors(x, y, config=config).r
    except PolychoricError as exc:
        logger.warning(f"Pair could not be estimated: {exc}")
        return None


def polychoric_correlation_matrix(data: Union[pd.DataFrame, Dict[str, Sequence], np.ndarray],
                                  config: Optional[PolychoricConfig] = None,
                                  **options) -> pd.DataFrame:
    """
    Polychoric correlation matrix of the ordinal columns of `data`.

    Each unordered pair is estimated once, on the rows where both columns are
    present. Pairs that cannot be estimated (too few categories, no valid
    series root, ...) are NaN; the diagonal is 1.0.
    """
    if config is not None and options:
        raise ParameterError("Pass either a config object or keyword options, not both.")
    if config is None:
        config = PolychoricConfig.from_options(**options)
    frame = data if isinstance(data, pd.DataFrame) else pd.DataFrame(data)
    columns = list(frame.columns)
    n_vars = len(columns)

    cache: Dict[FrozenSet[int], Optional[float]] = {}
    values = np.full((n_vars, n_vars), np.nan)
    for i in range(n_vars):
        for j in range(n_vars):
            if i == j:
                values[i, j] = 1.0
                continue
            key = frozenset((i, j))
            if key not in cache:
                pair = frame.iloc[:, [i, j]].dropna()
                cache[key] = _pair_correlation(pair.iloc[:, 0].to_numpy(),
                                               pair.iloc[:, 1].to_numpy(), config)
            r = cache[key]
            values[i, j] = np.nan if r is None else r

    logger.info(f"Computed polychoric correlations for {len(cache)} variable pairs "
                f"({sum(r is None for r in cache.values())} missing).")
    return pd.DataFrame(values, index=columns, columns=columns)


if __name__ == "__main__":
    table = [[1, 10, 20], [20, 20, 50]]
    for method in METHODS:
        est = PolychoricEstimator(table, method=method)
        print(est.result)
        print(f"  thresholds x: {np.round(est.threshold_x, 4)}, y: {np.round(est.threshold_y, 4)}")
        print(f"  X^2 = {est.chi_square:.3f}, df = {est.chi_square_df}")

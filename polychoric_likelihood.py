"""
Bivariate-normal likelihood of an ordinal x ordinal contingency table.

Cell probabilities are rectangle differences of the bivariate normal CDF over
the threshold grid; thresholds outside the table are treated as -inf/+inf.
Analytic first derivatives follow Olsson (1979).
"""

import logging
from typing import Sequence, Union

import numpy as np
from scipy.stats import multivariate_normal, norm

logger = logging.getLogger(__name__)

# -----------------------------------
# Constants
# -----------------------------------
MAX_CORRELATION = 0.9999
PROBABILITY_FLOOR = 1e-16  # stands in for a zero cell probability inside log()

ArrayLike = Union[np.ndarray, Sequence[float]]


# -----------------------------------
# Bivariate normal primitives
# -----------------------------------
def _covariance(rho: float) -> np.ndarray:
    return np.array([[1.0, rho], [rho, 1.0]], dtype=float)


def bvn_cdf(h: ArrayLike, k: ArrayLike, rho: float) -> np.ndarray:
    """
    Standard bivariate normal CDF P(X <= h, Y <= k) with correlation `rho`,
    evaluated elementwise with fast paths for infinite limits.
    """
    h, k = np.broadcast_arrays(np.asarray(h, dtype=float), np.asarray(k, dtype=float))
    x1 = h.ravel()
    x2 = k.ravel()
    out = np.empty(x1.size, dtype=float)

    mask_neginf = (x1 == -np.inf) | (x2 == -np.inf)
    mask_pospos = (x1 == np.inf) & (x2 == np.inf)
    mask_x1inf = (x1 == np.inf) & ~mask_pospos & ~mask_neginf
    mask_x2inf = (x2 == np.inf) & ~mask_pospos & ~mask_neginf

    out[mask_neginf] = 0.0
    out[mask_pospos] = 1.0
    # Reductions: if x1 = +inf the CDF is Phi(x2); if x2 = +inf it is Phi(x1)
    if np.any(mask_x1inf):
        out[mask_x1inf] = norm.cdf(x2[mask_x1inf])
    if np.any(mask_x2inf):
        out[mask_x2inf] = norm.cdf(x1[mask_x2inf])

    mask_rest = ~(mask_neginf | mask_pospos | mask_x1inf | mask_x2inf)
    if np.any(mask_rest):
        pts = np.column_stack([x1[mask_rest], x2[mask_rest]])
        values = multivariate_normal.cdf(pts, mean=np.zeros(2), cov=_covariance(rho))
        out[mask_rest] = np.atleast_1d(values)
    return out.reshape(h.shape)


def bvn_pdf(h: ArrayLike, k: ArrayLike, rho: float) -> np.ndarray:
    """Standard bivariate normal density; zero where either argument is infinite."""
    h, k = np.broadcast_arrays(np.asarray(h, dtype=float), np.asarray(k, dtype=float))
    out = np.zeros(h.shape, dtype=float)
    finite = np.isfinite(h) & np.isfinite(k)
    if np.any(finite):
        pts = np.column_stack([h[finite], k[finite]])
        out[finite] = np.atleast_1d(
            multivariate_normal.pdf(pts, mean=np.zeros(2), cov=_covariance(rho)))
    return out


# -----------------------------------
# Likelihood model
# -----------------------------------
class LikelihoodModel:
    """
    Log-likelihood of `table` under a discretized standard bivariate normal
    with row thresholds `alpha`, column thresholds `beta` and correlation
    `rho`. `rho` is clamped to [-MAX_CORRELATION, MAX_CORRELATION].

    Instances are cheap and meant to be thrown away after each evaluation;
    cell probabilities are cached on first use.
    """

    def __init__(self, alpha: ArrayLike, beta: ArrayLike, rho: float, table: np.ndarray):
        self.alpha = np.asarray(alpha, dtype=float)
        self.beta = np.asarray(beta, dtype=float)
        self.rho = float(np.clip(rho, -MAX_CORRELATION, MAX_CORRELATION))
        self.table = np.asarray(table, dtype=float)

        n_row, n_col = self.table.shape
        if self.alpha.shape != (n_row - 1,) or self.beta.shape != (n_col - 1,):
            raise ValueError(
                f"Expected {n_row - 1} row and {n_col - 1} column thresholds, "
                f"got {self.alpha.size} and {self.beta.size}.")

        self._row_bounds = np.concatenate(([-np.inf], self.alpha, [np.inf]))
        self._col_bounds = np.concatenate(([-np.inf], self.beta, [np.inf]))
        self._probabilities = None

    def cell_probabilities(self) -> np.ndarray:
        """Model probability of every cell, shape (R, C). May contain exact zeros."""
        if self._probabilities is None:
            rows, cols = np.meshgrid(self._row_bounds, self._col_bounds, indexing="ij")
            F = bvn_cdf(rows, cols, self.rho)
            # Inclusion-exclusion over the rectangle corners
            self._probabilities = F[1:, 1:] - F[:-1, 1:] - F[1:, :-1] + F[:-1, :-1]
        return self._probabilities

    def _floored_probabilities(self) -> np.ndarray:
        P = self.cell_probabilities()
        return np.where(P > 0.0, P, PROBABILITY_FLOOR)

    def _count_ratio(self) -> np.ndarray:
        """n_ij / p_ij with the same zero floor as the log-likelihood."""
        return self.table / self._floored_probabilities()

    def loglike(self) -> float:
        """Sum of n_ij * log(p_ij)."""
        return float(np.sum(self.table * np.log(self._floored_probabilities())))

    def fd_loglike_rho(self) -> float:
        """Derivative of the log-likelihood with respect to rho."""
        rows, cols = np.meshgrid(self._row_bounds, self._col_bounds, indexing="ij")
        G = bvn_pdf(rows, cols, self.rho)
        dP = G[1:, 1:] - G[:-1, 1:] - G[1:, :-1] + G[:-1, :-1]
        return float(np.sum(self._count_ratio() * dP))

    def _threshold_gradient(self, own: np.ndarray, other_bounds: np.ndarray,
                            ratio: np.ndarray) -> np.ndarray:
        """
        Derivatives with respect to every threshold in `own`. `ratio` has the
        categories of `own` along axis 0; `other_bounds` are the extended
        thresholds of the other variable.
        """
        scale = np.sqrt(1.0 - self.rho ** 2)
        cond = norm.cdf((other_bounds[np.newaxis, :] - self.rho * own[:, np.newaxis]) / scale)
        weights = ratio[:-1, :] - ratio[1:, :]
        return norm.pdf(own) * np.sum(weights * np.diff(cond, axis=1), axis=1)

    def fd_loglike_alpha_all(self) -> np.ndarray:
        return self._threshold_gradient(self.alpha, self._col_bounds, self._count_ratio())

    def fd_loglike_beta_all(self) -> np.ndarray:
        return self._threshold_gradient(self.beta, self._row_bounds, self._count_ratio().T)

    def fd_loglike_alpha(self, k: int) -> float:
        """Derivative of the log-likelihood with respect to row threshold `k`."""
        return float(self.fd_loglike_alpha_all()[k])

    def fd_loglike_beta(self, k: int) -> float:
        """Derivative of the log-likelihood with respect to column threshold `k`."""
        return float(self.fd_loglike_beta_all()[k])

    def gradient(self) -> np.ndarray:
        """Gradient of the log-likelihood ordered as [rho, alpha..., beta...]."""
        return np.concatenate(([self.fd_loglike_rho()],
                               self.fd_loglike_alpha_all(),
                               self.fd_loglike_beta_all()))


def split_parameters(params: np.ndarray, n_row: int, n_col: int):
    """Split a joint parameter vector [rho, alpha..., beta...] into its parts."""
    params = np.asarray(params, dtype=float)
    if params.size != n_row + n_col - 1:
        raise ValueError(f"Expected {n_row + n_col - 1} parameters, got {params.size}.")
    rho = float(np.clip(params[0], -MAX_CORRELATION, MAX_CORRELATION))
    return rho, params[1:n_row], params[n_row:n_row + n_col - 1]

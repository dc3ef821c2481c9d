"""
Polychoric series estimate (algorithm AS87, Martinson and Hamdan, 1975).

The correlation is the root of a degree-8 polynomial whose coefficients come
from a seven-harmonic orthogonal Hermite expansion of the bivariate normal
around the marginal thresholds, matched to the table's phi-square. No
iterative search is involved.

Array conventions (0-based):

- ``H[o, t]``: normalized Hermite polynomial of order ``o`` (0..6) at threshold ``t``.
- ``A[h, t]``: Fourier coefficient of harmonic ``h + 1`` (h = 0..6) for row
  threshold ``t`` (0..R-2); ``B`` likewise for column thresholds.
- ``rcof[d]``: coefficient of ``rho**d`` (d = 0..8).
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.stats import norm

from polychoric_tables import RootSelectionError, validate_table

logger = logging.getLogger(__name__)

N_HARMONICS = 7
IMAGINARY_TOLERANCE = 1e-10


@dataclass
class SeriesEstimate:
    """Result of the series method, with the intermediate quantities it used."""
    rho: float
    alpha: np.ndarray
    beta: np.ndarray
    row_sums: np.ndarray
    col_sums: np.ndarray
    total: float
    covariance: float
    phisq: float
    coefficients: np.ndarray
    roots: np.ndarray


def hermite_table(thresholds: np.ndarray) -> np.ndarray:
    """
    Normalized Hermite polynomials He_o(s) / sqrt(o!) for o = 0..6 at every
    threshold, built with the three-term recurrence.
    """
    s = np.asarray(thresholds, dtype=float)
    H = np.empty((N_HARMONICS, s.size), dtype=float)
    H[0] = 1.0
    H[1] = s
    v = 1.0
    for order in range(2, N_HARMONICS):
        w = np.sqrt(order)
        H[order] = (s * H[order - 1] - v * H[order - 2]) / w
        v = w
    return H


def xnorm(t):
    """Standard normal density."""
    return norm.pdf(t)


def fourier_coefficients(thresholds: np.ndarray, sums: np.ndarray, cum_sums: np.ndarray,
                         total: float) -> np.ndarray:
    """
    Coefficient array for one margin, shape (7, K-1) for K categories.

    `sums` are the K marginal sums, `cum_sums` the K-1 cumulative sums up to
    each threshold. All but the last threshold use the two adjacent
    thresholds; the last one has its own closed form.
    """
    H = hermite_table(thresholds)
    n_thresholds = thresholds.size
    coef = np.empty((N_HARMONICS, n_thresholds), dtype=float)

    for t in range(n_thresholds - 1):
        a1 = total / (sums[t + 1] * cum_sums[t] * cum_sums[t + 1])
        a2 = cum_sums[t] * xnorm(thresholds[t + 1])
        a3 = cum_sums[t + 1] * xnorm(thresholds[t])
        for h in range(N_HARMONICS):
            coef[h, t] = np.sqrt(a1 / (h + 1)) * (H[h, t + 1] * a2 - H[h, t] * a3)

    last = n_thresholds - 1
    a1 = -total * xnorm(thresholds[last])
    a2 = sums[-1] * cum_sums[last]
    for h in range(N_HARMONICS):
        coef[h, last] = a1 * H[h, last] / np.sqrt((h + 1) * a2)
    return coef


def polynomial_coefficients(A: np.ndarray, B: np.ndarray, phisq: float) -> np.ndarray:
    """
    Coefficients rcof[0..8] (ascending powers of rho) of the series polynomial.

    Every threshold pair (i, j) contributes the products of harmonics whose
    orders sum to the power of rho, truncated at seven harmonics.
    """
    rcof = np.zeros(9, dtype=float)
    rcof[0] = -phisq
    for i in range(A.shape[1]):
        a = A[:, i]
        for j in range(B.shape[1]):
            b = B[:, j]
            rcof[2] += a[0] ** 2 * b[0] ** 2
            rcof[3] += 2.0 * a[0] * a[1] * b[0] * b[1]
            rcof[4] += a[1] ** 2 * b[1] ** 2 + 2.0 * a[0] * a[2] * b[0] * b[2]
            rcof[5] += 2.0 * (a[0] * a[3] * b[0] * b[3] + a[1] * a[2] * b[1] * b[2])
            rcof[6] += (a[2] ** 2 * b[2] ** 2
                        + 2.0 * (a[0] * a[4] * b[0] * b[4] + a[1] * a[3] * b[1] * b[3]))
            rcof[7] += 2.0 * (a[0] * a[5] * b[0] * b[5] + a[1] * a[4] * b[1] * b[4]
                              + a[2] * a[3] * b[2] * b[3])
            rcof[8] += (a[3] ** 2 * b[3] ** 2
                        + 2.0 * (a[0] * a[6] * b[0] * b[6] + a[1] * a[5] * b[1] * b[5]
                                 + a[2] * a[4] * b[2] * b[4]))
    return rcof


def index_covariance(table: np.ndarray) -> float:
    """Covariance (unnormalized) of the 1-based row and column indices over the table."""
    n_row, n_col = table.shape
    total = table.sum()
    i = np.arange(1, n_row + 1, dtype=float)
    j = np.arange(1, n_col + 1, dtype=float)
    xmean = np.sum(table.sum(axis=1) * i) / total
    ymean = np.sum(table.sum(axis=0) * j) / total
    return float(np.sum(table * np.outer(i - xmean, j - ymean)))


def select_root(roots: np.ndarray, covariance: float) -> float:
    """
    Pick the admissible real root: in [0, 1] for a non-negative covariance,
    in [-1, 0) otherwise. When several qualify, the one closest to zero wins.
    """
    roots = np.atleast_1d(np.asarray(roots, dtype=complex))
    real = roots.real[np.abs(roots.imag) <= IMAGINARY_TOLERANCE * np.maximum(1.0, np.abs(roots.real))]
    if covariance >= 0.0:
        candidates = real[(real >= 0.0) & (real <= 1.0)]
    else:
        candidates = real[(real >= -1.0) & (real < 0.0)]
    if candidates.size == 0:
        raise RootSelectionError(
            f"No valid root of the series polynomial for covariance {covariance:+.6g}.")
    return float(candidates[np.argmin(np.abs(candidates))])


def polychoric_series(table: np.ndarray) -> SeriesEstimate:
    """Polychoric series estimate of the correlation underlying `table`."""
    tab = validate_table(table)
    n_row, n_col = tab.shape
    row_sums = tab.sum(axis=1)
    col_sums = tab.sum(axis=0)
    total = float(tab.sum())

    covariance = index_covariance(tab)
    chisq = float(np.sum(tab ** 2 / np.outer(row_sums, col_sums)))
    phisq = max(chisq - 1.0 - (n_row - 1) * (n_col - 1) / total, 0.0)

    cum_rows = np.cumsum(row_sums)[:-1]
    cum_cols = np.cumsum(col_sums)[:-1]
    alpha = norm.ppf(cum_rows / total)
    beta = norm.ppf(cum_cols / total)

    A = fourier_coefficients(alpha, row_sums, cum_rows, total)
    B = fourier_coefficients(beta, col_sums, cum_cols, total)
    rcof = polynomial_coefficients(A, B, phisq)
    # numpy.roots expects the highest power first
    roots = np.roots(rcof[::-1])
    logger.debug(f"Series polynomial coefficients {rcof}, roots {roots}")

    rho = select_root(roots, covariance)
    return SeriesEstimate(rho=rho, alpha=alpha, beta=beta, row_sums=row_sums,
                          col_sums=col_sums, total=total, covariance=covariance,
                          phisq=phisq, coefficients=rcof, roots=roots)

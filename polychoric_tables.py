"""
Contingency-table handling for polychoric estimation: validation, cross-tabulation
of ordinal vectors and threshold (cut-point) estimation from the marginals.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import norm

logger = logging.getLogger(__name__)


# -----------------------------------
# Exceptions
# -----------------------------------
class PolychoricError(Exception):
    """Base class for errors raised by the polychoric estimators."""
    pass


class ParameterError(PolychoricError, ValueError):
    """Exception raised for errors in the input table or configuration."""
    pass


class RootSelectionError(PolychoricError, RuntimeError):
    """Raised when the series polynomial has no admissible real root."""
    pass


# -----------------------------------
# Data structures
# -----------------------------------
@dataclass(frozen=True)
class MarginalSummary:
    """Marginal sums of a table and the probit thresholds derived from them."""
    alpha: np.ndarray
    beta: np.ndarray
    row_sums: np.ndarray
    col_sums: np.ndarray
    total: float

    @property
    def shape(self) -> Tuple[int, int]:
        return self.row_sums.size, self.col_sums.size


# -----------------------------------
# Table construction
# -----------------------------------
def validate_table(table: Union[np.ndarray, Sequence[Sequence[float]]]) -> np.ndarray:
    """
    Coerce `table` to a read-only float array and check it is a usable
    contingency table: 2-D, at least 2x2, finite, non-negative counts and no
    empty row or column.
    """
    tab = np.array(table, dtype=float)
    if tab.ndim != 2:
        raise ParameterError(f"Contingency table must be 2-D, got shape {tab.shape}.")
    n_row, n_col = tab.shape
    if n_row < 2:
        raise ParameterError("Contingency table must have at least 2 rows.")
    if n_col < 2:
        raise ParameterError("Contingency table must have at least 2 columns.")
    if not np.all(np.isfinite(tab)):
        raise ParameterError("Contingency table contains non-finite values.")
    if np.any(tab < 0):
        raise ParameterError("Contingency table contains negative counts.")
    if tab.sum() <= 0:
        raise ParameterError("Contingency table has no counts.")

    empty_rows = np.flatnonzero(tab.sum(axis=1) == 0)
    empty_cols = np.flatnonzero(tab.sum(axis=0) == 0)
    if empty_rows.size:
        raise ParameterError(f"Rows with zero marginal sum: {empty_rows.tolist()}.")
    if empty_cols.size:
        raise ParameterError(f"Columns with zero marginal sum: {empty_cols.tolist()}.")

    tab.setflags(write=False)
    return tab


def _missing_mask(values: np.ndarray) -> np.ndarray:
    """Missing labels: None, NaN, NaT and pd.NA, in any dtype."""
    return np.asarray(pd.isna(values), dtype=bool)


def crosstab(x: Sequence, y: Sequence) -> np.ndarray:
    """
    Cross-tabulate two parallel sequences of ordinal category labels.

    Categories are ordered by their natural sort order; only observed
    categories get a row/column, so the result never has an empty margin.
    Pairs where either label is missing (None, NaN, NaT or pd.NA) are dropped.
    """
    x_array = np.asarray(x)
    y_array = np.asarray(y)
    if x_array.ndim != 1 or y_array.ndim != 1:
        raise ParameterError("Category vectors must be one-dimensional.")
    if x_array.size != y_array.size:
        raise ParameterError(
            f"Category vectors must have the same length, got {x_array.size} and {y_array.size}.")

    missing = _missing_mask(x_array) | _missing_mask(y_array)
    if np.any(missing):
        warnings.warn(f"Removed {int(np.sum(missing))} observations with missing values.")
        x_array = x_array[~missing]
        y_array = y_array[~missing]
    if x_array.size == 0:
        raise ParameterError("No valid observations after removing missing values.")

    x_vals, x_idx = np.unique(x_array, return_inverse=True)
    y_vals, y_idx = np.unique(y_array, return_inverse=True)
    tab = np.zeros((x_vals.size, y_vals.size), dtype=float)
    np.add.at(tab, (x_idx.ravel(), y_idx.ravel()), 1.0)
    logger.debug(f"Cross-tabulated {x_array.size} observations into a "
                 f"{x_vals.size}x{y_vals.size} table.")
    return tab


# -----------------------------------
# Thresholds
# -----------------------------------
def compute_thresholds(table: np.ndarray) -> MarginalSummary:
    """
    Thresholds from the marginal distributions: inverse-normal of the
    cumulative marginal proportions, dropping the last category (whose
    cumulative proportion is 1).
    """
    tab = validate_table(table)
    total = float(tab.sum())
    row_sums = tab.sum(axis=1)
    col_sums = tab.sum(axis=0)
    alpha = norm.ppf(np.cumsum(row_sums)[:-1] / total)
    beta = norm.ppf(np.cumsum(col_sums)[:-1] / total)
    return MarginalSummary(alpha=alpha, beta=beta, row_sums=row_sums,
                           col_sums=col_sums, total=total)

"""Inter-metric redundancy via partial correlations.

Two metrics are redundant when they stay correlated after controlling for
every other metric.  The partial correlation of metrics i and j given all
others follows from the precision matrix Theta = R^{-1} (R is the metric
correlation matrix):

    rho_ij|rest = -Theta_ij / sqrt(Theta_ii * Theta_jj)

which equals correlating the residuals of i and j after regressing each on
all remaining metrics.  The diagonal is 1 by definition.

The inversion requires a well-conditioned R.  More metrics than subjects,
a constant metric, or an exact linear dependency between metrics make R
singular, and the analysis fails with ``SingularCovarianceError`` rather
than returning meaningless numbers.
"""

from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from metric_selection.config import EPS, MAX_CONDITION_NUMBER, RANK_TOL, REDUNDANCY_THRESHOLD
from metric_selection.errors import SingularCovarianceError
from metric_selection.utils import safe_zscore_columns, corr_from_zscored, offdiag_vals_from_corr


def _dependent_column(Xz: np.ndarray) -> int:
    """Index of the first column lying (nearly) in the span of the columns before it.

    Pivot-free QR: a tiny |R_jj| flags column j.  When no diagonal entry
    falls below the rank tolerance the weakest column is returned.
    """
    R = np.linalg.qr(Xz, mode="r")
    diag = np.abs(np.diag(R))
    dependent = np.flatnonzero(diag < RANK_TOL * max(float(diag.max()), 1.0))
    return int(dependent[0]) if dependent.size else int(np.argmin(diag))


def partial_correlation_matrix(X: np.ndarray, names: Sequence[str]) -> pd.DataFrame:
    """Full partial-correlation matrix of the columns of *X*.

    Parameters
    ----------
    X : (n_subjects, n_metrics) array
        Compensated metric values.
    names : sequence of str
        Metric names, one per column.

    Returns
    -------
    pandas.DataFrame
        Symmetric (n_metrics x n_metrics) matrix with unit diagonal and
        entries clipped to [-1, 1], indexed by metric name on both axes.

    Raises
    ------
    SingularCovarianceError
        Not more subjects than metrics, a constant metric, or an
        ill-conditioned correlation matrix.
    """
    X = np.asarray(X, dtype=np.float64)
    names = list(names)
    n, p = X.shape
    if p != len(names):
        raise ValueError(f"{p} columns but {len(names)} metric names")
    if not np.all(np.isfinite(X)):
        raise ValueError("metric matrix holds missing or infinite values")
    if n <= p:
        # After centring at most n - 1 columns are independent.
        raise SingularCovarianceError(
            f"{n} subjects for {p} metrics; need more subjects than metrics",
            metric=names[max(n - 1, 0)])

    Xz, _, sd = safe_zscore_columns(X)
    constant = np.flatnonzero(sd < EPS)
    if constant.size:
        raise SingularCovarianceError("metric has zero variance", metric=names[int(constant[0])])

    R = corr_from_zscored(Xz)
    cond = float(np.linalg.cond(R))
    if not np.isfinite(cond) or cond > MAX_CONDITION_NUMBER:
        raise SingularCovarianceError(
            f"metric correlation matrix is singular (condition number {cond:.3g}); "
            "some metrics are linearly dependent",
            metric=names[_dependent_column(Xz)])

    theta = np.linalg.inv(R)
    d = np.sqrt(np.diag(theta))
    P = -theta / np.outer(d, d)
    # Symmetrize away the rounding asymmetry of the inverse.
    P = 0.5 * (P + P.T)
    P = np.clip(P, -1.0, 1.0)
    np.fill_diagonal(P, 1.0)
    return pd.DataFrame(P, index=names, columns=names)


def redundant_pairs(partial: pd.DataFrame, threshold: float = REDUNDANCY_THRESHOLD) -> List[Tuple[str, str, float]]:
    """Metric pairs whose |partial correlation| exceeds *threshold*, strongest first."""
    names = list(partial.index)
    values = partial.to_numpy()
    pairs = []
    for i in range(len(names)):
        for j in range(i + 1, len(names)):
            if abs(values[i, j]) > threshold:
                pairs.append((names[i], names[j], float(values[i, j])))
    return sorted(pairs, key=lambda t: -abs(t[2]))


def summarize_partial_correlations(partial: pd.DataFrame) -> dict:
    """Distribution summary of the off-diagonal partial correlations."""
    vals = offdiag_vals_from_corr(partial.to_numpy())
    if vals.size == 0:
        return {"n_pairs": 0, "mean_abs": float("nan"), "max_abs": float("nan"), "sd": float("nan")}
    return {
        "n_pairs": int(vals.size),
        "mean_abs": float(np.mean(np.abs(vals))),
        "max_abs": float(np.max(np.abs(vals))),
        "sd": float(np.std(vals)),
    }

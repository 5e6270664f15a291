"""Central utility functions shared across the metric-selection pipeline.

Provides the numerical building blocks used by the redundancy, factor and
cutoff stages, and the naming conventions of the derived metric columns:

* **Column naming** -- ``<metric>_c`` (compensated), ``<metric>_retest``
  and ``<metric>_retest_c`` (compensated retest).
* **Metric matrices** -- stacking compensated columns of a population
  table into an (n_subjects x n_metrics) float64 array.
* **Z-scoring** -- column-wise standardisation with constant-column
  detection.
* **Correlation matrices** -- z-scored Gram matrix and off-diagonal
  extraction.

Key notation throughout:
  - X  : (n x p) matrix, rows are subjects, columns are metrics
  - Xz : X z-scored per column (zero mean, unit sample variance)
"""

from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from metric_selection.config import EPS, COMPENSATED_SUFFIX, RETEST_SUFFIX


def compensated_name(metric: str) -> str:
    """Name of the confound-compensated column of *metric*."""
    return f"{metric}{COMPENSATED_SUFFIX}"


def retest_name(metric: str) -> str:
    """Name of the raw retest column of *metric*."""
    return f"{metric}{RETEST_SUFFIX}"


def retest_compensated_name(metric: str) -> str:
    """Name of the compensated retest column of *metric*."""
    return f"{metric}{RETEST_SUFFIX}{COMPENSATED_SUFFIX}"


def metric_columns(metric: str, *tables: pd.DataFrame) -> List[str]:
    """The variants of *metric* present in any of *tables*: raw, compensated, compensated retest."""
    candidates = [metric, compensated_name(metric), retest_compensated_name(metric)]
    return [c for c in candidates if any(c in t.columns for t in tables)]


def metric_matrix(table: pd.DataFrame, metrics: Sequence[str], *, compensated: bool = True) -> np.ndarray:
    """Stack one column per metric into an (n_subjects, n_metrics) float64 array.

    With ``compensated=True`` (the default) the ``<metric>_c`` columns are
    used, which is what every multivariate stage consumes.
    """
    cols = [compensated_name(m) if compensated else m for m in metrics]
    return table.loc[:, cols].to_numpy(dtype=np.float64)


def safe_zscore_columns(X: np.ndarray, *, eps: float = EPS) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Z-score each column independently across subjects.

    Returns (Xz, mean, std) where Xz has zero mean and unit sample
    variance per column.

    Constant (or near-constant) columns would produce sd ~ 0 and blow up
    the division.  Their sd is replaced with 1.0, which leaves them as
    centred, all-zero columns; callers that cannot accept such a column
    check ``std < eps`` on the returned std themselves.
    """
    X = np.asarray(X, dtype=np.float64)
    mu = X.mean(axis=0, keepdims=True)
    Xc = X - mu
    sd = Xc.std(axis=0, ddof=1, keepdims=True)
    safe_sd = np.where(sd < eps, 1.0, sd)
    Xz = Xc / safe_sd
    return Xz, mu.squeeze(0), sd.squeeze(0)


def corr_from_zscored(Xz: np.ndarray) -> np.ndarray:
    """Metric correlation matrix of column-standardized data.

    For columns with zero mean and unit sample variance the correlation
    matrix is the scaled Gram matrix Xz^T Xz / (n - 1).  Its diagonal is
    pinned to exactly 1.
    """
    Xz = np.asarray(Xz, dtype=np.float64)
    n = Xz.shape[0]
    S = (Xz.T @ Xz) / max(n - 1, 1)
    np.fill_diagonal(S, 1.0)
    return S


def offdiag_vals_from_corr(S: np.ndarray) -> np.ndarray:
    """Extract the upper-triangle off-diagonal entries of a correlation matrix.

    Returns a flat array of p*(p-1)/2 pairwise correlations (excluding the
    diagonal, which is always 1).  Non-finite entries are dropped.
    """
    iu = np.triu_indices_from(S, k=1)
    vals = S[iu]
    return vals[np.isfinite(vals)]

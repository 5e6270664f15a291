"""Dimensionality reduction of the compensated metrics by factor analysis.

The metrics are z-scored and a k-factor maximum-likelihood model is fit
with scikit-learn's ``FactorAnalysis`` (SVD-based EM), optionally with a
varimax or quartimax rotation.  The loading matrix (metric x factor) shows
how much of each metric's variance every latent factor explains.

The factor count k is the caller's decision.  To inform it, the eigenvalue
spectrum of the metric correlation matrix is exposed (the data behind a
scree plot), together with the Kaiser suggestion (eigenvalues > 1) and the
factorability diagnostics KMO and Bartlett's test of sphericity.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.decomposition import FactorAnalysis
from sklearn.exceptions import ConvergenceWarning

from metric_selection.config import EPS, FA_MAX_ITER, FA_TOL, FA_ROTATION
from metric_selection.errors import DegenerateScaleError, NonConvergenceError
from metric_selection.utils import safe_zscore_columns, corr_from_zscored


@dataclass
class FactorModel:
    """Result of the factor analysis.

    Attributes
    ----------
    loadings : DataFrame (metric x factor)
    communalities : Series, sum of squared loadings per metric
    uniquenesses : Series, estimated noise variance per metric
    factor_variance : Series, sum of squared loadings per factor
    eigenvalues : array, correlation-matrix eigenvalues, descending
    explained_variance_ratio : array, eigenvalues / n_metrics
    n_iter : int, EM iterations used
    rotation : str or None
    """

    loadings: pd.DataFrame
    communalities: pd.Series
    uniquenesses: pd.Series
    factor_variance: pd.Series
    eigenvalues: np.ndarray
    explained_variance_ratio: np.ndarray
    n_iter: int
    rotation: Optional[str]

    @property
    def num_factors(self) -> int:
        return self.loadings.shape[1]


def _standardized(X: np.ndarray, names: Sequence[str]) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[1] != len(names):
        raise ValueError(f"expected a 2-d matrix with {len(names)} columns")
    if X.shape[0] < 3:
        raise ValueError("factor analysis needs at least three subjects")
    Xz, _, sd = safe_zscore_columns(X)
    constant = np.flatnonzero(sd < EPS)
    if constant.size:
        raise DegenerateScaleError("metric has zero variance", metric=names[int(constant[0])])
    return Xz


def scree_eigenvalues(X: np.ndarray, names: Optional[Sequence[str]] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Eigenvalues of the metric correlation matrix (descending) and their variance ratios."""
    if names is None:
        names = [f"column{j}" for j in range(np.shape(X)[1])]
    Xz = _standardized(X, names)
    R = corr_from_zscored(Xz)
    eigenvalues = np.sort(np.linalg.eigvalsh(R))[::-1]
    # Round-off can push the smallest eigenvalues slightly below zero.
    eigenvalues = np.maximum(eigenvalues, 0.0)
    return eigenvalues, eigenvalues / eigenvalues.sum()


def suggest_num_factors(eigenvalues: np.ndarray) -> int:
    """Kaiser criterion: number of eigenvalues above 1, at least 1."""
    return max(1, int(np.sum(np.asarray(eigenvalues) > 1.0)))


def factorability(X: np.ndarray, names: Sequence[str]) -> dict:
    """Kaiser-Meyer-Olkin sampling adequacy and Bartlett's test of sphericity.

    KMO compares squared correlations to squared partial correlations;
    values below 0.5 indicate the metrics share too little variance for a
    factor model.  Bartlett's test rejects an identity correlation matrix.
    """
    Xz = _standardized(X, names)
    n, p = Xz.shape
    R = corr_from_zscored(Xz)
    try:
        inv = np.linalg.inv(R)
    except np.linalg.LinAlgError:
        return {"kmo": float("nan"), "bartlett_chi2": float("nan"), "bartlett_p": float("nan")}
    d = np.sqrt(np.diag(inv))
    partial = -inv / np.outer(d, d)
    corr_sq = np.square(R)
    partial_sq = np.square(partial)
    np.fill_diagonal(corr_sq, 0.0)
    np.fill_diagonal(partial_sq, 0.0)
    total = corr_sq.sum() + partial_sq.sum()
    kmo = float(corr_sq.sum() / total) if total > 0 else float("nan")

    det = float(np.linalg.det(R))
    if det <= 0:
        chi2 = p_value = float("nan")
    else:
        chi2 = float(-(n - 1 - (2 * p + 5) / 6) * np.log(det))
        p_value = float(stats.chi2.sf(chi2, p * (p - 1) / 2))
    return {"kmo": kmo, "bartlett_chi2": chi2, "bartlett_p": p_value}


def analyze_factors(
    X: np.ndarray,
    names: Sequence[str],
    k: int,
    *,
    rotation: Optional[str] = FA_ROTATION,
    max_iter: int = FA_MAX_ITER,
    tol: float = FA_TOL,
    verbose: bool = False,
) -> FactorModel:
    """Extract *k* latent factors from the compensated metric matrix *X*.

    Parameters
    ----------
    X : (n_subjects, n_metrics) array
    names : sequence of str, metric names
    k : int, number of factors, 1 <= k <= n_metrics
    rotation : {"varimax", "quartimax", None}
    max_iter, tol : EM iteration budget and log-likelihood tolerance

    Raises
    ------
    ValueError
        k outside [1, n_metrics].
    NonConvergenceError
        scikit-learn reports that EM stopped at *max_iter* without meeting *tol*.
    """
    names = list(names)
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or not 1 <= k <= len(names):
        raise ValueError(f"number of factors must be an integer in [1, {len(names)}], got {k!r}")
    Xz = _standardized(X, names)
    eigenvalues, evr = scree_eigenvalues(X, names)

    fa = FactorAnalysis(n_components=int(k), rotation=rotation, max_iter=max_iter, tol=tol)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        fa.fit(Xz)
    if any(issubclass(w.category, ConvergenceWarning) for w in caught):
        raise NonConvergenceError(
            f"factor analysis with k={k} did not converge within {max_iter} iterations")

    factor_names = [f"factor{i + 1}" for i in range(int(k))]
    loadings = pd.DataFrame(fa.components_.T, index=names, columns=factor_names)
    model = FactorModel(
        loadings=loadings,
        communalities=(loadings ** 2).sum(axis=1).rename("communality"),
        uniquenesses=pd.Series(fa.noise_variance_, index=names, name="uniqueness"),
        factor_variance=(loadings ** 2).sum(axis=0).rename("ss_loadings"),
        eigenvalues=eigenvalues,
        explained_variance_ratio=evr,
        n_iter=int(fa.n_iter_),
        rotation=rotation,
    )
    if verbose:
        shares = ", ".join(f"{v:.2f}" for v in model.factor_variance)
        print(f"[factors] k={k} ({rotation or 'unrotated'}): SS loadings = [{shares}] "
              f"after {model.n_iter} iterations; Kaiser suggests k={suggest_num_factors(eigenvalues)}")
    return model

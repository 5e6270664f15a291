"""Confound correction: per-metric regression on demographic covariates.

For every metric a linear model of the raw test value on the covariates
("effects", e.g. age, gender, tested hand, hand dominance) is fit, and the
compensated metric is the raw value minus the covariate-attributable part:

    y_c = y - X @ beta            (residual)
    y_c = y - X @ beta + mean(y)  (residual + grand mean, ``add_mean=True``)

so that y_c is what the value would be without the modeled confound
contribution.  The SAME fitted model compensates the retest column, which
keeps test and retest on one corrected scale.

Design matrix
-------------
Intercept, continuous covariates as-is, categorical covariates one-hot
encoded with the first (sorted) level dropped.  Levels are frozen at fit
time; a level unseen during fitting cannot be compensated and raises
``ModelFitError``.

Fitting population
------------------
``fit_population="reference"`` (default) fits on the reference population
only and applies the model to both populations: the covariate dependence
is learned from healthy subjects, so impairment itself is never explained
away by a covariate that happens to differ between groups.
``fit_population="pooled"`` fits on the concatenation of both tables.

Model kinds
-----------
``"ols"``      ordinary least squares via a thin QR factorisation
               (numerically stabler than the normal equations).
``"mixedlm"``  test and retest observations stacked in long format with a
               random intercept per subject (statsmodels MixedLM).  Only
               the fixed effects enter the compensation.  Metrics without
               retest data fall back to OLS.
"""

import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular
from statsmodels.regression.mixed_linear_model import MixedLM

from metric_selection.config import EPS, RANK_TOL
from metric_selection.errors import ModelFitError
from metric_selection.utils import compensated_name, retest_name, retest_compensated_name

INTERCEPT = "intercept"


def is_categorical(values: pd.Series) -> bool:
    """Object, string, category and bool columns are dummy-coded."""
    return (pd.api.types.is_object_dtype(values)
            or pd.api.types.is_string_dtype(values)
            or isinstance(values.dtype, pd.CategoricalDtype)
            or pd.api.types.is_bool_dtype(values))


def covariate_levels(table: pd.DataFrame, effects: Sequence[str]) -> Dict[str, Tuple]:
    """Sorted levels of every categorical covariate in *table*."""
    levels = {}
    for effect in effects:
        if is_categorical(table[effect]):
            levels[effect] = tuple(sorted(pd.unique(table[effect]), key=str))
    return levels


def build_design(
    table: pd.DataFrame, effects: Sequence[str], levels: Optional[Dict[str, Tuple]] = None,
    *, metric: Optional[str] = None,
) -> pd.DataFrame:
    """Design matrix of *table* with the categorical coding given by *levels*.

    Column order: intercept, then per effect either the continuous column or
    one indicator per non-baseline level, named ``effect[level]``.  Without
    *levels* the coding is taken from *table* itself.
    """
    if levels is None:
        levels = covariate_levels(table, effects)
    cols = {INTERCEPT: np.ones(len(table))}
    for effect in effects:
        values = table[effect]
        if effect in levels:
            unseen = sorted(set(pd.unique(values)) - set(levels[effect]), key=str)
            if unseen:
                raise ModelFitError(
                    f"levels {unseen} were not present when the confound model was fit",
                    metric=metric, covariate=effect,
                )
            for level in levels[effect][1:]:
                cols[f"{effect}[{level}]"] = (values == level).to_numpy(dtype=np.float64)
        else:
            cols[effect] = values.to_numpy(dtype=np.float64)
    return pd.DataFrame(cols, index=table.index)


def _effect_of_column(column: str, effects: Sequence[str]) -> Optional[str]:
    for effect in effects:
        if column == effect or column.startswith(f"{effect}["):
            return effect
    return None


def check_covariate_variance(
    table: pd.DataFrame, effects: Sequence[str], metric: str, population: str = "fitting data",
) -> None:
    """Raise ``ModelFitError`` for a covariate that does not vary within *table*.

    A continuous covariate needs non-zero variance, a categorical one at
    least two levels.
    """
    for effect in effects:
        values = table[effect]
        if is_categorical(values):
            if values.nunique() < 2:
                raise ModelFitError(f"covariate has a single level in the {population}",
                                    metric=metric, covariate=effect)
        elif float(np.std(values.to_numpy(dtype=np.float64))) < EPS:
            raise ModelFitError(f"covariate has zero variance in the {population}",
                                metric=metric, covariate=effect)


def check_design(
    fit_table: pd.DataFrame, effects: Sequence[str], design: pd.DataFrame, metric: str,
) -> None:
    """Raise ``ModelFitError`` if *design* cannot identify the confound model.

    Detected eagerly, in this order:
      1. a continuous covariate with zero variance, or a categorical one
         with a single level, within the fitting data;
      2. no more observations than design columns;
      3. a design column linearly dependent on the preceding columns
         (rank deficiency), reported with the covariate it belongs to.
    """
    check_covariate_variance(fit_table, effects, metric)

    n, p = design.shape
    if n <= p:
        raise ModelFitError(
            f"too few subjects ({n}) for {p} design columns", metric=metric,
        )

    # Pivot-free QR: a tiny |R_kk| means column k lies in the span of the
    # columns before it.
    R = np.linalg.qr(design.to_numpy(dtype=np.float64), mode="r")
    diag = np.abs(np.diag(R))
    tol = RANK_TOL * max(float(diag.max()), 1.0)
    dependent = np.flatnonzero(diag < tol)
    if dependent.size:
        column = design.columns[int(dependent[0])]
        raise ModelFitError(
            f"design matrix is rank deficient at column {column!r}",
            metric=metric, covariate=_effect_of_column(column, effects),
        )


def _ols_coefficients(design: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Least-squares coefficients from the thin QR factorisation X = QR."""
    Q, R = np.linalg.qr(design, mode="reduced")
    return solve_triangular(R, Q.T @ y)


@dataclass(frozen=True)
class ConfoundModel:
    """Fitted confound model of one metric; immutable after fitting."""

    metric: str
    effects: Tuple[str, ...]
    levels: Dict[str, Tuple]
    coefficients: pd.Series
    grand_mean: float
    fit_population: str
    model_kind: str
    r_squared: float
    residual_sd: float
    n_obs: int

    def predict(self, table: pd.DataFrame) -> np.ndarray:
        """Covariate-attributable expected value for every row of *table*."""
        design = build_design(table, self.effects, self.levels, metric=self.metric)
        return design.loc[:, self.coefficients.index].to_numpy() @ self.coefficients.to_numpy()

    def compensate(self, values, table: pd.DataFrame, *, add_mean: bool = False) -> np.ndarray:
        """Subtract the covariate-attributable component from *values*."""
        resid = np.asarray(values, dtype=np.float64) - self.predict(table)
        return resid + self.grand_mean if add_mean else resid


def _fit_table(reference: pd.DataFrame, impaired: pd.DataFrame, fit_population: str) -> pd.DataFrame:
    if fit_population == "reference":
        return reference
    if fit_population == "pooled":
        return pd.concat([reference, impaired], ignore_index=True)
    raise ValueError(f"fit_population must be 'reference' or 'pooled', got {fit_population!r}")


def _fit_mixedlm(
    fit_table: pd.DataFrame, design: pd.DataFrame, metric: str, *, verbose: bool,
) -> np.ndarray:
    """Fixed-effect coefficients of a random-intercept model over test + retest."""
    rt = retest_name(metric)
    has_retest = fit_table[rt].notna().to_numpy()
    subjects = np.arange(len(fit_table))
    endog = np.concatenate([fit_table[metric].to_numpy(dtype=np.float64),
                            fit_table.loc[has_retest, rt].to_numpy(dtype=np.float64)])
    exog = np.vstack([design.to_numpy(), design.to_numpy()[has_retest]])
    groups = np.concatenate([subjects, subjects[has_retest]])

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = MixedLM(endog, exog, groups).fit(reml=True)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise ModelFitError(f"mixed model could not be fit: {e}", metric=metric) from e
    if verbose:
        for w in caught:
            print(f"[confounds] {metric}: {w.category.__name__}: {w.message}")
    if not result.converged:
        raise ModelFitError("mixed model did not converge", metric=metric)
    return np.asarray(result.fe_params, dtype=np.float64)


def fit_confound_model(
    metric: str,
    effects: Sequence[str],
    reference: pd.DataFrame,
    impaired: pd.DataFrame,
    *,
    fit_population: str = "reference",
    model_kind: str = "ols",
    verbose: bool = False,
) -> ConfoundModel:
    """Fit the confound model of *metric* on its covariates.

    Parameters
    ----------
    metric : str
        Raw test column to model.
    effects : sequence of str
        Covariate columns.
    reference, impaired : pandas.DataFrame
        Population tables; which rows are used depends on *fit_population*.
    fit_population : {"reference", "pooled"}
    model_kind : {"ols", "mixedlm"}
    verbose : bool
        Print the fit summary.

    Returns
    -------
    ConfoundModel

    Raises
    ------
    ModelFitError
        A covariate that does not vary within either population, a
        rank-deficient design, too few subjects, an unseen categorical
        level, or a mixed-model failure.
    """
    effects = tuple(effects)
    check_covariate_variance(reference, effects, metric, "reference population")
    check_covariate_variance(impaired, effects, metric, "impaired population")
    fit_table = _fit_table(reference, impaired, fit_population)
    levels = covariate_levels(fit_table, effects)
    design = build_design(fit_table, effects, levels, metric=metric)
    check_design(fit_table, effects, design, metric)

    y = fit_table[metric].to_numpy(dtype=np.float64)
    kind = model_kind
    rt = retest_name(metric)
    if model_kind == "mixedlm" and (rt not in fit_table.columns or not fit_table[rt].notna().any()):
        kind = "ols"
    if kind == "mixedlm":
        beta = _fit_mixedlm(fit_table, design, metric, verbose=verbose)
    else:
        beta = _ols_coefficients(design.to_numpy(), y)

    fitted = design.to_numpy() @ beta
    resid = y - fitted
    ss_res = float(np.sum(resid ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > EPS else float("nan")
    dof = max(len(y) - design.shape[1], 1)

    model = ConfoundModel(
        metric=metric,
        effects=effects,
        levels=levels,
        coefficients=pd.Series(beta, index=design.columns, name=metric),
        grand_mean=float(y.mean()),
        fit_population=fit_population,
        model_kind=kind,
        r_squared=r2,
        residual_sd=float(np.sqrt(ss_res / dof)),
        n_obs=int(len(y)),
    )
    if verbose:
        print(f"[confounds] {metric}: R^2={r2:.3f}, residual SD={model.residual_sd:.4g} "
              f"(n={model.n_obs}, {kind}, fit on {fit_population})")
    return model


def correct_confounds(
    metrics: Sequence[str],
    effects: Sequence[str],
    reference: pd.DataFrame,
    impaired: pd.DataFrame,
    *,
    fit_population: str = "reference",
    model_kind: str = "ols",
    add_mean: bool = False,
    verbose: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, ConfoundModel]]:
    """Fit one confound model per metric and add the compensated columns.

    Returns copies of both tables augmented with ``<metric>_c`` and, when a
    ``<metric>_retest`` column exists, ``<metric>_retest_c`` compensated with
    the same model.  Raw columns are left untouched.  The models are
    returned in metric order.
    """
    reference = reference.copy()
    impaired = impaired.copy()
    models: Dict[str, ConfoundModel] = {}
    for metric in metrics:
        model = fit_confound_model(
            metric, effects, reference, impaired,
            fit_population=fit_population, model_kind=model_kind, verbose=verbose,
        )
        models[metric] = model
        for table in (reference, impaired):
            table[compensated_name(metric)] = model.compensate(table[metric], table, add_mean=add_mean)
            rt = retest_name(metric)
            if rt in table.columns:
                table[retest_compensated_name(metric)] = model.compensate(
                    table[rt], table, add_mean=add_mean)
    return reference, impaired, models

"""Per-metric psychometric scoring.

Each metric receives a fixed battery of six statistics, computed from the
standardized, confound-compensated columns of both populations:

  C1, C2 : validity coefficients.  Two independent, named slots holding
           correlation coefficients against pluggable comparators.  The
           defaults are
             C1 = known-groups validity: point-biserial correlation of the
                  compensated metric with the impaired-group indicator;
             C2 = correction fidelity: Spearman correlation between the
                  raw and compensated metric in the reference population.
  AUC    : area under the ROC curve separating reference from impaired
           subjects, from the Mann-Whitney U statistic (rank based, so
           invariant to strictly increasing transforms).
  ICC    : two-way intraclass correlation of compensated test vs retest,
           ICC(C,1) (consistency, default) or ICC(A,1) (agreement).
  SRD    : smallest real difference, 1.96 * sqrt(2) * SEM with
           SEM = SD(test and retest values) * sqrt(1 - ICC).
  slope  : least-squares slope of retest on test.  A slope near 1 means
           the second administration is not systematically rescaled.

The reliability statistics (ICC, SRD, slope) pool the complete
test/retest pairs of both populations.  Scoring is a pure function of the
input columns: no randomness and no state shared between metrics, so the
per-metric loop may run on worker threads, each writing one slot of a
pre-sized result list.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from metric_selection.config import EPS, SRD_Z
from metric_selection.confounds import ConfoundModel
from metric_selection.errors import DegenerateScaleError, InsufficientDataError, SchemaError
from metric_selection.utils import compensated_name, retest_compensated_name

# Signature of a validity comparator for the C1/C2 slots.
ValidityCheck = Callable[[pd.DataFrame, pd.DataFrame, str, Optional[ConfoundModel]], float]

SCORE_COLUMNS = ["C1", "C2", "AUC", "SRD", "ICC", "slope"]


@dataclass(frozen=True)
class MetricScore:
    """The six statistics of one metric."""

    metric: str
    C1: float
    C2: float
    AUC: float
    SRD: float
    ICC: float
    slope: float


# ── Discriminant validity ───────────────────────────────────────────────────


def auc_score(reference_values, impaired_values, *, direction: str = "greater") -> float:
    """AUC-ROC of a metric separating impaired from reference subjects.

    AUC = U / (n_ref * n_imp), where U is the Mann-Whitney statistic of the
    impaired sample (ties count one half).  With ``direction="greater"``
    higher values are taken to indicate impairment, so 1.0 means every
    impaired subject scores above every reference subject.
    ``direction="auto"`` returns max(AUC, 1 - AUC).
    """
    ref = np.asarray(reference_values, dtype=np.float64)
    imp = np.asarray(impaired_values, dtype=np.float64)
    ref = ref[np.isfinite(ref)]
    imp = imp[np.isfinite(imp)]
    if ref.size == 0 or imp.size == 0:
        raise InsufficientDataError("AUC needs at least one subject per population")
    u, _ = stats.mannwhitneyu(imp, ref, alternative="two-sided")
    auc = float(u) / (imp.size * ref.size)
    if direction == "auto":
        return max(auc, 1.0 - auc)
    return auc


def known_groups_correlation(
    reference: pd.DataFrame, impaired: pd.DataFrame, metric: str,
    model: Optional[ConfoundModel] = None,
) -> float:
    """Point-biserial correlation of the compensated metric with group membership."""
    col = compensated_name(metric)
    values = np.concatenate([reference[col].to_numpy(dtype=np.float64),
                             impaired[col].to_numpy(dtype=np.float64)])
    indicator = np.concatenate([np.zeros(len(reference)), np.ones(len(impaired))])
    if np.std(values) < EPS:
        raise DegenerateScaleError("compensated values are constant", metric=metric)
    r, _ = stats.pearsonr(values, indicator)
    return float(r)


def correction_fidelity_correlation(
    reference: pd.DataFrame, impaired: pd.DataFrame, metric: str,
    model: Optional[ConfoundModel] = None,
) -> float:
    """Spearman correlation between raw and compensated values (reference population).

    Close to 1 when the confounds explain little of the ranking of healthy
    subjects, lower when compensation reorders them substantially.
    """
    raw = reference[metric].to_numpy(dtype=np.float64)
    comp = reference[compensated_name(metric)].to_numpy(dtype=np.float64)
    if np.std(raw) < EPS or np.std(comp) < EPS:
        raise DegenerateScaleError("raw or compensated values are constant", metric=metric)
    rho, _ = stats.spearmanr(raw, comp)
    return float(rho)


def criterion_correlation(criterion: str, *, method: str = "pearson") -> ValidityCheck:
    """Build a validity check correlating the compensated metric with an external criterion.

    The criterion column (e.g. a clinical scale score) must exist in both
    population tables; the correlation is computed over the pooled subjects.
    """
    if method not in ("pearson", "spearman"):
        raise ValueError(f"method must be 'pearson' or 'spearman', got {method!r}")

    def check(reference: pd.DataFrame, impaired: pd.DataFrame, metric: str,
              model: Optional[ConfoundModel] = None) -> float:
        for label, table in (("reference", reference), ("impaired", impaired)):
            if criterion not in table.columns:
                raise SchemaError(f"The {label} data table has no criterion column {criterion!r}",
                                  metric=metric)
        col = compensated_name(metric)
        pooled = pd.concat([reference[[col, criterion]], impaired[[col, criterion]]],
                           ignore_index=True).dropna()
        if method == "spearman":
            r, _ = stats.spearmanr(pooled[col], pooled[criterion])
        else:
            r, _ = stats.pearsonr(pooled[col], pooled[criterion])
        return float(r)

    check.__name__ = f"criterion_correlation[{criterion}]"
    return check


# ── Reliability ─────────────────────────────────────────────────────────────


def icc(test, retest, *, form: str = "consistency", metric: Optional[str] = None) -> float:
    """Two-way intraclass correlation of paired test/retest values.

    Mean squares of the n x 2 two-way ANOVA (subjects x sessions):

        ICC(C,1) = (MS_S - MS_E) / (MS_S + MS_E)
        ICC(A,1) = (MS_S - MS_E) / (MS_S + MS_E + 2 (MS_T - MS_E) / n)

    Negative estimates (between-subject variance below the error variance)
    are reported as 0, so the result lies in [0, 1].  Identical test and
    retest values give 1.
    """
    x = np.asarray(test, dtype=np.float64)
    y = np.asarray(retest, dtype=np.float64)
    if x.shape != y.shape:
        raise ValueError("test and retest must have the same length")
    n = x.size
    if n < 2:
        raise InsufficientDataError("ICC needs at least two test/retest pairs", metric=metric)

    scores = np.column_stack((x, y))
    k = scores.shape[1]
    mean_subject = scores.mean(axis=1, keepdims=True)
    mean_session = scores.mean(axis=0, keepdims=True)
    grand_mean = float(scores.mean())

    ss_subjects = k * float(np.sum((mean_subject - grand_mean) ** 2))
    ss_sessions = n * float(np.sum((mean_session - grand_mean) ** 2))
    residual = scores - mean_subject - mean_session + grand_mean
    ss_error = float(np.sum(residual ** 2))

    ms_subjects = ss_subjects / (n - 1)
    ms_sessions = ss_sessions / (k - 1)
    ms_error = ss_error / ((n - 1) * (k - 1))

    denominator = ms_subjects + (k - 1) * ms_error
    if form == "agreement":
        denominator += k * (ms_sessions - ms_error) / n
    elif form != "consistency":
        raise ValueError(f"form must be 'consistency' or 'agreement', got {form!r}")
    if not np.isfinite(denominator) or denominator < EPS:
        raise DegenerateScaleError("ICC is undefined: test and retest values are constant",
                                   metric=metric)

    value = (ms_subjects - ms_error) / denominator
    return float(np.clip(value, 0.0, 1.0))


def standard_error_of_measurement(test, retest, icc_value: float) -> float:
    """SEM = SD(all test and retest values) * sqrt(1 - ICC)."""
    values = np.concatenate([np.asarray(test, dtype=np.float64),
                             np.asarray(retest, dtype=np.float64)])
    sd = float(np.std(values, ddof=1))
    return sd * float(np.sqrt(max(0.0, 1.0 - icc_value)))


def smallest_real_difference(sem: float) -> float:
    """SRD = 1.96 * sqrt(2) * SEM: the smallest change exceeding measurement noise."""
    if sem < 0:
        raise ValueError("SEM must be non-negative")
    return SRD_Z * float(np.sqrt(2.0)) * sem


def retest_slope(test, retest, *, metric: Optional[str] = None) -> float:
    """Least-squares slope of retest on test values."""
    x = np.asarray(test, dtype=np.float64)
    y = np.asarray(retest, dtype=np.float64)
    if x.size < 2:
        raise InsufficientDataError("slope needs at least two test/retest pairs", metric=metric)
    if np.std(x) < EPS:
        raise DegenerateScaleError("slope is undefined: test values are constant", metric=metric)
    return float(stats.linregress(x, y).slope)


def paired_retest(reference: pd.DataFrame, impaired: pd.DataFrame, metric: str) -> Tuple[np.ndarray, np.ndarray]:
    """Complete compensated (test, retest) pairs pooled over both populations.

    Raises ``InsufficientDataError`` when the metric has no retest column
    or fewer than two complete pairs.
    """
    test_col = compensated_name(metric)
    retest_col = retest_compensated_name(metric)
    frames = [t[[test_col, retest_col]] for t in (reference, impaired) if retest_col in t.columns]
    if not frames:
        raise InsufficientDataError("no retest data", metric=metric)
    pairs = pd.concat(frames, ignore_index=True).dropna()
    if len(pairs) < 2:
        raise InsufficientDataError(
            f"{len(pairs)} test/retest pair(s), need at least 2", metric=metric,
        )
    return pairs[test_col].to_numpy(dtype=np.float64), pairs[retest_col].to_numpy(dtype=np.float64)


# ── Per-metric battery ──────────────────────────────────────────────────────


def score_metric(
    reference: pd.DataFrame,
    impaired: pd.DataFrame,
    metric: str,
    model: Optional[ConfoundModel] = None,
    *,
    icc_form: str = "consistency",
    auc_direction: str = "greater",
    require_retest: bool = False,
    c1_check: Optional[ValidityCheck] = None,
    c2_check: Optional[ValidityCheck] = None,
) -> MetricScore:
    """Compute the six statistics of *metric*.

    With ``require_retest=False`` a metric lacking retest data still gets
    C1, C2 and AUC, and NaN for SRD, ICC and slope; otherwise the
    ``InsufficientDataError`` propagates.
    """
    c1_check = c1_check or known_groups_correlation
    c2_check = c2_check or correction_fidelity_correlation
    col = compensated_name(metric)

    c1 = c1_check(reference, impaired, metric, model)
    c2 = c2_check(reference, impaired, metric, model)
    auc = auc_score(reference[col], impaired[col], direction=auc_direction)

    try:
        test, retest = paired_retest(reference, impaired, metric)
    except InsufficientDataError:
        if require_retest:
            raise
        icc_value = srd = slope = float("nan")
    else:
        icc_value = icc(test, retest, form=icc_form, metric=metric)
        srd = smallest_real_difference(standard_error_of_measurement(test, retest, icc_value))
        slope = retest_slope(test, retest, metric=metric)

    return MetricScore(metric=metric, C1=float(c1), C2=float(c2), AUC=auc,
                       SRD=srd, ICC=icc_value, slope=slope)


def score_table(scores: Sequence[MetricScore]) -> pd.DataFrame:
    """Collect scores into the metric-score table indexed by metric name."""
    rows = [asdict(s) for s in scores]
    table = pd.DataFrame(rows, columns=["metric"] + SCORE_COLUMNS).set_index("metric")
    return table


def score_metrics(
    reference: pd.DataFrame,
    impaired: pd.DataFrame,
    metrics: Sequence[str],
    models: Optional[Dict[str, ConfoundModel]] = None,
    *,
    n_jobs: int = 1,
    verbose: bool = False,
    **score_kwargs,
) -> pd.DataFrame:
    """Score every metric and return the metric-score table in *metrics* order.

    Each metric's result lands in its own slot of a pre-sized list, so the
    loop is safe to run on ``n_jobs`` worker threads.  The first error
    raised by any metric propagates.
    """
    models = models or {}
    slots: List[Optional[MetricScore]] = [None] * len(metrics)

    def _score(metric: str) -> MetricScore:
        return score_metric(reference, impaired, metric, models.get(metric), **score_kwargs)

    if n_jobs > 1 and len(metrics) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            future_to_idx = {executor.submit(_score, m): idx for idx, m in enumerate(metrics)}
            for future in as_completed(future_to_idx):
                slots[future_to_idx[future]] = future.result()
    else:
        for idx, metric in enumerate(metrics):
            slots[idx] = _score(metric)

    if verbose:
        for s in slots:
            print(f"[scoring] {s.metric}: C1={s.C1:.3f} C2={s.C2:.3f} AUC={s.AUC:.3f} "
                  f"SRD={s.SRD:.3f} ICC={s.ICC:.3f} slope={s.slope:.3f}")
    return score_table(slots)


def confound_correction_view(reference: pd.DataFrame, effects: Sequence[str], metric: str) -> pd.DataFrame:
    """Pre- and post-correction values of *metric* alongside its covariates.

    This is the data behind the confound-correction figure: one row per
    reference subject with columns ``raw``, ``compensated`` and the effects.
    """
    view = reference.loc[:, list(effects)].copy()
    view["raw"] = reference[metric].to_numpy()
    view["compensated"] = reference[compensated_name(metric)].to_numpy()
    return view

"""Reference standardization of metric columns.

Every comparison downstream of confound correction (AUC, cutoffs,
correlations) is made on a scale anchored to normal variability:

    z = (x - mean_ref) / sd_ref

where mean_ref and sd_ref are the sample mean and standard deviation
(ddof=1) of the column in the reference population only.  The same two
numbers rescale the column in both populations, so the impaired
population keeps its offset and spread relative to the healthy norm.
"""

from typing import Optional, Tuple

import numpy as np
import pandas as pd

from metric_selection.config import EPS
from metric_selection.errors import DegenerateScaleError
from metric_selection.utils import compensated_name, metric_columns, retest_compensated_name


def reference_stats(
    reference: pd.DataFrame, column: str, *, metric: Optional[str] = None,
) -> Tuple[float, float]:
    """Mean and sample SD of *column* over the reference population.

    Missing values (subjects without a retest) are ignored.  Errors name
    *metric* when given, else the column.
    """
    values = reference[column].to_numpy(dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size < 2:
        raise DegenerateScaleError(
            f"need at least two reference values to standardize column {column!r}",
            metric=metric or column,
        )
    return float(values.mean()), float(values.std(ddof=1))


def standardize_reference(
    reference: pd.DataFrame,
    impaired: pd.DataFrame,
    column: str,
    *,
    metric: Optional[str] = None,
    stats: Optional[Tuple[float, float]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Rescale *column* in both populations with the reference mean and SD.

    Returns copies of both tables with *column* replaced by its z-score.
    *stats* overrides the (mean, sd) pair taken from the reference column;
    a table without *column* is returned unchanged.

    Raises
    ------
    DegenerateScaleError
        The reference SD is zero (below ``EPS``) or not finite.
    """
    mean_ref, sd_ref = stats if stats is not None else reference_stats(reference, column, metric=metric)
    if not np.isfinite(sd_ref) or sd_ref < EPS:
        raise DegenerateScaleError(
            f"reference standard deviation of column {column!r} is zero", metric=metric or column,
        )
    reference = reference.copy()
    impaired = impaired.copy()
    for table in (reference, impaired):
        if column in table.columns:
            table[column] = (table[column] - mean_ref) / sd_ref
    return reference, impaired


def _finite_count(table: pd.DataFrame, column: str) -> int:
    if column not in table.columns:
        return 0
    return int(np.isfinite(table[column].to_numpy(dtype=np.float64)).sum())


def standardize_metric(
    reference: pd.DataFrame, impaired: pd.DataFrame, metric: str,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Standardize the raw, compensated and compensated-retest columns of *metric*.

    Each variant present in either table is rescaled with its own reference
    statistics.  When only impaired subjects were retested (the reference
    holds fewer than two retest values), the compensated retest is rescaled
    with the reference statistics of the compensated test column, so test
    and retest stay on one scale.
    """
    retest_col = retest_compensated_name(metric)
    test_col = compensated_name(metric)
    retest_stats = None
    has_retest = retest_col in reference.columns or retest_col in impaired.columns
    if has_retest and _finite_count(reference, retest_col) < 2 and test_col in reference.columns:
        retest_stats = reference_stats(reference, test_col, metric=metric)

    for column in metric_columns(metric, reference, impaired):
        stats = retest_stats if column == retest_col else None
        reference, impaired = standardize_reference(
            reference, impaired, column, metric=metric, stats=stats)
    return reference, impaired

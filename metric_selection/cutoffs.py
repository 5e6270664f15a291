"""Abnormality cutoffs and the impairment profile of the pooled population.

The cutoff of a metric is a high percentile (95th by default) of its
compensated, reference-standardized values over the pooled population
(reference rows followed by impaired rows).  A subject whose value lies
above the cutoff is flagged abnormal on that metric; the impairment
profile counts these flags per subject and summarizes them per group.
"""

from typing import Sequence

import numpy as np
import pandas as pd

from metric_selection.config import CUTOFF_PERCENTILE, GROUP_COLUMN, ID_COLUMN, IMPAIRED_LABEL, REFERENCE_LABEL
from metric_selection.errors import InsufficientDataError
from metric_selection.utils import compensated_name, metric_matrix


def pool_populations(reference: pd.DataFrame, impaired: pd.DataFrame) -> pd.DataFrame:
    """Stack reference then impaired rows, labelled by group, with ids 0..N-1."""
    population = pd.concat(
        [reference.assign(**{GROUP_COLUMN: REFERENCE_LABEL}),
         impaired.assign(**{GROUP_COLUMN: IMPAIRED_LABEL})],
        ignore_index=True,
    )
    population[ID_COLUMN] = np.arange(len(population))
    return population


def abnormality_cutoffs(X: np.ndarray, names: Sequence[str], percentile: float = CUTOFF_PERCENTILE) -> pd.Series:
    """Per-column *percentile* of *X* with linear interpolation between order statistics."""
    X = np.asarray(X, dtype=np.float64)
    names = list(names)
    if X.ndim != 2 or X.shape[1] != len(names):
        raise ValueError(f"expected a 2-d matrix with {len(names)} columns")
    if not 0.0 < percentile < 100.0:
        raise ValueError(f"percentile must lie strictly between 0 and 100, got {percentile}")
    if X.shape[0] == 0:
        raise InsufficientDataError("cannot compute cutoffs of an empty population")
    cutoffs = np.nanpercentile(X, percentile, axis=0, method="linear")
    return pd.Series(cutoffs, index=names, name=f"p{percentile:g}")


def impairment_profile(population: pd.DataFrame, metrics: Sequence[str], cutoffs: pd.Series) -> dict:
    """Flag every subject's compensated metrics that exceed their cutoff.

    Returns a dict with
      ``flags``     boolean DataFrame (subject id x metric),
      ``counts``    Series, abnormal metrics per subject,
      ``fractions`` DataFrame (group x metric), share of abnormal subjects.
    """
    metrics = list(metrics)
    values = pd.DataFrame(metric_matrix(population, metrics), columns=metrics,
                          index=population[ID_COLUMN].to_numpy())
    flags = values.gt(cutoffs.loc[metrics], axis=1)
    counts = flags.sum(axis=1).rename("n_abnormal")
    fractions = flags.groupby(population[GROUP_COLUMN].to_numpy()).mean()
    fractions.index.name = GROUP_COLUMN
    return {"flags": flags, "counts": counts, "fractions": fractions}


def pooled_metric_matrix(population: pd.DataFrame, metrics: Sequence[str]) -> np.ndarray:
    """Compensated metric columns of the pooled population."""
    missing = [compensated_name(m) for m in metrics if compensated_name(m) not in population.columns]
    if missing:
        raise KeyError(f"pooled population lacks compensated columns {missing}")
    return metric_matrix(population, metrics)

"""Synthetic reference and impaired populations.

Used when a run is not given real tables, and by the tests.  Each subject
gets the default covariates -- age (continuous), gender, tested_hand and
is_dominant_hand (binary categorical) -- and, per metric, a test value and
a retest value.

Generative model for subject i and metric j::

    true_ij   = b_j + a_j * age_i + g_j * [female] + h_j * [left hand]
                + d_j * [non-dominant] + delta_j * [impaired] + u_ij
    test_ij   = true_ij + e_ij
    retest_ij = true_ij + e'_ij

with subject-level variability ``u ~ N(0, sd_subject^2)`` shared between
test and retest, and independent measurement noise ``e, e' ~ N(0,
sd_noise^2)``.  The impaired offset ``delta_j`` is positive, so impaired
subjects score higher on every metric.

All randomness comes from the ``numpy.random.Generator`` passed in by the
caller; the module never touches global random state.
"""

from typing import Tuple

import numpy as np
import pandas as pd

from metric_selection.config import (
    NUM_SIM_SUBJECTS, NUM_SIM_METRICS,
    MEAN_AGE_REF, VAR_AGE_REF, MEAN_AGE_IMP, VAR_AGE_IMP,
)
from metric_selection.utils import retest_name


def _simulate_covariates(rng: np.random.Generator, n: int, mean_age: float, var_age: float) -> pd.DataFrame:
    return pd.DataFrame({
        "age": rng.normal(mean_age, np.sqrt(var_age), size=n),
        "gender": rng.choice(["male", "female"], size=n),
        "tested_hand": rng.choice(["right", "left"], size=n),
        "is_dominant_hand": rng.choice(["yes", "no"], size=n),
    })


def simulate_data(
    rng: np.random.Generator,
    n_subjects: int = NUM_SIM_SUBJECTS,
    n_metrics: int = NUM_SIM_METRICS,
    mean_age_ref: float = MEAN_AGE_REF,
    var_age_ref: float = VAR_AGE_REF,
    mean_age_imp: float = MEAN_AGE_IMP,
    var_age_imp: float = VAR_AGE_IMP,
    *,
    sd_subject: float = 1.0,
    sd_noise: float = 0.5,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Simulate *n_subjects* reference and *n_subjects* impaired subjects.

    Parameters
    ----------
    rng : numpy.random.Generator
        Source of all randomness, e.g. ``np.random.default_rng(seed)``.
    n_subjects : int
        Subjects per population.
    n_metrics : int
        Number of metrics, named ``metric1..metricN``.
    mean_age_ref, var_age_ref, mean_age_imp, var_age_imp : float
        Normal age distribution of each population.
    sd_subject : float
        SD of the subject-level component shared by test and retest.
    sd_noise : float
        SD of the measurement noise added to each administration.

    Returns
    -------
    reference, impaired : pandas.DataFrame
        Covariate columns, then ``metricJ`` and ``metricJ_retest`` columns.
    """
    if not isinstance(rng, np.random.Generator):
        raise TypeError("rng must be a numpy.random.Generator, e.g. np.random.default_rng(seed)")
    if n_subjects <= 0 or n_metrics <= 0:
        raise ValueError("n_subjects and n_metrics must be positive.")

    # Per-metric effect sizes, shared by both populations.
    intercepts = rng.uniform(5.0, 15.0, size=n_metrics)
    age_effects = rng.uniform(-0.1, 0.1, size=n_metrics)
    gender_effects = rng.normal(0.0, 0.5, size=n_metrics)
    hand_effects = rng.normal(0.0, 0.5, size=n_metrics)
    dominance_effects = rng.normal(0.0, 0.5, size=n_metrics)
    impairment_offsets = rng.uniform(0.5, 3.0, size=n_metrics)

    tables = []
    for impaired, mean_age, var_age in ((False, mean_age_ref, var_age_ref),
                                        (True, mean_age_imp, var_age_imp)):
        table = _simulate_covariates(rng, n_subjects, mean_age, var_age)
        female = (table["gender"] == "female").to_numpy(dtype=float)
        left = (table["tested_hand"] == "left").to_numpy(dtype=float)
        non_dominant = (table["is_dominant_hand"] == "no").to_numpy(dtype=float)
        for j in range(n_metrics):
            name = f"metric{j + 1}"
            true_value = (intercepts[j] + age_effects[j] * table["age"].to_numpy()
                          + gender_effects[j] * female + hand_effects[j] * left
                          + dominance_effects[j] * non_dominant
                          + rng.normal(0.0, sd_subject, size=n_subjects))
            if impaired:
                true_value = true_value + impairment_offsets[j]
            table[name] = true_value + rng.normal(0.0, sd_noise, size=n_subjects)
            table[retest_name(name)] = true_value + rng.normal(0.0, sd_noise, size=n_subjects)
        tables.append(table)

    reference, impaired_table = tables
    return reference, impaired_table

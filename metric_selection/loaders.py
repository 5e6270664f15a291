"""Population-table loaders and schema validation.

Each loader returns a pair of pandas DataFrames -- the reference (healthy)
population and the impaired population -- with one row per subject.  The
tables must hold every declared covariate ("effect") and metric column;
retest columns (``<metric>_retest``) are optional.

Missing data is a precondition violation, not something to impute: a
missing column, or a missing value in a covariate or test column, raises
``SchemaError`` naming the column.  Retest columns may hold missing values
for subjects that were not retested; the reliability statistics use the
complete test/retest pairs only.
"""

from pathlib import Path
from typing import List, Sequence, Tuple, Union

import pandas as pd

from metric_selection.config import GROUP_COLUMN, IMPAIRED_LABEL, REFERENCE_LABEL
from metric_selection.errors import SchemaError
from metric_selection.utils import retest_name


def check_data_table_cols(table: pd.DataFrame, effects: Sequence[str], metrics: Sequence[str]) -> List[str]:
    """Return the required columns missing from *table*, effects first."""
    return [c for c in list(effects) + list(metrics) if c not in table.columns]


def validate_population(
    table: pd.DataFrame, label: str, effects: Sequence[str], metrics: Sequence[str],
) -> None:
    """Raise ``SchemaError`` if *table* cannot enter the pipeline.

    Checks, in order: required columns present, at least one subject, no
    missing covariate or test values, numeric metric columns.
    """
    missing = check_data_table_cols(table, effects, metrics)
    if missing:
        first = missing[0]
        kind = "covariate" if first in effects else "metric"
        raise SchemaError(
            f"The {label} data table is missing the required columns {missing}",
            covariate=first if kind == "covariate" else None,
            metric=first if kind == "metric" else None,
        )
    if len(table) == 0:
        raise SchemaError(f"The {label} data table has no subjects")

    for effect in effects:
        if table[effect].isna().any():
            raise SchemaError(f"The {label} data table has missing values", covariate=effect)
    for metric in metrics:
        if not pd.api.types.is_numeric_dtype(table[metric]):
            raise SchemaError(f"The {label} data table holds non-numeric values", metric=metric)
        if table[metric].isna().any():
            raise SchemaError(f"The {label} data table has missing values", metric=metric)
        rt = retest_name(metric)
        if rt in table.columns and not pd.api.types.is_numeric_dtype(table[rt]):
            raise SchemaError(f"The {label} data table holds non-numeric retest values", metric=metric)


def split_pooled_table(
    table: pd.DataFrame, *, group_column: str = GROUP_COLUMN,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split a pooled table into (reference, impaired) by its group labels."""
    if group_column not in table.columns:
        raise SchemaError(f"The pooled data table has no {group_column!r} column")
    labels = table[group_column].astype(str).str.strip().str.lower()
    unknown = sorted(set(labels) - {REFERENCE_LABEL, IMPAIRED_LABEL})
    if unknown:
        raise SchemaError(
            f"Group labels must be {REFERENCE_LABEL!r} or {IMPAIRED_LABEL!r}, found {unknown}"
        )
    reference = table.loc[labels == REFERENCE_LABEL].drop(columns=[group_column]).reset_index(drop=True)
    impaired = table.loc[labels == IMPAIRED_LABEL].drop(columns=[group_column]).reset_index(drop=True)
    return reference, impaired


def load_population_tables(
    reference_path: Union[str, Path],
    impaired_path: Union[str, Path],
    effects: Sequence[str],
    metrics: Sequence[str],
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Load and validate the reference and impaired tables from two CSV files."""
    reference = pd.read_csv(reference_path)
    impaired = pd.read_csv(impaired_path)
    validate_population(reference, REFERENCE_LABEL, effects, metrics)
    validate_population(impaired, IMPAIRED_LABEL, effects, metrics)
    print(f"[load] reference n={len(reference)} from {reference_path}, "
          f"impaired n={len(impaired)} from {impaired_path}")
    return reference, impaired


def load_pooled_table(
    path: Union[str, Path],
    effects: Sequence[str],
    metrics: Sequence[str],
    *,
    group_column: str = GROUP_COLUMN,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Load one CSV holding both populations, labelled by *group_column*."""
    table = pd.read_csv(path)
    reference, impaired = split_pooled_table(table, group_column=group_column)
    validate_population(reference, REFERENCE_LABEL, effects, metrics)
    validate_population(impaired, IMPAIRED_LABEL, effects, metrics)
    print(f"[load] {path}: reference n={len(reference)}, impaired n={len(impaired)}")
    return reference, impaired

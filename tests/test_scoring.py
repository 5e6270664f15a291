"""
Tests for per-metric scoring -- AUC, ICC, SEM/SRD, slope, validity slots
and the (optionally threaded) scoring loop.
"""

import math

import numpy as np
import pandas as pd
import pytest

from metric_selection.errors import DegenerateScaleError, InsufficientDataError, SchemaError
from metric_selection.scoring import (
    SCORE_COLUMNS,
    auc_score,
    correction_fidelity_correlation,
    criterion_correlation,
    icc,
    known_groups_correlation,
    paired_retest,
    retest_slope,
    score_metric,
    score_metrics,
    smallest_real_difference,
    standard_error_of_measurement,
)


def _scored_tables(seed: int = 0, n: int = 50, offset: float = 1.5):
    """Tables already carrying compensated test/retest columns."""
    rng = np.random.default_rng(seed)
    tables = []
    for shift in (0.0, offset):
        true = rng.normal(shift, 1.0, n)
        tables.append(pd.DataFrame({
            "m": true + rng.normal(0.0, 0.2, n),
            "m_c": true + rng.normal(0.0, 0.1, n),
            "m_retest_c": true + rng.normal(0.0, 0.3, n),
            "severity": 2.0 * true + rng.normal(0.0, 0.5, n),
        }))
    return tables[0], tables[1]


# --- AUC ---


class TestAUC:
    def test_perfect_separation(self):
        assert auc_score([1, 2, 3], [4, 5, 6]) == 1.0

    def test_reversed_separation(self):
        assert auc_score([4, 5, 6], [1, 2, 3]) == 0.0
        assert auc_score([4, 5, 6], [1, 2, 3], direction="auto") == 1.0

    def test_identical_distributions(self):
        values = [1.0, 2.0, 3.0, 4.0]
        assert auc_score(values, values) == 0.5

    def test_invariant_to_increasing_transform(self):
        ref, imp = _scored_tables(1, offset=0.5)
        raw = auc_score(ref["m_c"], imp["m_c"])
        transformed = auc_score(np.exp(ref["m_c"]), np.exp(imp["m_c"]))
        assert math.isclose(raw, transformed)

    def test_empty_population(self):
        with pytest.raises(InsufficientDataError):
            auc_score([], [1.0, 2.0])


# --- Reliability ---


class TestICC:
    def test_identical_test_retest(self):
        x = np.array([1.0, 3.0, 2.0, 5.0, 4.0])
        assert icc(x, x) == 1.0
        assert icc(x, x, form="agreement") == 1.0

    def test_bounded(self):
        rng = np.random.default_rng(2)
        for _ in range(20):
            x, y = rng.normal(size=15), rng.normal(size=15)
            value = icc(x, y)
            assert 0.0 <= value <= 1.0

    def test_constant_shift_consistency_vs_agreement(self):
        x = np.array([1.0, 3.0, 2.0, 5.0, 4.0])
        assert math.isclose(icc(x, x + 2.0), 1.0)
        assert icc(x, x + 2.0, form="agreement") < 1.0

    def test_too_few_pairs(self):
        with pytest.raises(InsufficientDataError):
            icc([1.0], [1.0])

    def test_unknown_form(self):
        with pytest.raises(ValueError):
            icc([1.0, 2.0], [1.0, 2.0], form="average")

    def test_constant_values_name_metric(self):
        with pytest.raises(DegenerateScaleError) as exc:
            icc([2.0, 2.0, 2.0], [2.0, 2.0, 2.0], metric="m")
        assert exc.value.metric == "m"


class TestSRD:
    def test_zero_for_perfect_reliability(self):
        x = np.array([1.0, 3.0, 2.0, 5.0])
        sem = standard_error_of_measurement(x, x, icc(x, x))
        assert sem == 0.0
        assert smallest_real_difference(sem) == 0.0

    def test_linear_in_sem(self):
        assert math.isclose(smallest_real_difference(1.0), 1.96 * math.sqrt(2.0))
        assert math.isclose(smallest_real_difference(3.0), 3.0 * smallest_real_difference(1.0))

    def test_negative_sem(self):
        with pytest.raises(ValueError):
            smallest_real_difference(-0.1)


class TestSlope:
    def test_known_slope(self):
        x = np.array([0.0, 1.0, 2.0, 3.0])
        assert math.isclose(retest_slope(x, 2.0 * x + 1.0), 2.0)

    def test_constant_test_values_name_metric(self):
        with pytest.raises(DegenerateScaleError) as exc:
            retest_slope([1.0, 1.0, 1.0], [0.0, 1.0, 2.0], metric="m")
        assert exc.value.metric == "m"


class TestPairedRetest:
    def test_drops_incomplete_pairs(self):
        ref, imp = _scored_tables()
        ref.loc[:9, "m_retest_c"] = np.nan
        test, retest = paired_retest(ref, imp, "m")
        assert len(test) == len(retest) == len(ref) + len(imp) - 10

    def test_missing_retest(self):
        ref, imp = _scored_tables()
        ref = ref.drop(columns=["m_retest_c"])
        imp = imp.drop(columns=["m_retest_c"])
        with pytest.raises(InsufficientDataError) as exc:
            paired_retest(ref, imp, "m")
        assert exc.value.metric == "m"

    def test_single_pair(self):
        ref, imp = _scored_tables()
        ref["m_retest_c"] = np.nan
        imp.loc[1:, "m_retest_c"] = np.nan
        with pytest.raises(InsufficientDataError):
            paired_retest(ref, imp, "m")


# --- Validity slots ---


class TestValidity:
    def test_known_groups_positive(self):
        ref, imp = _scored_tables()
        assert known_groups_correlation(ref, imp, "m") > 0.3

    def test_correction_fidelity_high(self):
        ref, imp = _scored_tables()
        assert correction_fidelity_correlation(ref, imp, "m") > 0.9

    def test_criterion_correlation(self):
        ref, imp = _scored_tables()
        check = criterion_correlation("severity")
        assert check(ref, imp, "m") > 0.8

    def test_criterion_missing(self):
        ref, imp = _scored_tables()
        check = criterion_correlation("updrs")
        with pytest.raises(SchemaError):
            check(ref, imp, "m")


# --- Battery ---


class TestScoreMetric:
    def test_identical_test_retest(self):
        ref, imp = _scored_tables()
        ref["m_retest_c"] = ref["m_c"]
        imp["m_retest_c"] = imp["m_c"]
        score = score_metric(ref, imp, "m")
        assert score.ICC == 1.0
        assert score.SRD == 0.0
        assert math.isclose(score.slope, 1.0)

    def test_missing_retest_gives_nan(self):
        ref, imp = _scored_tables()
        ref = ref.drop(columns=["m_retest_c"])
        imp = imp.drop(columns=["m_retest_c"])
        score = score_metric(ref, imp, "m")
        assert math.isnan(score.ICC) and math.isnan(score.SRD) and math.isnan(score.slope)
        assert score.AUC > 0.5

    def test_missing_retest_required(self):
        ref, imp = _scored_tables()
        ref = ref.drop(columns=["m_retest_c"])
        imp = imp.drop(columns=["m_retest_c"])
        with pytest.raises(InsufficientDataError):
            score_metric(ref, imp, "m", require_retest=True)

    def test_constant_pairs_name_metric(self):
        ref, imp = _scored_tables()
        ref["m_retest_c"] = np.nan
        imp["m_retest_c"] = np.nan
        ref.loc[0:1, ["m_c", "m_retest_c"]] = 0.5
        with pytest.raises(DegenerateScaleError) as exc:
            score_metric(ref, imp, "m")
        assert exc.value.metric == "m"

    def test_pluggable_checks(self):
        ref, imp = _scored_tables()
        score = score_metric(ref, imp, "m",
                             c1_check=lambda r, i, m, model: 0.25,
                             c2_check=criterion_correlation("severity", method="spearman"))
        assert score.C1 == 0.25
        assert score.C2 > 0.8


class TestScoreMetrics:
    def _tables(self):
        ref, imp = _scored_tables(3)
        for name, scale in (("a", 1.0), ("b", -1.0), ("c", 2.0)):
            for table in (ref, imp):
                table[f"{name}"] = scale * table["m"]
                table[f"{name}_c"] = scale * table["m_c"]
                table[f"{name}_retest_c"] = scale * table["m_retest_c"]
        return ref, imp

    def test_table_layout(self):
        ref, imp = self._tables()
        table = score_metrics(ref, imp, ["c", "a", "b"])
        assert list(table.index) == ["c", "a", "b"]
        assert list(table.columns) == SCORE_COLUMNS

    def test_threads_match_serial(self):
        ref, imp = self._tables()
        serial = score_metrics(ref, imp, ["a", "b", "c", "m"])
        threaded = score_metrics(ref, imp, ["a", "b", "c", "m"], n_jobs=3)
        pd.testing.assert_frame_equal(serial, threaded)

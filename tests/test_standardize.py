"""
Tests for reference standardization.
"""

import numpy as np
import pandas as pd
import pytest

from metric_selection.errors import DegenerateScaleError
from metric_selection.standardize import reference_stats, standardize_metric, standardize_reference


def _tables(seed: int = 0):
    rng = np.random.default_rng(seed)
    ref = pd.DataFrame({"m": rng.normal(10.0, 3.0, 40), "m_c": rng.normal(0.0, 2.0, 40)})
    imp = pd.DataFrame({"m": rng.normal(14.0, 3.0, 30), "m_c": rng.normal(4.0, 2.0, 30)})
    return ref, imp


class TestReferenceStats:
    def test_sample_sd(self):
        ref = pd.DataFrame({"m": [1.0, 2.0, 3.0, 4.0]})
        mean, sd = reference_stats(ref, "m")
        assert mean == 2.5
        assert np.isclose(sd, np.std([1, 2, 3, 4], ddof=1))

    def test_ignores_missing(self):
        ref = pd.DataFrame({"m": [1.0, np.nan, 3.0]})
        mean, _ = reference_stats(ref, "m")
        assert mean == 2.0

    def test_needs_two_values(self):
        ref = pd.DataFrame({"m": [1.0, np.nan]})
        with pytest.raises(DegenerateScaleError):
            reference_stats(ref, "m")


class TestStandardizeReference:
    def test_reference_is_unit_scaled(self):
        ref, imp = _tables()
        ref_z, _ = standardize_reference(ref, imp, "m")
        assert abs(ref_z["m"].mean()) < 1e-12
        assert np.isclose(ref_z["m"].std(ddof=1), 1.0)

    def test_impaired_uses_reference_scale(self):
        ref, imp = _tables()
        mean, sd = reference_stats(ref, "m")
        _, imp_z = standardize_reference(ref, imp, "m")
        assert np.allclose(imp_z["m"], (imp["m"] - mean) / sd)
        assert imp_z["m"].mean() > 0.5

    def test_constant_reference(self):
        ref, imp = _tables()
        ref["m"] = 7.0
        with pytest.raises(DegenerateScaleError) as exc:
            standardize_reference(ref, imp, "m")
        assert exc.value.metric == "m"

    def test_inputs_untouched(self):
        ref, imp = _tables()
        before = ref["m"].copy()
        standardize_reference(ref, imp, "m")
        pd.testing.assert_series_equal(ref["m"], before)


class TestStandardizeMetric:
    def test_each_variant_rescaled(self):
        ref, imp = _tables()
        ref_z, _ = standardize_metric(ref, imp, "m")
        for col in ("m", "m_c"):
            assert abs(ref_z[col].mean()) < 1e-12
            assert np.isclose(ref_z[col].std(ddof=1), 1.0)

    def test_missing_retest_variant_skipped(self):
        ref, imp = _tables()
        ref_z, imp_z = standardize_metric(ref, imp, "m")
        assert "m_retest_c" not in ref_z.columns
        assert "m_retest_c" not in imp_z.columns

    def test_retest_only_in_impaired(self):
        ref, imp = _tables()
        imp["m_retest_c"] = imp["m_c"]
        ref_z, imp_z = standardize_metric(ref, imp, "m")
        assert "m_retest_c" not in ref_z.columns
        assert np.allclose(imp_z["m_retest_c"], imp_z["m_c"])

    def test_reference_retest_all_missing(self):
        ref, imp = _tables()
        ref["m_retest_c"] = np.nan
        imp["m_retest_c"] = imp["m_c"]
        ref_z, imp_z = standardize_metric(ref, imp, "m")
        assert ref_z["m_retest_c"].isna().all()
        assert np.allclose(imp_z["m_retest_c"], imp_z["m_c"])

    def test_errors_name_the_metric(self):
        ref, imp = _tables()
        ref["m_c"] = 3.0
        with pytest.raises(DegenerateScaleError) as exc:
            standardize_metric(ref, imp, "m")
        assert exc.value.metric == "m"

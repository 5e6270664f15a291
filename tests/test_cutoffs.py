"""
Tests for the abnormality cutoffs, population pooling and impairment profile.
"""

import numpy as np
import pandas as pd
import pytest

from metric_selection.cutoffs import abnormality_cutoffs, impairment_profile, pool_populations


def _pooled(seed: int = 0):
    rng = np.random.default_rng(seed)
    ref = pd.DataFrame({"a_c": rng.normal(0.0, 1.0, 80), "b_c": rng.normal(0.0, 1.0, 80)})
    imp = pd.DataFrame({"a_c": rng.normal(3.0, 1.0, 40), "b_c": rng.normal(0.0, 1.0, 40)})
    return pool_populations(ref, imp)


class TestPoolPopulations:
    def test_order_group_and_ids(self):
        population = _pooled()
        assert len(population) == 120
        assert list(population["group"].iloc[[0, 79, 80, 119]]) == [
            "reference", "reference", "impaired", "impaired"]
        assert np.array_equal(population["id"].to_numpy(), np.arange(120))


class TestAbnormalityCutoffs:
    def test_between_p90_and_max(self):
        population = _pooled()
        X = population[["a_c", "b_c"]].to_numpy()
        p95 = abnormality_cutoffs(X, ["a", "b"])
        p90 = abnormality_cutoffs(X, ["a", "b"], percentile=90)
        assert list(p95.index) == ["a", "b"]
        assert np.all(p95 >= p90)
        assert np.all(p95.to_numpy() <= X.max(axis=0))

    def test_linear_interpolation(self):
        X = np.arange(1.0, 11.0).reshape(-1, 1)
        cut = abnormality_cutoffs(X, ["m"], percentile=95)
        assert np.isclose(cut["m"], 9.55)

    @pytest.mark.parametrize("percentile", [0, 100, 120])
    def test_invalid_percentile(self, percentile):
        with pytest.raises(ValueError):
            abnormality_cutoffs(np.ones((5, 1)), ["m"], percentile=percentile)


class TestImpairmentProfile:
    def test_flags_and_fractions(self):
        population = _pooled()
        X = population[["a_c", "b_c"]].to_numpy()
        cutoffs = abnormality_cutoffs(X, ["a", "b"])
        profile = impairment_profile(population, ["a", "b"], cutoffs)
        flags = profile["flags"]
        assert flags.shape == (120, 2)
        assert flags["a"].sum() == int((population["a_c"] > cutoffs["a"]).sum())
        assert np.array_equal(profile["counts"].to_numpy(), flags.sum(axis=1).to_numpy())
        fractions = profile["fractions"]
        assert fractions.loc["impaired", "a"] > fractions.loc["reference", "a"]

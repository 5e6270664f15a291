"""
Tests for confound correction -- design coding, residual orthogonality,
retest compensation and eager model-fit failures.
"""

import numpy as np
import pandas as pd
import pytest

from metric_selection.confounds import (
    build_design,
    correct_confounds,
    covariate_levels,
    fit_confound_model,
)
from metric_selection.errors import ModelFitError


def _population(seed: int, n: int = 60, offset: float = 0.0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    age = rng.normal(50.0, 8.0, n)
    gender = np.array(["male", "female"] * (n // 2))
    rng.shuffle(gender)
    value = 0.5 * age + 1.5 * (gender == "female") + offset + rng.normal(0.0, 1.0, n)
    return pd.DataFrame({
        "age": age,
        "gender": gender,
        "m": value,
        "m_retest": value + rng.normal(0.0, 0.3, n),
    })


EFFECTS = ["age", "gender"]


# --- Design matrix ---


class TestBuildDesign:
    def test_columns(self):
        table = _population(0)
        levels = covariate_levels(table, EFFECTS)
        design = build_design(table, EFFECTS, levels)
        assert list(design.columns) == ["intercept", "age", "gender[male]"]

    def test_first_sorted_level_is_baseline(self):
        table = _population(0)
        levels = covariate_levels(table, EFFECTS)
        assert levels["gender"] == ("female", "male")
        design = build_design(table, EFFECTS, levels)
        assert np.array_equal(design["gender[male]"].to_numpy(), (table["gender"] == "male").to_numpy(float))

    def test_unseen_level(self):
        table = _population(0)
        levels = covariate_levels(table, EFFECTS)
        other = table.copy()
        other.loc[0, "gender"] = "other"
        with pytest.raises(ModelFitError) as exc:
            build_design(other, EFFECTS, levels, metric="m")
        assert exc.value.covariate == "gender"
        assert exc.value.metric == "m"


# --- Fitting ---


class TestFitConfoundModel:
    def test_recovers_age_effect(self):
        ref, imp = _population(1, n=200), _population(2, offset=2.0)
        model = fit_confound_model("m", EFFECTS, ref, imp)
        assert abs(model.coefficients["age"] - 0.5) < 0.05
        assert model.fit_population == "reference"
        assert model.n_obs == 200
        assert 0.0 < model.r_squared < 1.0

    def test_pooled_uses_both_tables(self):
        ref, imp = _population(1), _population(2, offset=2.0)
        model = fit_confound_model("m", EFFECTS, ref, imp, fit_population="pooled")
        assert model.n_obs == len(ref) + len(imp)

    def test_zero_variance_covariate(self):
        ref, imp = _population(1), _population(2)
        ref["age"] = 50.0
        with pytest.raises(ModelFitError) as exc:
            fit_confound_model("m", EFFECTS, ref, imp)
        assert exc.value.covariate == "age"

    def test_single_level_covariate(self):
        ref, imp = _population(1), _population(2)
        ref["gender"] = "male"
        with pytest.raises(ModelFitError) as exc:
            fit_confound_model("m", EFFECTS, ref, imp)
        assert exc.value.covariate == "gender"

    def test_single_level_in_impaired_population(self):
        ref, imp = _population(1), _population(2)
        imp["gender"] = "male"
        with pytest.raises(ModelFitError) as exc:
            fit_confound_model("m", EFFECTS, ref, imp)
        assert exc.value.covariate == "gender"
        assert "impaired" in str(exc.value)

    def test_zero_variance_in_impaired_population(self):
        ref, imp = _population(1), _population(2)
        imp["age"] = 60.0
        with pytest.raises(ModelFitError) as exc:
            fit_confound_model("m", EFFECTS, ref, imp)
        assert exc.value.covariate == "age"

    def test_rank_deficient_design(self):
        ref, imp = _population(1), _population(2)
        ref["age_months"] = ref["age"] * 12.0
        with pytest.raises(ModelFitError) as exc:
            fit_confound_model("m", ["age", "age_months"], ref, imp)
        assert exc.value.covariate == "age_months"
        assert exc.value.metric == "m"

    def test_too_few_subjects(self):
        ref, imp = _population(1).iloc[:2], _population(2)
        with pytest.raises(ModelFitError):
            fit_confound_model("m", EFFECTS, ref, imp)

    def test_mixed_model(self):
        ref, imp = _population(3, n=120), _population(4, offset=2.0)
        model = fit_confound_model("m", EFFECTS, ref, imp, model_kind="mixedlm")
        assert model.model_kind == "mixedlm"
        assert abs(model.coefficients["age"] - 0.5) < 0.1

    def test_mixed_model_without_retest_falls_back(self):
        ref, imp = _population(3), _population(4)
        ref = ref.drop(columns=["m_retest"])
        imp = imp.drop(columns=["m_retest"])
        model = fit_confound_model("m", EFFECTS, ref, imp, model_kind="mixedlm")
        assert model.model_kind == "ols"

    def test_mixed_model_with_empty_retest_falls_back(self):
        ref, imp = _population(3), _population(4)
        ref["m_retest"] = np.nan
        model = fit_confound_model("m", EFFECTS, ref, imp, model_kind="mixedlm")
        assert model.model_kind == "ols"


# --- Compensation ---


class TestCorrectConfounds:
    def test_residual_orthogonal_to_covariates(self):
        ref, imp = _population(5), _population(6, offset=2.0)
        ref_c, _, _ = correct_confounds(["m"], EFFECTS, ref, imp)
        resid = ref_c["m_c"].to_numpy()
        assert abs(np.corrcoef(resid, ref_c["age"])[0, 1]) < 1e-8
        female = (ref_c["gender"] == "female").to_numpy(float)
        assert abs(np.corrcoef(resid, female)[0, 1]) < 1e-8
        assert abs(resid.mean()) < 1e-8

    def test_pooled_residual_orthogonal(self):
        ref, imp = _population(5), _population(6, offset=2.0)
        ref_c, imp_c, _ = correct_confounds(["m"], EFFECTS, ref, imp, fit_population="pooled")
        resid = np.concatenate([ref_c["m_c"], imp_c["m_c"]])
        age = np.concatenate([ref_c["age"], imp_c["age"]])
        assert abs(np.corrcoef(resid, age)[0, 1]) < 1e-8

    def test_retest_uses_same_model(self):
        ref, imp = _population(5), _population(6, offset=2.0)
        ref_c, imp_c, models = correct_confounds(["m"], EFFECTS, ref, imp)
        model = models["m"]
        expected = imp["m_retest"].to_numpy() - model.predict(imp)
        assert np.allclose(imp_c["m_retest_c"].to_numpy(), expected)

    def test_impaired_keeps_offset(self):
        ref, imp = _population(5), _population(6, offset=2.0)
        _, imp_c, _ = correct_confounds(["m"], EFFECTS, ref, imp)
        assert abs(imp_c["m_c"].mean() - 2.0) < 0.6

    def test_add_mean(self):
        ref, imp = _population(5), _population(6)
        ref_c, _, models = correct_confounds(["m"], EFFECTS, ref, imp, add_mean=True)
        assert np.isclose(ref_c["m_c"].mean(), models["m"].grand_mean)

    def test_inputs_untouched(self):
        ref, imp = _population(5), _population(6)
        before = ref.copy()
        correct_confounds(["m"], EFFECTS, ref, imp)
        pd.testing.assert_frame_equal(ref, before)
        assert "m_c" not in imp.columns

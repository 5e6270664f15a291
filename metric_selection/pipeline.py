"""Staged metric-selection pipeline.

A run walks through the stages below in order; each stage is a method of
``MetricSelectionPipeline`` and can be invoked on its own (from a script,
a notebook or a test) once its prerequisite has run:

  load                  validate (or simulate) the two population tables
  confound correction   one confound model per metric, ``_c`` columns
  standardization       reference z-scores of raw, ``_c`` and ``_retest_c``
  scoring               C1, C2, AUC, SRD, ICC and slope per metric
  redundancy            partial correlations between compensated metrics
  factor analysis       k-factor loadings of the compensated metrics
  cutoffs               95th-percentile cutoffs and the impairment profile

Calling a stage before its prerequisite raises ``PipelineStateError``.
Stages never modify the caller's tables: loading copies them, and every
later stage replaces the pipeline's tables with new augmented copies.

``run_metric_selection(config)`` runs every stage and returns a
``PipelineResult``; without tables it simulates a dataset from
``numpy.random.default_rng(config.seed)``.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from metric_selection.config import (
    IMPAIRED_LABEL, REFERENCE_LABEL, PipelineConfig, install_autosave_show,
)
from metric_selection.confounds import ConfoundModel, correct_confounds
from metric_selection.cutoffs import abnormality_cutoffs, impairment_profile, pool_populations, pooled_metric_matrix
from metric_selection.errors import ConfigurationError, PipelineStateError
from metric_selection.factors import FactorModel, analyze_factors, factorability, scree_eigenvalues
from metric_selection.loaders import validate_population
from metric_selection.redundancy import partial_correlation_matrix, redundant_pairs, summarize_partial_correlations
from metric_selection.scoring import score_metrics
from metric_selection.simulation import simulate_data
from metric_selection.standardize import standardize_metric
from metric_selection.utils import metric_matrix
from metric_selection import reporting

# Stage -> stage that must have completed before it.
PREREQUISITES = {
    "confounds": "load",
    "standardize": "confounds",
    "scoring": "standardize",
    "redundancy": "standardize",
    "factors": "standardize",
    "cutoffs": "standardize",
}


@dataclass
class PipelineResult:
    """Tables and models produced by a metric-selection run."""

    reference: pd.DataFrame
    impaired: pd.DataFrame
    population: pd.DataFrame
    models: Dict[str, ConfoundModel]
    metric_scores: pd.DataFrame
    partial_correlations: Optional[pd.DataFrame] = None
    factor_model: Optional[FactorModel] = None
    cutoffs: Optional[pd.Series] = None
    profile: Optional[dict] = None
    redundant: List[Tuple[str, str, float]] = field(default_factory=list)

    def summary(self) -> str:
        """Return a readable summary of the score, redundancy, factor and cutoff tables."""
        with pd.option_context("display.float_format", "{:.3f}".format, "display.width", 120):
            lines = ["Metric scores", "-" * 60, self.metric_scores.to_string()]
            if self.partial_correlations is not None:
                lines += ["", "Partial correlations", "-" * 60, self.partial_correlations.to_string()]
                if self.redundant:
                    lines.append("redundant pairs: " + ", ".join(
                        f"{a}~{b} ({r:+.2f})" for a, b, r in self.redundant))
            if self.factor_model is not None:
                lines += ["", f"Factor loadings ({self.factor_model.rotation or 'unrotated'})",
                          "-" * 60, self.factor_model.loadings.to_string()]
            if self.cutoffs is not None:
                lines += ["", "Abnormality cutoffs", "-" * 60, self.cutoffs.to_string()]
            if self.profile is not None:
                lines += ["", "Abnormal fraction per group", "-" * 60,
                          self.profile["fractions"].to_string()]
        return "\n".join(lines)


class MetricSelectionPipeline:
    """Stage-by-stage driver of a metric-selection run.

    Typical use::

        pipe = MetricSelectionPipeline(PipelineConfig(metrics=["m1", "m2"]))
        pipe.load(reference, impaired)
        pipe.run_confound_correction()
        pipe.run_standardization()
        scores = pipe.run_scoring()
        ...
        result = pipe.result()

    or simply ``pipe.run(reference, impaired)``.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config if config is not None else PipelineConfig()
        self.completed = set()
        self.metrics: List[str] = []
        self.reference: Optional[pd.DataFrame] = None
        self.impaired: Optional[pd.DataFrame] = None
        self.population: Optional[pd.DataFrame] = None
        self.models: Dict[str, ConfoundModel] = {}
        self.metric_scores: Optional[pd.DataFrame] = None
        self.partial_correlations: Optional[pd.DataFrame] = None
        self.redundant: List[Tuple[str, str, float]] = []
        self.factor_model: Optional[FactorModel] = None
        self.cutoffs: Optional[pd.Series] = None
        self.profile: Optional[dict] = None
        if self.config.save_plots:
            install_autosave_show(self.config.fig_dir)

    # -- bookkeeping --------------------------------------------------------

    def _require(self, stage: str) -> None:
        needed = PREREQUISITES.get(stage)
        if needed is not None and needed not in self.completed:
            raise PipelineStateError(f"stage {stage!r} requires stage {needed!r} to run first")

    def _log(self, msg: str) -> None:
        if self.config.verbose:
            print(msg)

    def _analysis_population(self) -> pd.DataFrame:
        if self.config.redundancy_population == "reference":
            return self.reference
        return self.population

    # -- stages -------------------------------------------------------------

    def load(self, reference: Optional[pd.DataFrame] = None,
             impaired: Optional[pd.DataFrame] = None) -> "MetricSelectionPipeline":
        """Validate the two population tables, or simulate them when both are None."""
        cfg = self.config
        if (reference is None) != (impaired is None):
            raise ConfigurationError(
                "reference and impaired tables must be given together (or neither, to simulate)")
        if reference is None:
            rng = np.random.default_rng(cfg.seed)
            reference, impaired = simulate_data(rng, cfg.num_sim_subjects, cfg.num_sim_metrics)
            metrics = cfg.metrics or [f"metric{j + 1}" for j in range(cfg.num_sim_metrics)]
            self._log(f"[load] simulated {cfg.num_sim_subjects} reference + {cfg.num_sim_subjects} "
                      f"impaired subjects, {cfg.num_sim_metrics} metrics (seed={cfg.seed})")
        else:
            if cfg.metrics is None:
                raise ConfigurationError("metrics must be listed when population tables are supplied")
            metrics = cfg.metrics
        validate_population(reference, REFERENCE_LABEL, cfg.effects, metrics)
        validate_population(impaired, IMPAIRED_LABEL, cfg.effects, metrics)

        self.reference = reference.copy()
        self.impaired = impaired.copy()
        self.metrics = list(metrics)
        self.completed = {"load"}
        self._log(f"[load] reference n={len(self.reference)}, impaired n={len(self.impaired)}; "
                  f"metrics={self.metrics}; effects={cfg.effects}")
        return self

    def run_confound_correction(self) -> Dict[str, ConfoundModel]:
        self._require("confounds")
        cfg = self.config
        self.reference, self.impaired, self.models = correct_confounds(
            self.metrics, cfg.effects, self.reference, self.impaired,
            fit_population=cfg.fit_population, model_kind=cfg.model_kind,
            add_mean=cfg.add_mean, verbose=cfg.verbose,
        )
        if cfg.save_plots:
            for metric in self.metrics:
                reporting.plot_confound_correction(self.reference, cfg.effects, metric)
        self.completed.add("confounds")
        return self.models

    def run_standardization(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        self._require("standardize")
        reference, impaired = self.reference, self.impaired
        for metric in self.metrics:
            reference, impaired = standardize_metric(reference, impaired, metric)
        self.reference, self.impaired = reference, impaired
        self.population = pool_populations(reference, impaired)
        self.completed.add("standardize")
        self._log(f"[standardize] {len(self.metrics)} metrics rescaled to reference z-scores")
        return self.reference, self.impaired

    def run_scoring(self) -> pd.DataFrame:
        self._require("scoring")
        cfg = self.config
        self.metric_scores = score_metrics(
            self.reference, self.impaired, self.metrics, self.models,
            n_jobs=cfg.n_jobs, verbose=cfg.verbose,
            icc_form=cfg.icc_form, auc_direction=cfg.auc_direction,
            require_retest=cfg.require_retest, c1_check=cfg.c1_check, c2_check=cfg.c2_check,
        )
        self.completed.add("scoring")
        return self.metric_scores

    def run_redundancy(self) -> pd.DataFrame:
        self._require("redundancy")
        X = metric_matrix(self._analysis_population(), self.metrics)
        self.partial_correlations = partial_correlation_matrix(X, self.metrics)
        self.redundant = redundant_pairs(self.partial_correlations)
        if self.config.save_plots:
            reporting.plot_partial_correlations(self.partial_correlations)
        self.completed.add("redundancy")
        stats = summarize_partial_correlations(self.partial_correlations)
        self._log(f"[redundancy] {stats['n_pairs']} pairs: mean |r|={stats['mean_abs']:.3f}, "
                  f"max |r|={stats['max_abs']:.3f}")
        if self.redundant:
            self._log("[redundancy] redundant pairs: " + ", ".join(
                f"{a}~{b} ({r:+.2f})" for a, b, r in self.redundant))
        else:
            self._log("[redundancy] no metric pair above the redundancy threshold")
        return self.partial_correlations

    def run_factor_analysis(self, k: Optional[int] = None) -> FactorModel:
        """Fit the factor model with *k* factors (default ``config.num_factors``)."""
        self._require("factors")
        cfg = self.config
        k = cfg.num_factors if k is None else k
        X = metric_matrix(self._analysis_population(), self.metrics)
        if cfg.show_scree_plot:
            eigenvalues, _ = scree_eigenvalues(X, self.metrics)
            reporting.plot_scree(eigenvalues, k)
        if cfg.verbose and len(self.metrics) > 1:
            diag = factorability(X, self.metrics)
            print(f"[factors] KMO={diag['kmo']:.3f}, Bartlett chi2={diag['bartlett_chi2']:.2f} "
                  f"(p={diag['bartlett_p']:.3g})")
        self.factor_model = analyze_factors(X, self.metrics, k, rotation=cfg.rotation, verbose=cfg.verbose)
        self.completed.add("factors")
        return self.factor_model

    def run_cutoffs(self) -> pd.Series:
        self._require("cutoffs")
        cfg = self.config
        X = pooled_metric_matrix(self.population, self.metrics)
        self.cutoffs = abnormality_cutoffs(X, self.metrics, cfg.cutoff_percentile)
        self.profile = impairment_profile(self.population, self.metrics, self.cutoffs)
        if cfg.save_plots:
            reporting.plot_impairment_profile(self.population, self.metrics, self.cutoffs, self.profile)
        self.completed.add("cutoffs")
        fractions = self.profile["fractions"].mean(axis=1)
        self._log("[cutoffs] abnormal share: " + ", ".join(
            f"{group}={share:.2f}" for group, share in fractions.items()))
        return self.cutoffs

    # -- whole run ----------------------------------------------------------

    def result(self) -> PipelineResult:
        if "scoring" not in self.completed:
            raise PipelineStateError("no result before the scoring stage has run")
        return PipelineResult(
            reference=self.reference,
            impaired=self.impaired,
            population=self.population,
            models=self.models,
            metric_scores=self.metric_scores,
            partial_correlations=self.partial_correlations,
            factor_model=self.factor_model,
            cutoffs=self.cutoffs,
            profile=self.profile,
            redundant=list(self.redundant),
        )

    def run(self, reference: Optional[pd.DataFrame] = None,
            impaired: Optional[pd.DataFrame] = None) -> PipelineResult:
        self.load(reference, impaired)
        self.run_confound_correction()
        self.run_standardization()
        self.run_scoring()
        self.run_redundancy()
        self.run_factor_analysis()
        self.run_cutoffs()
        return self.result()


def run_metric_selection(
    config: Optional[PipelineConfig] = None,
    reference: Optional[pd.DataFrame] = None,
    impaired: Optional[pd.DataFrame] = None,
) -> PipelineResult:
    """Run every stage and return the result; simulates data when no tables are given."""
    return MetricSelectionPipeline(config).run(reference, impaired)

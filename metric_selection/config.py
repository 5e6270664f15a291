"""Package-wide constants, pipeline configuration and figure auto-save setup.

This module centralizes every tuneable parameter of the metric-selection
pipeline -- default confound effects, reliability constants, factor
analysis limits, simulation parameters, output paths -- so that scripts,
notebooks and tests import a single source of truth.

``PipelineConfig`` enumerates every option of a pipeline run together with
its default and validates the combination at construction time, so an
invalid option fails before any data is touched.

``install_autosave_show`` wraps ``matplotlib.pyplot.show`` so that every
figure displayed during a run is also saved to disk as a numbered image.
Unlike a notebook session, the hook is only installed when a run asks for
saved plots.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

# Force the non-interactive Agg backend so figure rendering works in
# headless environments (CI, remote servers) without an X display.
import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt

from metric_selection.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Numerical floor for standard deviations and other denominators.  A
# reference SD below this is treated as zero (degenerate scale).
EPS = 1e-12

# Default seed for the synthetic-data generator.  It is only ever used to
# build an explicit numpy Generator; nothing seeds global state.
SEED = 9000

# Covariates ("effects") removed from every metric by default.
DEFAULT_EFFECTS = ["age", "gender", "tested_hand", "is_dominant_hand"]

# Group labels of the two populations.
REFERENCE_LABEL = "reference"
IMPAIRED_LABEL = "impaired"
GROUP_COLUMN = "group"
ID_COLUMN = "id"

# Column suffixes for derived metric variants.
COMPENSATED_SUFFIX = "_c"
RETEST_SUFFIX = "_retest"

# Percentile of the pooled compensated distribution used as the
# abnormal-behaviour boundary.
CUTOFF_PERCENTILE = 95.0

# z-value of the two-sided 95% interval used by the smallest real
# difference: SRD = 1.96 * sqrt(2) * SEM.
SRD_Z = 1.96

# Partial correlations above this absolute value flag a redundant pair.
REDUNDANCY_THRESHOLD = 0.5

# Correlation matrices with a larger condition number are treated as
# singular for the partial-correlation inversion.
MAX_CONDITION_NUMBER = 1e10

# Relative tolerance on the diagonal of a pivot-free QR factor below which a
# column is considered linearly dependent on the preceding ones.
RANK_TOL = 1e-10

# Factor analysis defaults (scikit-learn FactorAnalysis).
DEFAULT_NUM_FACTORS = 2
FA_MAX_ITER = 1000
FA_TOL = 1e-2
FA_ROTATION = "varimax"

# --- Simulation defaults ---------------------------------------------------

NUM_SIM_SUBJECTS = 100
NUM_SIM_METRICS = 5
MEAN_AGE_REF = 50.0
VAR_AGE_REF = 40.0
MEAN_AGE_IMP = 40.0
VAR_AGE_IMP = 50.0

# --- Figure output paths ---------------------------------------------------

# Directory where auto-saved figures are written.
FIG_DIR = Path("output_plots")

# Image format for saved figures (e.g. "png", "pdf", "svg").
FIG_FORMAT = "png"

# Allowed values of the enumerated options.
FIT_POPULATIONS = ("reference", "pooled")
MODEL_KINDS = ("ols", "mixedlm")
ICC_FORMS = ("consistency", "agreement")
AUC_DIRECTIONS = ("greater", "auto")
REDUNDANCY_POPULATIONS = ("pooled", "reference")
ROTATIONS = ("varimax", "quartimax", None)


@dataclass
class PipelineConfig:
    """Every option of a metric-selection run, validated on construction.

    Attributes
    ----------
    effects : list of str
        Covariates removed from each metric by the confound models.
    metrics : list of str or None
        Metrics to validate.  Required for user-supplied tables; for
        simulated data it defaults to ``metric1..metricN``.
    num_factors : int
        Number of latent factors to extract.
    show_scree_plot : bool
        Draw the scree plot (eigenvalues per candidate factor count).
    num_sim_subjects, num_sim_metrics : int
        Size of the synthetic dataset used when no tables are supplied.
    save_plots : bool
        Save every displayed figure to ``fig_dir``.
    fig_dir : Path
        Output directory for figures.
    seed : int
        Seed of the explicit random generator used for simulation.
    fit_population : {"reference", "pooled"}
        Population the confound models are fit on.
    model_kind : {"ols", "mixedlm"}
        Ordinary least squares, or a random-intercept mixed model over
        stacked test/retest observations.
    add_mean : bool
        Add the fitted grand mean back onto the residuals.
    icc_form : {"consistency", "agreement"}
        Two-way ICC form, ICC(C,1) or ICC(A,1).
    auc_direction : {"greater", "auto"}
        "greater" assumes impaired subjects score higher; "auto" reports
        max(AUC, 1 - AUC).
    require_retest : bool
        Raise when a metric lacks retest data instead of reporting NaN
        reliability statistics.
    c1_check, c2_check : callable or None
        Validity comparators for the C1/C2 slots; ``None`` selects the
        built-in checks in ``metric_selection.scoring``.
    cutoff_percentile : float
        Percentile of the pooled distribution used as cutoff.
    redundancy_population : {"pooled", "reference"}
        Population whose compensated metrics feed the redundancy and
        factor analyses.
    rotation : {"varimax", "quartimax", None}
        Factor rotation.
    n_jobs : int
        Worker threads for the per-metric scoring loop.
    verbose : bool
        Print stage progress.
    """

    effects: List[str] = field(default_factory=lambda: list(DEFAULT_EFFECTS))
    metrics: Optional[List[str]] = None
    num_factors: int = DEFAULT_NUM_FACTORS
    show_scree_plot: bool = False
    num_sim_subjects: int = NUM_SIM_SUBJECTS
    num_sim_metrics: int = NUM_SIM_METRICS
    save_plots: bool = False
    fig_dir: Path = FIG_DIR
    seed: int = SEED
    fit_population: str = "reference"
    model_kind: str = "ols"
    add_mean: bool = False
    icc_form: str = "consistency"
    auc_direction: str = "greater"
    require_retest: bool = False
    c1_check: Optional[Callable] = None
    c2_check: Optional[Callable] = None
    cutoff_percentile: float = CUTOFF_PERCENTILE
    redundancy_population: str = "pooled"
    rotation: Optional[str] = FA_ROTATION
    n_jobs: int = 1
    verbose: bool = True

    def __post_init__(self):
        self.effects = _as_name_list(self.effects, "effects")
        if self.metrics is not None:
            self.metrics = _as_name_list(self.metrics, "metrics")
            if not self.metrics:
                raise ConfigurationError("metrics must not be empty.")
            if len(set(self.metrics)) != len(self.metrics):
                raise ConfigurationError("metrics must be unique.")
        overlap = set(self.effects).intersection(self.metrics or [])
        if overlap:
            raise ConfigurationError(f"names used both as effect and metric: {sorted(overlap)}")

        for name in ("num_factors", "num_sim_subjects", "num_sim_metrics", "n_jobs"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} should be a positive integer, got {value!r}.")
        if self.metrics is None and self.num_factors > self.num_sim_metrics:
            raise ConfigurationError("num_factors cannot exceed the number of simulated metrics.")
        if self.metrics is not None and self.num_factors > len(self.metrics):
            raise ConfigurationError("num_factors cannot exceed the number of metrics.")

        _check_choice("fit_population", self.fit_population, FIT_POPULATIONS)
        _check_choice("model_kind", self.model_kind, MODEL_KINDS)
        _check_choice("icc_form", self.icc_form, ICC_FORMS)
        _check_choice("auc_direction", self.auc_direction, AUC_DIRECTIONS)
        _check_choice("redundancy_population", self.redundancy_population, REDUNDANCY_POPULATIONS)
        _check_choice("rotation", self.rotation, ROTATIONS)

        if not 0.0 < float(self.cutoff_percentile) < 100.0:
            raise ConfigurationError("cutoff_percentile must lie strictly between 0 and 100.")
        for name in ("c1_check", "c2_check"):
            check = getattr(self, name)
            if check is not None and not callable(check):
                raise ConfigurationError(f"{name} must be callable.")
        self.fig_dir = Path(self.fig_dir)


def _as_name_list(values: Sequence[str], label: str) -> List[str]:
    if isinstance(values, str) or not all(isinstance(v, str) for v in values):
        raise ConfigurationError(
            f"{label} should be specified as a list of {label[:-1]} names."
        )
    return list(values)


def _check_choice(name: str, value, allowed) -> None:
    if value not in allowed:
        raise ConfigurationError(f"{name} must be one of {allowed}, got {value!r}.")


# ---------------------------------------------------------------------------
# Auto-save every plt.show() to disk
# ---------------------------------------------------------------------------

# Module-level state that persists across calls; each plt.show() increments
# the counter so figures are saved as fig_001.png, fig_002.png, etc.  A
# later install only redirects the output directory and format.
_fig_counter = 0
_autosave_target = {"dir": FIG_DIR, "fmt": FIG_FORMAT}


def install_autosave_show(fig_dir: Path, fmt: str = FIG_FORMAT) -> None:
    """Replace ``plt.show`` with a wrapper that writes the current figure to disk.

    Each wrapped show saves ``fig_NNN.<fmt>`` (NNN counts up over the whole
    process) into the target directory, then calls the original show.

    Installing twice does not wrap twice (detected by checking
    ``__name__``); the second call retargets the existing wrapper.
    """
    fig_dir = Path(fig_dir)
    fig_dir.mkdir(parents=True, exist_ok=True)
    _autosave_target["dir"] = fig_dir
    _autosave_target["fmt"] = fmt

    if getattr(plt.show, "__name__", "") == "show_and_save":
        return

    old_show = plt.show

    def show_and_save(*args, **kwargs):
        global _fig_counter
        _fig_counter += 1
        fig = plt.gcf()
        target, ext = _autosave_target["dir"], _autosave_target["fmt"]
        fig.savefig(target / f"fig_{_fig_counter:03d}.{ext}", format=ext, bbox_inches="tight")
        return old_show(*args, **kwargs)

    plt.show = show_and_save
    print(f"Auto-saving figures on plt.show() to: {fig_dir.resolve()} as .{fmt}")

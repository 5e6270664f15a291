"""
metric_selection -- selection and validation of digital health metrics.

The package implements a statistical pipeline that decides which candidate
metrics (e.g. features extracted from a sensor-based assessment) are fit
for clinical use.  Two populations enter the pipeline: a healthy reference
population and an impaired population.  Each metric is corrected for
demographic confounds, standardized against the reference population and
scored for validity and test-retest reliability; redundant metrics are
exposed through partial correlations and shared constructs through factor
analysis; finally abnormality cutoffs are derived from the pooled data.

Key exports
-----------
PipelineConfig : dataclass
    Every option of a run with its default, validated on construction.
MetricSelectionPipeline : class
    Staged driver: load, confound correction, standardization, scoring,
    redundancy, factor analysis, cutoffs.
run_metric_selection : function
    Run every stage and return a ``PipelineResult``; simulates data when
    no population tables are given.
simulate_data : function
    Synthetic reference/impaired populations from an explicit
    ``numpy.random.Generator``.
MetricSelectionError : exception
    Base class of every error raised by the pipeline.
"""

from metric_selection.config import PipelineConfig
from metric_selection.errors import MetricSelectionError
from metric_selection.pipeline import MetricSelectionPipeline, PipelineResult, run_metric_selection
from metric_selection.simulation import simulate_data

__all__ = [
    "PipelineConfig",
    "MetricSelectionError",
    "MetricSelectionPipeline",
    "PipelineResult",
    "run_metric_selection",
    "simulate_data",
]

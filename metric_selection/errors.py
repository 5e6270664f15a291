"""Exception taxonomy of the metric-selection pipeline.

Every error is raised at the start of the stage that needs the missing
precondition and aborts that stage.  Errors carry the offending metric
and/or covariate name so a caller can point at the faulty input column.
All of them derive from ``ValueError``: they describe bad input data, and
re-running on the same data fails the same way.
"""

from typing import Optional


class MetricSelectionError(ValueError):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, *, metric: Optional[str] = None,
                 covariate: Optional[str] = None):
        self.metric = metric
        self.covariate = covariate
        context = []
        if metric is not None:
            context.append(f"metric={metric!r}")
        if covariate is not None:
            context.append(f"covariate={covariate!r}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class ConfigurationError(MetricSelectionError):
    """An option of the pipeline configuration is invalid."""


class SchemaError(MetricSelectionError):
    """A required covariate or metric column is missing, or holds missing values."""


class ModelFitError(MetricSelectionError):
    """The confound regression cannot be fit (rank deficiency, zero variance)."""


class DegenerateScaleError(MetricSelectionError):
    """A standardization or reliability denominator is zero."""


class InsufficientDataError(MetricSelectionError):
    """Too few retest observations for the reliability statistics."""


class SingularCovarianceError(MetricSelectionError):
    """The metric covariance matrix cannot be inverted."""


class NonConvergenceError(MetricSelectionError):
    """Factor extraction did not converge within the iteration budget."""


class PipelineStateError(MetricSelectionError):
    """A pipeline stage was invoked before the stage it depends on."""

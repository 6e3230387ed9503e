"""Errors and warnings raised along the dN/dS pipeline.

Per mutation and per sample problems (`InputError`, `AnnotationGap`)
are recovered locally: the record is excluded and counted. Failures
of a model fit (`ConvergenceError`) and invalid setups
(`ConfigurationError`) abort the run, since partial selection results
would be misleading. Questionable but usable fits are reported with
`DegenerateModelWarning`.
"""


class InputError(ValueError):
    """Malformed mutation record or reference base mismatch."""


class AnnotationGap(LookupError):
    """Position falls outside every gene of the annotation."""


class ConvergenceError(RuntimeError):
    """A maximum likelihood fit did not converge within its budget."""


class ConfigurationError(ValueError):
    """Invalid configuration, detected before any computation."""


class DegenerateModelWarning(UserWarning):
    """Fit finished but is statistically questionable.

    Emitted when the overdispersion theta falls below the warning
    threshold, when a gene has no mutational opportunity at all, or
    when a selection parameter has an unbounded confidence interval.
    """

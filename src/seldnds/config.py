"""Configuration of a dN/dS run.

All options of the statistical pipeline are gathered in
:class:`DndsConfig`, an immutable dataclass validated on creation so
that a bad setup fails before any mutation is annotated.
"""

import math
import logging

from dataclasses import dataclass, fields, asdict

from . import constants
from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DndsConfig:
    """Options recognised by :func:`seldnds.pipeline.run_dnds`.

    Attributes
    ----------
    substitution_model : str, default "192r_3w"
        Rate parameterisation: "192r_3w", "12r_3w" or "2r_3w".
    rate_estimator : {"regression", "local"}, default "regression"
        How the per-gene background rate is estimated. "regression"
        borrows information across genes through a negative binomial
        regression (dNdScv); "local" uses only each gene's synonymous
        mutations (dNdSloc).
    max_muts_per_gene_per_sample : float, default 3
        Per gene per sample cap. ``float("inf")`` disables it.
    max_coding_muts_per_sample : float, default 3000
        Hypermutator cap on coding mutations per sample.
        ``float("inf")`` disables it.
    outlier_sample_threshold : float, default inf
        Samples with a coding burden above this multiple of the cohort
        median are excluded.
    targeted : bool, default False
        Whether the data come from a targeted panel. Targeted runs
        require a gene list.
    constrain_wnon_wspl : bool, default True
        Tie the nonsense and essential splice ratios in the truncating
        and all-substitutions tests.
    positive_selection_only : bool, default True
        Test for positive selection only; ratios estimated below one
        are treated as neutral when computing likelihoods.
    theta_warning_threshold : float, default 1.0
        Theta values below this are flagged as degenerate.
    maxiter : int, default 100
        Iteration budget of every maximum likelihood optimiser.
    tol : float, default 1e-8
        Convergence tolerance of the substitution model fit.
    ci_level : float, default 0.95
        Confidence level of the global dN/dS intervals.
    covariate_pcs : int or None, default None
        If set, covariates are replaced by this many principal
        components before the regression.
    random_seed : int or None, default 777
        Seed of the subsampling over the per gene per sample cap.
    n_jobs : int, default 1
        Worker processes for the per-gene tests.
    """

    substitution_model: str = "192r_3w"
    rate_estimator: str = "regression"
    max_muts_per_gene_per_sample: float = constants.max_muts_per_gene_per_sample
    max_coding_muts_per_sample: float = constants.max_coding_muts_per_sample
    outlier_sample_threshold: float = constants.outlier_sample_threshold
    targeted: bool = False
    constrain_wnon_wspl: bool = True
    positive_selection_only: bool = True
    theta_warning_threshold: float = constants.theta_warning_threshold
    maxiter: int = 100
    tol: float = 1e-8
    ci_level: float = 0.95
    covariate_pcs: int | None = None
    random_seed: int | None = constants.random_seed
    n_jobs: int = 1

    def __post_init__(self):
        from .substitution_models import SUBSTITUTION_MODELS
        from .estimate_covariates_effect import RATE_ESTIMATORS

        if (isinstance(self.substitution_model, str) and
                self.substitution_model not in SUBSTITUTION_MODELS):
            raise ConfigurationError(
                f"Unknown substitution_model {self.substitution_model!r}; "
                f"choose one of {sorted(SUBSTITUTION_MODELS)}")

        if self.rate_estimator not in RATE_ESTIMATORS:
            raise ConfigurationError(
                f"rate_estimator must be one of {sorted(RATE_ESTIMATORS)}, "
                f"got {self.rate_estimator!r}")

        for name in ("max_muts_per_gene_per_sample",
                     "max_coding_muts_per_sample",
                     "outlier_sample_threshold"):
            value = getattr(self, name)
            if math.isnan(value) or value <= 0:
                raise ConfigurationError(
                    f"{name} must be positive (use inf to disable), "
                    f"got {value!r}")

        if self.maxiter < 1:
            raise ConfigurationError(
                f"maxiter must be at least 1, got {self.maxiter}")
        if self.tol <= 0:
            raise ConfigurationError(f"tol must be positive, got {self.tol}")
        if not 0 < self.ci_level < 1:
            raise ConfigurationError(
                f"ci_level must lie in (0, 1), got {self.ci_level}")
        if self.theta_warning_threshold < 0:
            raise ConfigurationError(
                "theta_warning_threshold must be non-negative")
        if self.covariate_pcs is not None and self.covariate_pcs < 1:
            raise ConfigurationError(
                f"covariate_pcs must be positive, got {self.covariate_pcs}")
        if self.n_jobs < 1:
            raise ConfigurationError(
                f"n_jobs must be at least 1, got {self.n_jobs}")

    @property
    def suffix(self):
        """Column suffix of the selection table ("cv" or "loc")."""
        return "cv" if self.rate_estimator == "regression" else "loc"

    @classmethod
    def from_mapping(cls, mapping):
        """Build a configuration from a plain dictionary.

        Unknown keys raise :class:`ConfigurationError` instead of being
        ignored, so that typos do not silently fall back to defaults.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(mapping) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration options: {sorted(unknown)}")
        return cls(**mapping)

    def to_dict(self):
        """Return the options as a JSON friendly dictionary."""
        out = asdict(self)
        for key, value in out.items():
            if isinstance(value, float) and math.isinf(value):
                out[key] = "inf"
            elif not isinstance(value, (str, int, float, bool, type(None))):
                out[key] = getattr(value, "name", str(value))
        return out


def check_gene_list_requirement(config, gene_list):
    """Fail fast when a targeted analysis has no gene list.

    Background rates estimated outside the captured region are
    meaningless, so targeted panels must state which genes were
    sequenced.
    """
    if config.targeted and not gene_list:
        raise ConfigurationError(
            "A gene_list is required for targeted analyses "
            "(targeted=True).")
    if gene_list is not None and len(gene_list) == 0:
        raise ConfigurationError("gene_list is empty.")

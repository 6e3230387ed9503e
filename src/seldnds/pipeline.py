"""End-to-end dN/dS analysis.

:func:`run_dnds` chains the stages of the analysis:

1. annotation of the mutations and exclusion of duplicates,
   unannotated mutations, hypermutated samples and mutations over the
   per gene per sample cap,
2. global substitution model fits and global dN/dS,
3. per-gene background rates (covariate regression or local),
4. per-gene likelihood ratio tests and Benjamini-Hochberg correction.

Every stage returns new objects; the results are bundled in an
immutable :class:`DndsResult`.
"""

import json
import math
import logging
import warnings

from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from .config import DndsConfig, check_gene_list_requirement
from .estimate_covariates_effect import (get_rate_estimator,
                                         prepare_covariates)
from .estimate_selection import estimate_selection
from .estimate_substitution_rates import fit_global_rates
from .exceptions import ConfigurationError, DegenerateModelWarning
from .gene_counts import class_totals, counts_frame
from .reference import AnnotationService, load_reference
from .variant_annotation import annotate_mutations


logger = logging.getLogger(__name__)


def _json_float(x):
    if x is None:
        return None
    x = float(x)
    if math.isnan(x):
        return None
    if math.isinf(x):
        return "inf" if x > 0 else "-inf"
    return x


@dataclass(frozen=True)
class DndsResult:
    """Results of :func:`run_dnds`.

    Attributes
    ----------
    selection : pd.DataFrame
        Per-gene dN/dS, p-values and q-values.
    global_dnds : pd.DataFrame
        Global wmis, wnon, wspl, wtru and wall with confidence
        intervals.
    substitution_parameters : pd.DataFrame
        Rate and selection parameters of the global model.
    model_comparison : pd.DataFrame
        Log-likelihood and AIC of the global fits.
    regression : RegressionFit | None
        Background rate regression (None for local estimation).
    gene_counts : pd.DataFrame
        Observed and expected counts per gene.
    annotated : pd.DataFrame
        Retained mutations.
    excluded : pd.DataFrame
        Excluded mutations and the reason.
    excluded_samples : pd.DataFrame
        Hypermutated samples.
    quality_warnings : tuple of str
    config : DndsConfig
    """

    selection: pd.DataFrame
    global_dnds: pd.DataFrame
    substitution_parameters: pd.DataFrame
    model_comparison: pd.DataFrame
    regression: object
    gene_counts: pd.DataFrame
    annotated: pd.DataFrame
    excluded: pd.DataFrame
    excluded_samples: pd.DataFrame
    quality_warnings: tuple = ()
    config: DndsConfig = field(default_factory=DndsConfig)

    def summary(self):
        """Dictionary with the headline numbers of the analysis."""
        regression = None
        if self.regression is not None:
            regression = {
                "theta": _json_float(self.regression.theta),
                "family": self.regression.family,
                "degenerate": bool(self.regression.degenerate),
                "loglik": _json_float(self.regression.loglik),
                "n_genes": self.regression.n_genes,
            }
        counts = self.gene_counts
        return {
            "n_genes": int(len(counts)),
            "n_mutations_retained": int(len(self.annotated)),
            "n_mutations_excluded": int(len(self.excluded)),
            "excluded_by_reason": {
                str(k): int(v) for k, v in
                self.excluded["reason"].value_counts().items()},
            "n_samples_excluded": int(len(self.excluded_samples)),
            "class_totals": {
                c: int(counts[c].sum())
                for c in ["n_syn", "n_mis", "n_non", "n_spl", "n_ind"]},
            "global_dnds": {
                name: {k: _json_float(v) for k, v in row.items()}
                for name, row in self.global_dnds.iterrows()},
            "regression": regression,
            "quality_warnings": list(self.quality_warnings),
            "config": self.config.to_dict(),
        }

    def save(self, directory):
        """Write every table as TSV plus a ``summary.json``."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        self.selection.to_csv(directory / "selection.tsv", sep="\t")
        self.global_dnds.to_csv(directory / "global_dnds.tsv", sep="\t")
        self.substitution_parameters.to_csv(
            directory / "substitution_parameters.tsv", sep="\t")
        self.model_comparison.to_csv(
            directory / "model_comparison.tsv", sep="\t", index=False)
        self.gene_counts.to_csv(directory / "gene_counts.tsv", sep="\t")
        self.annotated.to_csv(
            directory / "annotated_mutations.tsv", sep="\t", index=False)
        self.excluded.to_csv(
            directory / "excluded_mutations.tsv", sep="\t", index=False)
        self.excluded_samples.to_csv(
            directory / "excluded_samples.tsv", sep="\t", index=False)
        if self.regression is not None:
            self.regression.coefficients.to_csv(
                directory / "regression_coefficients.tsv", sep="\t")

        with open(directory / "summary.json", "w") as fh:
            json.dump(self.summary(), fh, indent=2)

        logger.info(f"Results saved to {directory}")


def _resolve_config(config):
    if config is None:
        return DndsConfig()
    if isinstance(config, DndsConfig):
        return config
    if isinstance(config, dict):
        return DndsConfig.from_mapping(config)
    raise ConfigurationError(
        f"config must be a DndsConfig or a dict, got {type(config)}")


def _resolve_reference(reference):
    if isinstance(reference, AnnotationService):
        return reference
    if isinstance(reference, (str, Path)):
        return load_reference(reference)
    raise ConfigurationError(
        "reference must be an AnnotationService or the path of a "
        "saved reference")


def run_dnds(mutations, reference, gene_list=None, covariates=None,
             config=None):
    """Run the complete dN/dS analysis.

    Parameters
    ----------
    mutations : list[Mutation] | pd.DataFrame
        Observed mutations.
    reference : AnnotationService | str | Path
        Annotation service, or the JSON written by
        :func:`~seldnds.reference.save_reference`.
    gene_list : list[str] | None
        Restrict the analysis to these genes. Required when
        ``config.targeted`` is True.
    covariates : pd.DataFrame | None
        Gene-indexed covariates of the background rate regression.
    config : DndsConfig | dict | None

    Returns
    -------
    DndsResult

    Raises
    ------
    ConfigurationError
        Invalid setup, raised before any model is fitted.
    ConvergenceError
        A model fit did not converge.
    """
    config = _resolve_config(config)
    check_gene_list_requirement(config, gene_list)
    reference = _resolve_reference(reference)

    if gene_list is not None:
        gene_ids = reference.restrict(gene_list).gene_ids
    else:
        gene_ids = reference.gene_ids
    cov = prepare_covariates(covariates, gene_ids, config.covariate_pcs)
    estimator = get_rate_estimator(config.rate_estimator)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", DegenerateModelWarning)

        annotation = annotate_mutations(
            mutations, reference, gene_list,
            max_muts_per_gene_per_sample=config.max_muts_per_gene_per_sample,
            max_coding_muts_per_sample=config.max_coding_muts_per_sample,
            outlier_sample_threshold=config.outlier_sample_threshold,
            random_seed=config.random_seed)
        tables = annotation.count_tables
        logger.info(f"Mutation totals: {class_totals(tables)}")

        global_fit = fit_global_rates(
            tables, config.substitution_model,
            maxiter=config.maxiter, tol=config.tol,
            ci_level=config.ci_level)

        counts_df = counts_frame(tables, global_fit.neutral_rates)

        background = estimator.estimate(
            counts_df, cov, maxiter=config.maxiter,
            theta_warning_threshold=config.theta_warning_threshold)

        selection = estimate_selection(
            counts_df, background,
            constrain_wnon_wspl=config.constrain_wnon_wspl,
            positive_selection_only=config.positive_selection_only,
            n_jobs=config.n_jobs)

    quality_warnings = tuple(
        str(w.message) for w in caught
        if issubclass(w.category, DegenerateModelWarning))
    for w in caught:
        warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

    gene_counts = counts_df.copy()
    gene_counts[f"exp_syn_{background.method}"] = background.expected
    if background.indel_expected is not None:
        gene_counts[f"exp_ind_{background.method}"] = \
            background.indel_expected

    return DndsResult(
        selection=selection,
        global_dnds=global_fit.global_dnds,
        substitution_parameters=global_fit.fitted.parameters,
        model_comparison=global_fit.model_comparison,
        regression=background.regression,
        gene_counts=gene_counts,
        annotated=annotation.annotated,
        excluded=annotation.excluded,
        excluded_samples=annotation.excluded_samples,
        quality_warnings=quality_warnings,
        config=config)

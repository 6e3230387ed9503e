"""Global substitution rates and global dN/dS.

Observed substitutions and opportunities are pooled across all genes
and the chosen substitution model is fitted three times, with free,
partially tied and fully tied selection parameters. A trivial model
with a single rate is also fitted for reference. The neutral rates of
the free fit are later used to compute the expected counts of every
gene.
"""

import logging

from dataclasses import dataclass

import pandas as pd

from . import constants
from .gene_counts import pool_counts
from .substitution_models import UniformRateModel, get_substitution_model


logger = logging.getLogger(__name__)


global_dnds_names = ["wmis", "wnon", "wspl", "wtru", "wall"]


@dataclass(frozen=True)
class GlobalRateFit:
    """Fits of the substitution model on the pooled counts.

    Attributes
    ----------
    fitted : FittedSubstitutionModel
        Model with free wmis, wnon and wspl.
    fitted_truncating : FittedSubstitutionModel
        Same rates with wnon = wspl (wtru).
    fitted_all : FittedSubstitutionModel
        Same rates with a single selection parameter (wall).
    trivial : FittedSubstitutionModel
        One rate and wall.
    global_dnds : pd.DataFrame
        Indexed by wmis, wnon, wspl, wtru and wall, with columns 'mle',
        'cilow' and 'cihigh'.
    model_comparison : pd.DataFrame
        One row per fit with 'n_params', 'loglik' and 'aic'.
    """

    fitted: object
    fitted_truncating: object
    fitted_all: object
    trivial: object
    global_dnds: pd.DataFrame
    model_comparison: pd.DataFrame

    @property
    def neutral_rates(self):
        return self.fitted.neutral_rates


def _selection_rows(fit, names):
    params = fit.parameters
    return params.reindex(names)[["mle", "cilow", "cihigh"]]


def fit_global_rates(tables, substitution_model="192r_3w", *,
                     maxiter=100, tol=1e-8, ci_level=0.95):
    """Fit the global substitution model on all genes.

    Parameters
    ----------
    tables : dict[str, GeneCountTable]
    substitution_model : str | SubstitutionModel | mapping
        Resolved with :func:`get_substitution_model`.
    maxiter, tol, ci_level
        Passed to :meth:`SubstitutionModel.fit`.

    Returns
    -------
    GlobalRateFit
    """
    model = get_substitution_model(substitution_model)
    N, L = pool_counts(tables)
    kwargs = dict(maxiter=maxiter, tol=tol, ci_level=ci_level)

    logger.info(
        f"Fitting substitution model {model.name} on "
        f"{int(N.sum())} substitutions in {len(tables)} genes...")
    fitted = model.fit(N, L, constants.selection_free, **kwargs)
    fitted_truncating = model.fit(
        N, L, constants.selection_truncating_tied, **kwargs)
    fitted_all = model.fit(N, L, constants.selection_all_tied, **kwargs)
    trivial = UniformRateModel().fit(
        N, L, constants.selection_all_tied, **kwargs)
    logger.info("... done.")

    global_dnds = pd.concat([
        _selection_rows(fitted, ["wmis", "wnon", "wspl"]),
        _selection_rows(fitted_truncating, ["wtru"]),
        _selection_rows(fitted_all, ["wall"]),
    ])
    global_dnds.index.name = "name"

    comparison = []
    for label, fit in [(model.name, fitted),
                       (f"{model.name} wtru", fitted_truncating),
                       (f"{model.name} wall", fitted_all),
                       (f"{trivial.model_name} wall", trivial)]:
        comparison.append((label, fit.n_params, fit.loglik, fit.aic))
    model_comparison = pd.DataFrame(
        comparison, columns=["model", "n_params", "loglik", "aic"])

    for name, row in global_dnds.iterrows():
        logger.info(f"Global {name}: {row['mle']:.3f} "
                    f"({row['cilow']:.3f}-{row['cihigh']:.3f})")

    return GlobalRateFit(fitted=fitted,
                         fitted_truncating=fitted_truncating,
                         fitted_all=fitted_all,
                         trivial=trivial,
                         global_dnds=global_dnds,
                         model_comparison=model_comparison)

"""Estimate covariate effects on the background mutation rate.

The number of synonymous mutations of each gene is modelled with a
negative binomial regression (NB2) with offset ``log(exp_syn)``, the
neutral expectation of the global substitution model:

    n_syn[g] ~ NB(mu[g], theta),   mu[g] = exp_syn[g] * exp(X[g] @ beta)

where X holds an intercept and the gene-level covariates (expression,
replication timing, chromatin state, ...). The fitted mean ``mu[g]``
and the shared overdispersion ``theta`` define a Gamma(theta,
mu[g] / theta) prior on the neutral rate of each gene, which
the per-gene likelihood ratio tests combine with the gene's own
synonymous mutations.

Two strategies are available: :class:`RegressionRateEstimator`
(suffix ``cv``) and :class:`LocalRateEstimator` (suffix ``loc``),
which uses each gene's own synonymous mutations only.
"""

import math
import logging
import warnings

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.discrete.discrete_model import (
    NegativeBinomial as NBDiscrete)

from . import constants
from .exceptions import (ConfigurationError, ConvergenceError,
                         DegenerateModelWarning)
from .utils import run_pca_on_covariates


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegressionFit:
    """Result of a per-gene background rate regression.

    Attributes
    ----------
    theta : float
        Overdispersion of the negative binomial (variance ``mu +
        mu**2 / theta``). ``inf`` when the maximum is at the Poisson
        boundary.
    coefficients : pd.DataFrame
        'coef', 'std_err' and 'pvalue' of the intercept and covariates.
    predicted : pd.Series
        Fitted background count of each gene (0 for genes without
        expected count).
    loglik : float
    degenerate : bool
        True when theta is below the warning threshold.
    family : str
        "negative_binomial" or "poisson".
    n_genes : int
        Genes used in the fit.
    """

    theta: float
    coefficients: pd.DataFrame
    predicted: pd.Series
    loglik: float
    degenerate: bool = False
    family: str = "negative_binomial"
    n_genes: int = 0


def prepare_covariates(covariates, gene_ids, covariate_pcs=None):
    """Align gene-level covariates to the genes of the analysis.

    Parameters
    ----------
    covariates : pd.DataFrame | None
        Gene-indexed numeric covariates.
    gene_ids : list[str]
    covariate_pcs : int | None
        If set, replace the covariates by this many principal
        components.

    Returns
    -------
    pd.DataFrame | None

    Raises
    ------
    ConfigurationError
        If genes are missing, columns are not numeric or a column has
        no values at all.
    """
    if covariates is None:
        return None

    covariates = pd.DataFrame(covariates)
    if covariates.shape[1] == 0:
        return None

    non_numeric = [c for c in covariates.columns
                   if not pd.api.types.is_numeric_dtype(covariates[c])]
    if non_numeric:
        raise ConfigurationError(
            f"Covariates must be numeric; offending columns: {non_numeric}")

    missing = [g for g in gene_ids if g not in covariates.index]
    if missing:
        raise ConfigurationError(
            f"Covariates missing for {len(missing)} genes, e.g. "
            f"{missing[:5]}")

    cov = covariates.reindex(gene_ids).astype(float)
    cov.columns = [str(c) for c in cov.columns]

    empty = [c for c in cov.columns if cov[c].isna().all()]
    if empty:
        raise ConfigurationError(f"Covariates without values: {empty}")

    n_missing = int(cov.isna().sum().sum())
    if n_missing:
        logger.warning(
            f"{n_missing} missing covariate values filled with column means")
        cov = cov.fillna(cov.mean())

    constant = [c for c in cov.columns if cov[c].nunique() <= 1]
    if constant:
        logger.warning(f"Constant covariates dropped: {constant}")
        cov = cov.drop(columns=constant)
        if cov.shape[1] == 0:
            return None

    if covariate_pcs is not None:
        if covariate_pcs > min(cov.shape):
            raise ConfigurationError(
                f"covariate_pcs={covariate_pcs} exceeds the number of "
                f"covariates or genes ({min(cov.shape)})")
        logger.info(
            f"Reducing {cov.shape[1]} covariates to {covariate_pcs} "
            "principal components")
        cov = run_pca_on_covariates(
            cov, n_components=covariate_pcs, dropna="none")

    return cov


def _design(index, covariates):
    design = pd.DataFrame({"const": 1.0}, index=index)
    if covariates is not None:
        design = design.join(covariates.loc[index])
    return design


def _coefficient_table(params, bse, pvalues):
    return pd.DataFrame({"coef": params, "std_err": bse, "pvalue": pvalues})


def _prepare_fit(counts, expected):
    counts = pd.Series(counts, dtype=float)
    expected = pd.Series(expected, dtype=float).reindex(counts.index)
    if expected.isna().any():
        raise ConfigurationError("Expected counts missing for some genes")

    mask = expected > 0
    n_excluded = int((~mask).sum())
    if n_excluded:
        logger.warning(
            f"{n_excluded} genes without expected count excluded from the "
            "regression")
    if not mask.any() or counts[mask].sum() == 0:
        raise ConvergenceError(
            "No mutations with non-zero expectation; the background rate "
            "regression cannot be fitted")
    return counts, expected, mask


def _fit_poisson(y, design, offset, maxiter):
    result = sm.GLM(y, design, family=sm.families.Poisson(),
                    offset=offset).fit(maxiter=maxiter)
    if not result.converged:
        raise ConvergenceError(
            f"Poisson regression did not converge in {maxiter} iterations")
    return result


def fit_poisson_regression(counts, expected, covariates=None, *,
                           maxiter=100):
    """Poisson regression of counts with offset log(expected).

    Same inputs and output as :func:`fit_negative_binomial`, with
    ``theta = inf``.
    """
    counts, expected, mask = _prepare_fit(counts, expected)
    index = counts.index[mask]
    design = _design(index, covariates)
    offset = np.log(expected[mask])

    result = _fit_poisson(counts[mask], design, offset, maxiter)

    predicted = pd.Series(0.0, index=counts.index)
    predicted.loc[index] = np.asarray(result.fittedvalues).reshape(-1)

    return RegressionFit(
        theta=math.inf,
        coefficients=_coefficient_table(
            result.params, result.bse, result.pvalues),
        predicted=predicted,
        loglik=float(result.llf),
        degenerate=False,
        family="poisson",
        n_genes=int(mask.sum()))


def fit_negative_binomial(
        counts,
        expected,
        covariates=None,
        *,
        maxiter=100,
        theta_warning_threshold=constants.theta_warning_threshold):
    """Negative binomial regression of counts on covariates.

    A Poisson GLM with the same design gives the starting values. If
    its residuals show no overdispersion, ``sum((y - mu)**2 - y) <= 0``,
    the likelihood is maximised at the Poisson boundary and the
    Poisson fit is returned with ``theta = inf``. Otherwise the
    coefficients and ``alpha = 1 / theta`` are estimated jointly.

    Parameters
    ----------
    counts : pd.Series
        Observed count per gene.
    expected : pd.Series
        Offset (expected count) per gene. Genes with zero expected
        count are excluded from the fit and predicted 0.
    covariates : pd.DataFrame | None
        Prepared covariates (see :func:`prepare_covariates`).
    maxiter : int
        Iteration budget of each optimiser.
    theta_warning_threshold : float
        Theta below this value emits a
        :class:`~seldnds.exceptions.DegenerateModelWarning`.

    Returns
    -------
    RegressionFit

    Raises
    ------
    ConvergenceError
        If an optimiser does not converge, or there is nothing to fit.
    """
    counts, expected, mask = _prepare_fit(counts, expected)
    index = counts.index[mask]
    y = counts[mask]
    design = _design(index, covariates)
    offset = np.log(expected[mask])

    logger.info(
        f"Fitting negative binomial regression on {len(index)} genes "
        f"with {design.shape[1] - 1} covariates...")

    pois = _fit_poisson(y, design, offset, maxiter)
    mu = np.asarray(pois.fittedvalues).reshape(-1)
    overdispersion = float(np.sum((y.to_numpy() - mu) ** 2 - y.to_numpy()))

    predicted = pd.Series(0.0, index=counts.index)

    if overdispersion <= 0:
        logger.info("No overdispersion; using the Poisson fit (theta = inf)")
        predicted.loc[index] = mu
        return RegressionFit(
            theta=math.inf,
            coefficients=_coefficient_table(
                pois.params, pois.bse, pois.pvalues),
            predicted=predicted,
            loglik=float(pois.llf),
            degenerate=False,
            family="poisson",
            n_genes=len(index))

    nb = NBDiscrete(y, design, loglike_method="nb2", offset=offset)
    res = nb.fit(start_params=np.r_[pois.params.values, 0.1],
                 maxiter=maxiter, disp=False)
    if not res.mle_retvals["converged"]:
        raise ConvergenceError(
            f"Negative binomial regression did not converge in {maxiter} "
            "iterations")

    alpha = float(res.params.iloc[-1])
    theta = 1.0 / alpha if alpha > 0 else math.inf
    beta = res.params.iloc[:-1]
    predicted.loc[index] = np.exp(design.to_numpy() @ beta.to_numpy() +
                                   offset.to_numpy())

    degenerate = theta < theta_warning_threshold
    if degenerate:
        msg = (f"Overdispersion theta = {theta:.3g} is below "
               f"{theta_warning_threshold:g}; background rates are poorly "
               "constrained by the covariates")
        logger.warning(msg)
        warnings.warn(msg, DegenerateModelWarning, stacklevel=2)

    logger.info(f"... done (theta = {theta:.3g}).")

    return RegressionFit(
        theta=theta,
        coefficients=_coefficient_table(
            beta, res.bse.iloc[:-1], res.pvalues.iloc[:-1]),
        predicted=predicted,
        loglik=float(res.llf),
        degenerate=degenerate,
        family="negative_binomial",
        n_genes=len(index))


@dataclass(frozen=True)
class GammaPrior:
    """Gamma prior on the neutral count of a gene."""

    shape: float
    mean: float

    @property
    def scale(self):
        return self.mean / self.shape


@dataclass(frozen=True)
class BackgroundRates:
    """Per-gene background expectations produced by a RateEstimator.

    Attributes
    ----------
    method : str
        Column suffix, "cv" or "loc".
    expected : pd.Series
        Background synonymous expectation per gene.
    shape : float | None
        Gamma shape (theta) of the prior, or None without prior.
    regression : RegressionFit | None
    indel_expected : pd.Series | None
        Background indel expectation; None when there are no indels.
    indel_shape : float
        Negative binomial shape of the indel test (inf for Poisson).
    indel_regression : RegressionFit | None
    """

    method: str
    expected: pd.Series
    shape: float | None = None
    regression: RegressionFit | None = None
    indel_expected: pd.Series | None = None
    indel_shape: float = math.inf
    indel_regression: RegressionFit | None = None

    def prior(self, gene_id):
        """Gamma prior of a gene's neutral count, or None."""
        if self.shape is None:
            return None
        mean = float(self.expected[gene_id])
        if not mean > 0:
            return None
        return GammaPrior(shape=float(self.shape), mean=mean)


def length_proportional_expectation(counts_df):
    """Indels expected per gene if they were uniform along the CDS."""
    total = counts_df["n_ind"].sum()
    length = counts_df["coding_length"].sum()
    return counts_df["coding_length"] * total / length


class RateEstimator(ABC):
    """Strategy estimating the background rate of every gene."""

    name = None
    suffix = None

    @abstractmethod
    def estimate(self, counts_df, covariates=None, *, maxiter=100,
                 theta_warning_threshold=constants.theta_warning_threshold):
        """Return :class:`BackgroundRates`.

        `counts_df` is the per-gene table of
        :func:`~seldnds.gene_counts.counts_frame`, with expected counts.
        """


class RegressionRateEstimator(RateEstimator):
    """Borrow information across genes with a covariate regression."""

    name = "regression"
    suffix = "cv"

    def estimate(self, counts_df, covariates=None, *, maxiter=100,
                 theta_warning_threshold=constants.theta_warning_threshold):
        regression = fit_negative_binomial(
            counts_df["n_syn"], counts_df["exp_syn"], covariates,
            maxiter=maxiter,
            theta_warning_threshold=theta_warning_threshold)

        indel_expected = None
        indel_shape = math.inf
        indel_regression = None
        if counts_df["n_ind"].sum() > 0:
            exp_unif = length_proportional_expectation(counts_df)
            try:
                indel_regression = fit_negative_binomial(
                    counts_df["n_ind"], exp_unif, covariates,
                    maxiter=maxiter,
                    theta_warning_threshold=theta_warning_threshold)
            except ConvergenceError as e:
                logger.warning(
                    f"Indel regression failed ({e}); using a Poisson "
                    "regression instead")
                indel_regression = fit_poisson_regression(
                    counts_df["n_ind"], exp_unif, covariates,
                    maxiter=maxiter)
            indel_expected = indel_regression.predicted
            indel_shape = indel_regression.theta
        else:
            logger.info("No indels; the indel test is skipped")

        return BackgroundRates(method=self.suffix,
                               expected=regression.predicted,
                               shape=regression.theta,
                               regression=regression,
                               indel_expected=indel_expected,
                               indel_shape=indel_shape,
                               indel_regression=indel_regression)


class LocalRateEstimator(RateEstimator):
    """Use each gene's own synonymous mutations only."""

    name = "local"
    suffix = "loc"

    def estimate(self, counts_df, covariates=None, *, maxiter=100,
                 theta_warning_threshold=constants.theta_warning_threshold):
        if covariates is not None:
            logger.info("Covariates are not used by the local estimator")
        indel_expected = None
        if counts_df["n_ind"].sum() > 0:
            indel_expected = length_proportional_expectation(counts_df)
        return BackgroundRates(method=self.suffix,
                               expected=counts_df["exp_syn"],
                               shape=None,
                               indel_expected=indel_expected)


RATE_ESTIMATORS = {
    RegressionRateEstimator.name: RegressionRateEstimator,
    LocalRateEstimator.name: LocalRateEstimator,
}


def get_rate_estimator(name):
    """Return the RateEstimator registered under `name`."""
    try:
        return RATE_ESTIMATORS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown rate estimator {name!r}; choose one of "
            f"{sorted(RATE_ESTIMATORS)}") from None

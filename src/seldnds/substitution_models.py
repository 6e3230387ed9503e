"""Substitution models.

A substitution model maps the 192 strand oriented trinucleotide
substitution types onto a set of neutral rate parameters, and the
missense, nonsense and essential splice columns onto selection
parameters (dN/dS ratios). The expected number of mutations of type
``i`` and impact class ``k`` is

    L[i, k] * r[group(i)] * w[k],        w[synonymous] = 1,

where ``L`` is the number of possible substitutions. Both sets of
parameters are estimated jointly as a Poisson log-linear model with
offset ``log(L)``, fitted by iteratively reweighted least squares.

Available models:

- ``"192r_3w"``: one rate per trinucleotide substitution type
  (:class:`ContextRateModel`).
- ``"12r_3w"``: one rate per single base change
  (:class:`BaseChangeRateModel`).
- ``"2r_3w"``: transitions and transversions
  (:class:`TransitionTransversionModel`).

:class:`UniformRateModel` (a single rate) is used as the trivial
reference model and :class:`GroupedRateModel` accepts any grouping of
the 192 types.
"""

import logging
import warnings

from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import gammaln, xlogy

from . import constants
from .exceptions import (ConfigurationError, ConvergenceError,
                         DegenerateModelWarning)


logger = logging.getLogger(__name__)


def evaluate_likelihood(observed, opportunities, rates, selection):
    """Poisson log-likelihood of the 192 x 4 observed counts.

    Parameters
    ----------
    observed, opportunities : array of shape (192, 4)
    rates : array of shape (192,)
        Neutral rate of each substitution type.
    selection : sequence of 3 floats
        dN/dS of the missense, nonsense and essential splice columns.

    Returns
    -------
    float
        Log-likelihood summed over the cells with opportunity.
    """
    observed = np.asarray(observed, dtype=float)
    opportunities = np.asarray(opportunities, dtype=float)
    w = np.r_[1.0, np.asarray(selection, dtype=float)]
    lam = opportunities * np.asarray(rates, dtype=float)[:, None] * w[None, :]

    mask = opportunities > 0
    n = observed[mask]
    lam = lam[mask]
    return float(np.sum(xlogy(n, lam) - lam - gammaln(n + 1)))


@dataclass(frozen=True)
class FittedSubstitutionModel:
    """Maximum likelihood fit of a substitution model.

    Attributes
    ----------
    model_name : str
    parameters : pd.DataFrame
        Indexed by parameter name with columns 'mle', 'cilow' and
        'cihigh'. Rate parameters come first, selection parameters
        last.
    neutral_rates : np.ndarray
        Read-only array with the rate of each of the 192 types.
    selection : tuple of float
        (wmis, wnon, wspl), with ties expanded.
    selection_names : tuple of str
    loglik : float
    aic : float
    n_params : int
    iterations : int
    fallback_parameters : tuple of str
        Rate parameters without observations, set to a pooled value.
    """

    model_name: str
    parameters: pd.DataFrame
    neutral_rates: np.ndarray
    selection: tuple
    selection_names: tuple
    loglik: float
    aic: float
    n_params: int
    iterations: int
    fallback_parameters: tuple = ()

    def relative_rate(self, context, consequence):
        """Expected rate of one (substitution type, consequence) cell.

        Examples
        --------
        ``fit.relative_rate("A[C>T]G", "missense")`` returns the neutral
        rate of ``A[C>T]G`` times wmis.
        """
        i = constants.trinucleotide_substitution_index[context]
        k = constants.impact_classes.index(consequence)
        w = 1.0 if k == 0 else self.selection[k - 1]
        return float(self.neutral_rates[i] * w)


class SubstitutionModel:
    """Grouping of the 192 substitution types into rate parameters.

    Subclasses define `rate_groups`, the name of the rate parameter of
    each type (in the order of
    :data:`constants.trinucleotide_substitutions`), and may override
    :meth:`fallback_pool`.
    """

    name = None
    rate_groups = ()

    def fallback_pool(self, group):
        """Pool whose fitted rates replace a rate without observations."""
        return None

    @property
    def n_rates(self):
        return len(dict.fromkeys(self.rate_groups))

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"

    def fit(self, observed, opportunities,
            selection=constants.selection_free, *,
            maxiter=100, tol=1e-8, ci_level=0.95):
        """Fit rates and selection parameters by maximum likelihood.

        Parameters
        ----------
        observed, opportunities : array of shape (192, 4)
            Pooled counts and possible substitutions.
        selection : sequence of 3 str
            Names of the selection parameters of the missense, nonsense
            and essential splice columns. Repeated names are tied, e.g.
            ``("wmis", "wtru", "wtru")``.
        maxiter : int
            Maximum number of IRLS iterations.
        tol : float
            Convergence tolerance on the deviance.
        ci_level : float
            Level of the Wald confidence intervals.

        Returns
        -------
        FittedSubstitutionModel

        Raises
        ------
        ConvergenceError
            If IRLS does not converge within `maxiter` iterations, or if
            there is nothing to fit.
        """
        N = np.asarray(observed, dtype=float)
        L = np.asarray(opportunities, dtype=float)
        shape = (constants.n_substitution_types, constants.n_impact_classes)
        if N.shape != shape or L.shape != shape:
            raise ValueError(f"Count matrices must have shape {shape}")

        groups = list(self.rate_groups)
        selection = tuple(selection)
        rate_names = list(dict.fromkeys(groups))
        sel_names = list(dict.fromkeys(selection))

        # cell bookkeeping, one row per (type, class) with opportunity
        ii, kk = np.nonzero(L > 0)
        cells = pd.DataFrame({
            "rate": [groups[i] for i in ii],
            "sel": [None if k == 0 else selection[k - 1] for k in kk],
            "n": N[ii, kk],
            "L": L[ii, kk],
        })

        rate_counts = cells.groupby("rate")["n"].sum()
        rate_opportunity = pd.Series(
            L.sum(axis=1), index=groups).groupby(level=0).sum()
        sel_counts = cells.dropna(subset=["sel"]).groupby("sel")["n"].sum()

        fitted_rates = [r for r in rate_names if rate_counts.get(r, 0) > 0]
        missing_rates = [r for r in rate_names if r not in fitted_rates]
        no_opportunity_sel = [s for s in sel_names if s not in sel_counts]
        zero_sel = [s for s in sel_names
                    if s in sel_counts and sel_counts[s] == 0]
        fitted_sel = [s for s in sel_names
                      if s not in no_opportunity_sel and s not in zero_sel]

        if missing_rates:
            logger.debug(
                f"{len(missing_rates)} rate parameters without "
                "observations are set to their pooled mean")
        for s in zero_sel:
            logger.warning(f"No mutations for {s}; its MLE is 0")
        for s in no_opportunity_sel:
            logger.warning(f"No opportunity for {s}; it is not estimable")

        keep = (cells["rate"].isin(fitted_rates) &
                (cells["sel"].isna() | cells["sel"].isin(fitted_sel)))
        cells = cells[keep].reset_index(drop=True)
        if cells.empty or cells["n"].sum() == 0:
            raise ConvergenceError(
                "No substitutions with opportunity; nothing to fit")

        X = pd.DataFrame(0.0, index=cells.index,
                         columns=fitted_rates + fitted_sel)
        for name in fitted_rates:
            X.loc[cells["rate"] == name, name] = 1.0
        for name in fitted_sel:
            X.loc[cells["sel"] == name, name] = 1.0

        glm = sm.GLM(cells["n"], X, family=sm.families.Poisson(),
                     offset=np.log(cells["L"]))
        result = glm.fit(maxiter=maxiter, tol=tol)
        iterations = int(result.fit_history["iteration"])
        if not result.converged:
            raise ConvergenceError(
                f"Substitution model {self.name} did not converge in "
                f"{maxiter} iterations")
        logger.debug(f"{self.name} converged in {iterations} iterations")

        ci = result.conf_int(alpha=1 - ci_level)
        table = pd.DataFrame({
            "mle": np.exp(result.params),
            "cilow": np.exp(ci[0]),
            "cihigh": np.exp(ci[1]),
        })

        # no synonymous information to separate a rate from its w
        bounds = table.loc[fitted_sel, ["cilow", "cihigh"]]
        unbounded = bounds.index[(bounds["cilow"] <= 0) |
                                 ~np.isfinite(bounds["cihigh"])]
        if len(unbounded):
            msg = (f"{self.name}: confidence intervals of "
                   f"{', '.join(unbounded)} are unbounded; the selection "
                   "parameters are not identifiable from these counts")
            logger.warning(msg)
            warnings.warn(msg, DegenerateModelWarning, stacklevel=2)

        # rates without observations
        pool_of = {r: self.fallback_pool(r) for r in rate_names}
        fallback = {}
        for r in missing_rates:
            pool = [g for g in fitted_rates if pool_of[g] == pool_of[r]]
            if not pool:
                pool = fitted_rates
            weights = rate_opportunity[pool].to_numpy()
            values = table.loc[pool, "mle"].to_numpy()
            if weights.sum() > 0:
                fallback[r] = float(np.sum(weights * values) / weights.sum())
            else:
                fallback[r] = float(values.mean())

        rates = {r: (fallback[r] if r in fallback else table.loc[r, "mle"])
                 for r in rate_names}
        sel_values = {s: table.loc[s, "mle"] for s in fitted_sel}
        sel_values.update({s: 0.0 for s in zero_sel})
        sel_values.update({s: np.nan for s in no_opportunity_sel})

        rows = []
        for r in rate_names:
            if r in fallback:
                rows.append((r, fallback[r], np.nan, np.nan))
            else:
                rows.append((r, *table.loc[r, ["mle", "cilow", "cihigh"]]))
        for s in sel_names:
            if s in fitted_sel:
                rows.append((s, *table.loc[s, ["mle", "cilow", "cihigh"]]))
            elif s in zero_sel:
                rows.append((s, 0.0, 0.0, np.nan))
            else:
                rows.append((s, np.nan, np.nan, np.nan))
        parameters = pd.DataFrame(
            rows, columns=["name", "mle", "cilow", "cihigh"]).set_index("name")

        neutral_rates = np.array([rates[g] for g in groups], dtype=float)
        neutral_rates.setflags(write=False)
        w = tuple(float(sel_values[s]) for s in selection)

        loglik = evaluate_likelihood(
            N, L, neutral_rates, np.nan_to_num(w, nan=0.0))
        n_params = len(fitted_rates) + len(fitted_sel) + len(zero_sel)

        return FittedSubstitutionModel(
            model_name=self.name,
            parameters=parameters,
            neutral_rates=neutral_rates,
            selection=w,
            selection_names=selection,
            loglik=loglik,
            aic=2 * n_params - 2 * loglik,
            n_params=n_params,
            iterations=iterations,
            fallback_parameters=tuple(missing_rates))


class ContextRateModel(SubstitutionModel):
    """One rate per trinucleotide substitution type (192 rates)."""

    name = "192r_3w"
    rate_groups = tuple(constants.trinucleotide_substitutions)

    def fallback_pool(self, group):
        return constants.extract_base_change(group)


class BaseChangeRateModel(SubstitutionModel):
    """One rate per single base change (12 rates)."""

    name = "12r_3w"
    rate_groups = tuple(constants.extract_base_change(s)
                        for s in constants.trinucleotide_substitutions)


class TransitionTransversionModel(SubstitutionModel):
    """Transition and transversion rates."""

    name = "2r_3w"
    rate_groups = tuple(
        "transition" if constants.extract_base_change(s) in
        constants.transitions else "transversion"
        for s in constants.trinucleotide_substitutions)


class UniformRateModel(SubstitutionModel):
    """A single rate shared by all substitution types."""

    name = "1r"
    rate_groups = ("r",) * constants.n_substitution_types


class GroupedRateModel(SubstitutionModel):
    """Rates defined by an arbitrary grouping of the 192 types.

    Parameters
    ----------
    groups : mapping or sequence
        Either a mapping from substitution label (e.g. ``"A[C>T]G"``)
        to parameter name, covering the 192 types, or a sequence of
        192 parameter names in the order of
        :data:`constants.trinucleotide_substitutions`.
    name : str
    """

    def __init__(self, groups, name="custom"):
        if hasattr(groups, "items"):
            missing = [s for s in constants.trinucleotide_substitutions
                       if s not in groups]
            if missing:
                raise ConfigurationError(
                    f"Substitution grouping misses {len(missing)} types, "
                    f"e.g. {missing[:3]}")
            groups = [groups[s] for s in constants.trinucleotide_substitutions]
        groups = tuple(str(g) for g in groups)
        if len(groups) != constants.n_substitution_types:
            raise ConfigurationError(
                "A substitution grouping needs one entry per "
                f"substitution type ({constants.n_substitution_types}), "
                f"got {len(groups)}")
        self.rate_groups = groups
        self.name = name


SUBSTITUTION_MODELS = {
    ContextRateModel.name: ContextRateModel,
    BaseChangeRateModel.name: BaseChangeRateModel,
    TransitionTransversionModel.name: TransitionTransversionModel,
}


def get_substitution_model(name_or_model):
    """Resolve a substitution model from a name, grouping or instance."""
    if isinstance(name_or_model, SubstitutionModel):
        return name_or_model
    if isinstance(name_or_model, str):
        try:
            return SUBSTITUTION_MODELS[name_or_model]()
        except KeyError:
            raise ConfigurationError(
                f"Unknown substitution model {name_or_model!r}; choose one "
                f"of {sorted(SUBSTITUTION_MODELS)}") from None
    if isinstance(name_or_model, (dict, pd.Series, list, tuple)):
        return GroupedRateModel(name_or_model)
    raise ConfigurationError(
        f"Cannot build a substitution model from {name_or_model!r}")

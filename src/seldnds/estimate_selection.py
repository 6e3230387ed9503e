"""Per-gene dN/dS and likelihood ratio tests of selection.

For every gene, observed counts per impact class (synonymous,
missense, nonsense, essential splice) are compared with the neutral
expectation from the global substitution model. The unknown neutral
rate of the gene is estimated from the classes assumed neutral,
optionally regularised by the Gamma prior of the background rate
regression, and selection models are compared with likelihood ratio
tests:

- pmis: missense neutral versus all classes free,
- ptrunc: nonsense and essential splice neutral versus all free,
- pallsubs: every class neutral versus all free.

Indels are tested against their background expectation, and the
substitution and indel tests are combined with Fisher's method. All
p-values are corrected with the Benjamini-Hochberg procedure across
genes.
"""

import math
import logging
import warnings

from dataclasses import dataclass, asdict
from functools import partial
from multiprocessing import Pool

import numpy as np
import pandas as pd
from scipy.special import gammaln, xlogy
from scipy.stats import chi2, gamma, nbinom, poisson

from . import constants
from .exceptions import DegenerateModelWarning
from .utils import benjamini_hochberg


logger = logging.getLogger(__name__)


# Lower bound of the neutral rate fold change, so that ratios stay
# finite when no neutral mutation is observed.
min_rate_fold = 1e-10

# Submodels, as lists of groups of impact classes with a free ratio
missense_free = [(1,)]
truncating_free = [(2,), (3,)]
all_free = [(1,), (2,), (3,)]
all_free_truncating_tied = [(1,), (2, 3)]


@dataclass(frozen=True)
class GeneSelectionResult:
    """Maximum likelihood dN/dS and raw p-values of one gene."""

    gene_id: str
    wmis: float
    wnon: float
    wspl: float
    wind: float
    pmis: float
    ptrunc: float
    pallsubs: float
    pind: float
    pglobal: float
    degenerate: bool = False


def neutral_rate_mle(n_neutral, exp_rel_neutral, prior=None):
    """MLE (or MAP under `prior`) of a gene's neutral synonymous count.

    Parameters
    ----------
    n_neutral : float
        Mutations observed in the classes assumed neutral.
    exp_rel_neutral : float
        Expected counts of those classes relative to the synonymous
        class.
    prior : GammaPrior | None
        Gamma prior on the synonymous count.
    """
    if prior is None:
        if exp_rel_neutral <= 0:
            return 0.0
        return n_neutral / exp_rel_neutral
    if math.isinf(prior.shape):
        return prior.mean
    shape, scale = prior.shape, prior.scale
    t = (n_neutral + shape - 1) / (exp_rel_neutral + 1 / scale)
    if shape <= 1:
        t = max(shape * scale, t)
    return t


def _loglik(n, lam):
    mask = lam > 0
    ll = np.sum(xlogy(n[mask], lam[mask]) - lam[mask] - gammaln(n[mask] + 1))
    if np.any(n[~mask] > 0):
        return -np.inf
    return float(ll)


def fit_submodel(n, e, groups, prior=None):
    """Fit one selection submodel of a gene.

    Parameters
    ----------
    n, e : array of shape (4,)
        Observed and neutral expected counts per impact class.
    groups : list of tuple of int
        Classes (1 missense, 2 nonsense, 3 essential splice) with a
        free ratio; classes in the same tuple share it. Every other
        class is neutral.
    prior : GammaPrior | None

    Returns
    -------
    loglik : float
    w : np.ndarray of shape (4,)
        Ratio of each class (1 for neutral classes).
    """
    free = {k for group in groups for k in group}
    neutral = [k for k in range(constants.n_impact_classes) if k not in free]

    exp_rel = e / e[0]
    t = neutral_rate_mle(n[neutral].sum(), exp_rel[neutral].sum(), prior)
    rate_fold = max(min_rate_fold, t / e[0])

    w = np.ones(constants.n_impact_classes)
    for group in groups:
        idx = list(group)
        n_group = n[idx].sum()
        e_group = e[idx].sum()
        if n_group == 0 or e_group <= 0:
            w[idx] = 0.0
        else:
            w[idx] = n_group / e_group / rate_fold

    ll = _loglik(n, e * rate_fold * w)
    if prior is not None and not math.isinf(prior.shape):
        ll += gamma.logpdf(t, a=prior.shape, scale=prior.scale)
    return ll, w


def fit_positive_submodel(n, e, groups, prior=None):
    """Like :func:`fit_submodel`, with ratios below 1 set to neutral.

    Groups whose ratio is estimated below 1 are moved to the neutral
    classes and the model is refitted until no free ratio is below 1.
    """
    groups = list(groups)
    for _ in range(len(groups) + 1):
        ll, w = fit_submodel(n, e, groups, prior)
        below = [g for g in groups if w[list(g)[0]] < 1]
        if not below:
            break
        groups = [g for g in groups if g not in below]
    return ll, w


def indel_test(n_ind, mean, shape=math.inf):
    """dN/dS and upper tail p-value P(X >= n_ind) of the indels of a gene.

    Negative binomial with the given `shape`, or Poisson when the shape
    is infinite.
    """
    if mean is None or not mean > 0:
        return np.nan, 1.0
    wind = n_ind / mean
    if n_ind == 0:
        return wind, 1.0
    if math.isinf(shape):
        p = poisson.sf(n_ind - 1, mean)
    else:
        p = nbinom.sf(n_ind - 1, shape, shape / (shape + mean))
    return wind, float(p)


def fisher_combination(pvalues):
    """Combine independent p-values with Fisher's method."""
    tiny = np.finfo(float).tiny
    stat = -2 * sum(math.log(max(p, tiny)) for p in pvalues)
    return float(chi2.sf(stat, 2 * len(pvalues)))


def run_gene_tests(gene_id, n, e, prior, n_ind, ind_mean, ind_shape, *,
                   constrain_wnon_wspl=True, positive_selection_only=True):
    """Selection tests of one gene.

    Parameters
    ----------
    gene_id : str
    n, e : array of shape (4,)
        Observed and neutral expected counts per impact class.
    prior : GammaPrior | None
    n_ind : int
    ind_mean : float | None
        Background indel expectation; None when indels are not tested.
    ind_shape : float
    constrain_wnon_wspl : bool
    positive_selection_only : bool

    Returns
    -------
    GeneSelectionResult
    """
    n = np.asarray(n, dtype=float)
    e = np.asarray(e, dtype=float)

    if ind_mean is None:
        wind, pind = np.nan, np.nan
    else:
        wind, pind = indel_test(n_ind, ind_mean, ind_shape)

    if not e[0] > 0:
        pglobal = 1.0 if ind_mean is None else pind
        return GeneSelectionResult(
            gene_id, np.nan, np.nan, np.nan, wind, 1.0, 1.0, 1.0, pind,
            pglobal, degenerate=True)

    fit = fit_positive_submodel if positive_selection_only else fit_submodel

    ll0, _ = fit(n, e, [], prior)
    llmis, _ = fit(n, e, truncating_free, prior)
    lltrunc, _ = fit(n, e, missense_free, prior)
    llall_unc, _ = fit(n, e, all_free, prior)
    _, w_unc = fit_submodel(n, e, all_free, prior)

    def lrt(ll_alt, ll_null, df):
        return float(chi2.sf(max(0.0, 2 * (ll_alt - ll_null)), df))

    if constrain_wnon_wspl:
        llall, _ = fit(n, e, all_free_truncating_tied, prior)
        _, w_tied = fit_submodel(n, e, all_free_truncating_tied, prior)
        wmis, wnon, wspl = w_unc[1], w_tied[2], w_tied[3]
        pmis = lrt(llall_unc, llmis, 1)
        ptrunc = lrt(llall, lltrunc, 1)
        pallsubs = lrt(llall, ll0, 2)
    else:
        wmis, wnon, wspl = w_unc[1], w_unc[2], w_unc[3]
        pmis = lrt(llall_unc, llmis, 1)
        ptrunc = lrt(llall_unc, lltrunc, 2)
        pallsubs = lrt(llall_unc, ll0, 3)

    if ind_mean is None:
        pglobal = pallsubs
    else:
        pglobal = fisher_combination([pallsubs, pind])

    return GeneSelectionResult(gene_id, float(wmis), float(wnon),
                               float(wspl), wind, pmis, ptrunc, pallsubs,
                               pind, pglobal)


def estimate_selection(counts_df, background, *, constrain_wnon_wspl=True,
                       positive_selection_only=True, n_jobs=1):
    """Per-gene dN/dS, p-values and q-values.

    Parameters
    ----------
    counts_df : pd.DataFrame
        Per-gene table with observed (``n_syn ... n_ind``) and expected
        (``exp_syn ... exp_spl``) counts.
    background : BackgroundRates
    constrain_wnon_wspl : bool
    positive_selection_only : bool
    n_jobs : int
        Worker processes. 1 runs in the current process.

    Returns
    -------
    pd.DataFrame
        Indexed by gene, with columns suffixed by the background method
        (``wmis_cv``, ``pmis_cv``, ``qmis_cv``, ...), sorted by
        pglobal.
    """
    suffix = background.method
    gene_ids = list(counts_df.index)
    N = counts_df[constants.count_columns].to_numpy(dtype=float)
    E = counts_df[constants.expected_columns].to_numpy(dtype=float)

    if background.indel_expected is None:
        ind_means = [None] * len(gene_ids)
    else:
        ind_means = [float(v) for v in
                     background.indel_expected.reindex(gene_ids)]

    args = [(g, N[i], E[i], background.prior(g),
             int(counts_df["n_ind"].iloc[i]), ind_means[i],
             background.indel_shape)
            for i, g in enumerate(gene_ids)]

    worker = partial(run_gene_tests,
                     constrain_wnon_wspl=constrain_wnon_wspl,
                     positive_selection_only=positive_selection_only)

    logger.info(f"Testing selection in {len(gene_ids)} genes...")
    if n_jobs > 1 and len(args) > 1:
        with Pool(processes=n_jobs) as pool:
            results = pool.starmap(worker, args)
    else:
        results = [worker(*a) for a in args]
    logger.info("... done.")

    n_degenerate = sum(r.degenerate for r in results)
    if n_degenerate:
        msg = (f"{n_degenerate} genes have no expected synonymous "
               "mutations; their ratios are undefined")
        logger.warning(msg)
        warnings.warn(msg, DegenerateModelWarning, stacklevel=2)

    table = pd.DataFrame([asdict(r) for r in results]).set_index("gene_id")
    out = counts_df[constants.count_columns + ["n_ind"]].copy()
    for col in ["wmis", "wnon", "wspl", "wind",
                "pmis", "ptrunc", "pallsubs", "pind"]:
        out[f"{col}_{suffix}"] = table[col]
    for p, q in [("pmis", "qmis"), ("ptrunc", "qtrunc"),
                 ("pallsubs", "qallsubs"), ("pind", "qind")]:
        out[f"{q}_{suffix}"] = benjamini_hochberg(table[p])
    out[f"pglobal_{suffix}"] = table["pglobal"]
    out[f"qglobal_{suffix}"] = benjamini_hochberg(table["pglobal"])
    out["degenerate"] = table["degenerate"]

    out = out.sort_values(f"pglobal_{suffix}", kind="stable")
    return out

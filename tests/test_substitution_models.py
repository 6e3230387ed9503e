"""Tests for the substitution models and the global rate fit."""

import numpy as np
import pytest

from seldnds import constants
from seldnds.estimate_substitution_rates import fit_global_rates
from seldnds.exceptions import (ConfigurationError, ConvergenceError,
                               DegenerateModelWarning)
from seldnds.gene_counts import pool_counts
from seldnds.substitution_models import (BaseChangeRateModel,
                                         ContextRateModel, GroupedRateModel,
                                         UniformRateModel,
                                         evaluate_likelihood,
                                         get_substitution_model)
from seldnds.variant_annotation import annotate_mutations


INF = float("inf")


@pytest.fixture(scope="module")
def opportunities(reference):
    L = np.zeros((192, 4))
    for gene_id in reference.gene_ids:
        L += reference.opportunity_matrix(gene_id)
    return L


def _simulate_counts(L, rates, w, seed=11):
    rng = np.random.default_rng(seed)
    lam = L * np.asarray(rates)[:, None] * np.r_[1.0, w][None, :]
    return rng.poisson(lam).astype(float)


def test_recovers_selection_and_rates(opportunities):
    model = BaseChangeRateModel()
    group_rate = {g: 0.2 + 0.05 * i
                  for i, g in enumerate(constants.base_changes)}
    rates = [group_rate[g] for g in model.rate_groups]
    N = _simulate_counts(opportunities, rates, [2.0, 0.5, 1.5])

    fit = model.fit(N, opportunities)

    assert fit.selection == pytest.approx((2.0, 0.5, 1.5), rel=0.1)
    assert fit.parameters.loc["C>T", "mle"] == pytest.approx(
        group_rate["C>T"], rel=0.1)
    assert fit.parameters.loc["wmis", "cilow"] < 2.0
    assert fit.parameters.loc["wmis", "cihigh"] > fit.parameters.loc[
        "wmis", "mle"]
    assert fit.n_params == 15
    assert fit.iterations >= 1


def test_loglik_matches_evaluate_likelihood(opportunities):
    rates = np.full(192, 0.3)
    N = _simulate_counts(opportunities, rates, [1.0, 1.0, 1.0])
    fit = ContextRateModel().fit(N, opportunities)

    ll = evaluate_likelihood(N, opportunities, fit.neutral_rates,
                             fit.selection)
    assert ll == pytest.approx(fit.loglik)
    assert fit.aic == pytest.approx(2 * fit.n_params - 2 * fit.loglik)


def test_zero_count_rate_falls_back_to_pool(opportunities):
    rates = np.full(192, 0.3)
    N = _simulate_counts(opportunities, rates, [1.0, 1.0, 1.0])
    label = "A[C>T]G"
    i = constants.trinucleotide_substitution_index[label]
    N[i, :] = 0

    fit = ContextRateModel().fit(N, opportunities)

    assert label in fit.fallback_parameters
    assert np.isnan(fit.parameters.loc[label, "cilow"])

    pool = [s for s in constants.trinucleotide_substitutions
            if constants.extract_base_change(s) == "C>T" and s != label]
    weights = opportunities[[constants.trinucleotide_substitution_index[s]
                             for s in pool]].sum(axis=1)
    values = fit.parameters.loc[pool, "mle"].to_numpy()
    expected = np.sum(weights * values) / weights.sum()
    assert fit.neutral_rates[i] == pytest.approx(expected)


def test_zero_count_selection_is_zero(opportunities):
    N = _simulate_counts(opportunities, np.full(192, 0.3), [1.0, 1.0, 1.0])
    N[:, 2] = 0
    fit = BaseChangeRateModel().fit(N, opportunities)
    assert fit.selection[1] == 0.0
    assert fit.parameters.loc["wnon", "mle"] == 0.0


def test_tied_selection_parameters(opportunities):
    N = _simulate_counts(opportunities, np.full(192, 0.3), [1.2, 3.0, 3.0])
    fit = UniformRateModel().fit(N, opportunities,
                                 constants.selection_truncating_tied)
    assert fit.selection[1] == fit.selection[2]
    assert fit.selection[1] == pytest.approx(3.0, rel=0.1)
    assert list(fit.parameters.index) == ["r", "wmis", "wtru"]


def test_relative_rate(opportunities):
    N = _simulate_counts(opportunities, np.full(192, 0.3), [2.0, 1.0, 1.0])
    fit = UniformRateModel().fit(N, opportunities)
    r = fit.parameters.loc["r", "mle"]
    assert fit.relative_rate("A[C>T]G", "synonymous") == pytest.approx(r)
    assert fit.relative_rate("A[C>T]G", "missense") == pytest.approx(
        r * fit.selection[0])


def test_missense_only_counts_warn(opportunities):
    N = np.zeros((192, 4))
    cells = np.flatnonzero(opportunities[:, 1] > 0)[:2]
    N[cells, 1] = [3, 2]
    with pytest.warns(DegenerateModelWarning, match="wmis"):
        fit = UniformRateModel().fit(N, opportunities)
    assert fit.parameters.loc["wnon", "mle"] == 0


def test_nonconvergence_raises(opportunities):
    N = _simulate_counts(opportunities, np.full(192, 0.3), [1.0, 1.0, 1.0])
    with pytest.raises(ConvergenceError):
        ContextRateModel().fit(N, opportunities, maxiter=1)


def test_nothing_to_fit_raises(opportunities):
    with pytest.raises(ConvergenceError):
        BaseChangeRateModel().fit(np.zeros((192, 4)), opportunities)


def test_model_resolution():
    assert isinstance(get_substitution_model("192r_3w"), ContextRateModel)
    assert get_substitution_model("2r_3w").n_rates == 2
    with pytest.raises(ConfigurationError):
        get_substitution_model("7r_3w")

    grouped = get_substitution_model(
        {s: "all" for s in constants.trinucleotide_substitutions})
    assert isinstance(grouped, GroupedRateModel)
    assert grouped.n_rates == 1
    with pytest.raises(ConfigurationError):
        GroupedRateModel(["a"] * 10)


def test_grouped_model_equals_uniform(opportunities):
    N = _simulate_counts(opportunities, np.full(192, 0.3), [1.0, 1.0, 1.0])
    grouped = GroupedRateModel(["r"] * 192).fit(N, opportunities)
    uniform = UniformRateModel().fit(N, opportunities)
    assert grouped.loglik == pytest.approx(uniform.loglik)


def test_global_fit(reference, simulate):
    mutations = simulate(reference)
    tables = annotate_mutations(
        mutations, reference, max_muts_per_gene_per_sample=INF,
        max_coding_muts_per_sample=INF).count_tables

    fit = fit_global_rates(tables, "12r_3w")

    assert list(fit.global_dnds.index) == ["wmis", "wnon", "wspl", "wtru",
                                           "wall"]
    assert fit.global_dnds.loc["wall", "mle"] == pytest.approx(1.0, abs=0.15)
    assert len(fit.model_comparison) == 4
    comparison = fit.model_comparison.set_index("model")
    assert comparison.loc["12r_3w", "n_params"] == 15
    assert comparison.loc["1r wall", "n_params"] == 2
    N, _ = pool_counts(tables)
    assert N.sum() > 0
    np.testing.assert_allclose(fit.neutral_rates, fit.fitted.neutral_rates)

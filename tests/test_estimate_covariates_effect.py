"""Tests for the background rate regression."""

import math

import numpy as np
import pandas as pd
import pytest

from seldnds.estimate_covariates_effect import (LocalRateEstimator,
                                                RegressionRateEstimator,
                                                fit_negative_binomial,
                                                fit_poisson_regression,
                                                get_rate_estimator,
                                                prepare_covariates)
from seldnds.exceptions import (ConfigurationError, ConvergenceError,
                                DegenerateModelWarning)


def _simulate_nb(theta, n_genes=2000, coef=0.5, seed=5):
    rng = np.random.default_rng(seed)
    genes = [f"g{i}" for i in range(n_genes)]
    expected = pd.Series(rng.uniform(5, 50, n_genes), index=genes)
    x = pd.DataFrame({"expression": rng.normal(size=n_genes)}, index=genes)
    mu = expected * np.exp(0.2 + coef * x["expression"])
    counts = pd.Series(
        rng.negative_binomial(theta, theta / (theta + mu.to_numpy())),
        index=genes)
    return counts, expected, x


def test_recovers_coefficients_and_theta():
    counts, expected, x = _simulate_nb(theta=3.0)
    fit = fit_negative_binomial(counts, expected, x)

    assert fit.family == "negative_binomial"
    assert fit.coefficients.loc["expression", "coef"] == pytest.approx(
        0.5, abs=0.1)
    assert fit.coefficients.loc["const", "coef"] == pytest.approx(
        0.2, abs=0.1)
    assert 2.0 < fit.theta < 4.5
    assert not fit.degenerate
    assert fit.predicted.index.equals(counts.index)


def test_low_theta_warns_without_clamping():
    counts, expected, x = _simulate_nb(theta=0.3)
    with pytest.warns(DegenerateModelWarning):
        fit = fit_negative_binomial(counts, expected, x, maxiter=300)
    assert fit.degenerate
    assert fit.theta < 1.0


def test_single_gene_fits():
    counts = pd.Series([29.0], index=["g0"])
    expected = pd.Series([20.0], index=["g0"])

    fit = fit_negative_binomial(counts, expected)
    assert math.isinf(fit.theta)
    assert fit.predicted["g0"] == pytest.approx(29.0)

    fit = fit_poisson_regression(counts, expected)
    assert fit.predicted["g0"] == pytest.approx(29.0)


def test_no_overdispersion_gives_poisson_boundary():
    rng = np.random.default_rng(2)
    genes = [f"g{i}" for i in range(300)]
    expected = pd.Series(rng.uniform(10, 40, 300), index=genes)
    counts = expected.round()

    fit = fit_negative_binomial(counts, expected)

    assert math.isinf(fit.theta)
    assert fit.family == "poisson"
    assert list(fit.coefficients.index) == ["const"]


def test_zero_expected_genes_are_excluded():
    counts, expected, x = _simulate_nb(theta=3.0, n_genes=500)
    expected.iloc[:3] = 0.0
    fit = fit_negative_binomial(counts, expected, x)
    assert (fit.predicted.iloc[:3] == 0).all()
    assert fit.n_genes == 497


def test_no_mutations_raises():
    genes = ["a", "b", "c"]
    with pytest.raises(ConvergenceError):
        fit_negative_binomial(pd.Series(0, index=genes),
                              pd.Series(1.0, index=genes))


def test_prepare_covariates():
    genes = ["a", "b", "c", "d"]
    cov = pd.DataFrame({"x": [1.0, np.nan, 3.0, 5.0],
                        "y": [2.0, 1.0, 0.0, 4.0],
                        "flat": [1.0, 1.0, 1.0, 1.0],
                        "extra": [0.0, 0.0, 0.0, 1.0]},
                       index=genes)
    prepared = prepare_covariates(cov, ["d", "a", "b"])

    assert list(prepared.index) == ["d", "a", "b"]
    assert "flat" not in prepared.columns
    assert prepared.loc["b", "x"] == pytest.approx(3.0)

    with pytest.raises(ConfigurationError):
        prepare_covariates(cov, ["a", "z"])

    pcs = prepare_covariates(cov, genes, covariate_pcs=2)
    assert list(pcs.columns) == ["PC1", "PC2"]

    assert prepare_covariates(None, genes) is None


def _counts_frame():
    rng = np.random.default_rng(9)
    genes = [f"g{i}" for i in range(200)]
    exp_syn = rng.uniform(5, 30, 200)
    m = rng.gamma(4.0, 0.25, 200)
    return pd.DataFrame({
        "n_syn": rng.poisson(exp_syn * m),
        "n_mis": rng.poisson(3 * exp_syn * m),
        "n_non": rng.poisson(0.2 * exp_syn * m),
        "n_spl": rng.poisson(0.05 * exp_syn * m),
        "n_ind": rng.poisson(2 * m),
        "coding_length": rng.integers(600, 3000, 200),
        "exp_syn": exp_syn,
        "exp_mis": 3 * exp_syn,
        "exp_non": 0.2 * exp_syn,
        "exp_spl": 0.05 * exp_syn,
    }, index=pd.Index(genes, name="gene_id"))


def test_regression_estimator_priors():
    counts_df = _counts_frame()
    background = RegressionRateEstimator().estimate(counts_df)

    assert background.method == "cv"
    assert background.regression is not None
    assert background.indel_expected is not None

    prior = background.prior("g0")
    assert prior.shape == background.shape
    assert prior.mean == pytest.approx(background.expected["g0"])
    assert prior.scale == pytest.approx(prior.mean / prior.shape)


def test_local_estimator_has_no_prior():
    counts_df = _counts_frame()
    background = get_rate_estimator("local").estimate(counts_df)

    assert isinstance(get_rate_estimator("local"), LocalRateEstimator)
    assert background.method == "loc"
    assert background.prior("g0") is None
    assert background.indel_expected.sum() == pytest.approx(
        counts_df["n_ind"].sum())

    with pytest.raises(ConfigurationError):
        get_rate_estimator("bayesian")


def test_no_indels_skips_indel_background():
    counts_df = _counts_frame().assign(n_ind=0)
    background = RegressionRateEstimator().estimate(counts_df)
    assert background.indel_expected is None

"""
Tests for the Fitting Capabilities
==================================

Formula handling, the logit handle, the Gibbs probit sampler and the
Biogeme-backed logit (skipped when biogeme is not installed).
"""

import pytest
import pandas as pd
import numpy as np

from conftest import logit_mle

from mnlbench.errors import ValidationError
from mnlbench.models.base import (
    FitErrorKind, ModelType, align_starting_values, prepare_choice_data, softmax_with_reference
)
from mnlbench.models.formula import ChoiceFormula, design_matrix, encode_choices, resolve_alternatives
from mnlbench.models.mnl import BiogemeLogitCapability, LogitFit, logit_covariance
from mnlbench.models.mnp import GibbsProbitCapability, ProbitGibbsSampler


@pytest.mark.unit
class TestChoiceFormula:

    def test_parse(self):
        formula = ChoiceFormula.parse("choice ~ x1 + x2")
        assert formula.outcome == 'choice'
        assert formula.covariates == ('x1', 'x2')
        assert formula.terms == ['(Intercept)', 'x1', 'x2']

    @pytest.mark.parametrize("text", ["choice x1", "~ x1", "choice ~ "])
    def test_malformed(self, text):
        with pytest.raises(ValidationError):
            ChoiceFormula.parse(text)

    def test_missing_columns(self, small_choice_frame):
        formula = ChoiceFormula.parse("choice ~ x1 + income")
        with pytest.raises(ValidationError, match='income'):
            formula.check_columns(small_choice_frame)

    def test_alternatives_sorted(self, small_choice_frame):
        assert resolve_alternatives(small_choice_frame['choice']) == ['bus', 'car', 'train']

    def test_unknown_outcome_value(self):
        with pytest.raises(ValidationError):
            encode_choices(['a', 'z'], ['a', 'b'])

    def test_design_matrix_rejects_missing_values(self, small_choice_frame):
        frame = small_choice_frame.copy()
        frame.loc[0, 'x1'] = np.nan
        with pytest.raises(ValidationError, match='non-finite'):
            design_matrix(ChoiceFormula.parse("choice ~ x1"), frame)

    def test_prepare_needs_two_alternatives(self, small_choice_frame):
        frame = small_choice_frame.assign(choice='car')
        with pytest.raises(ValidationError, match='at least 2'):
            prepare_choice_data("choice ~ x1", frame)


@pytest.mark.unit
class TestLogitFit:

    def test_from_known_coefficients(self, choice_dataset):
        """Zero coefficients give uniform probabilities."""
        model = LogitFit.from_data(choice_dataset.formula, choice_dataset.data, np.zeros((3, 2)))

        assert model.model_type is ModelType.ROBUST
        np.testing.assert_allclose(model.fitted_probabilities(), 1 / 3)
        assert model.log_likelihood == pytest.approx(300 * np.log(1 / 3))
        assert model.n_params == 6
        assert model.aic == pytest.approx(12 - 2 * model.log_likelihood)

    def test_predict_matches_softmax(self, choice_dataset):
        coefficients = np.array([[0.2, -0.1], [0.5, 0.3], [-0.4, 0.1]])
        model = LogitFit.from_data(choice_dataset.formula, choice_dataset.data, coefficients)
        Z = design_matrix(choice_dataset.formula, choice_dataset.data)
        np.testing.assert_allclose(model.predict(choice_dataset.data),
                                   softmax_with_reference(Z @ coefficients))

    def test_coefficient_frame_labels(self, labelled_dataset):
        model = LogitFit.from_data(labelled_dataset.formula, labelled_dataset.data, np.zeros((3, 2)))
        assert list(model.coefficients.index) == ['(Intercept)', 'x1', 'x2']
        assert list(model.coefficients.columns) == ['B', 'C']

    def test_covariance_shape_and_symmetry(self, choice_dataset):
        prepared = prepare_choice_data(choice_dataset.formula, choice_dataset.data)
        coefficients = logit_mle(prepared.Z, prepared.y, 3)
        model = LogitFit(prepared.formula, prepared.alternatives, coefficients, prepared.Z, prepared.y)

        assert model.covariance.shape == (6, 6)
        np.testing.assert_allclose(model.covariance, model.covariance.T, atol=1e-10)
        assert np.all(model.std_errors.to_numpy() > 0)
        assert model.std_errors.shape == (3, 2)

    def test_binary_covariance_matches_closed_form(self):
        """J=2 reduces to (Z' W Z)^-1 with W = p(1-p)."""
        rng = np.random.default_rng(0)
        Z = np.column_stack([np.ones(50), rng.standard_normal(50)])
        probs = softmax_with_reference(Z @ np.array([[0.3], [0.8]]))
        w = probs[:, 1] * probs[:, 0]
        expected = np.linalg.inv(Z.T @ (Z * w[:, None]))
        np.testing.assert_allclose(logit_covariance(Z, probs), expected, rtol=1e-8)

    def test_mle_recovers_coefficients(self):
        """Large logit sample: estimates close to the truth."""
        from mnlbench.simulation.choice_data import generate_choice_data

        ds = generate_choice_data(n=4000, n_alternatives=3, effect_size=1.0, seed=21)
        # Gumbel errors would be exact; normal errors still preserve signs
        prepared = prepare_choice_data(ds.formula, ds.data)
        estimates = logit_mle(prepared.Z, prepared.y, 3)[1:]
        assert np.all(np.sign(estimates[np.abs(ds.true_betas) > 0.3])
                      == np.sign(ds.true_betas[np.abs(ds.true_betas) > 0.3]))


@pytest.mark.unit
class TestStartingValues:

    def test_matching_shape(self):
        values = pd.DataFrame(np.ones((3, 2)))
        np.testing.assert_array_equal(align_starting_values(values, (3, 2)), np.ones((3, 2)))

    def test_mismatched_shape_ignored(self):
        assert align_starting_values(pd.DataFrame(np.ones((2, 2))), (3, 2)) is None
        assert align_starting_values(None, (3, 2)) is None


@pytest.mark.estimation
class TestGibbsProbit:
    """Short chains of the probit sampler."""

    def test_sampler_shapes(self, choice_dataset):
        prepared = prepare_choice_data(choice_dataset.formula, choice_dataset.data)
        sampler = ProbitGibbsSampler(n_draws=30, burnin=10)
        beta, sigma = sampler.run(prepared.Z, prepared.y, 3, np.random.default_rng(1))

        assert beta.shape == (30, 3, 2)
        assert sigma.shape == (30, 2, 2)
        # Identified scale: Sigma_11 fixed at one
        np.testing.assert_allclose(sigma[:, 0, 0], 1.0)

    def test_sampler_validation(self):
        with pytest.raises(ValidationError):
            ProbitGibbsSampler(n_draws=1)
        with pytest.raises(ValidationError):
            ProbitGibbsSampler(burnin=-1)

    def test_capability_fit(self, choice_dataset):
        capability = GibbsProbitCapability(n_draws=50, burnin=20)
        result = capability.fit(choice_dataset.formula, choice_dataset.data, seed=4)

        assert result.ok
        model = result.model
        assert model.model_type is ModelType.FRAGILE
        assert model.coefficients.shape == (3, 2)
        assert model.diagnostics is not None
        probs = model.predict(choice_dataset.data.head(20), rng=np.random.default_rng(0))
        assert probs.shape == (20, 3)
        np.testing.assert_allclose(probs.sum(axis=1), 1.0)

    def test_same_seed_same_chain(self, choice_dataset):
        capability = GibbsProbitCapability(n_draws=20, burnin=5)
        a = capability.fit(choice_dataset.formula, choice_dataset.data, seed=10).model
        b = capability.fit(choice_dataset.formula, choice_dataset.data, seed=10).model
        np.testing.assert_array_equal(a.beta_draws, b.beta_draws)

    def test_draws_frame_columns(self, choice_dataset):
        model = GibbsProbitCapability(n_draws=20, burnin=5).fit(
            choice_dataset.formula, choice_dataset.data, seed=2).model
        columns = list(model.draws.columns)
        assert '(Intercept):2' in columns
        assert 'Sigma.2.3' in columns
        assert 'Sigma.3.3' in columns
        assert 'Sigma.2.2' not in columns

    def test_unavailable(self, choice_dataset):
        result = GibbsProbitCapability(available=False).fit(
            choice_dataset.formula, choice_dataset.data)
        assert not result.ok
        assert result.error.kind is FitErrorKind.UNAVAILABLE

    def test_timeout_reported(self, choice_dataset):
        capability = GibbsProbitCapability(n_draws=100000, burnin=0)
        result = capability.fit(choice_dataset.formula, choice_dataset.data, seed=1, timeout=0.05)
        assert not result.ok
        assert result.error.kind is FitErrorKind.TIMEOUT

    def test_invalid_input_reported(self, small_choice_frame):
        result = GibbsProbitCapability(n_draws=10, burnin=0).fit("choice ~ missing", small_choice_frame)
        assert result.error.kind is FitErrorKind.INVALID_INPUT


@pytest.mark.estimation
@pytest.mark.integration
class TestBiogemeLogit:
    """Biogeme estimation of the robust model."""

    def test_biogeme_matches_scipy(self, choice_dataset, tmp_path, monkeypatch):
        pytest.importorskip("biogeme")
        monkeypatch.chdir(tmp_path)

        result = BiogemeLogitCapability().fit(choice_dataset.formula, choice_dataset.data, seed=1)
        assert result.ok, result.error

        prepared = prepare_choice_data(choice_dataset.formula, choice_dataset.data)
        expected = logit_mle(prepared.Z, prepared.y, 3)
        np.testing.assert_allclose(result.model.coefficient_matrix, expected, atol=1e-3)

    def test_artifacts_removed(self, choice_dataset, tmp_path, monkeypatch):
        pytest.importorskip("biogeme")
        monkeypatch.chdir(tmp_path)

        BiogemeLogitCapability().fit(choice_dataset.formula, choice_dataset.data)
        leftovers = [p for p in tmp_path.iterdir() if p.suffix in ('.html', '.pickle', '.yaml')]
        assert leftovers == []

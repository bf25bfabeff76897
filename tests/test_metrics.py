"""
Tests for Prediction Performance Metrics
========================================
"""

import pytest
import pandas as pd
import numpy as np

from mnlbench.errors import ValidationError
from mnlbench.validation.metrics import (
    accuracy, brier, brier_decomposition, encode_outcomes, evaluate_performance,
    log_loss, one_hot, rmse
)


@pytest.fixture
def predictions():
    return np.array([
        [0.7, 0.2, 0.1],
        [0.1, 0.8, 0.1],
        [0.3, 0.3, 0.4],
        [0.2, 0.5, 0.3],
    ])


@pytest.fixture
def outcomes():
    return np.array([1, 2, 3, 1])


@pytest.mark.unit
class TestOutcomeEncoding:
    """Outcome vectors become indicator matrices."""

    def test_one_based_integer_codes(self, outcomes):
        Y = one_hot(outcomes, 3)
        np.testing.assert_array_equal(Y, [[1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 0, 0]])

    def test_explicit_labels(self):
        Y = one_hot(['car', 'bus', 'car'], 2, alternatives=['bus', 'car'])
        np.testing.assert_array_equal(Y, [[0, 1], [1, 0], [0, 1]])

    def test_string_labels_sorted(self):
        codes = encode_outcomes(['train', 'bus', 'car'], 3)
        np.testing.assert_array_equal(codes, [2, 0, 1])

    def test_categorical_uses_category_order(self):
        actual = pd.Series(pd.Categorical(['b', 'a'], categories=['b', 'a']))
        np.testing.assert_array_equal(encode_outcomes(actual, 2), [0, 1])

    def test_rank_deficient_inserts_reference_column(self):
        """Two observed levels against three columns: reference = 1 - row sum."""
        Y = one_hot(['x', 'y', 'x'], 3)
        np.testing.assert_array_equal(Y, [[0, 1, 0], [0, 0, 1], [0, 1, 0]])

    def test_too_many_levels(self):
        with pytest.raises(ValidationError):
            one_hot(['a', 'b', 'c'], 2)


@pytest.mark.unit
class TestMetrics:
    """Known values for each metric."""

    def test_rmse_zero_for_perfect_prediction(self, predictions):
        assert rmse(predictions, predictions) == 0.0

    def test_rmse_value(self):
        pred = np.array([[0.5, 0.5]])
        true = np.array([[0.7, 0.3]])
        assert rmse(pred, true) == pytest.approx(0.2)

    def test_rmse_shape_mismatch(self, predictions):
        with pytest.raises(ValidationError):
            rmse(predictions, predictions[:, :2])

    def test_brier_value(self, predictions, outcomes):
        Y = one_hot(outcomes, 3)
        expected = np.mean((Y - predictions) ** 2)
        assert brier(predictions, outcomes) == pytest.approx(expected)

    def test_brier_perfect(self):
        pred = np.eye(3)
        assert brier(pred, [1, 2, 3]) == 0.0

    def test_log_loss_value(self, predictions, outcomes):
        expected = -np.mean(np.log([0.7, 0.8, 0.4, 0.2]))
        assert log_loss(predictions, outcomes) == pytest.approx(expected)

    def test_log_loss_clamps_zero_probability(self):
        """A zero probability on the outcome stays finite."""
        pred = np.array([[1.0, 0.0]])
        value = log_loss(pred, [2])
        assert np.isfinite(value)
        assert value == pytest.approx(-np.log(1e-15))

    def test_accuracy(self, predictions, outcomes):
        assert accuracy(predictions, outcomes) == pytest.approx(0.75)

    def test_vector_treated_as_binary(self):
        """A probability vector is [1-p, p]."""
        assert accuracy(np.array([0.9, 0.2]), [2, 1]) == 1.0

    def test_row_count_mismatch(self, predictions):
        with pytest.raises(ValidationError):
            brier(predictions, [1, 2])

    def test_metrics_are_pure(self, predictions, outcomes):
        """Repeated calls return the same value and leave inputs untouched."""
        before = predictions.copy()
        first = evaluate_performance(predictions, true_probs=before, actual=outcomes)
        second = evaluate_performance(predictions, true_probs=before, actual=outcomes)
        assert first == second
        np.testing.assert_array_equal(predictions, before)


@pytest.mark.unit
class TestEvaluatePerformance:

    def test_only_available_metrics(self, predictions, outcomes):
        result = evaluate_performance(predictions, actual=outcomes)
        assert set(result) == {'Brier', 'LogLoss', 'Accuracy'}

    def test_rmse_needs_truth(self, predictions):
        result = evaluate_performance(predictions, true_probs=predictions)
        assert result == {'RMSE': 0.0}

    def test_metric_subset(self, predictions, outcomes):
        result = evaluate_performance(predictions, actual=outcomes, metrics=('Accuracy',))
        assert list(result) == ['Accuracy']


@pytest.mark.unit
class TestBrierDecomposition:

    def test_total_matches_brier(self, choice_dataset):
        """The decomposition's score is the plain Brier score."""
        decomposition = brier_decomposition(choice_dataset.true_probs, choice_dataset.choices)
        assert decomposition.brier == pytest.approx(
            brier(choice_dataset.true_probs, choice_dataset.choices)
        )

    def test_components_non_negative(self, choice_dataset):
        d = brier_decomposition(choice_dataset.true_probs, choice_dataset.choices)
        assert d.uncertainty >= 0
        assert d.resolution >= 0
        assert d.reliability >= 0
        assert d.refinement == d.resolution
        assert d.calibration == d.reliability

    def test_default_bins(self, choice_dataset):
        """min(10, ceil(n / 20)) bins."""
        d = brier_decomposition(choice_dataset.true_probs, choice_dataset.choices)
        assert d.n_bins == 10
        small = brier_decomposition(choice_dataset.true_probs[:30], choice_dataset.choices[:30])
        assert small.n_bins == 2

    def test_uncertainty_of_pooled_outcomes(self):
        """Every row has one 1 among J cells, so o_bar = 1/J."""
        pred = np.full((4, 2), 0.5)
        d = brier_decomposition(pred, [1, 2, 1, 2])
        assert d.uncertainty == pytest.approx(0.25)
        assert d.reliability == pytest.approx(0.0)

    def test_by_alternative_labels(self, predictions, outcomes):
        d = brier_decomposition(predictions, outcomes)
        assert list(d.by_alternative) == ['Alt1', 'Alt2', 'Alt3']
        labelled = brier_decomposition(predictions, ['a', 'b', 'c', 'a'],
                                       alternatives=['a', 'b', 'c'])
        assert list(labelled.by_alternative) == ['a', 'b', 'c']

    def test_summary_mentions_components(self, predictions, outcomes):
        text = brier_decomposition(predictions, outcomes).summary()
        assert 'Uncertainty' in text
        assert 'Reliability' in text

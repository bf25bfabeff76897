"""
Tests for the Hausman-McFadden IIA Test
=======================================
"""

import pytest
import numpy as np

from mnlbench.errors import ValidationError
from mnlbench.estimation.iia_test import IIATestResult, hausman_mcfadden, rebase_transform


@pytest.mark.unit
class TestRebaseTransform:

    def test_reference_kept(self):
        """Omitting a non-reference alternative just selects blocks."""
        A = rebase_transform([1, 2, 3], [1, 3], n_terms=1)
        np.testing.assert_array_equal(A, [[0.0, 1.0]])

    def test_reference_omitted(self):
        """Omitting the reference re-expresses the rest against the new base."""
        A = rebase_transform([1, 2, 3], [2, 3], n_terms=1)
        np.testing.assert_array_equal(A, [[-1.0, 1.0]])

    def test_blocks_per_term(self):
        A = rebase_transform(['a', 'b', 'c', 'd'], ['b', 'c', 'd'], n_terms=2)
        assert A.shape == (4, 6)
        # c relative to b, per term
        np.testing.assert_array_equal(A[0], [-1, 0, 1, 0, 0, 0])
        np.testing.assert_array_equal(A[1], [0, -1, 0, 1, 0, 0])


@pytest.mark.estimation
class TestHausmanMcFadden:

    def test_result_fields(self, fitter, choice_dataset):
        ds = choice_dataset
        result = hausman_mcfadden(ds.formula, ds.data, omit_alternative=3,
                                  fitter=fitter, verbose=False)

        assert isinstance(result, IIATestResult)
        assert result.omitted_alternative == 3
        assert 0 <= result.df <= 3
        assert 0 <= result.p_value <= 1
        assert result.statistic >= 0
        assert result.n_restricted < result.n_full
        assert len(result.coefficient_difference) == 3
        assert result.iia_rejected == (result.p_value <= 0.05)

    def test_reference_alternative_omitted(self, fitter, choice_dataset):
        ds = choice_dataset
        result = hausman_mcfadden(ds.formula, ds.data, omit_alternative=1,
                                  fitter=fitter, verbose=False)
        assert list(result.coefficient_difference.index) == ['(Intercept):3', 'x1:3', 'x2:3']
        assert 0 <= result.p_value <= 1

    def test_default_omits_most_chosen(self, fitter, labelled_dataset):
        ds = labelled_dataset
        result = hausman_mcfadden(ds.formula, ds.data, fitter=fitter, verbose=False)
        assert result.omitted_alternative == ds.data['choice'].value_counts().idxmax()

    def test_decision_text(self, fitter, choice_dataset):
        result = hausman_mcfadden(choice_dataset.formula, choice_dataset.data,
                                  fitter=fitter, verbose=False)
        if result.iia_rejected:
            assert 'MNP' in result.recommendation
        else:
            assert result.decision == "IIA holds (cannot reject)"
        assert 'Hausman-McFadden' in str(result)

    def test_only_robust_capability_used(self, fitter, fragile_capability, choice_dataset):
        hausman_mcfadden(choice_dataset.formula, choice_dataset.data, fitter=fitter, verbose=False)
        assert fragile_capability.calls == []


@pytest.mark.unit
class TestIIAValidation:

    def test_two_alternatives(self, fitter, small_choice_frame):
        frame = small_choice_frame[small_choice_frame['choice'] != 'train']
        with pytest.raises(ValidationError, match='at least 3'):
            hausman_mcfadden("choice ~ x1", frame, fitter=fitter, verbose=False)

    def test_unknown_alternative(self, fitter, choice_dataset):
        with pytest.raises(ValidationError, match='not found'):
            hausman_mcfadden(choice_dataset.formula, choice_dataset.data,
                             omit_alternative=7, fitter=fitter, verbose=False)

"""
Tests for Functional Form Selection
===================================
"""

import pytest
import pandas as pd
import numpy as np

from conftest import AlwaysFailing, Missing

from mnlbench.errors import ModelFitError, ValidationError
from mnlbench.estimation.functional_form import (
    TABLE_COLUMNS, expand_specification, flexible_mnl, functional_form_test
)
from mnlbench.estimation.safe_fit import SafeDualModelFitter
from mnlbench.models.base import ModelType
from mnlbench.simulation.choice_data import generate_choice_data


# =============================================================================
# Specifications
# =============================================================================

@pytest.mark.unit
class TestExpandSpecification:

    def test_linear_is_unchanged(self, small_choice_frame):
        formula, data = expand_specification('choice ~ x1 + x2', small_choice_frame, 'linear')
        assert str(formula) == 'choice ~ x1 + x2'
        assert data is small_choice_frame

    def test_quadratic(self, small_choice_frame):
        formula, data = expand_specification('choice ~ x1 + x2', small_choice_frame, 'quadratic')

        assert formula.covariates == ('x1', 'x2', 'x1_sq', 'x2_sq')
        np.testing.assert_allclose(data['x1_sq'], small_choice_frame['x1'] ** 2)
        assert 'x1_sq' not in small_choice_frame.columns

    def test_log_touches_positive_values_only(self, small_choice_frame):
        formula, data = expand_specification('choice ~ x1 + x2', small_choice_frame, 'log')

        assert formula.covariates == ('log_x1', 'log_x2')
        x1 = small_choice_frame['x1'].to_numpy()
        expected = np.where(x1 > 0, np.log(np.clip(x1, 0, None) + 1), x1)
        np.testing.assert_allclose(data['log_x1'], expected)

    def test_interactions(self, small_choice_frame):
        frame = small_choice_frame.assign(x3=1.0)
        formula, data = expand_specification('choice ~ x1 + x2 + x3', frame, 'interactions')

        assert formula.covariates == ('x1', 'x2', 'x3', 'x1_x_x2', 'x1_x_x3', 'x2_x_x3')
        np.testing.assert_allclose(data['x1_x_x2'], frame['x1'] * frame['x2'])

    def test_interactions_need_two_covariates(self, small_choice_frame):
        with pytest.raises(ValidationError, match='two covariates'):
            expand_specification('choice ~ x1', small_choice_frame, 'interactions')

    def test_log_needs_a_positive_value(self):
        frame = pd.DataFrame({'choice': ['a', 'b', 'c'], 'x1': [-1.0, 0.0, -2.0]})
        with pytest.raises(ValidationError, match='positive'):
            expand_specification('choice ~ x1', frame, 'log')

    def test_unknown_form(self, small_choice_frame):
        with pytest.raises(ValidationError, match='form'):
            expand_specification('choice ~ x1', small_choice_frame, 'cubic')


# =============================================================================
# flexible_mnl
# =============================================================================

@pytest.mark.estimation
class TestFlexibleMNL:

    def test_all_forms_table(self, fitter, choice_dataset):
        ds = choice_dataset
        result = flexible_mnl(ds.formula, ds.data, forms='all', n_folds=3,
                              true_probs=ds.true_probs, fitter=fitter, verbose=False)

        table = result.table
        assert list(table.columns) == TABLE_COLUMNS
        assert list(table['Form']) == ['linear', 'quadratic', 'log', 'interactions']
        # (intercept + covariates) x 2 non-reference alternatives
        assert list(table['NParams']) == [6, 10, 6, 8]
        assert np.isfinite(table[['RMSE', 'Brier', 'LogLoss', 'AIC', 'BIC']].to_numpy()).all()
        assert result.cross_validated
        assert set(result.models) == set(table['Form'])
        assert str(result.formulas['quadratic']) == 'choice ~ x1 + x2 + x1_sq + x2_sq'

    def test_best_form_minimizes_rmse(self, fitter, choice_dataset):
        ds = choice_dataset
        result = flexible_mnl(ds.formula, ds.data, forms=['linear', 'quadratic', 'log'],
                              n_folds=3, true_probs=ds.true_probs, fitter=fitter, verbose=False)

        best = result.table.loc[result.table['RMSE'].idxmin(), 'Form']
        assert result.best_form == best
        assert result.best_model is result.models[best]
        assert result.recommendation.startswith(f"Use {best} specification (RMSE=")

    @pytest.mark.parametrize("selection, column", [('aic', 'AIC'), ('BIC', 'BIC')])
    def test_information_criteria(self, fitter, choice_dataset, selection, column):
        ds = choice_dataset
        result = flexible_mnl(ds.formula, ds.data, forms='all', selection=selection,
                              cross_validate=False, fitter=fitter, verbose=False)

        assert result.selection == selection.lower()
        assert result.best_form == result.table.loc[result.table[column].idxmin(), 'Form']
        assert f"({column}=" in result.recommendation

    def test_in_sample_rmse_without_truth(self, fitter, choice_dataset):
        """Without true probabilities RMSE is taken against the outcomes."""
        ds = choice_dataset
        table = flexible_mnl(ds.formula, ds.data, forms=['linear', 'quadratic'],
                             cross_validate=False, fitter=fitter, verbose=False).table

        np.testing.assert_allclose(table['RMSE'], np.sqrt(table['Brier']))
        # Nested specifications: the richer one fits at least as well in-sample
        assert table['LogLik'].iloc[1] >= table['LogLik'].iloc[0] - 1e-3

    def test_cv_selection_forces_cross_validation(self, fitter, robust_capability, choice_dataset):
        ds = choice_dataset
        result = flexible_mnl(ds.formula, ds.data, forms=['linear'], selection='CV',
                              cross_validate=False, n_folds=3, fitter=fitter, verbose=False)

        assert result.cross_validated
        assert result.selection == 'cv'
        # one full fit plus one per fold
        assert len(robust_capability.calls) == 4
        assert '(CV=' in result.recommendation

    def test_recovers_quadratic_truth(self, fitter):
        ds = generate_choice_data(n=2000, functional_form='quadratic', effect_size=0.5, seed=3)
        result = flexible_mnl(ds.formula, ds.data, forms=['linear', 'quadratic'],
                              selection='aic', cross_validate=False, fitter=fitter, verbose=False)
        assert result.best_form == 'quadratic'

    def test_only_robust_model_used(self, fitter, fragile_capability, choice_dataset):
        ds = choice_dataset
        flexible_mnl(ds.formula, ds.data, n_folds=3, fitter=fitter, verbose=False)
        assert fragile_capability.calls == []

    def test_deterministic(self, fitter, choice_dataset):
        ds = choice_dataset
        a = flexible_mnl(ds.formula, ds.data, n_folds=3, seed=5, fitter=fitter, verbose=False)
        b = flexible_mnl(ds.formula, ds.data, n_folds=3, seed=5, fitter=fitter, verbose=False)
        pd.testing.assert_frame_equal(a.table, b.table)

    def test_unsupported_form_is_skipped(self, fitter, choice_dataset):
        data = choice_dataset.data[['choice', 'x1']]
        with pytest.warns(UserWarning, match='Skipping interactions'):
            result = flexible_mnl('choice ~ x1', data, forms=['linear', 'interactions'],
                                  n_folds=3, fitter=fitter, verbose=False)

        assert list(result.table['Form']) == ['linear']
        assert result.best_form == 'linear'
        assert any('interactions' in w for w in result.warnings)

    def test_no_specification_fits(self, choice_dataset):
        ds = choice_dataset
        fitter = SafeDualModelFitter(robust=AlwaysFailing(ModelType.ROBUST), fragile=Missing())

        with pytest.warns(UserWarning, match='failed to estimate'):
            with pytest.raises(ModelFitError, match='No specification'):
                flexible_mnl(ds.formula, ds.data, fitter=fitter, verbose=False)

    def test_verbose_output(self, fitter, choice_dataset, capsys):
        ds = choice_dataset
        flexible_mnl(ds.formula, ds.data, forms=['linear'], n_folds=3, fitter=fitter)
        out = capsys.readouterr().out
        assert 'FLEXIBLE MNL' in out
        assert 'Best specification: linear' in out


@pytest.mark.unit
class TestFlexibleMNLValidation:

    @pytest.mark.parametrize("kwargs, name", [
        (dict(forms=['cubic']), 'forms'),
        (dict(forms=[]), 'forms'),
        (dict(selection='accuracy'), 'selection'),
        (dict(n_folds=1), 'n_folds'),
        (dict(n_folds=10_000), 'n_folds'),
        (dict(true_probs=np.ones((3, 3))), 'true_probs'),
    ])
    def test_invalid_arguments(self, fitter, robust_capability, choice_dataset, kwargs, name):
        ds = choice_dataset
        with pytest.raises(ValidationError, match=name):
            flexible_mnl(ds.formula, ds.data, fitter=fitter, verbose=False, **kwargs)
        assert robust_capability.calls == []

    def test_missing_column(self, fitter, choice_dataset):
        with pytest.raises(ValidationError, match='x9'):
            flexible_mnl('choice ~ x9', choice_dataset.data, fitter=fitter, verbose=False)


# =============================================================================
# functional_form_test
# =============================================================================

@pytest.mark.estimation
class TestFunctionalFormTest:

    def test_ranked_by_metric(self, fitter, choice_dataset):
        ds = choice_dataset
        result = functional_form_test(ds.formula, ds.data, n_folds=3,
                                      true_probs=ds.true_probs, fitter=fitter, verbose=False)

        assert list(result.ranked['RMSE']) == sorted(result.ranked['RMSE'])
        assert result.ranked['Form'].iloc[0] == result.best_form
        assert set(result.ranked['Form']) == {'linear', 'quadratic', 'log'}
        assert result.metric == 'rmse'

    def test_improvement_over_linear(self, fitter, choice_dataset):
        ds = choice_dataset
        result = functional_form_test(ds.formula, ds.data, metric='brier', cross_validate=False,
                                      fitter=fitter, verbose=False)

        ranked = result.ranked.set_index('Form')
        baseline = ranked.loc['linear', 'Brier']
        best = ranked.loc[result.best_form, 'Brier']
        assert result.improvement == pytest.approx(100 * (baseline - best) / baseline)
        assert result.improvement >= 0

    def test_no_linear_baseline(self, fitter, choice_dataset):
        ds = choice_dataset
        result = functional_form_test(ds.formula, ds.data, forms=['quadratic', 'log'],
                                      metric='aic', cross_validate=False,
                                      fitter=fitter, verbose=False)
        assert result.improvement is None
        assert 'over linear' not in result.recommendation

    def test_summary(self, fitter, choice_dataset, capsys):
        ds = choice_dataset
        result = functional_form_test(ds.formula, ds.data, forms=['linear', 'quadratic'],
                                      n_folds=3, fitter=fitter)

        out = capsys.readouterr().out
        assert 'FUNCTIONAL FORM TEST RESULTS' in out
        assert f"Best form: {result.best_form}" in result.summary()
        assert 'Ranked by RMSE (cross-validated)' in result.summary()

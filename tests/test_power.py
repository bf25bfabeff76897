"""
Tests for Simulation-Based Power Analysis
=========================================
"""

import warnings

import pytest
import numpy as np

from conftest import AlwaysFailing, Missing

from mnlbench.errors import ValidationError
from mnlbench.estimation.safe_fit import SafeDualModelFitter
from mnlbench.models.base import ModelType
from mnlbench.validation.power_analysis import default_sample_sizes, power_analysis


@pytest.mark.simulation
class TestPowerAnalysis:

    def run_small(self, fitter, **kwargs):
        params = dict(effect_size=0.8, n_sims=5, sample_sizes=[100, 200], seed=1,
                      fitter=fitter, verbose=False)
        params.update(kwargs)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            return power_analysis(**params)

    def test_curve(self, fitter):
        result = self.run_small(fitter)

        assert list(result.curve['n']) == [100, 200]
        assert list(result.curve['n_fitted']) == [5, 5]
        assert result.curve['power'].between(0, 1).all()
        assert (result.curve['se'] >= 0).all()

    def test_coefficient_power(self, fitter):
        result = self.run_small(fitter)
        table = result.coefficient_power

        # 2 sizes x 3 terms x 2 non-reference alternatives
        assert len(table) == 12
        assert set(table['term']) == {'(Intercept)', 'x1', 'x2'}
        assert table['power'].between(0, 1).all()

    def test_required_n_consistent_with_curve(self, fitter):
        result = self.run_small(fitter, power=0.5)
        if result.required_n is None:
            assert result.warnings
            assert (result.curve['power'] < 0.5).all()
        else:
            assert result.curve.loc[result.curve['n'] == result.required_n, 'power'].iloc[0] >= 0.5
            assert result.warnings == []

    def test_seeds(self, fitter, robust_capability):
        self.run_small(fitter, n_sims=2, sample_sizes=[100])
        assert robust_capability.calls == [1 + 100 * 1000, 1 + 100 * 1000 + 1]

    def test_fragile_never_used(self, fitter, fragile_capability):
        self.run_small(fitter, n_sims=2, sample_sizes=[100])
        assert fragile_capability.calls == []

    def test_unfitted_sizes_warn(self):
        fitter = SafeDualModelFitter(robust=AlwaysFailing(ModelType.ROBUST), fragile=Missing())

        with pytest.warns(UserWarning, match='Target power not achieved'):
            result = power_analysis(0.5, n_sims=2, sample_sizes=[100], fitter=fitter, verbose=False)

        assert result.required_n is None
        assert result.curve['n_fitted'].iloc[0] == 0
        assert np.isnan(result.curve['power'].iloc[0])
        assert result.coefficient_power.empty
        assert 'not achieved' in result.summary()


@pytest.mark.unit
class TestPowerValidation:

    def test_default_sample_sizes(self):
        assert default_sample_sizes(0.8) == [50, 100, 150, 200, 250, 300]
        assert default_sample_sizes(0.5) == [100, 200, 300, 400, 500, 600]
        assert default_sample_sizes(0.3)[0] == 200
        assert default_sample_sizes(0.3)[-1] == 1000

    @pytest.mark.parametrize("kwargs,name", [
        (dict(alpha=0.0), 'alpha'),
        (dict(alpha=1.5), 'alpha'),
        (dict(power=1.0), 'power'),
        (dict(n_sims=0), 'n_sims'),
        (dict(effect_size=-0.1), 'effect_size'),
    ])
    def test_invalid_arguments(self, fitter, kwargs, name):
        params = dict(effect_size=0.5, fitter=fitter, verbose=False)
        params.update(kwargs)
        with pytest.raises(ValidationError, match=name):
            power_analysis(**params)

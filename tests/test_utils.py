"""
Tests for Utilities and the Command-Line Script
===============================================
"""

import importlib.util
import json
import logging
from pathlib import Path

import pytest

from mnlbench.utils.cleanup import remove_estimation_artifacts
from mnlbench.utils.logging_config import BenchmarkLogger, FitLogger, JsonFormatter

PROJECT_ROOT = Path(__file__).parent.parent


def load_script(name: str):
    spec = importlib.util.spec_from_file_location(name, PROJECT_ROOT / 'scripts' / f'{name}.py')
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.unit
class TestCleanup:

    def test_removes_only_model_artifacts(self, tmp_path):
        for name in ('mnl_7.html', 'mnl_7~00.html', 'mnl_7.pickle', '__mnl_7.iter',
                     'mnl_7.csv', 'other.html'):
            (tmp_path / name).write_text('x')

        removed = remove_estimation_artifacts('mnl_7', directory=tmp_path)

        assert sorted(p.name for p in removed) == ['__mnl_7.iter', 'mnl_7.html',
                                                   'mnl_7.pickle', 'mnl_7~00.html']
        assert sorted(p.name for p in tmp_path.iterdir()) == ['mnl_7.csv', 'other.html']

    def test_empty_directory(self, tmp_path):
        assert remove_estimation_artifacts('nothing', directory=tmp_path) == []


@pytest.mark.unit
class TestLogging:

    def test_json_formatter(self):
        record = logging.LogRecord('mnlbench.test', logging.WARNING, __file__, 1,
                                   'cell %d failed', (3,), None)
        payload = json.loads(JsonFormatter().format(record))

        assert payload['level'] == 'WARNING'
        assert payload['logger'] == 'mnlbench.test'
        assert payload['message'] == 'cell 3 failed'

    def test_fit_logger_prints_when_verbose(self, capsys):
        log = FitLogger('MNP', verbose=True)
        log.attempt(1, 3, seed=12445)
        log.attempt_failed(1, 'numerical', 'Sigma not positive definite')
        log.fallback('robust')

        out = capsys.readouterr().out
        assert 'attempt 1 of 3 (seed 12445)' in out
        assert '[numerical]' in out
        assert 'Fallback policy: robust' in out

    def test_quiet_loggers(self, capsys):
        FitLogger('MNP', verbose=False).exhausted(3)
        BenchmarkLogger(verbose=False).progress(10, 100)
        assert capsys.readouterr().out == ''

    def test_failures_reach_log(self, caplog):
        with caplog.at_level(logging.WARNING, logger='mnlbench'):
            BenchmarkLogger(verbose=False).cell_failed(4, 'fragile_failed', 'no convergence')
        assert 'Cell 4 fragile_failed' in caplog.text


@pytest.mark.unit
class TestRunBenchmarkScript:

    @pytest.fixture
    def script(self, monkeypatch):
        module = load_script('run_benchmark')
        monkeypatch.setattr(module, 'setup_logging', lambda **kwargs: None)
        monkeypatch.setattr(module, 'configure_warnings', lambda **kwargs: None)
        return module

    def test_flags_override_config_file(self, script, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'sample_sizes': [100], 'n_replications': 4}))

        args = script.argparse.Namespace(
            config=str(path), sample_sizes=[250, 500], correlations=None, effect_sizes=None,
            forms=None, replications=None, seed=None, workers=None, output=None,
            checkpoint_every=None, max_attempts=None, parallel=True,
        )
        config = script.build_config(args)

        assert config.sample_sizes == [250, 500]
        assert config.n_replications == 4
        assert config.parallel is True

    def test_plan_only(self, script, capsys):
        code = script.main(['--sample-sizes', '100', '250', '--correlations', '0', '0.5',
                            '--effect-sizes', '0.5', '--forms', 'linear', '--replications', '3',
                            '--plan-only'])
        assert code == 0
        assert 'Cells: 12' in capsys.readouterr().out

    def test_invalid_config_exit_code(self, script):
        assert script.main(['--correlations', '1.5', '--plan-only']) == 2

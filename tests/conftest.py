"""Pytest fixtures for internal_meta_sims tests."""

import matplotlib

matplotlib.use("Agg")

import pytest

from internal_meta_sims import PoolingModel, SimulationParameters, StudyResult


class ScriptedSimulator:
    """Study simulator stub returning pre-set results in order."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    def __call__(self, n, d, rng, equal_var=True):
        result = self.results[self.calls]
        self.calls += 1
        return result


@pytest.fixture
def forbidden_pool():
    """Pooler that fails the test if it is ever called."""

    def _pool(studies, model):
        raise AssertionError("pool must not be called")

    return _pool


@pytest.fixture
def scripted():
    """Factory building a ScriptedSimulator from p-values or StudyResults."""

    def _make(values):
        results = [
            v if isinstance(v, StudyResult) else StudyResult(p_value=v, effect_size=0.3, variance=0.08)
            for v in values
        ]
        return ScriptedSimulator(results)

    return _make


@pytest.fixture
def params():
    """Factory for SimulationParameters with test defaults."""

    def _make(**overrides):
        values = dict(n_studies=5, d=0.0, n=20, method=PoolingModel.FIXED_EFFECT)
        values.update(overrides)
        return SimulationParameters(**values)

    return _make

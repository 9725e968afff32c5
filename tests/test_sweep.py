"""
Tests for grid construction, sweeps, summaries, the CSV cache and plotting.
"""
import functools

import matplotlib.pyplot as plt
import pandas as pd
import pytest

import internal_meta_sims.aggregate_runs as aggregate_runs
from internal_meta_sims import (
    AggregateRuns,
    AnalyzeRuns,
    InvalidParameterError,
    PoolingModel,
    create_simulation_grid,
    plot_meta_results,
    run_fixed_budget,
    run_simulation_grid,
)


def test_grid_is_full_cross_product():
    grid = create_simulation_grid(n_studies=(2, 3), d=(0.0, 0.5), n=(20,), method=('FE', 'HE'))
    assert len(grid) == 8
    assert {p.method for p in grid} == {PoolingModel.FIXED_EFFECT, PoolingModel.RANDOM_EFFECTS}
    assert grid[0].to_dict()['method'] == 'FE'


def test_grid_rejects_unknown_selector():
    with pytest.raises(InvalidParameterError):
        create_simulation_grid(method=('DL',))


def test_grid_rejects_fractional_counts():
    with pytest.raises(InvalidParameterError):
        create_simulation_grid(n=(20.5,))
    with pytest.raises(InvalidParameterError):
        create_simulation_grid(n_studies=(2.5,))


def test_fixed_budget_sweep_has_one_pooled_row_per_run():
    grid = create_simulation_grid(n_studies=(3,), d=(0.2,), n=(20,), method=('FE',))
    df = run_simulation_grid(grid, runner='fixed_budget', n_iterations=25, seed=1)

    assert len(df) == 25 * 4
    assert (df['study'] == 0).sum() == 25
    assert set(df['gate_status']) == {'pooled'}
    assert df['p_value'].between(0, 1).all()


def test_gated_sweep_has_no_pooled_row_for_failed_gates():
    grid = create_simulation_grid(n_studies=(4,), d=(0.0,), n=(20,), method=('HE',),
                                  pmax_first=(0.3,))
    df = run_simulation_grid(grid, runner='first_pass', n_iterations=100, seed=2)

    failed = df[df['gate_status'] == 'gate_failed']
    assert not failed.empty
    assert (failed['study'] == 1).all()
    pooled_runs = df[df['study'] == 0][['combination', 'iteration']]
    assert len(pooled_runs) == df[df['gate_status'] == 'pooled'][['combination', 'iteration']] \
        .drop_duplicates().shape[0]


def test_unknown_runner_is_rejected():
    grid = create_simulation_grid(n_studies=(2,), d=(0.0,), n=(20,), method=('FE',))
    with pytest.raises(InvalidParameterError):
        run_simulation_grid(grid, runner='optional_stopping', n_iterations=5)


def test_sweeps_are_reproducible():
    grid = create_simulation_grid(n_studies=(2, 5), d=(0.0, 0.3), n=(15,), method=('FE', 'HE'))
    first = run_simulation_grid(grid, runner='iterative_pool', n_iterations=50, seed=99)
    second = run_simulation_grid(grid, runner='iterative_pool', n_iterations=50, seed=99)
    other = run_simulation_grid(grid, runner='iterative_pool', n_iterations=50, seed=100)

    assert first.to_csv(index=False) == second.to_csv(index=False)
    assert not first.equals(other)


def test_parallel_sweep_matches_sequential():
    grid = create_simulation_grid(n_studies=(3,), d=(0.0, 0.5), n=(20,), method=('FE',))
    sequential = run_simulation_grid(grid, runner='first_pass', n_iterations=30, seed=5)
    parallel = run_simulation_grid(grid, runner='first_pass', n_iterations=30, seed=5, n_jobs=2)
    pd.testing.assert_frame_equal(sequential, parallel)


def test_fixed_budget_false_positive_rate_is_nominal_under_null():
    grid = create_simulation_grid(n_studies=(3,), d=(0.0,), n=(20,), method=('FE',))
    df = run_simulation_grid(grid, runner='fixed_budget', n_iterations=10000, seed=2024)
    summary = AnalyzeRuns(df, alpha=0.05).summarize()

    assert summary.loc[0, 'n_iterations'] == 10000
    assert summary.loc[0, 'prop_significant'] == pytest.approx(0.05, abs=0.02)


def test_iterative_pooling_inflates_false_positives():
    grid = create_simulation_grid(n_studies=(1, 8), d=(0.0,), n=(20,), method=('FE',),
                                  pmax_first=(1.0,), minitarget=(0.05,))
    df = run_simulation_grid(grid, runner='iterative_pool', n_iterations=2000, seed=8)
    summary = AnalyzeRuns(df).summarize().set_index('n_studies')
    assert summary.loc[8, 'prop_significant'] > summary.loc[1, 'prop_significant'] + 0.03


def _hand_made_results():
    rows = [
        # combination, iteration, study, p_value, gate_status
        (0, 0, 1, 0.01, 'pooled'), (0, 0, 2, 0.30, 'pooled'), (0, 0, 0, 0.01, 'pooled'),
        (0, 1, 1, 0.02, 'pooled'), (0, 1, 2, 0.40, 'pooled'), (0, 1, 0, 0.20, 'pooled'),
        (0, 2, 1, 0.60, 'gate_failed'),
        (0, 3, 1, 0.03, 'pooled'), (0, 3, 2, 0.01, 'pooled'), (0, 3, 0, 0.04, 'pooled'),
    ]
    df = pd.DataFrame(rows, columns=['combination', 'iteration', 'study', 'p_value', 'gate_status'])
    df['effect_size'] = 0.1
    df['n_studies'] = 2
    df['d'] = 0.0
    df['method'] = 'FE'
    return df


def test_summary_counts_gate_failures_as_non_significant():
    analyzer = AnalyzeRuns(_hand_made_results(), alpha=0.05, param_cols=['n_studies', 'd', 'method'])
    summary = analyzer.summarize()

    row = summary.iloc[0]
    assert row['n_iterations'] == 4
    assert row['prop_significant'] == pytest.approx(0.5)
    assert row['prop_gate_passed'] == pytest.approx(0.75)
    assert row['prop_significant_given_pooled'] == pytest.approx(2 / 3)
    assert row['mean_studies'] == pytest.approx(7 / 4)

    table = analyzer.get_summary_table(summary)
    assert list(table.columns) == ['n_studies', 'd', 'method', 'n_iterations', 'prop_significant',
                                   'mc_se', 'prop_gate_passed', 'mean_studies']


def test_analyzer_requires_run_columns():
    with pytest.raises(ValueError):
        AnalyzeRuns(pd.DataFrame({'p_value': [0.1]}))


def test_print_results(capsys):
    AnalyzeRuns(_hand_made_results(), param_cols=['n_studies', 'd', 'method']).print_results()
    out = capsys.readouterr().out
    assert "Internal Meta-Analysis Simulation Results" in out
    assert "Passed initial gate: 0.7500" in out


def test_cache_round_trip(tmp_path):
    grid = create_simulation_grid(n_studies=(2,), d=(0.5,), n=(20,), method=('HE',))
    df = run_simulation_grid(grid, n_iterations=10, seed=3)

    cache = AggregateRuns('power', folder_path=str(tmp_path))
    path = cache.save_sweep(df, tag='test')
    assert path.endswith('power_sweep_test.csv')

    loaded = cache.load_sweeps()
    assert set(loaded['sweep']) == {'test'}
    pd.testing.assert_frame_equal(loaded.drop(columns='sweep'), df, check_dtype=False)


def test_load_sweeps_skips_unreadable_files(tmp_path):
    grid = create_simulation_grid(n_studies=(2,), d=(0.0,), n=(20,), method=('FE',))
    cache = AggregateRuns('fpr', folder_path=str(tmp_path))
    cache.save_sweep(run_simulation_grid(grid, n_iterations=5), tag='good')
    (tmp_path / 'fpr_sweep_empty.csv').write_text('')

    with pytest.warns(UserWarning, match='fpr_sweep_empty.csv'):
        loaded = cache.load_sweeps()
    assert set(loaded['sweep']) == {'good'}


def test_load_sweeps_without_files_returns_none(tmp_path):
    assert AggregateRuns('missing', folder_path=str(tmp_path)).load_sweeps() is None


def test_load_or_run_reuses_cached_sweep(tmp_path, monkeypatch):
    grid = create_simulation_grid(n_studies=(2,), d=(0.2,), n=(20,), method=('FE',))
    cache = AggregateRuns('power', folder_path=str(tmp_path))
    first = cache.load_or_run(grid, runner='fixed_budget', n_iterations=10, seed=4)

    def fail(*args, **kwargs):
        raise AssertionError("sweep should have been loaded from cache")

    monkeypatch.setattr(aggregate_runs, 'run_simulation_grid', fail)
    second = cache.load_or_run(grid, runner='fixed_budget', n_iterations=10, seed=4)
    pd.testing.assert_frame_equal(first, second, check_dtype=False)


def test_plot_meta_results(tmp_path):
    grid = create_simulation_grid(n_studies=(2, 3), d=(0.0, 0.5), n=(20,), method=('FE', 'HE'))
    df = run_simulation_grid(grid, n_iterations=20, seed=6)
    summary = AnalyzeRuns(df).summarize()

    save_path = tmp_path / 'power.png'
    fig, axes = plot_meta_results(summary, save_path=str(save_path))
    assert axes.shape == (2, 2)
    assert save_path.exists()
    plt.close(fig)


def test_summary_of_several_cached_sweeps(tmp_path):
    """Sweeps loaded together reuse combination numbers; each is summarized separately."""
    cache = AggregateRuns('power', folder_path=str(tmp_path))
    small = create_simulation_grid(n_studies=(2,), d=(0.0,), n=(20,), method=('FE',))
    large = create_simulation_grid(n_studies=(4,), d=(0.5,), n=(20,), method=('HE',))
    cache.load_or_run(small, n_iterations=15, seed=1)
    cache.load_or_run(large, n_iterations=10, seed=1)

    loaded = cache.load_sweeps()
    analyzer = AnalyzeRuns(loaded)
    summary = analyzer.summarize()

    assert len(summary) == 2
    assert sorted(summary['n_iterations']) == [10, 15]
    assert set(summary['n_studies']) == {2, 4}
    assert set(summary['sweep']) == set(loaded['sweep'])
    assert list(analyzer.get_summary_table(summary).columns[:2]) == ['sweep', 'n_studies']


def test_sweep_tag_identifies_named_runners():
    grid = create_simulation_grid(n_studies=(2,), d=(0.0,), n=(20,), method=('FE',))
    by_function = AggregateRuns.sweep_tag(grid, run_fixed_budget, 10, 1)
    assert by_function == AggregateRuns.sweep_tag(grid, run_fixed_budget, 10, 1)
    assert by_function != AggregateRuns.sweep_tag(grid, 'fixed_budget', 10, 1)
    assert by_function != AggregateRuns.sweep_tag(grid, run_fixed_budget, 10, 2)


@pytest.mark.parametrize("runner", [
    functools.partial(run_fixed_budget),
    lambda params, rng: run_fixed_budget(params, rng),
])
def test_sweep_tag_rejects_anonymous_runners(runner):
    grid = create_simulation_grid(n_studies=(2,), d=(0.0,), n=(20,), method=('FE',))
    with pytest.raises(InvalidParameterError):
        AggregateRuns.sweep_tag(grid, runner, 10, 1)

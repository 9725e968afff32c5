"""
Internal Meta-Analysis Simulations

This package provides Monte Carlo simulations of internal meta-analysis: pooling
several small two-group studies reported in one article into a single test.
It estimates the power of the pooled test and the false-positive rates of two
p-hacking policies (gating on the first study, and re-pooling after every new
study until the pooled result is significant).

Main Components:
- Effect size and variance estimators, the study simulator and the
  fixed-effect / random-effects pooler
- Runners: run_fixed_budget, run_first_pass, run_iterative_pool
- Sweep functions: create_simulation_grid, run_simulation_grid, plot_meta_results
- AnalyzeRuns: proportion of significant pooled results per parameter combination
- AggregateRuns: CSV cache for simulation sweeps
"""

from .run_meta_calcs import (
    DEFAULT_SEED,
    InvalidParameterError,
    PoolingUndefinedError,
    effect_size_from_t,
    effect_size_variance,
    StudyResult,
    simulate_study,
    PoolingModel,
    PooledResult,
    estimate_tau_squared,
    pool_studies,
    GateStatus,
    SimulationParameters,
    RunRecord,
    make_generator,
    run_fixed_budget,
    run_first_pass,
    run_iterative_pool,
    RUNNERS,
    create_simulation_grid,
    run_simulation_grid,
    plot_meta_results
)
from .analyze_runs import AnalyzeRuns
from .aggregate_runs import AggregateRuns

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_SEED",
    "InvalidParameterError",
    "PoolingUndefinedError",
    "effect_size_from_t",
    "effect_size_variance",
    "StudyResult",
    "simulate_study",
    "PoolingModel",
    "PooledResult",
    "estimate_tau_squared",
    "pool_studies",
    "GateStatus",
    "SimulationParameters",
    "RunRecord",
    "make_generator",
    "run_fixed_budget",
    "run_first_pass",
    "run_iterative_pool",
    "RUNNERS",
    "create_simulation_grid",
    "run_simulation_grid",
    "plot_meta_results",
    "AnalyzeRuns",
    "AggregateRuns"
]

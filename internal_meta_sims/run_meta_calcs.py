import pandas as pd
import numpy as np
import numbers
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from scipy import stats
from itertools import product
from joblib import Parallel, delayed
import matplotlib.pyplot as plt
import seaborn as sns

DEFAULT_SEED = 42


class InvalidParameterError(ValueError):
    """A simulation parameter is outside the domain the simulations are defined on."""


class PoolingUndefinedError(RuntimeError):
    """Raised when pooling is attempted on an empty set of studies."""


# =============================================================================
# 1. EFFECT SIZE AND VARIANCE ESTIMATION
# =============================================================================

def effect_size_from_t(t: float, n1: int, n2: int) -> float:
    """
    Convert an independent-samples t statistic to a standardized mean difference.

    Parameters:
    -----------
    t : float
        t statistic of the two-group comparison
    n1 : int
        Sample size of group 1
    n2 : int
        Sample size of group 2

    Returns:
    --------
    float : t * sqrt(1/n1 + 1/n2)
    """
    if n1 <= 0 or n2 <= 0:
        raise InvalidParameterError(f"Sample sizes must be positive, got n1={n1}, n2={n2}")
    return t * np.sqrt(1 / n1 + 1 / n2)


def effect_size_variance(d: float, n: int) -> float:
    """
    Sampling variance of a standardized mean difference with n per group.

    Uses df = 2n - 2 and (2/n + d²/(2·df)) · (2n/df). The evaluation order
    is fixed so results are reproducible to the last bit.
    """
    if n < 2:
        raise InvalidParameterError(f"Per-group sample size must be at least 2, got n={n}")
    df = 2 * n - 2
    return (2 / n + d ** 2 / (2 * df)) * (2 * n / df)

# =============================================================================
# 2. STUDY SIMULATION
# =============================================================================

@dataclass(frozen=True)
class StudyResult:
    """Outcome of one simulated two-group study."""

    p_value: float
    effect_size: float
    variance: float


def simulate_study(n: int, d: float, rng: np.random.Generator,
                   equal_var: bool = True) -> StudyResult:
    """
    Simulate one two-group study and test it with an independent-samples t-test.

    Parameters:
    -----------
    n : int
        Observations per group (>= 2)
    d : float
        True population effect size (treatment mean; control mean is 0, both SD 1)
    rng : np.random.Generator
        Random source; the treatment group is drawn before the control group
    equal_var : bool
        Pooled-variance Student test if True, Welch test otherwise (default: True)

    Returns:
    --------
    StudyResult : p-value, effect size and its sampling variance
    """
    treatment = rng.normal(loc=d, scale=1.0, size=n)
    control = rng.normal(loc=0.0, scale=1.0, size=n)

    t_stat, p_value = stats.ttest_ind(treatment, control, equal_var=equal_var)
    effect_size = effect_size_from_t(float(t_stat), n, n)

    return StudyResult(
        p_value=float(p_value),
        effect_size=float(effect_size),
        variance=float(effect_size_variance(effect_size, n)),
    )

# =============================================================================
# 3. POOLING - FIXED AND RANDOM EFFECTS
# =============================================================================

class PoolingModel(Enum):
    FIXED_EFFECT = "FE"
    RANDOM_EFFECTS = "HE"

    @classmethod
    def from_selector(cls, selector) -> "PoolingModel":
        """Map a model selector ("FE", "HE"/"RE" or a PoolingModel) to a PoolingModel."""
        if isinstance(selector, cls):
            return selector
        aliases = {
            'FE': cls.FIXED_EFFECT,
            'FIXED': cls.FIXED_EFFECT,
            'HE': cls.RANDOM_EFFECTS,
            'RE': cls.RANDOM_EFFECTS,
            'RANDOM': cls.RANDOM_EFFECTS,
        }
        if isinstance(selector, str) and selector.upper() in aliases:
            return aliases[selector.upper()]
        raise InvalidParameterError(
            f"Unknown pooling model {selector!r}; expected one of {sorted(aliases)}"
        )


@dataclass(frozen=True)
class PooledResult:
    """Meta-analytic summary of a sequence of studies."""

    pooled_effect_size: float
    pooled_p_value: float
    standard_error: float
    tau_squared: float
    n_studies: int
    model: PoolingModel


def _weighted_estimate(effects: np.ndarray, weights: np.ndarray) -> Tuple[float, float]:
    """Inverse-variance weighted mean and its standard error."""
    sum_w = np.sum(weights)
    estimate = np.sum(weights * effects) / sum_w
    standard_error = np.sqrt(1 / sum_w)
    return float(estimate), float(standard_error)


def estimate_tau_squared(effects: np.ndarray, variances: np.ndarray) -> float:
    """
    Between-study variance from the fixed-effect Q statistic.

    tau² = max(0, (Q - (k - 1)) / C) with C = Σw - Σw²/Σw and w = 1/v.
    Defined as 0 for a single study.
    """
    k = len(effects)
    if k < 2:
        return 0.0

    weights = 1 / variances
    fixed_estimate, _ = _weighted_estimate(effects, weights)
    sum_w = np.sum(weights)

    q_stat = np.sum(weights * (effects - fixed_estimate) ** 2)
    c_value = sum_w - np.sum(weights ** 2) / sum_w

    if c_value <= 0:
        return 0.0
    return float(max(0.0, (q_stat - (k - 1)) / c_value))


def pool_studies(studies: Sequence[StudyResult], model: PoolingModel) -> PooledResult:
    """
    Pool a sequence of studies into one effect size and a two-sided Wald p-value.

    Parameters:
    -----------
    studies : sequence of StudyResult
        Studies to combine (must not be empty)
    model : PoolingModel
        FIXED_EFFECT weights by 1/v; RANDOM_EFFECTS by 1/(v + tau²)

    Returns:
    --------
    PooledResult : pooled effect size, p-value, standard error and tau²
    """
    if len(studies) == 0:
        raise PoolingUndefinedError("Cannot pool an empty sequence of studies")

    effects = np.array([s.effect_size for s in studies], dtype=float)
    variances = np.array([s.variance for s in studies], dtype=float)

    if model is PoolingModel.FIXED_EFFECT:
        tau_squared = 0.0
    elif model is PoolingModel.RANDOM_EFFECTS:
        tau_squared = estimate_tau_squared(effects, variances)
    else:
        raise InvalidParameterError(f"Unknown pooling model {model!r}")

    estimate, standard_error = _weighted_estimate(effects, 1 / (variances + tau_squared))

    z_value = estimate / standard_error
    p_value = 2 * stats.norm.sf(np.abs(z_value))

    return PooledResult(
        pooled_effect_size=estimate,
        pooled_p_value=float(p_value),
        standard_error=standard_error,
        tau_squared=tau_squared,
        n_studies=len(studies),
        model=model,
    )

# =============================================================================
# 4. SIMULATION PARAMETERS AND RUN RECORDS
# =============================================================================

class GateStatus(Enum):
    POOLED = "pooled"
    GATE_FAILED = "gate_failed"


def _check_threshold(name: str, value: float):
    if not 0 < value <= 1:
        raise InvalidParameterError(f"{name} must be in (0, 1], got {value}")


def _check_count(name: str, value):
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidParameterError(f"{name} must be a whole number, got {value!r}")


@dataclass(frozen=True)
class SimulationParameters:
    """
    Configuration of one parameter combination.

    Parameters:
    -----------
    n_studies : int
        Maximum number of studies in a run (>= 1)
    d : float
        True population effect size
    n : int
        Observations per group (>= 2)
    method : PoolingModel
        Pooling model used whenever studies are combined
    pmax_first : float
        A first study with p >= pmax_first ends the run without pooling
    pmax_last : float
        First-pass runs stop collecting once a later study has p < pmax_last
    minitarget : float
        Iterative runs stop once the running pooled p-value is below this
    equal_var : bool
        Student (True) or Welch (False) t-test per study
    """

    n_studies: int
    d: float
    n: int
    method: PoolingModel
    pmax_first: float = 0.05
    pmax_last: float = 0.05
    minitarget: float = 0.05
    equal_var: bool = True

    def __post_init__(self):
        _check_count('n', self.n)
        _check_count('n_studies', self.n_studies)
        if self.n < 2:
            raise InvalidParameterError(f"Per-group sample size must be at least 2, got n={self.n}")
        if self.n_studies < 1:
            raise InvalidParameterError(f"Study budget must be at least 1, got n_studies={self.n_studies}")
        if not isinstance(self.method, PoolingModel):
            raise InvalidParameterError(
                f"method must be a PoolingModel, got {self.method!r}; "
                "use PoolingModel.from_selector() to parse selectors"
            )
        _check_threshold('pmax_first', self.pmax_first)
        _check_threshold('pmax_last', self.pmax_last)
        _check_threshold('minitarget', self.minitarget)

    def to_dict(self) -> Dict:
        params = asdict(self)
        params['method'] = self.method.value
        return params


@dataclass(frozen=True)
class RunRecord:
    """
    Result of one runner invocation.

    The per-study results and the pooled summary are kept apart; `to_rows`
    produces the flat table used for aggregation, where the pooled summary
    is the row with study == 0.
    """

    studies: Tuple[StudyResult, ...]
    gate_status: GateStatus
    pooled: Optional[PooledResult] = None

    @property
    def n_run(self) -> int:
        return len(self.studies)

    def to_rows(self) -> List[Dict]:
        rows = [
            {'study': i, 'p_value': s.p_value, 'effect_size': s.effect_size}
            for i, s in enumerate(self.studies, start=1)
        ]
        if self.pooled is not None:
            rows.append({
                'study': 0,
                'p_value': self.pooled.pooled_p_value,
                'effect_size': self.pooled.pooled_effect_size,
            })
        return rows


def make_generator(seed: int, combination: int = 0, iteration: int = 0) -> np.random.Generator:
    """Independent generator for one (combination, iteration) of a sweep seeded with `seed`."""
    return np.random.default_rng(np.random.SeedSequence([seed, combination, iteration]))

# =============================================================================
# 5. RUNNERS - STOPPING POLICIES
# =============================================================================

Simulator = Callable[..., StudyResult]
Pooler = Callable[[Sequence[StudyResult], PoolingModel], PooledResult]


def _draw(params: SimulationParameters, rng: np.random.Generator,
          simulate: Simulator) -> StudyResult:
    return simulate(params.n, params.d, rng, equal_var=params.equal_var)


def run_fixed_budget(params: SimulationParameters, rng: np.random.Generator,
                     simulate: Simulator = simulate_study,
                     pool: Pooler = pool_studies) -> RunRecord:
    """
    Run exactly `n_studies` studies and pool all of them (power analysis).
    """
    studies = tuple(_draw(params, rng, simulate) for _ in range(params.n_studies))
    pooled = pool(studies, params.method)
    return RunRecord(studies=studies, gate_status=GateStatus.POOLED, pooled=pooled)


def run_first_pass(params: SimulationParameters, rng: np.random.Generator,
                   simulate: Simulator = simulate_study,
                   pool: Pooler = pool_studies) -> RunRecord:
    """
    Gate on the first study, then collect until a study clears `pmax_last`.

    A first study with p >= pmax_first ends the run with a single row and no
    pooling. Otherwise studies 2..n_studies are run, stopping right after the
    first one with p < pmax_last, and every collected study is pooled.
    """
    first = _draw(params, rng, simulate)
    if first.p_value >= params.pmax_first:
        return RunRecord(studies=(first,), gate_status=GateStatus.GATE_FAILED)

    studies = [first]
    for _ in range(2, params.n_studies + 1):
        study = _draw(params, rng, simulate)
        studies.append(study)
        if study.p_value < params.pmax_last:
            break

    pooled = pool(studies, params.method)
    return RunRecord(studies=tuple(studies), gate_status=GateStatus.POOLED, pooled=pooled)


def run_iterative_pool(params: SimulationParameters, rng: np.random.Generator,
                       simulate: Simulator = simulate_study,
                       pool: Pooler = pool_studies) -> RunRecord:
    """
    Gate on the first study, then re-pool after every new study.

    Stops as soon as the running pooled p-value is below `minitarget`, or
    after study `n_studies`, keeping the last pooled result. A budget of one
    study pools the first study on its own.
    """
    first = _draw(params, rng, simulate)
    if first.p_value >= params.pmax_first:
        return RunRecord(studies=(first,), gate_status=GateStatus.GATE_FAILED)

    studies = [first]
    pooled = None
    for _ in range(2, params.n_studies + 1):
        studies.append(_draw(params, rng, simulate))
        pooled = pool(studies, params.method)
        if pooled.pooled_p_value < params.minitarget:
            break

    if pooled is None:
        pooled = pool(studies, params.method)
    return RunRecord(studies=tuple(studies), gate_status=GateStatus.POOLED, pooled=pooled)


RUNNERS = {
    'fixed_budget': run_fixed_budget,
    'first_pass': run_first_pass,
    'iterative_pool': run_iterative_pool,
}

# =============================================================================
# 6. SIMULATION GRID SETUP
# =============================================================================

def create_simulation_grid(n_studies=(2, 3, 4, 5, 6, 7, 8),
                           d=(0.0, 0.2, 0.5),
                           n=(20, 50, 100),
                           method=('FE', 'HE'),
                           pmax_first=(0.05,),
                           pmax_last=(0.05,),
                           minitarget=(0.05,),
                           equal_var: bool = True) -> List[SimulationParameters]:
    """
    Cross all parameter values into a list of SimulationParameters.

    Parameters:
    -----------
    n_studies, d, n : sequences
        Study budgets, true effect sizes and per-group sample sizes
    method : sequence
        Pooling model selectors ('FE', 'HE' or PoolingModel members)
    pmax_first, pmax_last, minitarget : sequences
        Thresholds for the gated runners (ignored by run_fixed_budget)
    equal_var : bool
        Student (True) or Welch (False) t-test per study

    Returns:
    --------
    list : one SimulationParameters per combination, in itertools.product order
    """
    models = [PoolingModel.from_selector(m) for m in method]

    grid = []
    for k, effect, n_per_group, model, p_first, p_last, target in product(
            n_studies, d, n, models, pmax_first, pmax_last, minitarget):
        _check_count('n_studies', k)
        _check_count('n', n_per_group)
        grid.append(SimulationParameters(
            n_studies=int(k), d=float(effect), n=int(n_per_group), method=model,
            pmax_first=float(p_first), pmax_last=float(p_last),
            minitarget=float(target), equal_var=equal_var,
        ))
    return grid

# =============================================================================
# 7. SIMULATION GRID SEARCH
# =============================================================================

def _resolve_runner(runner):
    if callable(runner):
        return runner
    if runner not in RUNNERS:
        raise InvalidParameterError(f"Unknown runner {runner!r}; expected one of {sorted(RUNNERS)}")
    return RUNNERS[runner]


def _run_combination(combination: int, params: SimulationParameters, runner,
                     n_iterations: int, seed: int) -> List[Dict]:
    """All iterations of one parameter combination, flattened to table rows."""
    param_cols = params.to_dict()
    rows = []
    for iteration in range(n_iterations):
        record = runner(params, make_generator(seed, combination, iteration))
        for row in record.to_rows():
            rows.append({
                'combination': combination,
                'iteration': iteration,
                **row,
                'gate_status': record.gate_status.value,
                **param_cols,
            })
    return rows


def run_simulation_grid(grid: Sequence[SimulationParameters],
                        runner='fixed_budget',
                        n_iterations: int = 10000,
                        seed: int = DEFAULT_SEED,
                        n_jobs: int = 1,
                        verbose: bool = False) -> pd.DataFrame:
    """
    Run every parameter combination `n_iterations` times.

    Parameters:
    -----------
    grid : sequence of SimulationParameters
        Parameter combinations, e.g. from create_simulation_grid()
    runner : str or callable
        'fixed_budget', 'first_pass', 'iterative_pool' or a runner function
    n_iterations : int
        Runs per combination (default: 10000)
    seed : int
        Sweep seed; run (c, i) uses make_generator(seed, c, i)
    n_jobs : int
        Parallel jobs across combinations (1 = sequential). Results do not
        depend on n_jobs.
    verbose : bool
        Print progress

    Returns:
    --------
    pd.DataFrame : one row per study and per pooled result (study == 0)
    """
    runner_fn = _resolve_runner(runner)
    if n_iterations < 1:
        raise InvalidParameterError(f"n_iterations must be at least 1, got {n_iterations}")

    if verbose:
        print(f"Running {len(grid)} combinations x {n_iterations} iterations "
              f"with {getattr(runner_fn, '__name__', runner_fn)} (seed={seed})")

    if n_jobs == 1:
        chunks = []
        for combination, params in enumerate(grid):
            chunks.append(_run_combination(combination, params, runner_fn, n_iterations, seed))
            if verbose:
                print(f"  - Combination {combination + 1}/{len(grid)} done: {params.to_dict()}")
    else:
        chunks = Parallel(n_jobs=n_jobs)(
            delayed(_run_combination)(combination, params, runner_fn, n_iterations, seed)
            for combination, params in enumerate(grid)
        )

    columns = ['combination', 'iteration', 'study', 'p_value', 'effect_size', 'gate_status',
               'n_studies', 'd', 'n', 'method', 'pmax_first', 'pmax_last', 'minitarget',
               'equal_var']
    return pd.DataFrame([row for chunk in chunks for row in chunk], columns=columns)

# =============================================================================
# 8. VISUALIZATION
# =============================================================================

def plot_meta_results(summary_df: pd.DataFrame, x: str = 'n_studies', hue: str = 'n',
                      alpha: float = 0.05, title: str = 'Proportion of significant pooled results',
                      save_path=None):
    """
    Plot the proportion of significant pooled results, one panel per pooling model
    and true effect size.

    Parameters:
    -----------
    summary_df : pd.DataFrame
        Output of AnalyzeRuns.get_summary_table()
    x : str
        Column on the x axis (default: 'n_studies')
    hue : str
        Column distinguishing lines (default: 'n')
    alpha : float
        Nominal level drawn as a reference line
    save_path : str, optional
        Where to save the figure
    """
    plot_df = summary_df.copy()
    methods = sorted(plot_df['method'].unique())
    effects = sorted(plot_df['d'].unique())

    fig, axes = plt.subplots(len(effects), len(methods), squeeze=False,
                             figsize=(6 * len(methods), 4 * len(effects)), sharey=True)
    fig.suptitle(title, fontsize=16, fontweight='bold')

    for i, effect in enumerate(effects):
        for j, method in enumerate(methods):
            ax = axes[i, j]
            subset = plot_df[(plot_df['d'] == effect) & (plot_df['method'] == method)]
            sns.lineplot(data=subset, x=x, y='prop_significant', hue=hue,
                         marker='o', palette='viridis', ax=ax)
            ax.axhline(alpha, color='red', linestyle='--', linewidth=1)
            ax.set_title(f'd = {effect}, method = {method}')
            ax.set_xlabel(x)
            ax.set_ylabel('Proportion p < alpha')
            ax.set_ylim(0, 1)
            ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"Plot saved to: {save_path}")

    return fig, axes

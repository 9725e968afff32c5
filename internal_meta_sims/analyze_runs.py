import pandas as pd
import numpy as np
import warnings

PARAM_COLS = ['n_studies', 'd', 'n', 'method', 'pmax_first', 'pmax_last', 'minitarget', 'equal_var']


class AnalyzeRuns:
    def __init__(self,
                 results_df: pd.DataFrame,
                 alpha: float = 0.05,
                 param_cols: list = None,
                 verbose: bool = False):
        """
        Summarize simulation sweeps into power / false-positive rates.

        Parameters:
        -----------
        results_df : pd.DataFrame
            Output of run_simulation_grid(); pooled results are the rows with study == 0
        alpha : float, default 0.05
            Significance level applied to the pooled p-values
        param_cols : list, optional
            Parameter columns carried into the summary (default: PARAM_COLS present in results_df)
        verbose : bool, default False
            Print summaries while computing
        """
        required = {'combination', 'iteration', 'study', 'p_value', 'gate_status'}
        if not required.issubset(results_df.columns):
            raise ValueError(f"results_df must include columns: {required}")

        self.results_df = results_df
        self.alpha = alpha
        self.param_cols = param_cols if param_cols is not None else [
            c for c in PARAM_COLS if c in results_df.columns
        ]
        self.verbose = verbose
        # cached sweeps concatenated by AggregateRuns.load_sweeps reuse combination numbers
        self.combination_keys = (['sweep'] if 'sweep' in results_df.columns else []) + ['combination']

    def pooled_results(self) -> pd.DataFrame:
        """Rows holding the pooled (meta-analytic) result of each run."""
        return self.results_df[self.results_df['study'] == 0]

    def per_run(self) -> pd.DataFrame:
        """
        One row per (combination, iteration) run, per sweep when a sweep column is present.

        Returns:
        --------
        pd.DataFrame
            gate_status, number of studies run and whether the pooled p-value
            is below alpha (runs stopped at the gate are never significant)
        """
        df = self.results_df
        run_keys = self.combination_keys + ['iteration']
        runs = df.groupby(run_keys).agg(
            gate_status=('gate_status', 'first'),
            n_run=('study', lambda s: int((s > 0).sum())),
        )

        pooled = self.pooled_results().set_index(run_keys)['p_value']
        significant = (pooled < self.alpha).reindex(runs.index, fill_value=False)
        runs['significant'] = significant.astype(bool)
        return runs

    def summarize(self) -> pd.DataFrame:
        """
        Proportion of significant pooled results per parameter combination.

        Returns:
        --------
        pd.DataFrame with columns:
            - prop_significant: power (d != 0) or false-positive rate (d == 0)
            - mc_se: Monte Carlo standard error of prop_significant
            - prop_gate_passed: share of runs that reached pooling
            - prop_significant_given_pooled: rate among runs that reached pooling
            - mean_studies: average number of studies run
        """
        runs = self.per_run().reset_index()
        runs['pooled'] = runs['gate_status'] == 'pooled'

        summary = runs.groupby(self.combination_keys).agg(
            n_iterations=('iteration', 'size'),
            n_significant=('significant', 'sum'),
            n_pooled=('pooled', 'sum'),
            prop_significant=('significant', 'mean'),
            prop_gate_passed=('pooled', 'mean'),
            mean_studies=('n_run', 'mean'),
        )

        p = summary['prop_significant']
        summary['mc_se'] = np.sqrt(p * (1 - p) / summary['n_iterations'])
        summary['prop_significant_given_pooled'] = (
            summary['n_significant'] / summary['n_pooled'].replace(0, np.nan)
        )

        if summary['n_pooled'].eq(0).any():
            warnings.warn("Some combinations never passed the initial gate; "
                          "prop_significant_given_pooled is NaN for them")

        if self.param_cols:
            params = self.results_df.groupby(self.combination_keys)[self.param_cols].first()
            summary = params.join(summary)

        summary = summary.reset_index()

        if self.verbose:
            self.print_results(summary)

        return summary

    def print_results(self, summary: pd.DataFrame = None):
        """Pretty print the per-combination rates"""
        if summary is None:
            summary = self.summarize()

        print("=== Internal Meta-Analysis Simulation Results ===")
        print(f"Combinations: {len(summary)}")
        print(f"Significance level: α = {self.alpha}")
        print("=" * 60)

        for _, row in summary.iterrows():
            label = ", ".join(f"{c}={row[c]}" for c in self.combination_keys[:-1] + self.param_cols)
            print(f"\n{label}:")
            print(f"  Iterations: {row['n_iterations']}")
            print(f"  Proportion p < {self.alpha}: {row['prop_significant']:.4f} (MC SE {row['mc_se']:.4f})")
            print(f"  Passed initial gate: {row['prop_gate_passed']:.4f}")
            print(f"  Mean studies run: {row['mean_studies']:.2f}")

    def get_summary_table(self, summary: pd.DataFrame = None, decimals: int = 4) -> pd.DataFrame:
        """
        Compact summary table for reporting.

        Parameters:
        -----------
        summary : pd.DataFrame, optional
            Output of summarize(); computed if not given
        decimals : int, default 4
            Rounding applied to the rate columns

        Returns:
        --------
        pd.DataFrame
            Parameter columns plus prop_significant, mc_se, prop_gate_passed, mean_studies
        """
        if summary is None:
            summary = self.summarize()

        sweep_cols = [c for c in self.combination_keys if c != 'combination']
        cols = sweep_cols + self.param_cols + ['n_iterations', 'prop_significant', 'mc_se',
                                  'prop_gate_passed', 'mean_studies']
        table = summary[cols].copy()
        rate_cols = ['prop_significant', 'mc_se', 'prop_gate_passed', 'mean_studies']
        table[rate_cols] = table[rate_cols].round(decimals)
        return table

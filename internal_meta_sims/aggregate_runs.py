import os
import glob
import hashlib
import warnings
from datetime import datetime

import pandas as pd

from .run_meta_calcs import DEFAULT_SEED, InvalidParameterError, run_simulation_grid


class AggregateRuns:
    def __init__(self,
                 analysis_name: str,
                 folder_path: str = '.',
                 verbose: bool = False):
        """
        Cache simulation sweeps as CSV files so costly sweeps are not re-run.

        Files are named {analysis_name}_sweep_{tag}.csv inside folder_path.
        """
        self.analysis_name = analysis_name
        self.folder_path = folder_path
        self.verbose = verbose

    def sweep_path(self, tag: str) -> str:
        return os.path.join(self.folder_path, f'{self.analysis_name}_sweep_{tag}.csv')

    @staticmethod
    def sweep_tag(grid, runner, n_iterations: int, seed: int) -> str:
        """
        Stable tag identifying a sweep by its grid, runner, iteration count and seed.

        Callable runners are identified by module and qualified name, so they
        must be named module-level functions; lambdas, nested functions and
        partials are rejected.
        """
        if isinstance(runner, str):
            runner_name = runner
        else:
            qualname = getattr(runner, '__qualname__', None)
            if qualname is None or '<' in qualname:
                raise InvalidParameterError(
                    f"Cannot identify runner {runner!r} for caching; "
                    "pass a runner name or a module-level function"
                )
            runner_name = f"{runner.__module__}.{qualname}"
        signature = repr(([p.to_dict() for p in grid], runner_name, n_iterations, seed))
        return hashlib.sha1(signature.encode('utf-8')).hexdigest()[:12]

    def save_sweep(self, results_df: pd.DataFrame, tag: str = None) -> str:
        """
        Write one sweep table to disk.

        Parameters:
        -----------
        results_df : pd.DataFrame
            Output of run_simulation_grid()
        tag : str, optional
            File tag; a timestamp (YYYYmmdd_HHMMSS) if not given

        Returns:
        --------
        str : path of the written file
        """
        if tag is None:
            tag = datetime.now().strftime('%Y%m%d_%H%M%S')
        os.makedirs(self.folder_path, exist_ok=True)
        path = self.sweep_path(tag)
        results_df.to_csv(path, index=False)
        if self.verbose:
            print(f"Sweep saved to: {path} ({len(results_df)} rows)")
        return path

    def read_sweep(self, path: str) -> pd.DataFrame:
        return pd.read_csv(path, float_precision='round_trip')

    def load_sweeps(self):
        """
        Load and concatenate every cached sweep for this analysis.

        Unreadable files are skipped with a warning. Returns None if nothing
        could be loaded.
        """
        pattern = os.path.join(self.folder_path, f'{self.analysis_name}_sweep_*.csv')
        csv_files = sorted(glob.glob(pattern))

        if not csv_files:
            if self.verbose:
                print(f"No files found matching pattern: {pattern}")
            return None

        if self.verbose:
            print(f"Found {len(csv_files)} files")

        dataframes = []
        for file_path in csv_files:
            filename = os.path.basename(file_path)
            try:
                df = self.read_sweep(file_path)
            except (OSError, ValueError) as e:
                warnings.warn(f"Skipping {filename}: {e}")
                continue

            tag = filename[len(f'{self.analysis_name}_sweep_'):-len('.csv')]
            df['sweep'] = tag
            dataframes.append(df)

            if self.verbose:
                print(f"  - {filename}: {len(df)} rows")

        if not dataframes:
            if self.verbose:
                print("No valid files processed")
            return None

        return pd.concat(dataframes, ignore_index=True)

    def load_or_run(self, grid, runner='fixed_budget', n_iterations: int = 10000,
                    seed: int = DEFAULT_SEED, n_jobs: int = 1) -> pd.DataFrame:
        """
        Return the cached sweep for these arguments, running and saving it if absent.
        """
        tag = self.sweep_tag(grid, runner, n_iterations, seed)
        path = self.sweep_path(tag)

        if os.path.exists(path):
            if self.verbose:
                print(f"Loading cached sweep: {path}")
            return self.read_sweep(path)

        results_df = run_simulation_grid(grid, runner=runner, n_iterations=n_iterations,
                                         seed=seed, n_jobs=n_jobs, verbose=self.verbose)
        self.save_sweep(results_df, tag=tag)
        return results_df

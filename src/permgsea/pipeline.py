"""Main pipeline implementation for phenotype-permutation enrichment FDR."""

import json
import logging
import multiprocessing
import os
import platform
import shutil
import time
from collections import Counter
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import numpy as np
import polars as pl
from tqdm.auto import tqdm

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,
    'disable': False,
}

from .config import PipelineConfig
from .data import (
    load_input_data,
    filter_low_counts,
    default_min_samples,
    shuffle_labels,
    comparison_groups,
)
from .de import run_differential_expression
from .enrichment import EnrichmentSettings, FDR_COLUMN, run_enrichment
from .errors import InvalidInputError, NoCompletedTrialsError, PipelineError
from .ranking import build_ranked_list, write_ranked_list
from .stats import (
    NullDistributionTable,
    aggregate_null_distribution,
    compare_with_engine_fdr,
    estimate_empirical_fdr,
    replace_zero_fdr,
    saturation_analysis,
)
from .utils import available_workers, ensure_dir


@dataclass(frozen=True)
class TrialContext:
    """Read-only inputs shared by every trial.

    All artifact locations are derived from ``work_dir`` and the trial
    index, so concurrent trials never write to the same path.
    """

    counts: pl.DataFrame
    labels: pl.DataFrame
    test_class: str
    reference_class: str
    enrichment: EnrichmentSettings
    work_dir: Path
    gene_id_delimiter: str = "|"
    keep_artifacts: bool = True

    def trial_dir(self, trial: int) -> Path:
        return Path(self.work_dir) / f"trial_{trial:04d}"


@dataclass
class TrialResult:
    """Outcome of one trial: enrichment records or the reason it failed."""

    trial: int
    records: Optional[pl.DataFrame] = None
    error_stage: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.records is not None

    @classmethod
    def failure(cls, trial: int, stage: str, message: str) -> "TrialResult":
        return cls(trial=trial, error_stage=stage, error_message=message)


@dataclass
class RunSummary:
    """Trial bookkeeping reported at the end of a run."""

    trials_requested: int
    trials_completed: int = 0
    failures: Dict[str, int] = field(default_factory=dict)
    gene_sets_estimated: int = 0
    gene_sets_significant: int = 0
    fdr_threshold: float = 0.05
    null_table_source: str = "trials"

    @property
    def trials_excluded(self) -> int:
        return sum(self.failures.values())

    @property
    def partial(self) -> bool:
        return self.trials_excluded > 0

    def to_dict(self) -> dict:
        return {
            'trials_requested': self.trials_requested,
            'trials_completed': self.trials_completed,
            'trials_excluded': self.trials_excluded,
            'failures_by_stage': dict(sorted(self.failures.items())),
            'gene_sets_estimated': self.gene_sets_estimated,
            'gene_sets_significant': self.gene_sets_significant,
            'fdr_threshold': self.fdr_threshold,
            'null_table_source': self.null_table_source,
        }


def run_trial(trial: int, context: TrialContext, seed: np.random.SeedSequence) -> TrialResult:
    """
    Run one randomised trial: shuffle -> DE -> rank -> enrichment.

    Defined at module level so it can be sent to worker processes. Errors
    raised by the pipeline stages are returned as a failed result.

    Args:
        trial: Trial index (1-based), used only for artifact names
        context: Shared read-only inputs
        seed: Seed sequence owned by this trial

    Returns:
        TrialResult with the trial's NAME/ES/NES records or its failure
    """
    rng = np.random.default_rng(seed)
    trial_dir = context.trial_dir(trial)

    try:
        shuffled = shuffle_labels(context.labels, rng)
        groups = comparison_groups(shuffled, context.test_class, context.reference_class)
        de_results = run_differential_expression(
            context.counts,
            groups,
            context.test_class,
            context.reference_class,
            seed=int(rng.integers(2**31 - 1)),
        )
        ranked = build_ranked_list(de_results, delimiter=context.gene_id_delimiter)

        ensure_dir(trial_dir)
        ranked_file = write_ranked_list(ranked, trial_dir / "ranked.rnk")
        records = run_enrichment(
            ranked_file,
            trial_dir / "gsea",
            context.enrichment,
            label=f"trial_{trial:04d}",
        )
    except PipelineError as e:
        return TrialResult.failure(trial, e.stage, str(e))
    finally:
        if not context.keep_artifacts:
            shutil.rmtree(trial_dir, ignore_errors=True)

    return TrialResult(trial=trial, records=records.select(["NAME", "ES", "NES"]))


def run_trials(
    n_trials: int,
    context: TrialContext,
    num_workers: int = 1,
    seed: Optional[int] = None,
    trial_fn: Callable[[int, TrialContext, np.random.SeedSequence], TrialResult] = run_trial
) -> List[TrialResult]:
    """
    Run trials 1..n_trials and wait for all of them.

    Args:
        n_trials: Number of trials to run
        context: Shared read-only inputs
        num_workers: Worker processes; 1 runs trials in this process
        seed: Base seed; each trial gets an independent child sequence
        trial_fn: Function running a single trial (must be picklable)

    Returns:
        One TrialResult per trial, sorted by trial index
    """
    logger = logging.getLogger(__name__)
    seeds = np.random.SeedSequence(seed).spawn(n_trials)
    results: List[TrialResult] = []

    logger.info(f"Running {n_trials} trials with {num_workers} workers")

    with tqdm(total=n_trials, desc="Label permutations", unit="trial",
              **tqdm_kwargs, miniters=1, mininterval=0.25) as pbar:
        if num_workers > 1:
            # The pool is shut down by the context manager on every exit path
            with ProcessPoolExecutor(
                max_workers=num_workers,
                mp_context=multiprocessing.get_context('spawn')
            ) as executor:
                futures = {
                    executor.submit(trial_fn, trial, context, seeds[trial - 1]): trial
                    for trial in range(1, n_trials + 1)
                }
                for future in as_completed(futures):
                    trial = futures[future]
                    try:
                        results.append(future.result())
                    except Exception as e:
                        logger.error(f"Trial {trial} crashed in its worker: {str(e)}")
                        results.append(TrialResult.failure(trial, "worker", str(e)))
                    pbar.update(1)
        else:
            for trial in range(1, n_trials + 1):
                try:
                    results.append(trial_fn(trial, context, seeds[trial - 1]))
                except Exception as e:
                    logger.error(f"Trial {trial} raised an unexpected error: {str(e)}")
                    results.append(TrialResult.failure(trial, "worker", str(e)))
                pbar.update(1)

    results.sort(key=lambda r: r.trial)
    for result in results:
        if not result.ok:
            logger.warning(f"Trial {result.trial} excluded ({result.error_stage}): {result.error_message}")

    return results


class PermutationFDRPipeline:
    """Main class for running the phenotype-permutation FDR analysis."""

    def __init__(self, config: Union[str, Path, PipelineConfig]):
        """Initialise the pipeline.

        Args:
            config: Path to the TOML configuration file or a loaded PipelineConfig
        """
        self.config = config if isinstance(config, PipelineConfig) else PipelineConfig(config)
        self.logger = logging.getLogger(__name__)
        self.base_enrichment = EnrichmentSettings(
            permutations=self.config.trial_permutations,
            **self.config.get_enrichment_options()
        )
        self._load_input_data()

    def _load_input_data(self):
        """Load, validate and filter the input data."""
        self.logger.debug("Starting to load input data files")

        gene_sets_file = Path(self.config.input_files['gene_sets_file'])
        if not gene_sets_file.is_file():
            raise InvalidInputError(f"Input file not found: {gene_sets_file} (specified as gene_sets_file)")
        self.gene_sets_file = gene_sets_file

        self.raw_counts, self.labels = load_input_data(
            self.config.input_files['counts_file'],
            self.config.input_files['classes_file'],
            self.config.test_class,
            self.config.reference_class,
        )

        min_samples = self.config.min_samples
        if min_samples is None:
            min_samples = default_min_samples(
                self.labels, [self.config.test_class, self.config.reference_class]
            )
        self.counts = filter_low_counts(self.raw_counts, self.config.min_cpm, int(min_samples))

        self.logger.debug("Finished loading input data files")

    def enrichment_settings(self, permutations: int) -> EnrichmentSettings:
        """Shared enrichment options with the given internal permutation count."""
        return self.base_enrichment.with_permutations(permutations)

    def run_real(self, work_dir: Path) -> pl.DataFrame:
        """
        Run DE and enrichment on the observed labels.

        Any error here is fatal since the real run is the comparison baseline.

        Args:
            work_dir: Directory for the real run's artifacts

        Returns:
            Real-run enrichment records with all report columns
        """
        self.logger.info("Running differential expression and enrichment on the observed labels")
        ensure_dir(work_dir)

        groups = comparison_groups(self.labels, self.config.test_class, self.config.reference_class)
        de_results = run_differential_expression(
            self.counts,
            groups,
            self.config.test_class,
            self.config.reference_class,
            seed=self.config.seed,
        )
        ranked = build_ranked_list(de_results, delimiter=self.config.gene_id_delimiter)
        ranked_file = write_ranked_list(ranked, work_dir / "ranked.rnk")

        records = run_enrichment(
            ranked_file,
            work_dir / "gsea",
            self.enrichment_settings(self.config.real_permutations),
            label="real",
        )
        self.logger.info(f"Real run scored {records.height} gene sets")
        return records

    def trial_context(self, work_dir: Path) -> TrialContext:
        return TrialContext(
            counts=self.counts,
            labels=self.labels,
            test_class=self.config.test_class,
            reference_class=self.config.reference_class,
            enrichment=self.enrichment_settings(self.config.trial_permutations),
            work_dir=work_dir,
            gene_id_delimiter=self.config.gene_id_delimiter,
            keep_artifacts=self.config.keep_trial_artifacts,
        )

    def run(self) -> RunSummary:
        """Run the complete analysis and save its results.

        Returns:
            RunSummary describing trial completion and significant gene sets
        """
        self.logger.info("Starting phenotype-permutation FDR pipeline")
        start_time = time.time()
        output_path = ensure_dir(self.config.get_output_path())
        n_trials = self.config.n_trials

        self.real_results = self.run_real(output_path / 'real_run')

        self.summary = RunSummary(trials_requested=n_trials, fdr_threshold=self.config.fdr_threshold)
        null_file = self.config.input_files.get('null_distribution_file')

        if null_file:
            self.logger.info(f"Loading null distribution from {null_file}; skipping trials")
            self.null_table = NullDistributionTable.read(null_file)
            self.summary.trials_completed = self.null_table.n_trials
            self.summary.null_table_source = str(null_file)
            missing = n_trials - self.null_table.n_trials
            if missing > 0:
                # Trials of the original run that never reached the saved table
                self.summary.failures = {"unavailable": missing}
            self.trial_results = []
        elif self.config.run_trials:
            num_workers = available_workers(self.config.num_threads)
            self.trial_results = run_trials(
                n_trials,
                self.trial_context(ensure_dir(output_path / 'trials')),
                num_workers=num_workers,
                seed=self.config.seed,
            )
            completed = [r for r in self.trial_results if r.ok]
            self.summary.trials_completed = len(completed)
            self.summary.failures = dict(Counter(r.error_stage for r in self.trial_results if not r.ok))
            self.null_table = aggregate_null_distribution((r.trial, r.records) for r in completed)
        else:
            raise InvalidInputError("Trials are disabled and no null_distribution_file was given")

        if self.summary.trials_completed == 0:
            raise NoCompletedTrialsError(
                f"None of the {n_trials} trials completed "
                f"(failures: {', '.join(f'{k}={v}' for k, v in sorted(self.summary.failures.items())) or 'none'})"
            )
        if self.summary.partial:
            self.logger.warning(
                f"{self.summary.trials_excluded} of {n_trials} trials were excluded; "
                f"continuing with {self.summary.trials_completed}"
            )

        self.logger.info(f"Estimating empirical FDR against a pool of {n_trials} trials")
        self.fdr_results = estimate_empirical_fdr(self.real_results, self.null_table, n_trials)
        self.summary.gene_sets_estimated = self.fdr_results.height
        self.summary.gene_sets_significant = self.fdr_results.filter(
            pl.col('fdr_q') < self.config.fdr_threshold
        ).height

        self.saturation = None
        if self.config.run_saturation:
            sizes = self.config.get_saturation_sizes(n_trials)
            self.logger.info(f"Running saturation analysis over {len(sizes)} trial counts")
            self.saturation = saturation_analysis(
                self.real_results, self.null_table, sizes, self.config.fdr_threshold
            )

        self.logger.info("Saving results")
        self.save_results()

        self.logger.info(
            f"Trials requested={n_trials}, completed={self.summary.trials_completed}, "
            f"excluded={self.summary.trials_excluded}; "
            f"{self.summary.gene_sets_significant} of {self.summary.gene_sets_estimated} gene sets "
            f"with FDR < {self.config.fdr_threshold}"
        )
        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")
        return self.summary

    def empirical_report(self) -> pl.DataFrame:
        """Real-run report with FDR.q.val replaced by the empirical FDR."""
        columns = self.real_results.columns
        if FDR_COLUMN not in columns:
            columns = columns + [FDR_COLUMN]
        merged = self.real_results.join(
            self.fdr_results.select([pl.col('gene_set').alias('NAME'), 'fdr_q']),
            on='NAME',
            how='inner',
        )
        return merged.with_columns(pl.col('fdr_q').alias(FDR_COLUMN)).select(columns)

    def save_results(self, output_dir: Optional[str] = None):
        """Save analysis results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if not hasattr(self, 'fdr_results'):
            self.logger.warning("No results to save. Run the pipeline first.")
            return

        output_path = Path(output_dir) if output_dir else self.config.get_output_path()
        data_path = ensure_dir(output_path / 'data')

        # 1. Report for downstream consumers: real-run schema, empirical FDR
        report_file = data_path / 'empirical_fdr_report.tsv'
        self.empirical_report().write_csv(report_file, separator='\t')
        self.logger.info(f"Saved empirical FDR report to {report_file}")

        fdr_file = data_path / 'empirical_fdr.tsv'
        self.fdr_results.sort('nominal_p').write_csv(fdr_file, separator='\t')

        # 2. Real run with engine FDR floored at one permutation
        real = self.real_results
        if FDR_COLUMN in real.columns:
            real = real.with_columns(pl.Series(
                FDR_COLUMN,
                replace_zero_fdr(real[FDR_COLUMN].to_numpy(), self.config.real_permutations),
            ))
            compare_with_engine_fdr(self.real_results, self.fdr_results, self.config.real_permutations).write_csv(
                data_path / 'engine_fdr_comparison.tsv', separator='\t'
            )
        real.write_csv(data_path / 'real_enrichment.tsv', separator='\t')

        # 3. Saturation curve
        if self.saturation is not None:
            self.saturation.write_csv(data_path / 'saturation.tsv', separator='\t')

        # 4. Null distribution
        if self.config.save_intermediate:
            self.null_table.write(data_path / 'null_distribution.tsv')
            self.null_table.to_wide('ES').write_csv(data_path / 'null_distribution_es_wide.tsv', separator='\t')

        # 5. Run summary
        summary_file = data_path / 'run_summary.json'
        with open(summary_file, 'w') as f:
            json.dump(self.summary.to_dict(), f, indent=2)
        self.logger.info(f"Saved run summary to {summary_file}")

        # 6. Configuration used for this analysis
        config_file = data_path / 'pipeline_config.json'
        with open(config_file, 'w') as f:
            config_dict = {
                'input_files': {k: str(v) for k, v in self.config.input_files.items()
                                if isinstance(v, (str, bytes, os.PathLike))},
                'output': self.config.output_config,
                'analysis': self.config.analysis_params,
                'enrichment': self.config.enrichment_params,
                'trials': self.config.trial_params,
                'fdr': self.config.fdr_params,
                'saturation': self.config.saturation_params,
            }
            json.dump(config_dict, f, indent=2, default=str)
        self.config.save_config(data_path / 'pipeline_config.toml')

        # 7. README with explanation of output files
        readme_file = output_path / 'README.md'
        with open(readme_file, 'w') as f:
            f.write("# Phenotype-Permutation Enrichment FDR Results\n\n")
            f.write(f"Analysis completed on {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            f.write(f"Comparison: {self.config.test_class} vs {self.config.reference_class}\n\n")
            f.write(f"Trials requested: {self.summary.trials_requested}, "
                    f"completed: {self.summary.trials_completed}, "
                    f"excluded: {self.summary.trials_excluded}\n\n")

            f.write("## Files\n\n")
            f.write("- `data/empirical_fdr_report.tsv`: Real enrichment report with FDR.q.val replaced by the empirical FDR\n")
            f.write("- `data/empirical_fdr.tsv`: Observed ES, empirical p-value and BH FDR per gene set\n")
            f.write("- `data/real_enrichment.tsv`: Enrichment report of the observed labels\n")
            f.write("- `data/engine_fdr_comparison.tsv`: Enrichment tool FDR next to the empirical FDR\n")
            f.write("- `data/saturation.tsv`: Significant gene sets for growing numbers of trials\n")
            f.write("- `data/run_summary.json`: Trial completion and failure counts\n")
            f.write("- `data/pipeline_config.json`: Configuration used for this analysis\n")
            f.write("- `data/pipeline_config.toml`: Configuration in the input format, reusable as a config file\n")
            if self.config.save_intermediate:
                f.write("- `data/null_distribution.tsv`: Null ES/NES values per gene set and trial\n")
                f.write("- `data/null_distribution_es_wide.tsv`: Null ES as a gene set x trial table\n")

        self.logger.info(f"Saved README to {readme_file}")

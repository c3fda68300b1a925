"""
Test cases for the phenotype-permutation FDR pipeline.
"""

import dataclasses
import json

import pytest
import numpy as np
import polars as pl

from permgsea.config import PipelineConfig
from permgsea.enrichment import EnrichmentSettings
from permgsea.errors import FittingFailureError, InvalidInputError, NoCompletedTrialsError
from permgsea.pipeline import (
    PermutationFDRPipeline,
    RunSummary,
    TrialContext,
    TrialResult,
    run_trial,
    run_trials,
)

from conftest import synthetic_counts


def _fake_trial(trial, context, seed):
    """Trial stand-in: trial 2 fails to fit, trial 4 crashes outright."""
    if trial == 2:
        return TrialResult.failure(trial, "fit", "singular design")
    if trial == 4:
        raise RuntimeError("worker died")
    rng = np.random.default_rng(seed)
    return TrialResult(trial=trial, records=pl.DataFrame({
        'NAME': ['A', 'B'],
        'ES': rng.normal(size=2),
        'NES': rng.normal(size=2),
    }))


@pytest.fixture
def trial_context(tmp_path, fake_gsea_cli, gene_sets_file):
    counts, classes = synthetic_counts()
    return TrialContext(
        counts=counts,
        labels=classes,
        test_class='tumor',
        reference_class='normal',
        enrichment=EnrichmentSettings(
            gsea_cli=str(fake_gsea_cli),
            gene_sets_file=str(gene_sets_file),
            permutations=1,
        ),
        work_dir=tmp_path / 'trials',
    )


@pytest.fixture
def config_dict(tmp_path, expression_files, fake_gsea_cli, gene_sets_file):
    """Configuration for a small end-to-end run."""
    counts_file, classes_file = expression_files
    return {
        'input': {
            'counts_file': str(counts_file),
            'classes_file': str(classes_file),
            'gene_sets_file': str(gene_sets_file),
        },
        'output': {
            'directory': str(tmp_path / 'results'),
        },
        'analysis': {
            'test_class': 'tumor',
            'reference_class': 'normal',
            'num_threads': 1,
            'seed': 7,
        },
        'enrichment': {
            'gsea_cli': str(fake_gsea_cli),
            'real_permutations': 10,
        },
        'trials': {
            'number': 20,
        },
        'saturation': {
            'step': 5,
        },
    }


def test_run_trials_collects_failures():
    results = run_trials(5, context=None, num_workers=1, seed=3, trial_fn=_fake_trial)

    assert [r.trial for r in results] == [1, 2, 3, 4, 5]
    assert [r.ok for r in results] == [True, False, True, False, True]
    assert results[1].error_stage == 'fit'
    assert results[3].error_stage == 'worker'
    assert 'worker died' in results[3].error_message


def test_run_trials_reproducible_seeds():
    first = run_trials(3, context=None, seed=11, trial_fn=_fake_trial)
    second = run_trials(3, context=None, seed=11, trial_fn=_fake_trial)

    assert first[0].records.equals(second[0].records)
    # Each trial draws from its own stream
    assert not first[0].records.equals(first[2].records)


def test_run_trial(trial_context, fake_de):
    result = run_trial(1, trial_context, np.random.SeedSequence(0))

    assert result.ok
    assert result.records.columns == ['NAME', 'ES', 'NES']
    assert sorted(result.records['NAME'].to_list()) == ['SET_DOWN', 'SET_FLAT', 'SET_UP']
    assert (trial_context.trial_dir(1) / 'ranked.rnk').exists()
    assert trial_context.trial_dir(1).name == 'trial_0001'


def test_run_trial_discards_artifacts(trial_context, fake_de):
    context = dataclasses.replace(trial_context, keep_artifacts=False)
    result = run_trial(2, context, np.random.SeedSequence(0))

    assert result.ok
    assert not context.trial_dir(2).exists()


def test_run_trial_reports_fit_failure(trial_context, monkeypatch):
    def failing_de(*args, **kwargs):
        raise FittingFailureError("dispersion did not converge")

    monkeypatch.setattr("permgsea.pipeline.run_differential_expression", failing_de)
    result = run_trial(1, trial_context, np.random.SeedSequence(0))

    assert not result.ok
    assert result.error_stage == 'fit'
    assert 'dispersion' in result.error_message


def test_run_summary():
    summary = RunSummary(trials_requested=10, trials_completed=8, failures={'fit': 1, 'enrichment': 1})
    assert summary.trials_excluded == 2
    assert summary.partial
    assert summary.to_dict()['failures_by_stage'] == {'enrichment': 1, 'fit': 1}
    assert not RunSummary(trials_requested=3, trials_completed=3).partial


def test_pipeline_end_to_end(config_dict, fake_de, tmp_path):
    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))
    summary = pipeline.run()

    assert summary.trials_requested == 20
    assert summary.trials_completed == 20
    assert not summary.partial
    assert pipeline.null_table.n_trials == 20

    data_dir = tmp_path / 'results' / 'data'
    for name in ('empirical_fdr_report.tsv', 'empirical_fdr.tsv', 'real_enrichment.tsv',
                 'engine_fdr_comparison.tsv', 'saturation.tsv', 'run_summary.json',
                 'pipeline_config.json'):
        assert (data_dir / name).exists(), name
    assert (tmp_path / 'results' / 'README.md').exists()
    assert not (data_dir / 'null_distribution.tsv').exists()

    fdr = pl.read_csv(data_dir / 'empirical_fdr.tsv', separator='\t')
    assert fdr['nominal_p'].min() >= 1 / 21
    assert fdr['fdr_q'].max() <= 1.0

    report = pl.read_csv(data_dir / 'empirical_fdr_report.tsv', separator='\t')
    assert report.columns == pipeline.real_results.columns
    assert sorted(report['NAME'].to_list()) == sorted(fdr['gene_set'].to_list())

    saturation = pl.read_csv(data_dir / 'saturation.tsv', separator='\t')
    assert saturation['prefix_size'].to_list() == [5, 10, 15, 20]

    with open(data_dir / 'run_summary.json') as f:
        assert json.load(f)['trials_completed'] == 20


def test_pipeline_partial_failure(config_dict, fake_de):
    config_dict['enrichment']['extra_args'] = ['-fail_prefix', 'trial_0003']
    config_dict['saturation']['run'] = False

    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))
    summary = pipeline.run()

    assert summary.trials_completed == 19
    assert summary.failures == {'enrichment': 1}
    assert summary.partial
    assert 3 not in pipeline.null_table.trials
    assert pipeline.saturation is None


def test_pipeline_total_failure(config_dict, fake_de):
    config_dict['enrichment']['extra_args'] = ['-fail_prefix', 'trial_']
    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))

    with pytest.raises(NoCompletedTrialsError, match="enrichment=20"):
        pipeline.run()


def test_pipeline_reuses_saved_null_table(config_dict, fake_de, tmp_path):
    config_dict['output']['save_intermediate'] = True
    first = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))
    first.run()

    null_file = tmp_path / 'results' / 'data' / 'null_distribution.tsv'
    assert null_file.exists()
    assert (tmp_path / 'results' / 'data' / 'null_distribution_es_wide.tsv').exists()

    config_dict['input']['null_distribution_file'] = str(null_file)
    config_dict['output']['directory'] = str(tmp_path / 'reused')
    second = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))
    summary = second.run()

    assert summary.null_table_source == str(null_file)
    assert second.null_table.trials == first.null_table.trials
    assert second.fdr_results['gene_set'].to_list() == first.fdr_results['gene_set'].to_list()
    assert second.fdr_results['fdr_q'].to_list() == pytest.approx(first.fdr_results['fdr_q'].to_list())
    assert not (tmp_path / 'reused' / 'trials').exists()


def test_pipeline_requires_a_null_source(config_dict, fake_de):
    config_dict['trials']['run'] = False
    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))

    with pytest.raises(InvalidInputError):
        pipeline.run()


def test_pipeline_missing_gene_sets(config_dict, tmp_path):
    config_dict['input']['gene_sets_file'] = str(tmp_path / 'missing.gmt')
    with pytest.raises(InvalidInputError, match="gene_sets_file"):
        PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))


def test_run_trials_in_worker_processes():
    results = run_trials(6, context=None, num_workers=2, seed=3, trial_fn=_fake_trial)

    assert [r.trial for r in results] == [1, 2, 3, 4, 5, 6]
    assert [r.ok for r in results] == [True, False, True, False, True, True]
    assert results[1].error_stage == 'fit'
    assert results[3].error_stage == 'worker'
    assert 'worker died' in results[3].error_message

    # Seeds belong to trials, not to workers
    sequential = run_trials(6, context=None, num_workers=1, seed=3, trial_fn=_fake_trial)
    assert results[0].records.equals(sequential[0].records)
    assert results[5].records.equals(sequential[5].records)


def test_run_trial_discards_artifacts_of_failed_trial(trial_context, fake_de):
    failing = dataclasses.replace(
        trial_context.enrichment, extra_args=('-fail_prefix', 'trial_')
    )
    context = dataclasses.replace(trial_context, enrichment=failing, keep_artifacts=False)
    result = run_trial(5, context, np.random.SeedSequence(0))

    assert not result.ok
    assert result.error_stage == 'enrichment'
    assert not context.trial_dir(5).exists()


def test_pipeline_rerun_into_same_directory(config_dict, fake_de, tmp_path):
    first = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict)).run()

    # A real rerun writes report folders with a new timestamp
    for folder in list((tmp_path / 'results').rglob('*.GseaPreranked.1700000000000')):
        folder.rename(folder.with_name(folder.name.replace('1700000000000', '1600000000000')))

    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))
    second = pipeline.run()

    assert second.trials_completed == first.trials_completed == 20
    assert not second.partial
    assert not list((tmp_path / 'results').rglob('*.GseaPreranked.1600000000000'))


def test_pipeline_enrichment_settings(config_dict):
    config_dict['enrichment']['trial_permutations'] = 2
    pipeline = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict))

    real = pipeline.enrichment_settings(pipeline.config.real_permutations)
    trial = pipeline.trial_context(pipeline.config.get_output_path('trials')).enrichment

    assert real.permutations == 10
    assert trial.permutations == 2
    assert dataclasses.replace(real, permutations=2) == trial


def test_pipeline_saves_reusable_toml_config(config_dict, fake_de, tmp_path):
    PermutationFDRPipeline(PipelineConfig.from_dict(config_dict)).run()

    saved = PipelineConfig(tmp_path / 'results' / 'data' / 'pipeline_config.toml')
    assert saved.config == config_dict
    assert saved.n_trials == 20


def test_pipeline_reused_table_reports_missing_trials(config_dict, fake_de, tmp_path):
    config_dict['output']['save_intermediate'] = True
    config_dict['enrichment']['extra_args'] = ['-fail_prefix', 'trial_0003']
    PermutationFDRPipeline(PipelineConfig.from_dict(config_dict)).run()

    null_file = tmp_path / 'results' / 'data' / 'null_distribution.tsv'
    config_dict['input']['null_distribution_file'] = str(null_file)
    config_dict['output']['directory'] = str(tmp_path / 'reused')
    summary = PermutationFDRPipeline(PipelineConfig.from_dict(config_dict)).run()

    assert summary.trials_completed == 19
    assert summary.trials_excluded == 1
    assert summary.partial
    assert summary.to_dict()['failures_by_stage'] == {'unavailable': 1}

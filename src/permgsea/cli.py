#!/usr/bin/env python3
"""
Command line interface for the phenotype-permutation FDR pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli

from .config import PipelineConfig
from .errors import NoCompletedTrialsError, PipelineError
from .pipeline import PermutationFDRPipeline
from .utils import setup_logging

EXIT_FAILURE = 1
EXIT_NO_TRIALS = 2


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Estimate gene-set enrichment FDR by permuting phenotype labels"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--counts",
        type=str,
        help="Override counts file path"
    )
    input_group.add_argument(
        "--classes",
        type=str,
        help="Override class definition file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override gene set (GMT) file path"
    )
    input_group.add_argument(
        "--null-table",
        type=str,
        help="Reuse a saved null distribution instead of running trials"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--save-intermediate",
        action="store_true",
        help="Save the null distribution tables"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--test-class",
        type=str,
        help="Override test class label"
    )
    analysis_group.add_argument(
        "--reference-class",
        type=str,
        help="Override reference class label"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of worker processes"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Override base random seed"
    )

    trial_group = parser.add_argument_group("Trial parameter overrides")
    trial_group.add_argument(
        "--trials",
        type=int,
        help="Override number of label permutations"
    )
    trial_group.add_argument(
        "--discard-trial-artifacts",
        action="store_true",
        help="Delete each trial's ranked list and report after it completes"
    )

    enrichment_group = parser.add_argument_group("Enrichment tool overrides")
    enrichment_group.add_argument(
        "--gsea-cli",
        type=str,
        help="Override path to the GSEA command-line launcher"
    )
    enrichment_group.add_argument(
        "--real-permutations",
        type=int,
        help="Override internal permutations for the real run"
    )

    fdr_group = parser.add_argument_group("FDR and saturation overrides")
    fdr_group.add_argument(
        "--fdr-threshold",
        type=float,
        help="Override FDR significance threshold"
    )
    fdr_group.add_argument(
        "--no-saturation",
        action="store_true",
        help="Disable saturation analysis"
    )
    fdr_group.add_argument(
        "--saturation-step",
        type=int,
        help="Override saturation prefix step"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug messages"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis', 'trials', 'enrichment', 'fdr', 'saturation'):
        config.setdefault(section, {})

    if args.counts:
        config['input']['counts_file'] = args.counts
    if args.classes:
        config['input']['classes_file'] = args.classes
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets
    if args.null_table:
        config['input']['null_distribution_file'] = args.null_table

    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.save_intermediate:
        config['output']['save_intermediate'] = True

    if args.test_class:
        config['analysis']['test_class'] = args.test_class
    if args.reference_class:
        config['analysis']['reference_class'] = args.reference_class
    if args.num_threads is not None:
        config['analysis']['num_threads'] = args.num_threads
    if args.seed is not None:
        config['analysis']['seed'] = args.seed

    if args.trials is not None:
        config['trials']['number'] = args.trials
    if args.discard_trial_artifacts:
        config['trials']['keep_artifacts'] = False

    if args.gsea_cli:
        config['enrichment']['gsea_cli'] = args.gsea_cli
    if args.real_permutations is not None:
        config['enrichment']['real_permutations'] = args.real_permutations

    if args.fdr_threshold is not None:
        config['fdr']['threshold'] = args.fdr_threshold
    if args.no_saturation:
        config['saturation']['run'] = False
    if args.saturation_step is not None:
        config['saturation']['step'] = args.saturation_step

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    config = update_config(config, args)

    output_dir = Path(config['output'].get('directory', config['output'].get('output_dir', 'results')))
    setup_logging(output_dir / 'logs', level=logging.DEBUG if args.verbose else logging.INFO)

    logging.info("Starting phenotype-permutation FDR pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    try:
        pipeline_config = PipelineConfig.from_dict(config, config_path=args.config_file)
        pipeline = PermutationFDRPipeline(pipeline_config)
        summary = pipeline.run()
    except NoCompletedTrialsError as e:
        logging.error(f"Total failure during {e.stage} stage: {str(e)}")
        sys.exit(EXIT_NO_TRIALS)
    except PipelineError as e:
        logging.error(f"Pipeline failed during {e.stage} stage: {str(e)}")
        sys.exit(EXIT_FAILURE)
    except ValueError as e:
        logging.error(f"Invalid configuration: {str(e)}")
        sys.exit(EXIT_FAILURE)

    if summary.partial:
        logging.warning(
            f"Partial result: {summary.trials_excluded} of {summary.trials_requested} trials excluded "
            f"({', '.join(f'{k}={v}' for k, v in sorted(summary.failures.items()))})"
        )
    logging.info("Pipeline execution completed successfully")


if __name__ == "__main__":
    main()

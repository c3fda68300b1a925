"""
Phenotype-Permutation Enrichment FDR
====================================

A Python package for estimating gene-set enrichment FDR from an empirical
null built by shuffling sample class labels.
"""

from .pipeline import PermutationFDRPipeline, run_trials, run_trial, TrialContext, TrialResult, RunSummary
from .config import PipelineConfig
from .data import (
    load_counts as load_counts,
    load_classes as load_classes,
    load_input_data as load_input_data,
    filter_low_counts as filter_low_counts,
    shuffle_labels as shuffle_labels,
)
from .ranking import (
    build_ranked_list as build_ranked_list,
    write_ranked_list as write_ranked_list,
    read_ranked_list as read_ranked_list,
)
from .enrichment import EnrichmentSettings, run_enrichment
from .stats import (
    NullDistributionTable,
    aggregate_null_distribution as aggregate_null_distribution,
    estimate_empirical_fdr as estimate_empirical_fdr,
    saturation_analysis as saturation_analysis,
)
from .errors import (
    PipelineError,
    InvalidInputError,
    FittingFailureError,
    EnrichmentToolError,
    ParseError,
    NoCompletedTrialsError,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "PermutationFDRPipeline",
    "PipelineConfig",
    "run_trials",
    "run_trial",
    "TrialContext",
    "TrialResult",
    "RunSummary",
    "load_counts",
    "load_classes",
    "load_input_data",
    "filter_low_counts",
    "shuffle_labels",
    "build_ranked_list",
    "write_ranked_list",
    "read_ranked_list",
    "EnrichmentSettings",
    "run_enrichment",
    "NullDistributionTable",
    "aggregate_null_distribution",
    "estimate_empirical_fdr",
    "saturation_analysis",
    "PipelineError",
    "InvalidInputError",
    "FittingFailureError",
    "EnrichmentToolError",
    "ParseError",
    "NoCompletedTrialsError",
    "setup_logging",
    "ensure_dir",
]

"""
Differential expression adapter around PyDESeq2.

The negative-binomial model itself is PyDESeq2's responsibility; this module
only prepares its inputs for a two-class comparison and returns the per-gene
statistics needed to build a ranked list.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
import polars as pl

from .errors import FittingFailureError

logger = logging.getLogger(__name__)

# Internal factor levels; PyDESeq2 is picky about characters in level names
_TEST_LEVEL = "test"
_REFERENCE_LEVEL = "reference"


def _design_frames(counts: pl.DataFrame, assignment: pl.DataFrame, test_class: str, reference_class: str):
    """Build the samples x genes count frame and the metadata frame PyDESeq2 expects."""
    assignment = assignment.filter(pl.col("label").is_in([test_class, reference_class]))
    sample_ids = assignment["sample_id"].to_list()
    conditions = [
        _TEST_LEVEL if label == test_class else _REFERENCE_LEVEL
        for label in assignment["label"].to_list()
    ]

    n_test = conditions.count(_TEST_LEVEL)
    n_reference = conditions.count(_REFERENCE_LEVEL)
    if n_test == 0 or n_reference == 0:
        raise FittingFailureError(
            f"Empty comparison group ({test_class}={n_test}, {reference_class}={n_reference})"
        )
    if n_test < 2 and n_reference < 2:
        raise FittingFailureError("No replicates in either group; dispersion cannot be estimated")

    matrix = counts.select(sample_ids).to_numpy().T.astype(np.int64)
    count_df = pd.DataFrame(matrix, index=sample_ids, columns=counts["gene_id"].to_list())
    metadata = pd.DataFrame({"condition": conditions}, index=sample_ids)
    return count_df, metadata


def run_differential_expression(
    counts: pl.DataFrame,
    assignment: pl.DataFrame,
    test_class: str,
    reference_class: str,
    seed: Optional[int] = None,
    n_cpus: int = 1
) -> pl.DataFrame:
    """
    Fit the NB model for one label assignment and test test vs reference.

    Args:
        counts: Counts DataFrame (``gene_id`` + sample columns), not modified
        assignment: DataFrame with ``sample_id`` and ``label`` columns
        test_class: Label of the test group
        reference_class: Label of the reference group
        seed: Seed for NumPy's global RNG used during model fitting
        n_cpus: CPUs PyDESeq2 may use (1 inside trial workers)

    Returns:
        DataFrame with ``gene_id``, ``log2FoldChange``, ``stat`` and ``pvalue``
    """
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats

    count_df, metadata = _design_frames(counts, assignment, test_class, reference_class)

    if seed is not None:
        np.random.seed(seed)

    try:
        inference = DefaultInference(n_cpus=n_cpus)
        dds = DeseqDataSet(
            counts=count_df,
            metadata=metadata,
            design="~condition",
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        ds = DeseqStats(
            dds,
            contrast=["condition", _TEST_LEVEL, _REFERENCE_LEVEL],
            inference=inference,
            quiet=True,
        )
        ds.summary()
        results = ds.results_df
    except Exception as e:
        raise FittingFailureError(f"Differential expression fit failed: {e}") from e

    # Genes the model did not test carry no evidence either way
    results = results.reindex(count_df.columns)
    de_results = pl.DataFrame({
        "gene_id": [str(g) for g in results.index],
        "log2FoldChange": results["log2FoldChange"].fillna(0.0).to_numpy(dtype=np.float64),
        "stat": results["stat"].fillna(0.0).to_numpy(dtype=np.float64),
        "pvalue": results["pvalue"].fillna(1.0).to_numpy(dtype=np.float64),
    })

    logger.debug(f"Tested {de_results.height} genes for {test_class} vs {reference_class}")
    return de_results

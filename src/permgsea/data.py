"""
Input loading, validation and label shuffling for the permutation FDR pipeline.
"""

from typing import List, Optional, Tuple, Union
from pathlib import Path
import logging

import numpy as np
import polars as pl

from .errors import InvalidInputError

logger = logging.getLogger(__name__)


def load_counts(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load a gene x sample count table.

    The first column holds gene identifiers and is renamed to ``gene_id``;
    every other column is a sample and must contain non-negative integers.

    Args:
        file_path: Path to tab-delimited counts file

    Returns:
        DataFrame with ``gene_id`` followed by one integer column per sample
    """
    try:
        df = pl.read_csv(file_path, separator='\t', has_header=True, infer_schema_length=10000)
    except (pl.exceptions.NoDataError, pl.exceptions.ComputeError) as e:
        raise InvalidInputError(f"Could not read counts file {file_path}: {e}")

    if df.width < 2:
        raise InvalidInputError(f"Counts file {file_path} has no sample columns")

    df = df.rename({df.columns[0]: 'gene_id'}).with_columns(pl.col('gene_id').cast(pl.Utf8))
    sample_ids = df.columns[1:]

    if len(set(sample_ids)) != len(sample_ids):
        raise InvalidInputError(f"Duplicate sample identifiers in counts file {file_path}")

    if df['gene_id'].is_duplicated().any():
        duplicated = df.filter(pl.col('gene_id').is_duplicated())['gene_id'].unique().to_list()
        raise InvalidInputError(f"Duplicate gene identifiers in counts file: {', '.join(duplicated[:5])}")

    fractional = [
        s for s in sample_ids
        if df[s].dtype.is_float() and (df[s] != df[s].floor()).any()
    ]
    if fractional:
        raise InvalidInputError(f"Counts file {file_path} contains non-integer values in {', '.join(fractional)}")

    try:
        df = df.with_columns([pl.col(s).cast(pl.Int64, strict=True) for s in sample_ids])
    except (pl.exceptions.InvalidOperationError, pl.exceptions.ComputeError) as e:
        raise InvalidInputError(f"Counts file {file_path} contains non-integer values: {e}")

    if df.select(pl.any_horizontal([pl.col(s).is_null() for s in sample_ids]).any()).item():
        raise InvalidInputError(f"Counts file {file_path} contains missing values")

    if df.select(pl.any_horizontal([pl.col(s) < 0 for s in sample_ids]).any()).item():
        raise InvalidInputError(f"Counts file {file_path} contains negative counts")

    logger.info(f"Loaded counts for {df.height} genes across {len(sample_ids)} samples")
    return df


def load_classes(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load the sample to class-label table.

    Args:
        file_path: Path to tab-delimited file with sample ids and class labels

    Returns:
        DataFrame with ``sample_id`` and ``label`` columns
    """
    try:
        df = pl.read_csv(file_path, separator='\t', has_header=True, infer_schema_length=0)
    except (pl.exceptions.NoDataError, pl.exceptions.ComputeError) as e:
        raise InvalidInputError(f"Could not read class definition file {file_path}: {e}")

    if df.width < 2:
        raise InvalidInputError(f"Class definition file {file_path} needs a sample and a label column")

    # Use the named columns when present, otherwise the first two
    sample_col = 'sample_id' if 'sample_id' in df.columns else df.columns[0]
    label_col = 'label' if 'label' in df.columns else df.columns[1]

    df = df.select([
        pl.col(sample_col).cast(pl.Utf8).alias('sample_id'),
        pl.col(label_col).cast(pl.Utf8).alias('label'),
    ])

    if df['sample_id'].is_duplicated().any():
        raise InvalidInputError(f"Duplicate sample identifiers in class definition file {file_path}")
    if df['label'].is_null().any():
        raise InvalidInputError(f"Class definition file {file_path} has samples without a label")

    return df


def validate_samples(counts: pl.DataFrame, classes: pl.DataFrame) -> pl.DataFrame:
    """
    Check that counts and class labels describe the same samples.

    Args:
        counts: Counts DataFrame from ``load_counts``
        classes: Class DataFrame from ``load_classes``

    Returns:
        Class DataFrame reordered to match the counts column order
    """
    count_samples = counts.columns[1:]
    class_samples = classes['sample_id'].to_list()

    missing_labels = sorted(set(count_samples) - set(class_samples))
    missing_counts = sorted(set(class_samples) - set(count_samples))
    if missing_labels or missing_counts:
        details = []
        if missing_labels:
            details.append(f"no class label for: {', '.join(missing_labels)}")
        if missing_counts:
            details.append(f"no counts for: {', '.join(missing_counts)}")
        raise InvalidInputError(f"Sample identifiers differ between counts and classes ({'; '.join(details)})")

    order = pl.DataFrame({'sample_id': count_samples})
    return order.join(classes, on='sample_id', how='left')


def check_comparison(classes: pl.DataFrame, test_class: str, reference_class: str) -> None:
    """
    Ensure both comparison classes are present in the label table.

    Args:
        classes: Class DataFrame
        test_class: Label of the test group
        reference_class: Label of the reference group
    """
    present = set(classes['label'].to_list())
    if len(present) < 2:
        raise InvalidInputError(f"Need at least 2 distinct classes, found {len(present)}")

    for name in (test_class, reference_class):
        if name not in present:
            raise InvalidInputError(
                f"Comparison class '{name}' not found in class labels ({', '.join(sorted(present))})"
            )


def counts_per_million(counts: pl.DataFrame) -> pl.DataFrame:
    """
    Convert raw counts to counts per million using library sizes.

    Args:
        counts: Counts DataFrame

    Returns:
        DataFrame with the same layout holding CPM values
    """
    sample_ids = counts.columns[1:]
    lib_sizes = counts.select([pl.col(s).sum() for s in sample_ids]).row(0)
    return counts.with_columns([
        (pl.col(s) / size * 1e6 if size > 0 else pl.lit(0.0)).alias(s)
        for s, size in zip(sample_ids, lib_sizes)
    ])


def filter_low_counts(
    counts: pl.DataFrame,
    min_cpm: float = 1.0,
    min_samples: int = 2
) -> pl.DataFrame:
    """
    Remove lowly expressed genes.

    A gene is kept when its CPM exceeds ``min_cpm`` in at least
    ``min_samples`` samples.

    Args:
        counts: Counts DataFrame
        min_cpm: CPM threshold
        min_samples: Number of samples that must pass the threshold

    Returns:
        Filtered counts DataFrame (raw counts, not CPM)
    """
    sample_ids = counts.columns[1:]
    cpm = counts_per_million(counts)
    passing = cpm.select(
        pl.sum_horizontal([(pl.col(s) > min_cpm).cast(pl.Int32) for s in sample_ids]).alias('n_pass')
    )['n_pass']

    filtered = counts.filter(passing >= min_samples)
    logger.info(
        f"Kept {filtered.height} of {counts.height} genes with CPM > {min_cpm} in at least {min_samples} samples"
    )

    if filtered.height == 0:
        raise InvalidInputError("No genes passed the low-count filter")

    return filtered


def shuffle_labels(labels: pl.DataFrame, rng: np.random.Generator) -> pl.DataFrame:
    """
    Randomly reassign class labels to samples.

    The whole label vector is permuted over all samples, so class sizes are
    preserved. Identity or repeated permutations are not excluded.

    Args:
        labels: DataFrame with ``sample_id`` and ``label`` columns
        rng: NumPy random generator owned by the caller

    Returns:
        New label DataFrame with permuted ``label`` column
    """
    label_values = labels['label'].to_numpy()
    if len(np.unique(label_values)) < 2:
        raise InvalidInputError("Cannot shuffle labels with fewer than 2 distinct classes")

    return labels.with_columns(
        pl.Series('label', rng.permutation(label_values), dtype=pl.Utf8)
    )


def comparison_groups(
    labels: pl.DataFrame,
    test_class: str,
    reference_class: str
) -> pl.DataFrame:
    """
    Restrict a label assignment to the two compared classes.

    Args:
        labels: DataFrame with ``sample_id`` and ``label`` columns
        test_class: Label of the test group
        reference_class: Label of the reference group

    Returns:
        DataFrame with the samples of the two classes, in input order
    """
    return labels.filter(pl.col('label').is_in([test_class, reference_class]))


def class_sizes(labels: pl.DataFrame) -> dict:
    """Number of samples per class label."""
    return dict(labels.group_by('label').agg(pl.len().alias('n')).iter_rows())


def default_min_samples(labels: pl.DataFrame, classes: Optional[List[str]] = None) -> int:
    """
    Smallest class size among the given classes.

    Args:
        labels: Label DataFrame
        classes: Classes to consider (all classes if None)

    Returns:
        Smallest group size, at least 1
    """
    sizes = class_sizes(labels)
    if classes is not None:
        sizes = {k: v for k, v in sizes.items() if k in classes}
    return max(1, min(sizes.values())) if sizes else 1


def load_input_data(
    counts_file: Union[str, Path],
    classes_file: Union[str, Path],
    test_class: str,
    reference_class: str
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    Load and cross-validate the counts and class definition files.

    Args:
        counts_file: Path to counts file
        classes_file: Path to class definition file
        test_class: Label of the test group
        reference_class: Label of the reference group

    Returns:
        Tuple of (counts DataFrame, label DataFrame in counts column order)
    """
    for file_path in (counts_file, classes_file):
        if not Path(file_path).is_file():
            raise InvalidInputError(f"Input file not found: {file_path}")

    counts = load_counts(counts_file)
    classes = validate_samples(counts, load_classes(classes_file))
    check_comparison(classes, test_class, reference_class)

    sizes = class_sizes(classes)
    logger.info("Class sizes: " + ", ".join(f"{k}={v}" for k, v in sorted(sizes.items())))

    return counts, classes

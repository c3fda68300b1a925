"""
Null distribution aggregation and empirical FDR estimation.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numba as nb
import numpy as np
import polars as pl
from statsmodels.stats.multitest import multipletests

from .errors import InvalidInputError, ParseError

logger = logging.getLogger(__name__)

NULL_SCHEMA = {"gene_set": pl.Utf8, "trial": pl.Int64, "ES": pl.Float64, "NES": pl.Float64}
FDR_SCHEMA = {"gene_set": pl.Utf8, "observed_ES": pl.Float64, "nominal_p": pl.Float64, "fdr_q": pl.Float64}


@nb.njit
def _count_more_extreme(observed: float, null_values) -> int:
    """
    Count null values beyond the observed score in its own direction.

    Negative scores count values strictly below, non-negative scores count
    values strictly above. NaN never counts.
    """
    count = 0
    if observed < 0:
        for i in range(len(null_values)):
            if null_values[i] < observed:
                count += 1
    else:
        for i in range(len(null_values)):
            if null_values[i] > observed:
                count += 1
    return count


class NullDistributionTable:
    """Per-gene-set ES/NES values collected from completed trials.

    Stored in long form: one row per (gene set, trial) that produced a
    score. A gene set a trial did not score simply has no row for that
    trial. Rows are kept sorted by trial then gene set, so two tables built
    from the same trials compare equal whatever order they were merged in.
    """

    def __init__(self, data: Optional[pl.DataFrame] = None):
        if data is None:
            data = pl.DataFrame(schema=NULL_SCHEMA)
        data = data.select([pl.col(c).cast(t) for c, t in NULL_SCHEMA.items()])

        if data.select(["trial", "gene_set"]).is_duplicated().any():
            raise ParseError("Null distribution has more than one value per gene set and trial")

        self.data = data.sort(["trial", "gene_set"])

    def __len__(self) -> int:
        return self.data.height

    def __eq__(self, other) -> bool:
        if not isinstance(other, NullDistributionTable):
            return NotImplemented
        return self.data.equals(other.data)

    @property
    def trials(self) -> List[int]:
        """Trial indices that contributed at least one value."""
        return self.data["trial"].unique().sort().to_list()

    @property
    def n_trials(self) -> int:
        return self.data["trial"].n_unique()

    @property
    def gene_sets(self) -> List[str]:
        return self.data["gene_set"].unique().sort().to_list()

    def prefix(self, max_trial: int) -> "NullDistributionTable":
        """Table restricted to trials with index <= ``max_trial``."""
        return NullDistributionTable(self.data.filter(pl.col("trial") <= max_trial))

    def values(self, column: str = "ES") -> Dict[str, np.ndarray]:
        """
        Collect the null values of each gene set.

        Args:
            column: ``ES`` or ``NES``

        Returns:
            Mapping gene set -> array of values in trial order
        """
        grouped = (
            self.data.group_by("gene_set", maintain_order=True)
            .agg(pl.col(column))
        )
        return {
            name: np.asarray(vals, dtype=np.float64)
            for name, vals in zip(grouped["gene_set"].to_list(), grouped[column].to_list())
        }

    def to_wide(self, column: str = "ES") -> pl.DataFrame:
        """Gene set x trial matrix with nulls where a trial did not score a set."""
        if self.data.height == 0:
            return pl.DataFrame(schema={"gene_set": pl.Utf8})
        wide = self.data.pivot(on="trial", index="gene_set", values=column)
        wide = wide.rename({c: f"trial_{c}" for c in wide.columns if c != "gene_set"})
        return wide.sort("gene_set")

    def write(self, file_path: Union[str, Path]) -> None:
        self.data.write_csv(file_path, separator="\t")

    @classmethod
    def read(cls, file_path: Union[str, Path]) -> "NullDistributionTable":
        """Load a table written by ``write``."""
        try:
            data = pl.read_csv(file_path, separator="\t", schema_overrides=NULL_SCHEMA)
        except (pl.exceptions.ComputeError, pl.exceptions.InvalidOperationError) as e:
            raise ParseError(f"Malformed null distribution file {file_path}: {e}")
        missing = [c for c in NULL_SCHEMA if c not in data.columns]
        if missing:
            raise InvalidInputError(f"Null distribution file {file_path} lacks columns: {', '.join(missing)}")
        return cls(data)


def aggregate_null_distribution(trial_records: Iterable[Tuple[int, pl.DataFrame]]) -> NullDistributionTable:
    """
    Outer-merge per-trial enrichment records into a null distribution table.

    Args:
        trial_records: (trial index, records DataFrame with NAME/ES/NES) pairs
            for successfully completed trials

    Returns:
        NullDistributionTable holding every recorded value
    """
    frames = []
    for trial, records in trial_records:
        frames.append(
            records.select([
                pl.col("NAME").cast(pl.Utf8).alias("gene_set"),
                pl.lit(trial, dtype=pl.Int64).alias("trial"),
                pl.col("ES").cast(pl.Float64),
                pl.col("NES").cast(pl.Float64),
            ])
        )

    if not frames:
        return NullDistributionTable()

    return NullDistributionTable(pl.concat(frames, how="vertical"))


def empirical_pvalue(observed_es: float, null_values, pool_size: int) -> float:
    """
    One-sided empirical p-value with add-one smoothing.

    Args:
        observed_es: ES of the gene set in the real run
        null_values: Null ES values recorded for the gene set
        pool_size: Number of trials requested (not the number that scored the set)

    Returns:
        (count more extreme + 1) / (pool_size + 1)
    """
    null_values = np.asarray(null_values, dtype=np.float64)
    count = _count_more_extreme(float(observed_es), null_values)
    return (count + 1) / (pool_size + 1)


def benjamini_hochberg(p_values) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    Args:
        p_values: Array of p-values

    Returns:
        Array of adjusted p-values
    """
    p_values = np.asarray(p_values, dtype=np.float64)
    if len(p_values) == 0:
        return p_values
    _, pvals_corrected, _, _ = multipletests(p_values, method='fdr_bh')
    return pvals_corrected


def estimate_empirical_fdr(
    observed: pl.DataFrame,
    null_table: NullDistributionTable,
    pool_size: int
) -> pl.DataFrame:
    """
    Empirical p-values and BH FDR for the gene sets of the real run.

    Only gene sets scored by at least one trial are estimated; the rest are
    logged and left out.

    Args:
        observed: Real-run records with ``NAME`` and ``ES``
        null_table: Aggregated null distribution
        pool_size: Requested number of trials

    Returns:
        DataFrame with gene_set, observed_ES, nominal_p and fdr_q
    """
    if pool_size < null_table.n_trials:
        raise InvalidInputError(
            f"Trial pool size {pool_size} is smaller than the {null_table.n_trials} trials in the null table"
        )

    null_values = null_table.values("ES")
    names = observed["NAME"].cast(pl.Utf8).to_list()
    observed_es = observed["ES"].cast(pl.Float64).to_list()

    rows = []
    unscored = []
    for name, es in zip(names, observed_es):
        if name not in null_values:
            unscored.append(name)
            continue
        rows.append((name, es, empirical_pvalue(es, null_values[name], pool_size)))

    if unscored:
        logger.warning(f"{len(unscored)} gene sets were not scored by any trial and are left out")

    if not rows:
        return pl.DataFrame(schema=FDR_SCHEMA)

    result = pl.DataFrame(
        {
            "gene_set": [r[0] for r in rows],
            "observed_ES": [r[1] for r in rows],
            "nominal_p": [r[2] for r in rows],
        },
        schema={k: v for k, v in FDR_SCHEMA.items() if k != "fdr_q"},
    )
    return result.with_columns(
        pl.Series("fdr_q", benjamini_hochberg(result["nominal_p"].to_numpy()), dtype=pl.Float64)
    )


def replace_zero_fdr(fdr_values, internal_permutations: int) -> np.ndarray:
    """
    Replace engine FDR values of exactly 0 with 1 / (1 + internal permutations).

    Args:
        fdr_values: FDR values reported by the enrichment tool
        internal_permutations: Permutations the tool ran internally

    Returns:
        Array with zeros replaced
    """
    fdr_values = np.asarray(fdr_values, dtype=np.float64).copy()
    fdr_values[fdr_values == 0] = 1.0 / (1 + internal_permutations)
    return fdr_values


def compare_with_engine_fdr(
    observed: pl.DataFrame,
    fdr_result: pl.DataFrame,
    internal_permutations: int
) -> pl.DataFrame:
    """
    Put the tool's own FDR next to the empirical FDR.

    Args:
        observed: Real-run records with ``NAME`` and ``FDR.q.val``
        fdr_result: Output of ``estimate_empirical_fdr``
        internal_permutations: Permutations used by the real run

    Returns:
        DataFrame with gene_set, engine_fdr, empirical_fdr and log10_ratio
    """
    if "FDR.q.val" not in observed.columns:
        raise ParseError("Real-run records carry no FDR.q.val column")

    engine = observed.select([
        pl.col("NAME").cast(pl.Utf8).alias("gene_set"),
        pl.Series("engine_fdr", replace_zero_fdr(observed["FDR.q.val"].to_numpy(), internal_permutations)),
    ])
    return (
        engine.join(fdr_result.select(["gene_set", pl.col("fdr_q").alias("empirical_fdr")]), on="gene_set", how="inner")
        .with_columns((pl.col("empirical_fdr").log10() - pl.col("engine_fdr").log10()).alias("log10_ratio"))
    )


def saturation_analysis(
    observed: pl.DataFrame,
    null_table: NullDistributionTable,
    prefix_sizes: List[int],
    threshold: float = 0.05
) -> pl.DataFrame:
    """
    Count significant gene sets as the trial pool grows.

    For each prefix size k the estimator is rerun with trials 1..k and a
    pool size of k.

    Args:
        observed: Real-run records with ``NAME`` and ``ES``
        null_table: Aggregated null distribution
        prefix_sizes: Increasing trial counts
        threshold: FDR cut-off

    Returns:
        DataFrame with prefix_size, trials_used and n_significant
    """
    rows = []
    for k in sorted(prefix_sizes):
        prefix = null_table.prefix(k)
        fdr = estimate_empirical_fdr(observed, prefix, k)
        n_significant = fdr.filter(pl.col("fdr_q") < threshold).height
        rows.append((k, prefix.n_trials, n_significant))
        logger.debug(f"Saturation: {k} trials -> {n_significant} gene sets with FDR < {threshold}")

    return pl.DataFrame(
        {
            "prefix_size": [r[0] for r in rows],
            "trials_used": [r[1] for r in rows],
            "n_significant": [r[2] for r in rows],
        },
        schema={"prefix_size": pl.Int64, "trials_used": pl.Int64, "n_significant": pl.Int64},
    )


def tail_variance(saturation: pl.DataFrame, last_n: int = 3) -> float:
    """Variance of the significant counts over the last ``last_n`` prefixes."""
    counts = saturation.sort("prefix_size")["n_significant"].tail(last_n).to_numpy()
    if len(counts) == 0:
        return float("nan")
    return float(np.var(counts))

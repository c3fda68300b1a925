"""
Ranked gene list construction and the ranked-list artifact format.
"""

from pathlib import Path
from typing import Union

import numpy as np
import polars as pl

from .errors import ParseError

# Header line of the ranked-list artifact; the enrichment tool skips '#' lines
RANKED_LIST_HEADER = "#gene\tscore"

# Leading segments that carry no usable identifier
_UNPARSEABLE_IDS = {"", "?"}


def clean_gene_id(gene_id: str, delimiter: str = "|") -> str:
    """
    Reduce a composite gene key to its first segment.

    ``"TP53|7157"`` becomes ``"TP53"``. Identifiers whose first segment is
    empty or ``?`` are returned unchanged.

    Args:
        gene_id: Composite gene identifier
        delimiter: Separator between identifier segments

    Returns:
        Canonical gene identifier
    """
    first = gene_id.split(delimiter, 1)[0].strip()
    if first in _UNPARSEABLE_IDS:
        return gene_id
    return first


def signed_significance(log_fc, pvalues) -> np.ndarray:
    """
    Compute sign(logFC) * -log10(p) for each gene.

    Args:
        log_fc: Log fold changes
        pvalues: P-values in [0, 1]

    Returns:
        Array of signed scores
    """
    log_fc = np.asarray(log_fc, dtype=np.float64)
    pvalues = np.asarray(pvalues, dtype=np.float64)

    if np.isnan(log_fc).any() or np.isnan(pvalues).any():
        raise ParseError("Missing log fold change or p-value in differential expression results")
    if ((pvalues < 0) | (pvalues > 1)).any():
        raise ParseError("P-values outside [0, 1] in differential expression results")

    # p == 0 would give an infinite score
    clipped = np.clip(pvalues, np.finfo(np.float64).tiny, 1.0)
    return np.sign(log_fc) * -np.log10(clipped)


def build_ranked_list(de_results: pl.DataFrame, delimiter: str = "|") -> pl.DataFrame:
    """
    Convert differential expression results into a ranked gene list.

    Args:
        de_results: DataFrame with ``gene_id``, ``log2FoldChange`` and ``pvalue``
        delimiter: Separator used in composite gene identifiers

    Returns:
        DataFrame with ``gene`` and ``score`` sorted by score descending;
        ties keep their input order
    """
    try:
        log_fc = de_results["log2FoldChange"].cast(pl.Float64, strict=True).to_numpy()
        pvalues = de_results["pvalue"].cast(pl.Float64, strict=True).to_numpy()
    except (pl.exceptions.InvalidOperationError, pl.exceptions.ComputeError) as e:
        raise ParseError(f"Non-numeric differential expression statistics: {e}")
    except pl.exceptions.ColumnNotFoundError as e:
        raise ParseError(f"Differential expression results missing a column: {e}")

    scores = signed_significance(log_fc, pvalues)
    genes = [clean_gene_id(str(g), delimiter) for g in de_results["gene_id"].to_list()]

    ranked = pl.DataFrame({"gene": genes, "score": scores})
    return ranked.sort("score", descending=True, maintain_order=True)


def write_ranked_list(ranked: pl.DataFrame, file_path: Union[str, Path]) -> Path:
    """
    Write a ranked list artifact for the enrichment tool.

    Args:
        ranked: DataFrame with ``gene`` and ``score``
        file_path: Destination path

    Returns:
        Path that was written
    """
    file_path = Path(file_path)
    with open(file_path, "w") as f:
        f.write(RANKED_LIST_HEADER + "\n")
        ranked.select(["gene", "score"]).write_csv(f, separator="\t", include_header=False)
    return file_path


def read_ranked_list(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Read a ranked list artifact.

    Args:
        file_path: Path to a file written by ``write_ranked_list``

    Returns:
        DataFrame with ``gene`` and ``score`` in file order
    """
    try:
        return pl.read_csv(
            file_path,
            separator="\t",
            has_header=False,
            comment_prefix="#",
            schema={"gene": pl.Utf8, "score": pl.Float64},
        )
    except (pl.exceptions.ComputeError, pl.exceptions.InvalidOperationError) as e:
        raise ParseError(f"Malformed ranked list {file_path}: {e}")

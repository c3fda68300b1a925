"""
Adapter for the GSEA preranked command-line tool.

The tool is a black box: it is given a ranked list and a gene-set file,
writes its reports into an output directory, and this module finds and
parses those reports.
"""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple, Union

import polars as pl

from .errors import EnrichmentToolError, ParseError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["NAME", "ES", "NES"]
FDR_COLUMN = "FDR.q.val"


@dataclass(frozen=True)
class EnrichmentSettings:
    """Options passed to the enrichment tool for one run."""

    gsea_cli: str
    gene_sets_file: str
    permutations: int
    set_min: int = 15
    set_max: int = 500
    scoring_scheme: str = "weighted"
    seed: int = 149
    timeout: Optional[float] = None
    extra_args: Tuple[str, ...] = ()

    def with_permutations(self, permutations: int) -> "EnrichmentSettings":
        return replace(self, permutations=permutations)


def build_gsea_command(
    ranked_file: Union[str, Path],
    out_dir: Union[str, Path],
    settings: EnrichmentSettings,
    label: str
) -> List[str]:
    """
    Build the GSEAPreranked command line.

    Args:
        ranked_file: Ranked list artifact
        out_dir: Directory the tool writes its report folder into
        settings: Enrichment options
        label: Report label, used by the tool to name its output folder

    Returns:
        Argument vector for ``subprocess.run``
    """
    return [
        str(settings.gsea_cli), "GSEAPreranked",
        "-gmx", str(settings.gene_sets_file),
        "-rnk", str(ranked_file),
        "-out", str(out_dir),
        "-rpt_label", label,
        "-nperm", str(settings.permutations),
        "-scoring_scheme", settings.scoring_scheme,
        "-set_min", str(settings.set_min),
        "-set_max", str(settings.set_max),
        "-rnd_seed", str(settings.seed),
        "-collapse", "No_Collapse",
        "-mode", "Max_probe",
        "-norm", "meandiv",
        "-make_sets", "true",
        "-create_svgs", "false",
        "-plot_top_x", "0",
        "-zip_report", "false",
        *settings.extra_args,
    ]


def normalise_column_name(name: str) -> str:
    """Turn a report header into a dotted identifier ('FDR q-val' -> 'FDR.q.val')."""
    return re.sub(r"[^0-9A-Za-z_]", ".", name.strip())


def find_report_files(out_dir: Union[str, Path]) -> List[Path]:
    """
    Locate the positive and negative enrichment reports written by the tool.

    Args:
        out_dir: Directory passed to the tool as ``-out``

    Returns:
        Sorted list of report paths (empty if none were written)
    """
    out_dir = Path(out_dir)
    reports = sorted(out_dir.rglob("gsea_report_for_*.tsv"))
    if not reports:
        # Older releases write tab-delimited reports with an .xls suffix
        reports = sorted(out_dir.rglob("gsea_report_for_*.xls"))
    return reports


def read_enrichment_report(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Read one enrichment report.

    Args:
        file_path: Report path

    Returns:
        DataFrame with normalised column names and numeric ES/NES
    """
    try:
        df = pl.read_csv(
            file_path,
            separator="\t",
            has_header=True,
            infer_schema_length=0,
            truncate_ragged_lines=True,
        )
    except pl.exceptions.NoDataError:
        return pl.DataFrame(schema={c: pl.Utf8 for c in REQUIRED_COLUMNS})
    except pl.exceptions.ComputeError as e:
        raise ParseError(f"Unreadable enrichment report {file_path}: {e}")

    # Reports end every line with a tab, which yields an unnamed empty column
    df = df.select([
        c for c in df.columns
        if c.strip() and not (re.fullmatch(r"column_\d+", c) and df[c].null_count() == df.height)
    ])
    df = df.rename({c: normalise_column_name(c) for c in df.columns})

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ParseError(f"Enrichment report {file_path} lacks columns: {', '.join(missing)}")

    return df


def parse_enrichment_reports(report_files: List[Path]) -> pl.DataFrame:
    """
    Combine positive and negative reports into one table of gene sets.

    Args:
        report_files: Paths from ``find_report_files``

    Returns:
        DataFrame with one row per gene set; ES and NES as Float64
    """
    frames = [read_enrichment_report(path) for path in report_files]
    df = pl.concat(frames, how="diagonal") if frames else pl.DataFrame(schema={c: pl.Utf8 for c in REQUIRED_COLUMNS})

    numeric = [c for c in ("ES", "NES", "NOM.p.val", FDR_COLUMN, "FWER.p.val") if c in df.columns]
    parsed = df.with_columns([pl.col(c).str.strip_chars().cast(pl.Float64, strict=False) for c in numeric])

    for column in ("ES", "NES"):
        bad = parsed.filter(pl.col(column).is_null() | pl.col(column).is_nan())
        if bad.height:
            raise ParseError(
                f"Non-numeric {column} for {bad.height} gene sets (e.g. {bad['NAME'][0]})"
            )

    if parsed["NAME"].is_duplicated().any():
        raise ParseError("Gene set reported more than once in enrichment results")

    return parsed


def run_enrichment(
    ranked_file: Union[str, Path],
    out_dir: Union[str, Path],
    settings: EnrichmentSettings,
    label: str = "permgsea"
) -> pl.DataFrame:
    """
    Run the enrichment tool on a ranked list and parse its report.

    Args:
        ranked_file: Ranked list artifact
        out_dir: Output directory owned by the caller; emptied before the tool runs
        settings: Enrichment options
        label: Report label

    Returns:
        DataFrame with NAME, ES, NES and the other report columns
    """
    if settings.permutations < 1:
        raise EnrichmentToolError("The enrichment tool needs at least one permutation to report NES")

    out_dir = Path(out_dir)
    # Report discovery searches the whole directory, so reports left by an
    # earlier run must not survive into this one
    if out_dir.exists():
        logger.debug(f"Removing previous enrichment output in {out_dir}")
        shutil.rmtree(out_dir)
    out_dir.mkdir(parents=True)
    command = build_gsea_command(ranked_file, out_dir, settings, label)
    logger.debug(f"Running enrichment: {' '.join(command)}")

    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=settings.timeout,
        )
    except FileNotFoundError as e:
        raise EnrichmentToolError(f"Enrichment tool not found: {settings.gsea_cli}") from e
    except subprocess.TimeoutExpired as e:
        raise EnrichmentToolError(f"Enrichment tool timed out after {settings.timeout} seconds") from e

    if completed.returncode != 0:
        tail = (completed.stderr or completed.stdout or "").strip().splitlines()[-5:]
        raise EnrichmentToolError(
            f"Enrichment tool exited with status {completed.returncode}: {' | '.join(tail)}"
        )

    reports = find_report_files(out_dir)
    if not reports:
        raise EnrichmentToolError(f"Enrichment tool produced no report in {out_dir}")

    records = parse_enrichment_reports(reports)
    if records.height == 0:
        raise EnrichmentToolError(f"Enrichment report in {out_dir} contains no gene sets")

    return records

"""Shared fixtures: synthetic expression data and a stand-in GSEA launcher."""

import stat
import sys
import textwrap
from pathlib import Path

import numpy as np
import polars as pl
import pytest


FAKE_GSEA = textwrap.dedent('''\
    #!{python}
    """Minimal stand-in for the GSEA preranked launcher used in tests."""
    import argparse
    import sys
    from pathlib import Path

    parser = argparse.ArgumentParser()
    parser.add_argument("tool")
    parser.add_argument("-gmx")
    parser.add_argument("-rnk")
    parser.add_argument("-out")
    parser.add_argument("-rpt_label")
    parser.add_argument("-nperm", type=int)
    parser.add_argument("-fail_prefix", default=None)
    parser.add_argument("-no_report", default="false")
    parser.add_argument("-bad_nes", default="false")
    args, _ = parser.parse_known_args()

    if args.fail_prefix and args.rpt_label.startswith(args.fail_prefix):
        sys.stderr.write("java.lang.RuntimeException: simulated failure\\n")
        sys.exit(1)

    out = Path(args.out) / (args.rpt_label + ".GseaPreranked.1700000000000")
    out.mkdir(parents=True, exist_ok=True)
    if args.no_report == "true":
        sys.exit(0)

    scores = {{}}
    for line in open(args.rnk):
        if line.startswith("#") or not line.strip():
            continue
        gene, score = line.rstrip("\\n").split("\\t")
        scores[gene] = float(score)
    scale = max(abs(v) for v in scores.values()) or 1.0

    rows = []
    for line in open(args.gmx):
        parts = line.rstrip("\\n").split("\\t")
        members = [scores[g] for g in parts[2:] if g in scores]
        if not members:
            continue
        es = sum(members) / len(members) / scale
        rows.append((parts[0].upper(), len(members), es))

    header = ("NAME\\tGS<br> follow link to MSigDB\\tGS DETAILS\\tSIZE\\tES\\tNES\\t"
              "NOM p-val\\tFDR q-val\\tFWER p-val\\tRANK AT MAX\\tLEADING EDGE\\t\\n")
    for direction, keep in (("pos", lambda es: es >= 0), ("neg", lambda es: es < 0)):
        with open(out / ("gsea_report_for_na_" + direction + "_1700000000000.tsv"), "w") as f:
            f.write(header)
            for name, size, es in rows:
                if not keep(es):
                    continue
                nes = "---" if args.bad_nes == "true" else repr(es * 1.5)
                fdr = 0.0 if abs(es) > 0.5 else 0.25
                f.write(name + "\\tDetails ...\\t\\t" + str(size) + "\\t" + repr(es) + "\\t" + nes
                        + "\\t0.01\\t" + repr(fdr) + "\\t0.02\\t10\\ttags=50%\\t\\n")
''')


@pytest.fixture
def fake_gsea_cli(tmp_path):
    """Executable script that mimics GSEAPreranked's report layout."""
    script = tmp_path / "fake-gsea-cli"
    script.write_text(FAKE_GSEA.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def gene_sets_file(tmp_path):
    """GMT file with an up-regulated, a down-regulated and a neutral set."""
    gmt = tmp_path / "sets.gmt"
    lines = [
        "SET_UP\tna\t" + "\t".join(f"GENE{i}" for i in range(0, 8)),
        "SET_DOWN\tna\t" + "\t".join(f"GENE{i}" for i in range(10, 18)),
        "SET_FLAT\tna\t" + "\t".join(f"GENE{i}" for i in range(20, 28)),
    ]
    gmt.write_text("\n".join(lines) + "\n")
    return gmt


def synthetic_counts(n_genes=30, n_per_class=4, seed=0):
    """Counts with GENE0-9 up and GENE10-19 down in the 'tumor' samples."""
    rng = np.random.default_rng(seed)
    tumor = [f"T{i}" for i in range(n_per_class)]
    normal = [f"N{i}" for i in range(n_per_class)]
    base = rng.integers(200, 400, size=n_genes)

    data = {"gene_id": [f"GENE{i}|{1000 + i}" for i in range(n_genes)]}
    for sample in tumor + normal:
        factor = np.ones(n_genes)
        if sample.startswith("T"):
            factor[0:10] = 4.0
            factor[10:20] = 0.25
        data[sample] = rng.poisson(base * factor).astype(np.int64)

    counts = pl.DataFrame(data)
    classes = pl.DataFrame({
        "sample_id": tumor + normal,
        "label": ["tumor"] * n_per_class + ["normal"] * n_per_class,
    })
    return counts, classes


@pytest.fixture
def expression_files(tmp_path):
    """Counts and class files on disk."""
    counts, classes = synthetic_counts()
    counts_file = tmp_path / "counts.tsv"
    classes_file = tmp_path / "classes.tsv"
    counts.write_csv(counts_file, separator="\t")
    classes.write_csv(classes_file, separator="\t")
    return counts_file, classes_file


def mean_difference_de(counts, assignment, test_class, reference_class, seed=None, n_cpus=1):
    """Deterministic stand-in for the NB model: log2 mean ratio, p from its size."""
    test = assignment.filter(pl.col("label") == test_class)["sample_id"].to_list()
    reference = assignment.filter(pl.col("label") == reference_class)["sample_id"].to_list()
    test_mean = counts.select(test).to_numpy().mean(axis=1)
    reference_mean = counts.select(reference).to_numpy().mean(axis=1)
    lfc = np.log2(test_mean + 1) - np.log2(reference_mean + 1)
    return pl.DataFrame({
        "gene_id": counts["gene_id"].to_list(),
        "log2FoldChange": lfc,
        "stat": lfc,
        "pvalue": np.exp(-np.abs(lfc) * 3),
    })


@pytest.fixture
def fake_de(monkeypatch):
    """Replace the PyDESeq2 adapter inside the pipeline module."""
    monkeypatch.setattr("permgsea.pipeline.run_differential_expression", mean_difference_de)
    return mean_difference_de

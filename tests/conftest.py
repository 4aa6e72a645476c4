import matplotlib

matplotlib.use("Agg")  # Non-interactive backend for every test module

import pandas as pd
import pytest

from methylation_report.core.annotation import GenomeReference

# Two loci shifted between groups, the rest balanced so their means match
SHIFTED = {
    "chr1:9001-9002": ([0.10, 0.12], [0.88, 0.90]),
    "chr2:55001-55002": ([0.20, 0.23], [0.80, 0.84]),
}
NULL_LOCI = {
    "chr3:100201-100202": (0.40, 0.02),
    "chr1:29001-29002": (0.55, 0.03),
    "chr1:40001-40002": (0.30, 0.025),
    "chr9:101-200": (0.62, 0.035),
    "chr2:61001-61002": (0.45, 0.04),
    "chr1:14001-14002": (0.50, 0.02),
    "chr3:500001-500002": (0.35, 0.03),
    "chr1:21001-21002": (0.70, 0.05),
}


@pytest.fixture
def reference_table():
    """GTF-like rows in pyranges layout (0-based half-open)."""
    rows = [
        ("chr1", "gene", 10000, 20000, "+", "COL1A1"),
        ("chr1", "transcript", 10000, 20000, "+", "COL1A1"),
        ("chr1", "exon", 10000, 10500, "+", "COL1A1"),
        ("chr1", "exon", 15000, 15500, "+", "COL1A1"),
        ("chr1", "exon", 19000, 20000, "+", "COL1A1"),
        ("chr1", "three_prime_utr", 19500, 20000, "+", "COL1A1"),
        ("chr1", "gene", 30000, 35000, "+", "COL1A2"),
        ("chr1", "transcript", 30000, 35000, "+", "COL1A2"),
        ("chr2", "gene", 50000, 60000, "-", "FN1"),
        ("chr2", "transcript", 50000, 60000, "-", "FN1"),
        ("chr2", "exon", 59500, 60000, "-", "FN1"),
        ("chr3", "gene", 100000, 101000, "+", "GAPDH"),
        ("chr3", "transcript", 100000, 101000, "+", "GAPDH"),
    ]
    table = pd.DataFrame(
        rows, columns=["Chromosome", "Feature", "Start", "End", "Strand", "gene_name"]
    )
    table["gene_id"] = "ENSG_" + table["gene_name"]
    table["gene_biotype"] = "protein_coding"
    return table


@pytest.fixture
def reference(reference_table):
    return GenomeReference(reference_table)


@pytest.fixture
def report_beta():
    """10 loci x 4 samples (C1, C2 control; T1, T2 treated)."""
    rows = {}
    for locus, (ctrl, trt) in SHIFTED.items():
        rows[locus] = ctrl + trt
    for locus, (a, d) in NULL_LOCI.items():
        rows[locus] = [a, a + d, a + d, a]
    beta = pd.DataFrame.from_dict(rows, orient="index", columns=["C1", "C2", "T1", "T2"])
    beta.index.name = "locus"
    return beta


@pytest.fixture
def report_phenotypes():
    return pd.DataFrame(
        {"condition": ["control", "control", "treated", "treated"]},
        index=pd.Index(["C1", "C2", "T1", "T2"], name="sample_id"),
    )

#!/usr/bin/env python
# coding: utf-8

"""
Differential Methylation Report Demo
Simulates a two-group beta matrix and a small GTF, then runs the full report
"""

import os
from datetime import datetime

import numpy as np
import pandas as pd
from scipy import stats

from methylation_report.core.config import ReportConfig
from methylation_report.core.pipeline import run_report


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = {
    "random_seed": 1500,
    "n_genes": 40,
    "loci_per_gene": 25,
    "n_control": 6,
    "n_treated": 6,
    "effect_size": 0.25,  # Δβ added to treated samples
    "prop_dm": 0.05,
    "missing_rate": 0.01,
    "fetch_gene_set": False,  # True queries the remote gene-set service
    "offline_gene_set": ["GENE3", "GENE7", "GENE12", "GENE21", "GENE33"],
}

timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
run_dir = f"log/{timestamp}"
data_dir = f"{run_dir}/data"
os.makedirs(data_dir, exist_ok=True)

rng = np.random.default_rng(CONFIG["random_seed"])

# ============================================================================
# SECTION 1: GENOME REFERENCE
# ============================================================================

print("=" * 70)
print("1. Simulating genome reference")
print("=" * 70)

gtf_rows = []
gene_bounds = []
for g in range(CONFIG["n_genes"]):
    chrom = f"chr{g % 4 + 1}"
    start = 50_000 + (g // 4) * 40_000
    end = start + 15_000
    strand = "+" if g % 2 == 0 else "-"
    name = f"GENE{g}"
    attrs = f'gene_id "ENSG{g:05d}"; gene_name "{name}"; gene_biotype "protein_coding";'
    # GTF coordinates are 1-based inclusive
    gtf_rows.append((chrom, "demo", "gene", start + 1, end, ".", strand, ".", attrs))
    gtf_rows.append(
        (chrom, "demo", "transcript", start + 1, end, ".", strand, ".",
         attrs + f' transcript_id "ENST{g:05d}";')
    )
    for e in range(3):
        e_start = start + e * 6_000
        gtf_rows.append(
            (chrom, "demo", "exon", e_start + 1, e_start + 800, ".", strand, ".",
             attrs + f' transcript_id "ENST{g:05d}";')
        )
    gene_bounds.append((chrom, start, end))

gtf_path = f"{data_dir}/genes.gtf"
with open(gtf_path, "w") as fh:
    for row in gtf_rows:
        fh.write("\t".join(str(field) for field in row) + "\n")
print(f"✔ {CONFIG['n_genes']} genes written to {gtf_path}")

# ============================================================================
# SECTION 2: BETA MATRIX
# ============================================================================

print("=" * 70)
print("2. Simulating beta matrix")
print("=" * 70)

loci = []
for chrom, start, end in gene_bounds:
    positions = rng.integers(start - 5_000, end + 5_000, CONFIG["loci_per_gene"])
    for pos in np.unique(positions):
        loci.append(f"{chrom}:{pos}-{pos + 1}")

n_control, n_treated = CONFIG["n_control"], CONFIG["n_treated"]
samples = [f"CTRL_{i}" for i in range(n_control)] + [
    f"TRT_{i}" for i in range(n_treated)
]

baseline = stats.beta.rvs(2, 3, size=len(loci), random_state=rng)
beta = np.clip(
    baseline[:, None] + rng.normal(0, 0.04, size=(len(loci), len(samples))), 0, 1
)

n_dm = int(len(loci) * CONFIG["prop_dm"])
dm_idx = rng.choice(len(loci), n_dm, replace=False)
signs = np.where(rng.random(n_dm) < 0.6, 1.0, -1.0)
beta[dm_idx, n_control:] = np.clip(
    beta[dm_idx, n_control:] + signs[:, None] * CONFIG["effect_size"], 0, 1
)
beta[rng.random(beta.shape) < CONFIG["missing_rate"]] = np.nan

beta_df = pd.DataFrame(beta, index=pd.Index(loci, name="locus"), columns=samples)
beta_df.to_csv(f"{data_dir}/beta_matrix.csv")

# Phenotype rows deliberately shuffled; samples are matched by identifier
phenotypes = pd.DataFrame(
    {
        "sample_id": samples,
        "condition": ["control"] * n_control + ["treated"] * n_treated,
    }
).sample(frac=1.0, random_state=CONFIG["random_seed"])
phenotypes.to_csv(f"{data_dir}/phenotypes.csv", index=False)

print(f"✔ {len(loci):,} loci x {len(samples)} samples ({n_dm} differential)")

# ============================================================================
# SECTION 3: REPORT
# ============================================================================

print("=" * 70)
print("3. Running report")
print("=" * 70)

config = ReportConfig()
config.paths.update(
    beta_matrix=f"{data_dir}/beta_matrix.csv",
    phenotypes=f"{data_dir}/phenotypes.csv",
    genome_reference=gtf_path,
    reference_cache=f"{data_dir}/cache",
    output_dir=f"{run_dir}/results",
)
config.analysis["random_seed"] = CONFIG["random_seed"]
config.save_to_file(f"{run_dir}/config.json")

gene_set = None if CONFIG["fetch_gene_set"] else frozenset(CONFIG["offline_gene_set"])
outputs = run_report(config, gene_set=gene_set)

summary = outputs["summary"]
print("=" * 70)
print(f"Significant loci: {summary['significant']:,} / {summary['total_tested']:,}")
print(f"Gene-set loci:    {len(outputs['filtered']):,} ({', '.join(outputs['genes'])})")
print(f"Report:           {outputs['paths']['report']}")
print("=" * 70)

#!/usr/bin/env python
# coding: utf-8

"""
Differential Methylation Report

Single-run analysis of a beta-value matrix: moderated two-group testing,
locus annotation, gene-set filtering and report figures.

Modules
-------
config : Run constants (paths, thresholds, gene set, figures)
engine : Loading, empirical Bayes differential testing, diagnostics, PDF log
annotation : Locus parsing, nearest gene and genomic feature labels
genesets : Remote gene-set retrieval and filtering
plotting : Clustered heatmap and volcano plot
pipeline : Initialization and end-to-end run
"""

__version__ = "0.3.0"
__author__ = "Dare Afolabi"
__email__ = "dare.afolabi@outlook.com"

# Configuration
from methylation_report.core.config import (
    ReportConfig,
    export_default_config,
    get_config,
    load_config,
    reset_config,
)

# Errors
from methylation_report.core.exceptions import (
    DataAlignmentError,
    DegenerateDesignError,
    InputAlignmentError,
    MalformedLocusError,
    MethylationReportError,
    RemoteServiceError,
    RenderError,
)

# Differential Analysis
from methylation_report.core.engine import (
    PDFLogger,
    align_samples,
    beta_to_m,
    build_design,
    export_results,
    filter_significant,
    fit_differential,
    load_beta_matrix,
    load_phenotypes,
    plot_mean_difference,
    plot_mean_variance,
    plot_pvalue_qq,
    plot_sample_qc,
    run_differential,
    summarize_differential_results,
)

# Annotation
from methylation_report.core.annotation import (
    GenomeReference,
    annotate_loci,
    annotate_nearest_gene,
    classify_features,
    load_genome_reference,
    loci_to_frame,
    parse_locus_id,
)

# Gene Sets
from methylation_report.core.genesets import (
    fetch_gene_set,
    filter_by_gene_set,
    parse_gene_set,
)

# Figures
from methylation_report.core.plotting import (
    heatmap_matrix,
    plot_methylation_heatmap,
    plot_volcano,
    select_volcano_labels,
)

# Pipeline
from methylation_report.core.pipeline import initialize_run, run_report

__all__ = [
    # Version
    "__version__",
    # Config
    "ReportConfig",
    "get_config",
    "load_config",
    "reset_config",
    "export_default_config",
    # Errors
    "MethylationReportError",
    "InputAlignmentError",
    "DataAlignmentError",
    "DegenerateDesignError",
    "MalformedLocusError",
    "RemoteServiceError",
    "RenderError",
    # Engine
    "load_beta_matrix",
    "load_phenotypes",
    "beta_to_m",
    "align_samples",
    "build_design",
    "fit_differential",
    "run_differential",
    "filter_significant",
    "summarize_differential_results",
    "export_results",
    "plot_mean_difference",
    "plot_mean_variance",
    "plot_pvalue_qq",
    "plot_sample_qc",
    "PDFLogger",
    # Annotation
    "parse_locus_id",
    "loci_to_frame",
    "GenomeReference",
    "load_genome_reference",
    "annotate_nearest_gene",
    "classify_features",
    "annotate_loci",
    # Gene sets
    "fetch_gene_set",
    "parse_gene_set",
    "filter_by_gene_set",
    # Figures
    "heatmap_matrix",
    "plot_methylation_heatmap",
    "plot_volcano",
    "select_volcano_labels",
    # Pipeline
    "initialize_run",
    "run_report",
]

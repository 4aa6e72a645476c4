#!/usr/bin/env python
# coding: utf-8

"""
Report Pipeline
Explicit initialization followed by the linear analysis:
load -> test -> filter -> annotate -> gene-set filter -> figures
"""

import os
import time
from datetime import datetime
from typing import Any, Dict, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from methylation_report.core.annotation import (
    GenomeReference,
    annotate_loci,
    load_genome_reference,
)
from methylation_report.core.config import ReportConfig, get_config
from methylation_report.core.engine import (
    PDFLogger,
    export_results,
    filter_significant,
    load_beta_matrix,
    load_phenotypes,
    plot_mean_difference,
    plot_pvalue_qq,
    plot_sample_qc,
    run_differential,
    summarize_differential_results,
)
from methylation_report.core.genesets import fetch_gene_set, filter_by_gene_set
from methylation_report.core.plotting import plot_methylation_heatmap, plot_volcano


def initialize_run(config: ReportConfig) -> Dict[str, str]:
    """
    Prepare process state for one run.

    Seeds numpy's global generator, creates the output directories and,
    unless plots are shown interactively, selects the Agg backend.

    Returns
    -------
    Dict[str, str]
        Resolved output paths
    """
    import matplotlib

    np.random.seed(config.analysis["random_seed"])

    if not config.plots.get("show_plots", False):
        matplotlib.use("Agg")

    output_dir = config.paths["output_dir"]
    assets = config.output_path("assets")
    os.makedirs(assets, exist_ok=True)

    return {
        "output_dir": output_dir,
        "assets": assets,
        "report": os.path.join(output_dir, "report.pdf"),
        "differential": os.path.join(output_dir, "differential_results.csv"),
        "annotated": os.path.join(output_dir, "annotated_loci.csv"),
        "heatmap": os.path.join(output_dir, config.plots["heatmap"]["filename"]),
        "volcano": os.path.join(output_dir, config.plots["volcano"]["filename"]),
        "mean_difference": os.path.join(assets, "mean_difference.png"),
        "pvalue_qq": os.path.join(assets, "pvalue_qq.png"),
        "sample_qc": os.path.join(assets, "sample_qc.png"),
    }


def run_report(
    config: Optional[ReportConfig] = None,
    reference: Optional[GenomeReference] = None,
    gene_set: Optional[frozenset] = None,
) -> Dict[str, Any]:
    """
    Run the full differential methylation report once.

    Parameters
    ----------
    config : ReportConfig, optional
        Run configuration; the global instance when omitted
    reference : GenomeReference, optional
        Pre-loaded genome reference; read from ``config.paths`` otherwise
    gene_set : frozenset, optional
        Pre-fetched gene symbols; fetched from the remote service otherwise

    Returns
    -------
    Dict[str, Any]
        Stage outputs: ``results``, ``significant``, ``annotated``,
        ``filtered``, ``genes``, ``summary``, ``heatmap``, ``volcano``,
        ``paths``
    """
    config = config or get_config()
    paths = initialize_run(config)
    analysis = config.analysis
    show = config.plots.get("show_plots", False)
    threshold = analysis["pval_threshold"]
    diag_dpi = config.plots.get("diagnostic_dpi", 150)

    pdf = PDFLogger(paths["report"], echo=True)
    pdf.log_text("# Differential Methylation Report")
    pdf.log_text(f"**Generated**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    pdf.log_summary(analysis, title="Analysis Configuration")
    pdf.log_summary(
        {k: config.gene_set[k] for k in ("gene_set", "collection")},
        title="Gene Set",
    )

    # ------------------------------------------------------------------ load
    start_time = time.time()
    pdf.log_text("## 1. Data")
    beta = load_beta_matrix(config.paths["beta_matrix"])
    phenotypes = load_phenotypes(
        config.paths["phenotypes"], analysis["sample_col"], analysis["condition_col"]
    )
    pdf.log_text(f"- **Loci**: {beta.shape[0]:,}")
    pdf.log_text(f"- **Samples**: {beta.shape[1]:,}")
    pdf.log_text(f"- **Missing cells**: {int(beta.isna().sum().sum()):,}")

    fig = plot_sample_qc(
        beta, phenotypes, analysis["condition_col"],
        save_path=paths["sample_qc"], dpi=diag_dpi, show=show,
    )
    pdf.log_image(paths["sample_qc"], title="Figure 1", caption="Sample-level QC")
    plt.close(fig)

    # ---------------------------------------------------------- differential
    pdf.log_text("## 2. Differential Methylation")
    results = run_differential(
        beta,
        phenotypes,
        condition_col=analysis["condition_col"],
        baseline=analysis["baseline"],
        shrink=analysis["shrink"],
        robust=analysis["robust"],
        max_d0=analysis["max_d0"],
        min_count=analysis["min_count"],
    )
    export_results(results, paths["differential"])

    summary = summarize_differential_results(results, threshold)
    pdf.log_summary(summary, title="Summary")

    fig = plot_mean_difference(
        results, threshold, offset=analysis["logit_offset"],
        save_path=paths["mean_difference"], dpi=diag_dpi, show=show,
    )
    pdf.log_image(paths["mean_difference"], title="Figure 2", caption="Mean-difference")
    plt.close(fig)
    fig = plot_pvalue_qq(results, save_path=paths["pvalue_qq"], dpi=diag_dpi, show=show)
    pdf.log_image(paths["pvalue_qq"], title="Figure 3", caption="P-value Q-Q")
    plt.close(fig)

    significant = filter_significant(results, threshold)
    pdf.log_dataframe(
        significant[["logFC", "AveExpr", "t", "pval", "padj"]],
        title=f"Differentially methylated loci (padj < {threshold})",
    )

    # ------------------------------------------------------------ annotation
    pdf.log_text("## 3. Locus Annotation")
    if reference is None:
        reference = load_genome_reference(
            config.paths["genome_reference"], config.paths["reference_cache"]
        )
    upstream, downstream = config.promoter_window
    annotated = annotate_loci(
        significant,
        reference,
        promoter_window=(upstream, downstream),
        downstream_window=analysis["downstream_window"],
    )
    export_results(annotated, paths["annotated"])

    counts = annotated["annotation"].value_counts()
    pdf.log_summary(counts.to_dict(), title="Genomic features")
    pdf.log_text(
        f"- **Loci without a nearby gene**: {int(annotated['nearest_gene'].isna().sum())}"
    )

    # -------------------------------------------------------------- gene set
    pdf.log_text("## 4. Gene Set Filter")
    if gene_set is None:
        gene_set = fetch_gene_set(
            config.gene_set["gene_set"],
            config.gene_set["collection"],
            base_url=config.gene_set["base_url"],
            timeout=config.gene_set["timeout"],
        )
    filtered = filter_by_gene_set(annotated, gene_set)
    genes = sorted(filtered["nearest_gene"].unique())

    pdf.log_text(f"- **Gene set size**: {len(gene_set):,}")
    pdf.log_text(f"- **Loci in gene set**: {len(filtered):,}")
    pdf.log_text(f"- **Genes**: {', '.join(genes) if genes else 'none'}")

    # --------------------------------------------------------------- figures
    pdf.log_text("## 5. Figures")
    heatmap = None
    if len(filtered) > 0:
        hm_cfg = config.plots["heatmap"]
        heatmap = plot_methylation_heatmap(
            beta,
            filtered,
            phenotypes,
            condition_col=analysis["condition_col"],
            cmap=hm_cfg["cmap"],
            figsize=hm_cfg["figsize"],
            dpi=hm_cfg["dpi"],
            save_path=paths["heatmap"],
            show=show,
        )
        pdf.log_image(paths["heatmap"], title="Figure 4", caption="Gene-set loci heatmap")
    else:
        pdf.log_text("No gene-set loci to plot; heatmap skipped.")

    vc_cfg = config.plots["volcano"]
    volcano = plot_volcano(
        filtered if len(filtered) > 0 else annotated,
        pval_thresh=threshold,
        max_label_loci=vc_cfg["max_label_loci"],
        figsize=vc_cfg["figsize"],
        dpi=vc_cfg["dpi"],
        save_path=paths["volcano"],
        show=show,
    )
    pdf.log_image(paths["volcano"], title="Figure 5", caption="Volcano plot")

    pdf.log_text(f"✔ Completed in {time.time() - start_time:.2f} seconds")
    pdf.save()

    return {
        "results": results,
        "significant": significant,
        "annotated": annotated,
        "filtered": filtered,
        "genes": genes,
        "summary": summary,
        "heatmap": heatmap,
        "volcano": volcano,
        "paths": paths,
    }

#!/usr/bin/env python
# coding: utf-8

"""
Report Figures
Clustered beta-value heatmap and gene-coloured volcano plot
"""

import warnings
from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.patches import Patch

from methylation_report.core.annotation import loci_to_frame
from methylation_report.core.engine import align_samples, save_figure

NO_GENE = "no gene"


# ============================================================================
# HEATMAP
# ============================================================================


def heatmap_matrix(beta: pd.DataFrame, loci: Sequence[str]) -> pd.DataFrame:
    """
    Beta values for ``loci`` in the given order, complete rows only.

    Loci absent from the matrix raise; loci with any missing sample are
    dropped with a warning so the returned matrix has no NaN cells.
    """
    loci = list(dict.fromkeys(loci))
    absent = [locus for locus in loci if locus not in beta.index]
    if absent:
        raise ValueError(f"{len(absent)} loci not in beta matrix: {absent[:5]}")

    matrix = beta.loc[loci]
    incomplete = matrix.isna().any(axis=1)
    if incomplete.any():
        warnings.warn(
            f"Dropping {int(incomplete.sum())} loci with missing beta values from heatmap"
        )
        matrix = matrix[~incomplete]
    return matrix


def _color_strip(values: pd.Series, palette: str):
    levels = list(pd.unique(values))
    lut = dict(zip(levels, sns.color_palette(palette, len(levels))))
    return values.map(lut), lut


def plot_methylation_heatmap(
    beta: pd.DataFrame,
    annotated: pd.DataFrame,
    phenotypes: pd.DataFrame,
    condition_col: str = "condition",
    cmap: str = "RdBu_r",
    figsize: Sequence[float] = (8, 10),
    dpi: int = 300,
    save_path: Optional[str] = None,
    show: bool = False,
):
    """
    Clustered heatmap of beta values for the selected loci.

    Samples (columns) are hierarchically clustered; loci (rows) keep the
    order of ``annotated``. Column strip: sample condition. Row strip:
    locus chromosome. The diverging colour scale is centred at the
    midpoint of the plotted values.

    Parameters
    ----------
    beta : pd.DataFrame
        Full loci x samples beta matrix
    annotated : pd.DataFrame
        Loci to show, indexed by locus identifier
    phenotypes : pd.DataFrame
        Sample-indexed phenotype table
    condition_col : str
        Phenotype column used for the column strip
    cmap : str
        Diverging colormap name
    figsize : Sequence[float]
        Figure size in inches
    dpi : int
        Raster resolution of the saved image
    save_path : str, optional
        PNG output path
    show : bool
        Display the figure

    Returns
    -------
    seaborn.matrix.ClusterGrid
    """
    matrix = heatmap_matrix(beta, annotated.index)
    if len(matrix) == 0:
        raise ValueError("No loci with complete beta values to plot")
    if matrix.shape[1] < 2:
        raise ValueError("At least two samples are needed to cluster the heatmap")

    conditions = align_samples(beta, phenotypes)[condition_col].astype(str)
    col_colors, condition_lut = _color_strip(conditions.loc[matrix.columns], "Set2")
    col_colors.name = condition_col

    if "Chromosome" in annotated.columns:
        chroms = annotated.loc[matrix.index, "Chromosome"].astype(str)
    else:
        chroms = loci_to_frame(matrix)["Chromosome"]
    row_colors, chrom_lut = _color_strip(chroms, "tab20")
    row_colors.name = "chromosome"

    values = matrix.values
    center = (np.nanmin(values) + np.nanmax(values)) / 2.0

    grid = sns.clustermap(
        matrix,
        row_cluster=False,
        col_cluster=True,
        row_colors=row_colors,
        col_colors=col_colors,
        cmap=cmap,
        center=center,
        figsize=tuple(figsize),
        yticklabels=True,
        xticklabels=True,
        cbar_kws={"label": "β value"},
    )
    grid.ax_heatmap.set_xlabel("Sample")
    grid.ax_heatmap.set_ylabel("Locus")
    grid.ax_heatmap.tick_params(axis="y", labelsize=6)

    handles = [Patch(facecolor=c, label=lvl) for lvl, c in condition_lut.items()]
    handles += [Patch(facecolor=c, label=chrom) for chrom, c in chrom_lut.items()]
    grid.ax_col_dendrogram.legend(
        handles=handles, loc="center", ncol=min(len(handles), 6), fontsize=7, frameon=False
    )
    grid.figure.suptitle("Differentially Methylated Loci", y=0.99)

    if save_path:
        save_figure(grid.figure, save_path, dpi=dpi, tight=False)
    if show:
        plt.show()

    return grid


# ============================================================================
# VOLCANO
# ============================================================================


def select_volcano_labels(
    annotated: pd.DataFrame,
    max_loci: int = 3,
    lfc_col: str = "logFC",
    gene_col: str = "nearest_gene",
) -> pd.Series:
    """
    Text labels for the volcano plot, indexed by locus.

    A point is labelled with its gene when that gene has at most
    ``max_loci`` loci in ``annotated``. The single most negative
    effect-size point is always labelled with its own locus identifier,
    appended to its gene label when it has one.
    """
    genes = annotated[gene_col]
    counts = genes.value_counts()
    sparse = genes.notna() & genes.map(counts).le(max_loci)

    labels = genes[sparse].astype(str)

    if annotated[lfc_col].notna().any():
        lowest = annotated[lfc_col].idxmin()
        if lowest in labels.index:
            labels.loc[lowest] = f"{labels[lowest]} ({lowest})"
        else:
            labels.loc[lowest] = str(lowest)

    return labels.reindex([i for i in annotated.index if i in labels.index])


def plot_volcano(
    annotated: pd.DataFrame,
    lfc_col: str = "logFC",
    pval_col: str = "padj",
    gene_col: str = "nearest_gene",
    pval_thresh: float = 0.05,
    max_label_loci: int = 3,
    figsize: Sequence[float] = (10, 7),
    dpi: int = 300,
    save_path: Optional[str] = None,
    show: bool = False,
):
    """
    Volcano plot of effect size against -log10 adjusted p-value.

    One point per locus, coloured by nearest gene, labelled as described
    in :func:`select_volcano_labels`.

    Returns
    -------
    matplotlib.figure.Figure
    """
    res = annotated[annotated[pval_col].notna()].copy()
    floor = np.nextafter(0, 1)
    res["neg_log10_p"] = -np.log10(res[pval_col].clip(lower=floor))
    res["gene"] = res[gene_col].where(res[gene_col].notna(), NO_GENE).astype(str)

    genes = sorted(g for g in res["gene"].unique() if g != NO_GENE)
    palette = dict(zip(genes, sns.color_palette("husl", max(len(genes), 1))))
    palette[NO_GENE] = (0.6, 0.6, 0.6)

    fig, ax = plt.subplots(figsize=tuple(figsize))
    for gene in genes + [NO_GENE]:
        subset = res[res["gene"] == gene]
        if subset.empty:
            continue
        ax.scatter(
            subset[lfc_col],
            subset["neg_log10_p"],
            color=palette[gene],
            alpha=0.8,
            edgecolor="k",
            linewidth=0.3,
            s=40,
            label=gene,
        )

    ax.axhline(-np.log10(pval_thresh), color="black", linestyle="--", lw=1, alpha=0.5)
    ax.axvline(0, color="black", lw=1, alpha=0.3)

    labels = select_volcano_labels(res, max_label_loci, lfc_col, gene_col)
    for locus, text in labels.items():
        ax.annotate(
            text,
            xy=(res.loc[locus, lfc_col], res.loc[locus, "neg_log10_p"]),
            xytext=(5, 5),
            textcoords="offset points",
            fontsize=7,
            alpha=0.8,
        )

    ax.set_xlabel("Δβ (treatment - baseline)", fontsize=12)
    ax.set_ylabel(f"-log10({pval_col})", fontsize=12)
    ax.set_title("Volcano Plot: Differential Methylation", fontsize=14)
    if len(genes) <= 20:
        ax.legend(loc="upper left", bbox_to_anchor=(1.01, 1), fontsize=7, frameon=False)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    if save_path:
        save_figure(fig, save_path, dpi=dpi, tight=False)
    if show:
        plt.show()

    return fig

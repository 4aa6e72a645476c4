#!/usr/bin/env python
# coding: utf-8

"""
Differential Methylation Engine
Loading, moderated linear-model testing and diagnostics for beta matrices
"""

import os
import re
import warnings
from typing import Any, Dict, List, Optional, Tuple, Union
from xml.sax.saxutils import escape

import numpy as np
import pandas as pd
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    Image,
    ListFlowable,
    ListItem,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)
from scipy import linalg, optimize, stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from methylation_report.core.exceptions import (
    DegenerateDesignError,
    InputAlignmentError,
    RenderError,
)

LOGIT_OFFSET = 1e-6


# ============================================================================
# DATA LOADING
# ============================================================================


def load_beta_matrix(path: str) -> pd.DataFrame:
    """
    Read a loci x samples beta-value matrix from CSV.

    The first column holds locus identifiers; every other column is a sample
    of methylation fractions in [0, 1]. Missing cells are kept as NaN.
    """
    beta = pd.read_csv(path, index_col=0)
    beta.index = beta.index.astype(str)
    beta.columns = beta.columns.astype(str)

    if beta.index.has_duplicates:
        dups = beta.index[beta.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated locus identifiers: {dups[:5]}")

    non_numeric = [c for c in beta.columns if not pd.api.types.is_numeric_dtype(beta[c])]
    if non_numeric:
        raise ValueError(f"beta matrix contains non-numeric columns: {non_numeric}")

    values = beta.values
    observed = values[~np.isnan(values)]
    if observed.size and ((observed < 0).any() or (observed > 1).any()):
        raise ValueError("beta values must lie in [0, 1]")

    return beta


def load_phenotypes(
    path: str, sample_col: str = "sample_id", condition_col: str = "condition"
) -> pd.DataFrame:
    """Read the sample phenotype table, indexed by sample identifier."""
    pheno = pd.read_csv(path, dtype={sample_col: str})

    for col in (sample_col, condition_col):
        if col not in pheno.columns:
            raise ValueError(f"phenotype table has no '{col}' column")

    if pheno[sample_col].duplicated().any():
        raise ValueError("phenotype table contains duplicated sample identifiers")

    # missing conditions stay NaN so the design check can report them
    pheno[condition_col] = pheno[condition_col].map(str, na_action="ignore")
    return pheno.set_index(sample_col)


def beta_to_m(
    beta: Union[pd.DataFrame, pd.Series, np.ndarray], offset: float = LOGIT_OFFSET
):
    """
    Logit-transform beta values to M-values.

    ``offset`` keeps fully (un)methylated cells away from log(0). Used for
    diagnostics only; the differential test runs on raw beta values.
    """
    return np.log2((beta + offset) / (1 - beta + offset))


# ============================================================================
# INPUT VALIDATION
# ============================================================================


def align_samples(beta: pd.DataFrame, phenotypes: pd.DataFrame) -> pd.DataFrame:
    """
    Return ``phenotypes`` reordered to the beta matrix columns.

    Samples are matched by identifier, never by position.
    """
    in_beta = set(beta.columns)
    in_pheno = set(phenotypes.index)

    if in_beta != in_pheno:
        only_beta = sorted(in_beta - in_pheno)
        only_pheno = sorted(in_pheno - in_beta)
        raise InputAlignmentError(
            "Sample identifiers differ between beta matrix and phenotypes "
            f"(only in matrix: {only_beta[:5]}, only in phenotypes: {only_pheno[:5]})"
        )

    return phenotypes.loc[beta.columns]


def build_design(conditions: pd.Series, baseline: str) -> pd.DataFrame:
    """
    Encode a two-level condition as Intercept + treatment indicator.

    Returns a samples x 2 design whose second column is 1 for the
    non-baseline level.
    """
    if conditions.isna().any():
        raise ValueError("condition is missing for some samples")

    levels = pd.unique(conditions)
    if len(levels) < 2:
        raise DegenerateDesignError(
            f"Condition has {len(levels)} observed level(s); two are required"
        )
    if len(levels) > 2:
        raise DegenerateDesignError(
            f"Condition has {len(levels)} levels {list(levels)}; "
            "a two-group comparison needs exactly two"
        )
    if baseline not in levels:
        raise DegenerateDesignError(
            f"Baseline level '{baseline}' not observed in {list(levels)}"
        )

    treatment = [lvl for lvl in levels if lvl != baseline][0]
    return pd.DataFrame(
        {
            "Intercept": 1.0,
            f"{treatment}_vs_{baseline}": (conditions == treatment).astype(float),
        },
        index=conditions.index,
    )


def validate_design(design: pd.DataFrame, Y: pd.DataFrame) -> None:
    """Validate design matrix against data."""
    if not isinstance(design, pd.DataFrame):
        raise TypeError("design must be a pandas DataFrame")

    if design.shape[1] >= design.shape[0]:
        raise ValueError(
            f"Too many covariates ({design.shape[1]}) for sample "
            f"size ({design.shape[0]})"
        )

    if design.shape[0] != Y.shape[1]:
        raise ValueError(
            f"design rows ({design.shape[0]}) != data columns ({Y.shape[1]})"
        )

    if not np.array_equal(design.index.values, Y.columns.values):
        raise InputAlignmentError("design index must exactly match data columns")

    if design.isnull().any().any():
        raise ValueError("design contains missing values")

    if (design.dtypes == object).any():
        non_numeric = design.select_dtypes(include=[object]).columns.tolist()
        raise ValueError(f"design contains non-numeric columns: {non_numeric}")


def validate_contrast(contrast: np.ndarray, design: pd.DataFrame) -> None:
    """Validate contrast vector against design matrix."""
    contrast = np.asarray(contrast).reshape(-1)

    if contrast.shape[0] != design.shape[1]:
        raise ValueError(
            f"Contrast length ({contrast.shape[0]}) != "
            f"design columns ({design.shape[1]})"
        )

    if not np.isfinite(contrast).all():
        raise ValueError("Contrast contains non-finite values")


# ============================================================================
# EMPIRICAL BAYES MODERATION
# ============================================================================


def _winsorize_array(
    x: np.ndarray, lower_q: float = 0.05, upper_q: float = 0.95
) -> np.ndarray:
    """Clip array values to specified quantiles to reduce outlier influence."""
    lo = np.nanquantile(x, lower_q)
    hi = np.nanquantile(x, upper_q)
    return np.clip(x, lo, hi)


def _estimate_smyth_prior(
    s2: np.ndarray, df_resid: float, robust: bool = True, max_d0: float = 50.0
) -> Tuple[float, float]:
    """
    Estimate empirical Bayes prior (d0, s0²) using Smyth's method.

    Matches the mean and variance of log(s²) to those of a scaled
    F-distribution, solving for d0 with a trigamma equation.

    Parameters
    ----------
    s2 : np.ndarray
        Raw residual variances, one per locus
    df_resid : float
        Residual degrees of freedom
    robust : bool
        Winsorize variances before estimating the target
    max_d0 : float
        Upper bound on prior df (prevents over-shrinkage in small samples)

    Returns
    -------
    Tuple[float, float]
        (d0, s0_squared)
    """
    s2 = np.asarray(s2, dtype=float)
    s2 = s2[np.isfinite(s2)]
    if s2.size == 0:
        raise ValueError("No finite variances provided")

    if (s2 <= 0).any():
        warnings.warn("Non-positive variances detected in Smyth prior estimation.")
        return float(min(10.0, df_resid)), float(np.median(s2[s2 > 0]))

    s2_for_target = _winsorize_array(s2, 0.05, 0.95) if robust else s2

    log_s2 = np.log(s2_for_target)
    m = np.mean(log_s2)
    v = np.var(log_s2, ddof=1) if log_s2.size > 1 else 0.0

    if v < 0.01:
        warnings.warn(
            f"Variance heterogeneity is low (Var[log(s²)] = {v:.4f}). "
            f"Using conservative shrinkage (d0 = {min(10.0, df_resid):.1f})."
        )
        return float(min(10.0, df_resid)), float(np.median(s2_for_target))

    # Excess variance of log(s²) over what df_resid alone explains
    def f(d0):
        d0 = np.maximum(d0, 1e-8)
        val = polygamma(1, df_resid / 2.0) - polygamma(1, (df_resid + d0) / 2.0)
        return val - v

    low, high = 1e-8, max_d0
    if f(low) * f(high) < 0:
        d0_est = optimize.brentq(f, low, high, maxiter=200)
    else:
        sol = optimize.minimize_scalar(
            lambda x: (f(x)) ** 2, bounds=(0.0, max_d0), method="bounded"
        )
        d0_est = float(np.maximum(0.0, sol.x))

    d0_est = float(min(d0_est, max_d0))
    log_s0sq = m - (digamma(df_resid / 2.0) - digamma((df_resid + d0_est) / 2.0))
    s0_sq = float(np.maximum(np.exp(log_s0sq), 1e-12))

    return d0_est, s0_sq


def _moderate_variances(
    s2: np.ndarray,
    df_resid: float,
    shrink: Union[str, float],
    robust: bool,
    max_d0: float,
    winsor_lower: float,
    winsor_upper: float,
) -> Tuple[np.ndarray, float, float]:
    """Posterior variances, prior df and total df for the chosen shrinkage."""
    s2_for_target = _winsorize_array(s2, winsor_lower, winsor_upper) if robust else s2

    if isinstance(shrink, (int, float)) and not isinstance(shrink, bool) and shrink > 0:
        d0 = float(min(shrink, max_d0))
        s0sq = float(np.median(s2_for_target))
    elif shrink == "median":
        s0sq = float(np.median(s2_for_target))
        d0 = float(max(2.0, min(max_d0, df_resid)))
    elif shrink == "smyth":
        d0, s0sq = _estimate_smyth_prior(s2, df_resid, robust=robust, max_d0=max_d0)
    elif shrink == "none":
        return s2.copy(), 0.0, float(df_resid)
    else:
        raise ValueError(
            f"Unsupported shrink option: {shrink}. "
            "Use 'smyth', 'median', 'none', or a positive number."
        )

    s2_post = (df_resid * s2 + d0 * s0sq) / (df_resid + d0)
    return s2_post, d0, float(df_resid + d0)


# ============================================================================
# DIFFERENTIAL ANALYSIS
# ============================================================================


def fit_differential(
    Y: pd.DataFrame,
    design: pd.DataFrame,
    contrast: Optional[np.ndarray] = None,
    shrink: Union[str, float] = "smyth",
    robust: bool = True,
    eps: float = 1e-12,
    return_residuals: bool = False,
    min_count: int = 3,
    max_d0: float = 50.0,
    winsor_lower: float = 0.05,
    winsor_upper: float = 0.95,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]:
    """
    Fit per-locus linear models with empirical Bayes variance moderation.

    Parameters
    ----------
    Y : pd.DataFrame
        Loci x samples matrix of beta values (may contain NaN)
    design : pd.DataFrame
        Samples x covariates design matrix, index equal to ``Y.columns``
    contrast : np.ndarray, optional
        Coefficient contrast to test; defaults to the last design column
    shrink : str or float
        'smyth', 'median', 'none', or a fixed prior df
    robust : bool
        Winsorize variances before estimating the prior
    eps : float
        Floor on squared standard errors
    return_residuals : bool
        If True, return (results, residuals)
    min_count : int
        Minimum observed samples per locus for fitting
    max_d0 : float
        Maximum prior df
    winsor_lower, winsor_upper : float
        Winsorization quantiles (if robust=True)

    Returns
    -------
    pd.DataFrame or Tuple
        One row per input locus, sorted by ascending ``pval``. Loci that
        could not be fit are kept at the end with NaN statistics.

    Examples
    --------
    >>> design = pd.DataFrame({'Intercept': 1.0, 'Group': [0.0]*3 + [1.0]*3},
    ...                       index=beta.columns)
    >>> results = fit_differential(beta, design)
    """
    validate_design(design, Y)

    X = design.values.astype(float)
    n, p = X.shape
    if contrast is None:
        contrast = np.eye(p)[-1]
    validate_contrast(contrast, design)
    contrast = np.asarray(contrast, dtype=float).reshape(-1)

    df_resid = n - p
    if df_resid <= 0:
        raise ValueError(
            f"Residual degrees of freedom <= 0 (n={n}, p={p}). "
            "Reduce number of covariates or increase sample size."
        )

    values = Y.values.astype(float)
    G = values.shape[0]
    if np.isnan(values).any():
        warnings.warn("Y contains missing values. Fitting each locus on observed samples.")

    coef = np.full(G, np.nan)
    unscaled = np.full(G, np.nan)
    s2_all = np.full(G, np.nan)
    n_obs = np.zeros(G, dtype=int)
    residuals = np.full_like(values, np.nan)
    flat = []

    for g in range(G):
        y = values[g, :]
        mask = ~np.isnan(y)
        n_present = int(mask.sum())
        n_obs[g] = n_present

        if n_present < max(min_count, p + 1):
            continue

        y_obs = y[mask]
        X_obs = X[mask, :]

        if np.var(y_obs) < 1e-12:
            flat.append(Y.index[g])
            continue

        XtX_inv = linalg.pinv(X_obs.T @ X_obs)
        beta_hat = XtX_inv @ (X_obs.T @ y_obs)
        resid = y_obs - X_obs @ beta_hat
        residuals[g, mask] = resid

        coef[g] = contrast @ beta_hat
        unscaled[g] = contrast @ XtX_inv @ contrast
        s2_all[g] = np.sum(resid**2) / (n_present - p)

    if flat:
        warnings.warn(f"{len(flat)} loci have near-zero variance and were not tested")

    valid = np.isfinite(s2_all)
    n_skipped = int((~valid).sum()) - len(flat)
    if n_skipped > 0:
        warnings.warn(f"{n_skipped} loci had fewer than {min_count} observations")
    if valid.sum() == 0:
        raise ValueError("No loci could be fit successfully")

    s2 = s2_all[valid]
    s2_post, d0, df_total = _moderate_variances(
        s2, df_resid, shrink, robust, max_d0, winsor_lower, winsor_upper
    )

    logFC = coef[valid]
    se = np.sqrt(np.maximum(unscaled[valid] * s2, eps))
    se_post = np.sqrt(np.maximum(unscaled[valid] * s2_post, eps))
    t_stat = logFC / se_post
    pvals = 2.0 * stats.t.sf(np.abs(t_stat), df=df_total)
    _, padj, _, _ = multipletests(pvals, method="fdr_bh")

    with warnings.catch_warnings():
        # all-missing loci average to NaN
        warnings.simplefilter("ignore", RuntimeWarning)
        ave = np.nanmean(values, axis=1)

    res = pd.DataFrame(
        {
            "logFC": logFC,
            "AveExpr": ave[valid],
            "se": se,
            "t": t_stat,
            "pval": pvals,
            "padj": padj,
            "s2": s2,
            "s2_post": s2_post,
            "d0": d0,
            "df_total": df_total,
            "n_obs": n_obs[valid],
        },
        index=Y.index[valid],
    )
    res = res.sort_values("pval", kind="mergesort")

    if (~valid).any():
        untested = pd.DataFrame(
            {"AveExpr": ave[~valid], "n_obs": n_obs[~valid]},
            index=Y.index[~valid],
        )
        res = pd.concat([res, untested.reindex(columns=res.columns)])
        res["n_obs"] = res["n_obs"].astype(int)

    res.index.name = Y.index.name

    if return_residuals:
        resid_df = pd.DataFrame(residuals, index=Y.index, columns=Y.columns)
        return res, resid_df.loc[res.index]

    return res


def _add_group_means(
    res: pd.DataFrame, beta: pd.DataFrame, groups: pd.Series
) -> pd.DataFrame:
    """
    Add per-condition mean beta values as ``meanB_<level>`` columns.

    ``beta`` must contain every locus in ``res.index``.
    """
    if not res.index.isin(beta.index).all():
        missing = set(res.index) - set(beta.index)
        raise ValueError(f"beta missing {len(missing)} loci from results.")

    groups = groups.loc[beta.columns]
    means = beta.loc[res.index].T.groupby(groups).mean().T

    res = res.copy()
    for level in means.columns:
        res[f"meanB_{level}"] = means[level]
    return res


def run_differential(
    beta: pd.DataFrame,
    phenotypes: pd.DataFrame,
    condition_col: str = "condition",
    baseline: str = "control",
    **kwargs,
) -> pd.DataFrame:
    """
    Test every locus for a treatment-vs-baseline shift in methylation.

    Aligns phenotypes to the matrix by sample identifier, builds the
    two-group design and runs :func:`fit_differential`.

    Parameters
    ----------
    beta : pd.DataFrame
        Loci x samples beta matrix
    phenotypes : pd.DataFrame
        Sample-indexed phenotype table
    condition_col : str
        Phenotype column holding the condition label
    baseline : str
        Reference level of the condition
    **kwargs
        Passed to :func:`fit_differential`

    Returns
    -------
    pd.DataFrame
        Ranked differential results with ``meanB_<level>`` columns

    Raises
    ------
    InputAlignmentError
        If sample identifiers differ between inputs
    DegenerateDesignError
        If the condition does not have exactly two observed levels
    """
    if condition_col not in phenotypes.columns:
        raise ValueError(f"phenotype table has no '{condition_col}' column")

    pheno = align_samples(beta, phenotypes)
    if pheno[condition_col].isna().any():
        raise ValueError("condition is missing for some samples")
    conditions = pheno[condition_col].astype(str)
    design = build_design(conditions, baseline)

    fitted = fit_differential(beta, design, **kwargs)
    if isinstance(fitted, tuple):
        res, resid = fitted
        return _add_group_means(res, beta, conditions), resid
    return _add_group_means(fitted, beta, conditions)


# ============================================================================
# RESULTS ANALYSIS
# ============================================================================


def filter_significant(
    res: pd.DataFrame, threshold: float = 0.05, column: str = "padj"
) -> pd.DataFrame:
    """
    Keep loci whose adjusted p-value is strictly below ``threshold``.

    Order is preserved and no other criterion is applied.
    """
    if column not in res.columns:
        raise ValueError(f"results have no '{column}' column")
    return res[res[column] < threshold].copy()


def summarize_differential_results(
    res: pd.DataFrame, pval_thresh: float = 0.05
) -> Dict:
    """Generate summary statistics for a results table."""
    tested = res[res["pval"].notna()]
    sig = filter_significant(tested, pval_thresh)

    return {
        "total_loci": len(res),
        "total_tested": len(tested),
        "significant": len(sig),
        "pct_significant": len(sig) / len(tested) * 100 if len(tested) > 0 else 0,
        "hypermethylated": int((sig["logFC"] > 0).sum()),
        "hypomethylated": int((sig["logFC"] < 0).sum()),
        "mean_abs_logFC_sig": sig["logFC"].abs().mean() if len(sig) > 0 else 0,
        "max_abs_logFC": tested["logFC"].abs().max() if len(tested) > 0 else 0,
        "min_pval": tested["pval"].min() if len(tested) > 0 else 1,
        "shrinkage_factor": (
            tested["s2_post"].median() / tested["s2"].median() if len(tested) > 0 else 1
        ),
        "d0": tested["d0"].iloc[0] if len(tested) > 0 else 0,
    }


def export_results(
    res: pd.DataFrame,
    output_path: str,
    format: str = "csv",
    include_all: bool = False,
):
    """Export results to file."""
    if not include_all:
        cols = ["logFC", "AveExpr", "t", "pval", "padj"]
        cols += [c for c in res.columns if c.startswith("meanB_")]
        cols += [
            c
            for c in (
                "Chromosome", "Start", "End", "nearest_gene", "gene_distance",
                "distance_to_tss", "annotation",
            )
            if c in res.columns
        ]
        res_export = res[[c for c in cols if c in res.columns]]
    else:
        res_export = res

    if format == "csv":
        res_export.to_csv(output_path)
    elif format == "excel":
        res_export.to_excel(output_path, engine="openpyxl")
    elif format == "tsv":
        res_export.to_csv(output_path, sep="\t")
    else:
        raise ValueError(f"Unsupported format: {format}")

    print(f"✔ Results exported to {output_path}")


# ============================================================================
# DIAGNOSTIC VISUALIZATION
# ============================================================================


def save_figure(fig, save_path: str, dpi: int = 300, tight: bool = True):
    """
    Write ``fig`` to disk, raising RenderError if the target is unwritable.

    With ``tight=False`` the image is exactly figsize x dpi pixels.
    """
    try:
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight" if tight else None)
    except OSError as e:
        raise RenderError(f"Could not write figure to {save_path}: {e}") from e


def _finish(fig, save_path: Optional[str], dpi: int, show: bool):
    import matplotlib.pyplot as plt

    if save_path:
        save_figure(fig, save_path, dpi=dpi)
    if show:
        plt.show()
    return fig


def plot_mean_difference(
    res: pd.DataFrame,
    pval_thresh: float = 0.05,
    offset: float = LOGIT_OFFSET,
    save_path: Optional[str] = None,
    dpi: int = 300,
    show: bool = False,
):
    """Effect size against average signal on the M-value scale (MD plot)."""
    import matplotlib.pyplot as plt

    tested = res[res["pval"].notna()]
    ave_m = beta_to_m(tested["AveExpr"].clip(0, 1), offset=offset)
    sig = tested["padj"] < pval_thresh

    fig, ax = plt.subplots(figsize=(7, 5))
    ax.scatter(ave_m[~sig], tested.loc[~sig, "logFC"], s=10, alpha=0.4, c="grey",
               label="Not significant")
    ax.scatter(ave_m[sig], tested.loc[sig, "logFC"], s=14, alpha=0.8, c="red",
               label=f"padj < {pval_thresh}")
    ax.axhline(0, color="black", lw=1, alpha=0.5)

    ax.set_xlabel("Average M-value")
    ax.set_ylabel("Δβ (treatment - baseline)")
    ax.set_title("Mean-Difference Plot")
    ax.legend()
    ax.grid(alpha=0.3)

    plt.tight_layout()
    return _finish(fig, save_path, dpi, show)


def plot_mean_variance(
    res: pd.DataFrame,
    save_path: Optional[str] = None,
    dpi: int = 300,
    show: bool = False,
):
    """Plot raw and moderated variances against average beta (SA plot)."""
    import matplotlib.pyplot as plt

    tested = res[res["pval"].notna()]
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    ax1.scatter(tested["AveExpr"], np.log2(tested["s2"]), alpha=0.3, s=10,
                label="Raw variance")
    ax1.scatter(tested["AveExpr"], np.log2(tested["s2_post"]), alpha=0.3, s=10,
                label="Moderated variance")
    ax1.set_xlabel("Average β")
    ax1.set_ylabel("log2(variance)")
    ax1.set_title("Mean-Variance Relationship")
    ax1.legend()
    ax1.grid(alpha=0.3)

    rank = np.arange(len(tested))
    ax2.scatter(rank, np.sqrt(tested["s2"]), alpha=0.3, s=10, label="Raw SD")
    ax2.scatter(rank, np.sqrt(tested["s2_post"]), alpha=0.3, s=10, label="Moderated SD")
    ax2.set_xlabel("Rank")
    ax2.set_ylabel("Standard Deviation")
    ax2.set_title("Variance Shrinkage")
    ax2.legend()
    ax2.grid(alpha=0.3)

    plt.tight_layout()
    return _finish(fig, save_path, dpi, show)


def plot_pvalue_qq(
    res: pd.DataFrame,
    save_path: Optional[str] = None,
    dpi: int = 300,
    show: bool = False,
):
    """Q-Q plot of p-values to check for inflation."""
    import matplotlib.pyplot as plt

    pvals = res["pval"].dropna().values
    observed = -np.log10(np.sort(np.maximum(pvals, np.nextafter(0, 1))))
    expected = -np.log10(np.linspace(1 / len(pvals), 1, len(pvals)))

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(expected, observed, alpha=0.5, s=10)
    ax.plot([0, max(expected)], [0, max(expected)], "r--", lw=2, label="Expected")

    ax.set_xlabel("Expected -log10(p)", fontsize=12)
    ax.set_ylabel("Observed -log10(p)", fontsize=12)
    ax.set_title("P-value Q-Q Plot", fontsize=14)
    ax.legend()
    ax.grid(alpha=0.3)

    plt.tight_layout()
    return _finish(fig, save_path, dpi, show)


def plot_sample_qc(
    beta: pd.DataFrame,
    phenotypes: pd.DataFrame,
    condition_col: str = "condition",
    save_path: Optional[str] = None,
    dpi: int = 300,
    show: bool = False,
):
    """Sample-level QC: missingness, mean beta, variance and PCA."""
    import matplotlib.pyplot as plt
    import seaborn as sns
    from sklearn.decomposition import PCA
    from sklearn.impute import SimpleImputer

    conditions = align_samples(beta, phenotypes)[condition_col].astype(str)
    levels = list(pd.unique(conditions))
    palette = dict(zip(levels, sns.color_palette("Set2", len(levels))))
    colors = [palette[c] for c in conditions]

    fig, axes = plt.subplots(2, 2, figsize=(12, 10))

    ax = axes[0, 0]
    missing_per_sample = beta.isna().sum(axis=0) / len(beta) * 100
    ax.bar(range(len(missing_per_sample)), missing_per_sample.values, color=colors)
    ax.set_xticks(range(len(beta.columns)))
    ax.set_xticklabels(beta.columns, rotation=90, fontsize=7)
    ax.set_ylabel("% Missing")
    ax.set_title("Missing Data per Sample")

    ax = axes[0, 1]
    mean_beta = beta.mean(axis=0)
    for level in levels:
        ax.hist(mean_beta[conditions == level], alpha=0.6, bins=20, label=level,
                color=palette[level])
    ax.set_xlabel("Mean β")
    ax.set_ylabel("Frequency")
    ax.set_title("Mean β Distribution by Condition")
    ax.legend()

    ax = axes[1, 0]
    var_beta = beta.var(axis=0)
    ax.bar(range(len(var_beta)), var_beta.values, color=colors)
    ax.set_xlabel("Sample")
    ax.set_ylabel("Variance")
    ax.set_title("Within-Sample Variance")

    ax = axes[1, 1]
    complete = beta.dropna()
    if len(complete) >= 2:
        X = complete.T.values
    else:
        X = SimpleImputer(strategy="mean").fit_transform(beta.T.values)
    n_comp = min(2, X.shape[0], X.shape[1])
    pca = PCA(n_components=n_comp)
    coords = pca.fit_transform(X)
    if n_comp < 2:
        coords = np.column_stack([coords, np.zeros(len(coords))])

    for level in levels:
        mask = (conditions == level).values
        ax.scatter(coords[mask, 0], coords[mask, 1], label=level, alpha=0.7, s=80,
                   color=palette[level], edgecolor="k")

    ratios = list(pca.explained_variance_ratio_) + [0.0]
    ax.set_xlabel(f"PC1 ({ratios[0]:.1%})")
    ax.set_ylabel(f"PC2 ({ratios[1]:.1%})")
    ax.set_title("PCA of Samples")
    ax.legend()
    ax.grid(alpha=0.3)

    plt.tight_layout()
    return _finish(fig, save_path, dpi, show)


# ============================================================================
# PDF REPORTING
# ============================================================================


class PDFLogger:
    """
    Collects a Markdown-like run log into a PDF report.

    Every entry is echoed to stdout when ``echo`` is set, so the console
    carries the same textual summary as the report.
    """

    _HEADINGS = (("### ", "H3"), ("## ", "H2"), ("# ", "H1"))

    def __init__(self, path: str = "report.pdf", echo: bool = True):
        self.path = path
        self.echo = echo
        self.doc = SimpleDocTemplate(path, pagesize=A4)
        self.styles = getSampleStyleSheet()

        for name, size, before in (("H1", 16, 25), ("H2", 14, 20), ("H3", 12, 6)):
            self.styles.add(
                ParagraphStyle(
                    name,
                    parent=self.styles["Normal"],
                    fontName="Helvetica-Bold",
                    fontSize=size,
                    leading=size + 2,
                    spaceBefore=before,
                    spaceAfter=6,
                )
            )
        self.styles.add(
            ParagraphStyle(
                "CodeBlock",
                parent=self.styles["Normal"],
                fontName="Courier",
                fontSize=8,
            )
        )

        self.story: List[Any] = []
        self.current_list = None

    def _format_md(self, text: str) -> str:
        """Inline Markdown: bold, italics, code. Markup characters are escaped."""
        text = escape(text)
        text = re.sub(r"\*\*(.*?)\*\*", r"<b>\1</b>", text)
        text = re.sub(r"\*([^*]+)\*", r"<i>\1</i>", text)
        text = re.sub(r"`(.*?)`", r"<font name='Courier'>\1</font>", text)
        return text

    def _echo(self, text: str):
        if self.echo:
            print(text)

    def log_text(self, text: str):
        text = text.strip()
        if not text:
            return
        self._echo(text)

        for prefix, style in self._HEADINGS:
            if text.startswith(prefix):
                self.current_list = None
                self.story.append(Paragraph(escape(text[len(prefix):]), self.styles[style]))
                return

        if text.startswith("- "):
            item = ListItem(Paragraph(self._format_md(text[2:].strip()),
                                      self.styles["Normal"]))
            if self.current_list is None:
                self.current_list = ListFlowable(
                    [item],
                    bulletType="bullet",
                    leftIndent=18,
                    bulletFontSize=10,
                    start=None,
                    spaceAfter=12,
                )
                self.story.append(self.current_list)
            else:
                self.current_list._flowables.append(item)
            return

        self.current_list = None
        self.story.append(Paragraph(self._format_md(text), self.styles["Normal"]))

    def log_summary(self, summary: Dict[str, Any], title: Optional[str] = None):
        """Log a flat dict as a bullet list."""
        if title:
            self.log_text(f"### {title}")
        for key, value in summary.items():
            if isinstance(value, float):
                value = f"{value:.4g}"
            self.log_text(f"- **{key}**: {value}")

    def log_code(self, code: str):
        """Log a preformatted block."""
        code = code.rstrip()
        self._echo(code)
        self.current_list = None
        self.story.append(Preformatted(code, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.18 * inch))

    def log_dataframe(
        self, df: pd.DataFrame, title: Optional[str] = None, max_rows: int = 20
    ):
        """Log a DataFrame as a fixed-width table, truncated in the middle."""
        self.current_list = None

        if title:
            self.story.append(Paragraph(f"<b>{escape(title)}</b>", self.styles["Normal"]))
            self.story.append(Spacer(1, 0.1 * inch))

        if len(df) > max_rows:
            shown = pd.concat([df.head(max_rows // 2), df.tail(max_rows // 2)])
            table_text = shown.to_string() + f"\n... ({len(df) - max_rows} more rows)"
        else:
            table_text = df.to_string()

        self._echo(table_text)
        self.story.append(Preformatted(table_text, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.15 * inch))

    def log_image(
        self,
        path: str,
        title: Optional[str] = None,
        caption: Optional[str] = None,
        width: float = 5 * inch,
    ):
        """Embed an image scaled to fit the page."""
        self._echo(f"[Image: {path}] {caption or ''}")
        if not os.path.exists(path):
            self.log_text(f"[Missing image: {path}]")
            return

        iw, ih = ImageReader(path).getSize()
        aspect = ih / float(iw)
        width = min(width, A4[0] - 2 * inch)
        height = width * aspect
        if height > 9 * inch:
            height = 9 * inch
            width = height / aspect

        self.current_list = None
        self.story.append(Image(path, width=width, height=height))
        if caption or title:
            caption_text = self._format_md(f"**{title}**: {caption}" if title else caption)
            self.story.append(Paragraph(caption_text, self.styles["Normal"]))
        self.story.append(Spacer(1, 0.2 * inch))

    def save(self):
        """Build the PDF."""
        try:
            self.doc.build(self.story)
        except OSError as e:
            raise RenderError(f"Could not write report to {self.path}: {e}") from e
        self._echo(f"✔ PDF saved to {self.path}")

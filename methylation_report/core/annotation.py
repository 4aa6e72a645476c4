#!/usr/bin/env python
# coding: utf-8

"""
Locus Annotation
Coordinate parsing, nearest-gene lookup and genomic feature classification
against a GTF-derived genome reference
"""

import os
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

import numpy as np
import pandas as pd
import pyranges as pr
import requests

from methylation_report.core.exceptions import MalformedLocusError, RemoteServiceError

LOCUS_PATTERN = re.compile(r"^(?P<chrom>[^:\s]+):(?P<start>\d+)-(?P<end>\d+)$")

UTR_FEATURES = {
    "five_prime_utr": "5' UTR",
    "5UTR": "5' UTR",
    "three_prime_utr": "3' UTR",
    "3UTR": "3' UTR",
}

ANNOTATED_COLUMNS = [
    "locus_id",
    "Chromosome",
    "Start",
    "End",
    "nearest_gene",
    "gene_distance",
    "distance_to_tss",
    "annotation",
]


# ============================================================================
# LOCUS PARSING
# ============================================================================


def parse_locus_id(locus_id: str) -> Tuple[str, int, int]:
    """
    Split a ``chrom:start-end`` identifier into its coordinates.

    Examples
    --------
    >>> parse_locus_id("chr7:12345-12400")
    ('chr7', 12345, 12400)
    """
    match = LOCUS_PATTERN.match(str(locus_id).strip())
    if match is None:
        raise MalformedLocusError(f"Locus '{locus_id}' is not of the form chrom:start-end")

    start, end = int(match.group("start")), int(match.group("end"))
    if start > end:
        raise MalformedLocusError(f"Locus '{locus_id}' has start > end")

    return match.group("chrom"), start, end


def loci_to_frame(res: pd.DataFrame) -> pd.DataFrame:
    """Coordinates for every locus in ``res.index``, one row per locus."""
    parsed = [parse_locus_id(locus) for locus in res.index]
    frame = pd.DataFrame(parsed, columns=["Chromosome", "Start", "End"], index=res.index)
    frame.insert(0, "locus_id", res.index.astype(str))
    return frame


def _loci_ranges(loci: pd.DataFrame) -> pr.PyRanges:
    # 1-based inclusive identifiers -> 0-based half-open intervals
    start0 = np.maximum(loci["Start"].to_numpy() - 1, 0)
    end0 = np.maximum(loci["End"].to_numpy(), start0 + 1)
    return pr.PyRanges(
        pd.DataFrame(
            {
                "Chromosome": loci["Chromosome"].to_numpy(),
                "Start": start0,
                "End": end0,
                "locus_id": loci["locus_id"].to_numpy(),
            }
        )
    )


def _as_frame(ranges: pr.PyRanges, columns) -> pd.DataFrame:
    if len(ranges) == 0:
        return pd.DataFrame(columns=columns)
    df = ranges.df
    df["Chromosome"] = df["Chromosome"].astype(str)
    return df


def _overlapping_ids(loci_gr: pr.PyRanges, features: pd.DataFrame) -> set:
    if features.empty or len(loci_gr) == 0:
        return set()
    hits = loci_gr.overlap(pr.PyRanges(features[["Chromosome", "Start", "End"]]))
    return set(_as_frame(hits, ["locus_id"])["locus_id"])


# ============================================================================
# GENOME REFERENCE
# ============================================================================


class GenomeReference:
    """
    Read-only gene and transcript coordinates for one genome build.

    Built from a GTF-like table (pyranges ``read_gtf`` layout: 0-based
    half-open ``Start``/``End``, ``Feature``, ``Strand`` and attribute
    columns). Strand is kept as ``tx_strand`` so interval queries run
    unstranded.

    Attributes
    ----------
    genes : pd.DataFrame
        One row per gene: Chromosome, Start, End, tx_strand, gene_name
    transcripts : pd.DataFrame
        Transcript bodies; genes stand in when the GTF has no transcripts
    exons : pd.DataFrame
        Exon intervals
    utrs : pd.DataFrame
        UTR intervals with a ``utr_label`` column
    """

    def __init__(self, annotation: pd.DataFrame):
        required = {"Chromosome", "Feature", "Start", "End"}
        missing = required - set(annotation.columns)
        if missing:
            raise ValueError(f"annotation table missing columns: {sorted(missing)}")

        table = annotation.copy()
        table["Chromosome"] = table["Chromosome"].astype(str)
        table["Feature"] = table["Feature"].astype(str)
        table["Start"] = table["Start"].astype(int)
        table["End"] = table["End"].astype(int)
        table["tx_strand"] = (
            table["Strand"].astype(str) if "Strand" in table.columns else "+"
        )
        if "gene_name" not in table.columns:
            if "gene_id" not in table.columns:
                raise ValueError("annotation table needs gene_name or gene_id")
            table["gene_name"] = table["gene_id"]
        elif "gene_id" in table.columns:
            table["gene_name"] = table["gene_name"].fillna(table["gene_id"])

        biotype_col = next(
            (c for c in ("gene_biotype", "gene_type") if c in table.columns), None
        )
        table["gene_biotype"] = table[biotype_col] if biotype_col else np.nan

        cols = ["Chromosome", "Start", "End", "tx_strand", "gene_name", "gene_biotype"]
        self.genes = table.loc[table["Feature"] == "gene", cols].reset_index(drop=True)
        self.transcripts = table.loc[
            table["Feature"] == "transcript", cols
        ].reset_index(drop=True)
        self.exons = table.loc[table["Feature"] == "exon", cols].reset_index(drop=True)

        utrs = table.loc[table["Feature"].isin(UTR_FEATURES), cols + ["Feature"]].copy()
        utrs["utr_label"] = utrs["Feature"].map(UTR_FEATURES)
        self.utrs = utrs.drop(columns="Feature").reset_index(drop=True)

        if self.genes.empty and not self.transcripts.empty:
            self.genes = (
                self.transcripts.groupby(["gene_name", "Chromosome"], as_index=False)
                .agg(
                    Start=("Start", "min"),
                    End=("End", "max"),
                    tx_strand=("tx_strand", "first"),
                    gene_biotype=("gene_biotype", "first"),
                )[cols]
            )
        if self.transcripts.empty:
            self.transcripts = self.genes.copy()

    @classmethod
    def from_gtf(cls, path: str) -> "GenomeReference":
        """Read a GTF file with pyranges."""
        gtf = pr.read_gtf(path)
        return cls(gtf.df)

    def gene_table(self) -> pd.DataFrame:
        """Gene name, chromosome, start, end, strand and biotype."""
        return self.genes.rename(columns={"tx_strand": "Strand"})[
            ["gene_name", "Chromosome", "Start", "End", "Strand", "gene_biotype"]
        ].copy()

    def tss_table(self) -> pd.DataFrame:
        """One-base intervals at each transcript start site."""
        tx = self.transcripts
        tss = np.where(tx["tx_strand"] == "-", tx["End"] - 1, tx["Start"])
        return pd.DataFrame(
            {
                "Chromosome": tx["Chromosome"].to_numpy(),
                "Start": tss,
                "End": tss + 1,
                "tss_pos": tss,
                "tss_strand": tx["tx_strand"].to_numpy(),
                "tss_gene": tx["gene_name"].to_numpy(),
            }
        )

    def downstream_table(self, window: int) -> pd.DataFrame:
        """Regions of ``window`` bases past each transcript end."""
        tx = self.transcripts
        minus = (tx["tx_strand"] == "-").to_numpy()
        start = np.where(minus, np.maximum(tx["Start"] - window, 0), tx["End"])
        end = np.where(minus, tx["Start"], tx["End"] + window)
        keep = end > start
        return pd.DataFrame(
            {"Chromosome": tx["Chromosome"].to_numpy()[keep], "Start": start[keep],
             "End": end[keep]}
        )


def _download_reference(url: str, cache_dir: str, timeout: float) -> str:
    filename = os.path.basename(urlparse(url).path) or "reference.gtf"
    target = os.path.join(cache_dir, filename)
    if os.path.exists(target):
        return target

    os.makedirs(cache_dir, exist_ok=True)
    partial = target + ".part"
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(partial, "wb") as fh:
                for chunk in response.iter_content(chunk_size=1 << 20):
                    fh.write(chunk)
    except requests.RequestException as e:
        if os.path.exists(partial):
            os.remove(partial)
        raise RemoteServiceError(f"Genome reference download failed: {e}") from e

    os.replace(partial, target)
    print(f"✔ Genome reference cached at {target}")
    return target


def load_genome_reference(
    source: str, cache_dir: Optional[str] = None, timeout: float = 60
) -> GenomeReference:
    """
    Load the genome reference from a local GTF path or an HTTP(S) URL.

    URLs are downloaded once into ``cache_dir`` and read from there on
    later runs.

    Raises
    ------
    RemoteServiceError
        If the reference cannot be downloaded or the file does not exist
    """
    if source.startswith(("http://", "https://")):
        path = _download_reference(source, cache_dir or ".", timeout)
    else:
        path = source

    if not os.path.exists(path):
        raise RemoteServiceError(f"Genome reference not found: {path}")

    return GenomeReference.from_gtf(path)


# ============================================================================
# NEAREST GENE
# ============================================================================


def annotate_nearest_gene(loci: pd.DataFrame, reference: GenomeReference) -> pd.DataFrame:
    """
    Nearest gene for every locus.

    Overlapping genes have distance 0; ties go to the first gene by
    position. Loci on chromosomes without genes get null name and distance.

    Returns
    -------
    pd.DataFrame
        ``locus_id``, ``nearest_gene``, ``gene_distance``; one row per locus
    """
    out_cols = ["locus_id", "nearest_gene", "gene_distance"]
    base = loci[["locus_id"]].reset_index(drop=True)
    if loci.empty or reference.genes.empty:
        return base.assign(nearest_gene=None, gene_distance=np.nan)[out_cols]

    genes_gr = pr.PyRanges(reference.genes[["Chromosome", "Start", "End", "gene_name"]])
    hits = _as_frame(
        _loci_ranges(loci).nearest(genes_gr),
        ["locus_id", "gene_name", "Distance", "Start_b"],
    )

    hits = (
        hits.sort_values(["locus_id", "Distance", "Start_b"], kind="mergesort")
        .drop_duplicates("locus_id", keep="first")
        .rename(columns={"gene_name": "nearest_gene", "Distance": "gene_distance"})
    )

    merged = base.merge(
        hits[out_cols], on="locus_id", how="left", validate="one_to_one"
    )
    merged["nearest_gene"] = merged["nearest_gene"].astype(object).where(
        merged["nearest_gene"].notna(), None
    )
    return merged


# ============================================================================
# FEATURE CLASSIFICATION
# ============================================================================


def _promoter_label(abs_distance: float) -> str:
    k = max(1, int(np.ceil(abs_distance / 1000.0)))
    if k == 1:
        return "Promoter (<=1kb)"
    return f"Promoter ({k - 1}-{k}kb)"


def _signed_tss_distance(hits: pd.DataFrame) -> np.ndarray:
    """Locus position relative to the TSS, negative upstream."""
    lo = hits["Start"].to_numpy()
    hi = hits["End"].to_numpy() - 1
    tss = hits["tss_pos"].to_numpy()

    raw = np.where(tss < lo, lo - tss, np.where(tss > hi, hi - tss, 0))
    return np.where(hits["tss_strand"].to_numpy() == "-", -raw, raw)


def classify_features(
    loci: pd.DataFrame,
    reference: GenomeReference,
    promoter_window: Tuple[int, int] = (-3000, 3000),
    downstream_window: int = 3000,
) -> pd.DataFrame:
    """
    Label each locus with its genomic feature.

    Priority: Promoter (within ``promoter_window`` of the nearest TSS,
    binned per kb) > 5' UTR > 3' UTR > Exon > Intron > Downstream (within
    ``downstream_window`` past a transcript end) > Distal Intergenic.

    Returns
    -------
    pd.DataFrame
        ``locus_id``, ``distance_to_tss``, ``annotation``; one row per locus
    """
    upstream, downstream = promoter_window
    base = loci[["locus_id"]].reset_index(drop=True)
    if loci.empty:
        return base.assign(distance_to_tss=np.nan, annotation=pd.Series(dtype=object))

    loci_gr = _loci_ranges(loci)

    tss = reference.tss_table()
    if tss.empty:
        dist = base.assign(distance_to_tss=np.nan)
    else:
        hits = _as_frame(
            loci_gr.nearest(pr.PyRanges(tss)),
            ["locus_id", "Start", "End", "tss_pos", "tss_strand"],
        )
        if not hits.empty:
            hits["distance_to_tss"] = _signed_tss_distance(hits)
            hits["abs_distance"] = np.abs(hits["distance_to_tss"])
            hits = hits.sort_values(
                ["locus_id", "abs_distance", "tss_pos"], kind="mergesort"
            ).drop_duplicates("locus_id", keep="first")
        else:
            hits["distance_to_tss"] = pd.Series(dtype=float)
        dist = base.merge(
            hits[["locus_id", "distance_to_tss"]],
            on="locus_id",
            how="left",
            validate="one_to_one",
        )

    utrs = reference.utrs
    five_utr = _overlapping_ids(loci_gr, utrs[utrs["utr_label"] == "5' UTR"])
    three_utr = _overlapping_ids(loci_gr, utrs[utrs["utr_label"] == "3' UTR"])
    exonic = _overlapping_ids(loci_gr, reference.exons)
    genic = _overlapping_ids(loci_gr, reference.transcripts)
    downstream_ids = _overlapping_ids(
        loci_gr, reference.downstream_table(downstream_window)
    )

    d = dist["distance_to_tss"].to_numpy(dtype=float)
    ids = dist["locus_id"]
    in_promoter = np.isfinite(d) & (d >= upstream) & (d <= downstream)

    labels = np.select(
        [
            in_promoter,
            ids.isin(five_utr),
            ids.isin(three_utr),
            ids.isin(exonic),
            ids.isin(genic),
            ids.isin(downstream_ids),
        ],
        [
            "Promoter",
            "5' UTR",
            "3' UTR",
            "Exon",
            "Intron",
            f"Downstream (<={downstream_window / 1000:g}kb)",
        ],
        default="Distal Intergenic",
    ).astype(object)

    promoter_idx = np.flatnonzero(in_promoter)
    labels[promoter_idx] = [_promoter_label(abs(d[i])) for i in promoter_idx]

    dist["annotation"] = labels
    return dist[["locus_id", "distance_to_tss", "annotation"]]


# ============================================================================
# ANNOTATION PIPELINE
# ============================================================================


def annotate_loci(
    res: pd.DataFrame,
    reference: GenomeReference,
    promoter_window: Tuple[int, int] = (-3000, 3000),
    downstream_window: int = 3000,
) -> pd.DataFrame:
    """
    Attach coordinates, nearest gene and feature label to result rows.

    Both joins are left joins on ``locus_id``: every input locus is kept,
    with null gene/feature fields where the reference has nothing.

    Parameters
    ----------
    res : pd.DataFrame
        Differential results indexed by ``chrom:start-end`` identifiers
    reference : GenomeReference
        Genes and transcripts of the matching genome build
    promoter_window : Tuple[int, int]
        Bases around the TSS (upstream negative) counted as promoter
    downstream_window : int
        Bases past a transcript end counted as downstream

    Returns
    -------
    pd.DataFrame
        ``res`` columns plus the annotation columns, same index and order

    Raises
    ------
    MalformedLocusError
        If any identifier does not parse
    """
    loci = loci_to_frame(res)
    nearest = annotate_nearest_gene(loci, reference)
    features = classify_features(loci, reference, promoter_window, downstream_window)

    annotated = (
        loci.reset_index(drop=True)
        .merge(nearest, on="locus_id", how="left", validate="one_to_one")
        .merge(features, on="locus_id", how="left", validate="one_to_one")
    )
    annotated.index = res.index

    stats_cols = res.drop(columns=[c for c in ANNOTATED_COLUMNS if c in res.columns])
    return pd.concat([annotated[ANNOTATED_COLUMNS], stats_cols], axis=1)

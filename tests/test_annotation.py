#!/usr/bin/env python
# coding: utf-8

"""
Test suite for locus annotation

Run with:
    pytest tests/test_annotation.py -v --cov=methylation_report.core.annotation
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest
import requests

from methylation_report.core.annotation import (
    ANNOTATED_COLUMNS,
    GenomeReference,
    _promoter_label,
    annotate_loci,
    annotate_nearest_gene,
    classify_features,
    load_genome_reference,
    loci_to_frame,
    parse_locus_id,
)
from methylation_report.core.exceptions import MalformedLocusError, RemoteServiceError

EXPECTED_FEATURES = {
    "chr1:9001-9002": "Promoter (<=1kb)",
    "chr1:13001-13002": "Promoter (2-3kb)",
    "chr1:14001-14002": "Intron",
    "chr1:15101-15102": "Exon",
    "chr1:19601-19602": "3' UTR",
    "chr1:21001-21002": "Downstream (<=3kb)",
    "chr1:29001-29002": "Promoter (<=1kb)",
    "chr1:40001-40002": "Distal Intergenic",
    "chr2:55001-55002": "Intron",
    "chr2:61001-61002": "Promoter (1-2kb)",
    "chr9:101-200": "Distal Intergenic",
}

GTF_TEXT = (
    'chr1\ttest\tgene\t1001\t2000\t.\t+\t.\tgene_id "G1"; gene_name "GENE1"; '
    'gene_biotype "protein_coding";\n'
    'chr1\ttest\ttranscript\t1001\t2000\t.\t+\t.\tgene_id "G1"; gene_name "GENE1"; '
    'transcript_id "T1";\n'
    'chr1\ttest\texon\t1001\t1200\t.\t+\t.\tgene_id "G1"; gene_name "GENE1"; '
    'transcript_id "T1";\n'
)


@pytest.fixture
def loci():
    res = pd.DataFrame(index=list(EXPECTED_FEATURES))
    return loci_to_frame(res)


# ============================================================================
# PARSING TESTS
# ============================================================================


class TestLocusParsing:
    """Test locus identifier parsing."""

    def test_parse_locus_id(self):
        assert parse_locus_id("chr7:12345-12400") == ("chr7", 12345, 12400)

    def test_parse_single_base(self):
        assert parse_locus_id("chrX:5-5") == ("chrX", 5, 5)

    @pytest.mark.parametrize("bad", ["chr7_bad", "chr1:100", "chr1:a-b", "chr1 :1-2", ""])
    def test_parse_malformed(self, bad):
        with pytest.raises(MalformedLocusError):
            parse_locus_id(bad)

    def test_parse_start_after_end(self):
        with pytest.raises(MalformedLocusError, match="start > end"):
            parse_locus_id("chr1:200-100")

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            parse_locus_id("not-a-locus")

    def test_loci_to_frame(self):
        res = pd.DataFrame({"logFC": [0.1, -0.2]}, index=["chr2:10-20", "chr1:5-6"])
        frame = loci_to_frame(res)

        assert list(frame.columns) == ["locus_id", "Chromosome", "Start", "End"]
        assert list(frame.index) == list(res.index)
        assert frame.loc["chr2:10-20", "Start"] == 10


# ============================================================================
# REFERENCE TESTS
# ============================================================================


class TestGenomeReference:
    """Test reference construction and derived tables."""

    def test_tables(self, reference):
        assert len(reference.genes) == 4
        assert len(reference.transcripts) == 4
        assert len(reference.exons) == 4
        assert reference.utrs["utr_label"].tolist() == ["3' UTR"]

    def test_gene_table(self, reference):
        table = reference.gene_table()

        assert list(table.columns) == [
            "gene_name", "Chromosome", "Start", "End", "Strand", "gene_biotype"
        ]
        assert table.set_index("gene_name").loc["FN1", "Strand"] == "-"

    def test_tss_respects_strand(self, reference):
        tss = reference.tss_table().set_index("tss_gene")

        assert tss.loc["COL1A1", "tss_pos"] == 10000
        assert tss.loc["FN1", "tss_pos"] == 59999

    def test_downstream_respects_strand(self, reference):
        down = reference.downstream_table(3000)

        assert ((down["Start"] == 20000) & (down["End"] == 23000)).any()
        assert ((down["Start"] == 47000) & (down["End"] == 50000)).any()

    def test_genes_derived_from_transcripts(self, reference_table):
        table = reference_table[reference_table["Feature"] != "gene"]
        ref = GenomeReference(table)

        assert sorted(ref.genes["gene_name"]) == ["COL1A1", "COL1A2", "FN1", "GAPDH"]

    def test_gene_id_fallback(self, reference_table):
        table = reference_table.drop(columns="gene_name")
        ref = GenomeReference(table)

        assert "ENSG_FN1" in set(ref.genes["gene_name"])

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing columns"):
            GenomeReference(pd.DataFrame({"Chromosome": ["chr1"]}))

    def test_from_gtf(self, tmp_path):
        path = tmp_path / "genes.gtf"
        path.write_text(GTF_TEXT)

        ref = GenomeReference.from_gtf(str(path))

        assert ref.genes.loc[0, "gene_name"] == "GENE1"
        assert ref.genes.loc[0, "Start"] == 1000
        assert ref.genes.loc[0, "End"] == 2000
        assert len(ref.exons) == 1


class TestLoadGenomeReference:
    """Test local and remote reference loading."""

    def test_local_path(self, tmp_path):
        path = tmp_path / "genes.gtf"
        path.write_text(GTF_TEXT)

        ref = load_genome_reference(str(path))
        assert len(ref.genes) == 1

    def test_missing_local_path(self, tmp_path):
        with pytest.raises(RemoteServiceError, match="not found"):
            load_genome_reference(str(tmp_path / "absent.gtf"))

    @patch("methylation_report.core.annotation.requests.get")
    def test_download_is_cached(self, mock_get, tmp_path):
        response = MagicMock()
        response.iter_content.return_value = [GTF_TEXT.encode()]
        mock_get.return_value.__enter__.return_value = response

        cache = tmp_path / "cache"
        url = "https://example.org/ref/genes.gtf"
        ref = load_genome_reference(url, cache_dir=str(cache))
        load_genome_reference(url, cache_dir=str(cache))

        assert len(ref.genes) == 1
        assert (cache / "genes.gtf").exists()
        assert not (cache / "genes.gtf.part").exists()
        assert mock_get.call_count == 1

    @patch("methylation_report.core.annotation.requests.get")
    def test_download_failure(self, mock_get, tmp_path):
        mock_get.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(RemoteServiceError, match="download failed"):
            load_genome_reference(
                "https://example.org/genes.gtf", cache_dir=str(tmp_path)
            )
        assert not (tmp_path / "genes.gtf").exists()


# ============================================================================
# NEAREST GENE TESTS
# ============================================================================


class TestNearestGene:
    """Test nearest-gene assignment."""

    def test_one_row_per_locus(self, loci, reference):
        nearest = annotate_nearest_gene(loci, reference)

        assert len(nearest) == len(loci)
        assert list(nearest["locus_id"]) == list(loci["locus_id"])

    def test_nearest_gene_names(self, loci, reference):
        nearest = annotate_nearest_gene(loci, reference).set_index("locus_id")

        assert nearest.loc["chr1:9001-9002", "nearest_gene"] == "COL1A1"
        assert nearest.loc["chr1:29001-29002", "nearest_gene"] == "COL1A2"
        assert nearest.loc["chr2:55001-55002", "nearest_gene"] == "FN1"

    def test_overlapping_gene_distance_zero(self, loci, reference):
        nearest = annotate_nearest_gene(loci, reference).set_index("locus_id")
        assert nearest.loc["chr1:14001-14002", "gene_distance"] == 0

    def test_no_gene_on_chromosome(self, loci, reference):
        nearest = annotate_nearest_gene(loci, reference).set_index("locus_id")

        assert pd.isna(nearest.loc["chr9:101-200", "nearest_gene"])
        assert np.isnan(nearest.loc["chr9:101-200", "gene_distance"])

    def test_empty_reference(self, loci, reference_table):
        ref = GenomeReference(reference_table.iloc[0:0])
        nearest = annotate_nearest_gene(loci, ref)

        assert len(nearest) == len(loci)
        assert nearest["nearest_gene"].isna().all()


# ============================================================================
# FEATURE CLASSIFICATION TESTS
# ============================================================================


class TestFeatureClassification:
    """Test genomic feature labels."""

    @pytest.mark.parametrize("abs_distance,label", [
        (0, "Promoter (<=1kb)"),
        (1000, "Promoter (<=1kb)"),
        (1001, "Promoter (1-2kb)"),
        (2500, "Promoter (2-3kb)"),
        (3000, "Promoter (2-3kb)"),
    ])
    def test_promoter_label(self, abs_distance, label):
        assert _promoter_label(abs_distance) == label

    def test_feature_labels(self, loci, reference):
        features = classify_features(loci, reference).set_index("locus_id")

        for locus, label in EXPECTED_FEATURES.items():
            assert features.loc[locus, "annotation"] == label, locus

    def test_upstream_distance_on_minus_strand(self, loci, reference):
        features = classify_features(loci, reference).set_index("locus_id")

        assert features.loc["chr2:61001-61002", "distance_to_tss"] == -1001
        assert features.loc["chr2:55001-55002", "distance_to_tss"] > 0

    def test_narrow_promoter_window(self, loci, reference):
        features = classify_features(
            loci, reference, promoter_window=(-1000, 1000)
        ).set_index("locus_id")

        assert features.loc["chr1:9001-9002", "annotation"] == "Promoter (<=1kb)"
        assert features.loc["chr1:13001-13002", "annotation"] == "Intron"

    def test_downstream_window(self, loci, reference):
        features = classify_features(
            loci, reference, downstream_window=500
        ).set_index("locus_id")

        assert features.loc["chr1:21001-21002", "annotation"] == "Distal Intergenic"

    def test_every_locus_labelled(self, loci, reference):
        features = classify_features(loci, reference)

        assert len(features) == len(loci)
        assert features["annotation"].notna().all()


# ============================================================================
# ANNOTATION PIPELINE TESTS
# ============================================================================


class TestAnnotateLoci:
    """Test the combined annotation join."""

    def test_annotate_loci(self, reference):
        res = pd.DataFrame(
            {"logFC": [0.7, -0.6, 0.1], "padj": [0.001, 0.01, 0.04]},
            index=["chr1:9001-9002", "chr2:55001-55002", "chr9:101-200"],
        )

        annotated = annotate_loci(res, reference)

        assert list(annotated.columns) == ANNOTATED_COLUMNS + ["logFC", "padj"]
        assert list(annotated.index) == list(res.index)
        assert annotated.loc["chr1:9001-9002", "nearest_gene"] == "COL1A1"
        assert annotated.loc["chr2:55001-55002", "annotation"] == "Intron"
        assert pd.isna(annotated.loc["chr9:101-200", "nearest_gene"])
        assert annotated.loc["chr2:55001-55002", "logFC"] == -0.6

    def test_annotate_empty(self, reference):
        res = pd.DataFrame({"logFC": [], "padj": []})
        annotated = annotate_loci(res, reference)

        assert len(annotated) == 0
        assert "annotation" in annotated.columns

    def test_annotate_malformed(self, reference):
        res = pd.DataFrame({"logFC": [0.1]}, index=["cg0001"])

        with pytest.raises(MalformedLocusError):
            annotate_loci(res, reference)

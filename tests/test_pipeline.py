#!/usr/bin/env python
# coding: utf-8

"""
End-to-end test of the report pipeline

Run with:
    pytest tests/test_pipeline.py -v --cov=methylation_report.core.pipeline
"""

import os
from unittest.mock import patch

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from methylation_report.core.config import ReportConfig
from methylation_report.core.exceptions import InputAlignmentError, RemoteServiceError
from methylation_report.core.pipeline import initialize_run, run_report

GENE_SET = frozenset({"COL1A1", "FN1", "LAMA1"})


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def config(tmp_path, report_beta, report_phenotypes):
    beta_path = tmp_path / "beta.csv"
    pheno_path = tmp_path / "phenotypes.csv"
    report_beta.to_csv(beta_path)
    report_phenotypes.reset_index().to_csv(pheno_path, index=False)

    conf = ReportConfig()
    conf.paths["beta_matrix"] = str(beta_path)
    conf.paths["phenotypes"] = str(pheno_path)
    conf.paths["output_dir"] = str(tmp_path / "results")
    conf.plots["heatmap"].update(dpi=50, figsize=[4, 5])
    conf.plots["volcano"].update(dpi=50, figsize=[5, 4])
    conf.plots["diagnostic_dpi"] = 50
    return conf


# ============================================================================
# INITIALIZATION TESTS
# ============================================================================


class TestInitializeRun:
    """Test run initialization."""

    def test_creates_output_tree(self, config):
        paths = initialize_run(config)

        assert os.path.isdir(paths["output_dir"])
        assert os.path.isdir(paths["assets"])
        assert paths["heatmap"].endswith("heatmap.png")
        assert paths["volcano"].endswith("volcano.png")

    def test_seeds_global_generator(self, config):
        initialize_run(config)
        first = np.random.rand(3)
        initialize_run(config)
        second = np.random.rand(3)

        np.testing.assert_array_equal(first, second)


# ============================================================================
# END-TO-END TESTS
# ============================================================================


class TestRunReport:
    """Run the whole report on a small deterministic dataset."""

    def test_two_loci_significant(self, config, reference):
        out = run_report(config, reference=reference, gene_set=GENE_SET)

        assert len(out["results"]) == 10
        assert set(out["significant"].index) == {"chr1:9001-9002", "chr2:55001-55002"}
        assert (out["significant"]["padj"] < 0.05).all()
        assert out["summary"]["significant"] == 2
        assert out["summary"]["hypermethylated"] == 2

    def test_annotation_and_gene_set(self, config, reference):
        out = run_report(config, reference=reference, gene_set=GENE_SET)
        annotated = out["annotated"]

        assert annotated.loc["chr1:9001-9002", "nearest_gene"] == "COL1A1"
        assert annotated.loc["chr1:9001-9002", "annotation"] == "Promoter (<=1kb)"
        assert annotated.loc["chr2:55001-55002", "nearest_gene"] == "FN1"
        assert annotated.loc["chr2:55001-55002", "annotation"] == "Intron"
        assert out["genes"] == ["COL1A1", "FN1"]
        assert len(out["filtered"]) == 2

    def test_volcano_labels_every_sparse_gene(self, config, reference):
        out = run_report(config, reference=reference, gene_set=GENE_SET)
        texts = " ".join(t.get_text() for t in out["volcano"].axes[0].texts)

        assert "COL1A1" in texts
        assert "FN1" in texts
        assert "chr2:55001-55002" in texts

    def test_outputs_written(self, config, reference):
        out = run_report(config, reference=reference, gene_set=GENE_SET)
        paths = out["paths"]

        for key in ("report", "differential", "annotated", "heatmap", "volcano",
                    "mean_difference", "pvalue_qq", "sample_qc"):
            assert os.path.exists(paths[key]), key

        exported = pd.read_csv(paths["differential"], index_col=0)
        assert len(exported) == 10
        assert exported["pval"].is_monotonic_increasing

    def test_diagnostic_figures_closed(self, config, reference):
        plt.close("all")
        out = run_report(config, reference=reference, gene_set=GENE_SET)

        # only the returned heatmap and volcano stay open
        assert len(plt.get_fignums()) == 2
        assert out["volcano"].number in plt.get_fignums()
        assert out["heatmap"].figure.number in plt.get_fignums()

    def test_heatmap_skipped_without_gene_set_loci(self, config, reference):
        out = run_report(config, reference=reference, gene_set=frozenset({"GAPDH"}))

        assert out["filtered"].empty
        assert out["heatmap"] is None
        assert not os.path.exists(out["paths"]["heatmap"])
        assert os.path.exists(out["paths"]["volcano"])

    def test_gene_set_fetched_when_not_given(self, config, reference):
        with patch(
            "methylation_report.core.pipeline.fetch_gene_set", return_value=GENE_SET
        ) as mock_fetch:
            out = run_report(config, reference=reference)

        mock_fetch.assert_called_once()
        assert mock_fetch.call_args.args == (
            config.gene_set["gene_set"], config.gene_set["collection"]
        )
        assert out["genes"] == ["COL1A1", "FN1"]

    def test_gene_set_service_failure_propagates(self, config, reference):
        with patch(
            "methylation_report.core.pipeline.fetch_gene_set",
            side_effect=RemoteServiceError("unreachable"),
        ):
            with pytest.raises(RemoteServiceError):
                run_report(config, reference=reference)

    def test_misaligned_samples(self, config, reference, report_phenotypes):
        pheno = report_phenotypes.rename(index={"T2": "T9"}).reset_index()
        pheno.to_csv(config.paths["phenotypes"], index=False)

        with pytest.raises(InputAlignmentError):
            run_report(config, reference=reference, gene_set=GENE_SET)

"""End-to-end analysis of a synthetic three-sample organoid dataset.

Samples S1-S3 each hold 100 on-tissue spots in four groups of 25 (basal,
suprabasal/granular, fibroblast, melanocyte programs) plus two
off-tissue spots. Samples share one transcriptome and differ in depth.
"""

import json

import pytest
import numpy as np
import pandas as pd
from click.testing import CliRunner

from organoid_spatial.cli.main import cli
from organoid_spatial.config import AnalysisConfig
from organoid_spatial.errors import ParameterError, SampleLoadError
from organoid_spatial.io import read_h5ad
from organoid_spatial.pipeline import run_analysis
from tests.conftest import FakeEnrichmentBackend
from tests.fixtures import GROUP_PROGRAMS, create_organoid_dataset
from tests.fixtures.mock_visium import spot_barcode


SPOTS_PER_GROUP = 25
SAMPLES = ("S1", "S2", "S3")


def _config(root, **overrides):
    data = {
        "root_path": str(root),
        "sample_table": [
            {"sample_id": "S1", "tissue": "day14"},
            {"sample_id": "S2", "tissue": "day14"},
            {"sample_id": "S3", "tissue": "day21"},
        ],
        "pca_components": 10,
        "variable_gene_count": 60,
        "neighbor_k": 15,
        "resolutions": [0.1, 0.3, 0.5, 0.8, 1.0],
        "active_resolution": 0.5,
        "top_n_values": [5, 10],
        "clustering": {"n_dims": 10, "umap_dims": 10, "umap_neighbors": 15},
        "scoring": {"ctrl_size": 20, "n_bins": 10},
        "enrichment": {"top_n": 5},
    }
    data.update(overrides)
    return AnalysisConfig.from_dict(data)


def _true_groups(adata):
    """Known group of every spot, recovered from its barcode."""
    lookup = {
        f"{spot_barcode(i)}-1": i // SPOTS_PER_GROUP
        for i in range(SPOTS_PER_GROUP * len(GROUP_PROGRAMS))
    }
    return adata.obs["barcode"].map(lookup).astype(int)


@pytest.fixture(scope="module")
def dataset_root(tmp_path_factory):
    root = tmp_path_factory.mktemp("visium")
    create_organoid_dataset(root, sample_ids=SAMPLES, spots_per_group=SPOTS_PER_GROUP)
    return root


@pytest.fixture(scope="module")
def analysis(dataset_root, tmp_path_factory):
    """One full run shared by the scenario checks."""
    output_dir = tmp_path_factory.mktemp("results")
    outcome = run_analysis(
        _config(dataset_root),
        output_dir,
        backend=FakeEnrichmentBackend(),
        console=False,
    )
    return outcome, output_dir


class TestFullAnalysis:
    """Scenario: three samples with four spot groups each."""

    def test_all_on_tissue_spots_loaded(self, analysis):
        """Test 3 x 100 on-tissue spots, off-tissue spots dropped."""
        outcome, _ = analysis
        adata = outcome.adata
        assert adata.n_obs == 300
        assert adata.obs["sample_id"].value_counts().to_dict() == {s: 100 for s in SAMPLES}
        assert adata.obs_names.is_unique

    def test_clusters_partition_spots(self, analysis):
        """Test cluster sizes add up to the number of spots."""
        outcome, _ = analysis
        select = outcome.results["select"]
        assert select["active_resolution"] == 0.5
        assert sum(select["cluster_sizes"].values()) == 300
        assert outcome.adata.obs["cluster"].notna().all()

    def test_umap(self, analysis):
        outcome, _ = analysis
        umap = outcome.adata.obsm["X_umap"]
        assert umap.shape == (300, 2)
        assert np.isfinite(umap).all()

    def test_groups_recovered(self, analysis):
        """Test four clusters at resolution 0.5, one per true group."""
        outcome, _ = analysis
        adata = outcome.adata
        truth = _true_groups(adata)
        table = pd.crosstab(adata.obs["cluster"].astype(str), truth)
        assert outcome.results["select"]["n_clusters"] == 4
        assert (table.gt(0).sum(axis=1) == 1).all()
        assert set(table.columns) == set(GROUP_PROGRAMS)
        assert (table.max(axis=1) == SPOTS_PER_GROUP * len(SAMPLES)).all()

    def test_samples_mixed(self, analysis):
        """Test every cluster holds spots from every sample after integration."""
        outcome, _ = analysis
        obs = outcome.adata.obs
        table = pd.crosstab(obs["cluster"].astype(str), obs["sample_id"].astype(str))
        assert list(table.columns) == list(SAMPLES)
        assert (table == SPOTS_PER_GROUP).all().all()

    def test_resolution_ladder(self, analysis):
        """Test one clustering per resolution, finest at the top of the ladder."""
        outcome, _ = analysis
        result = outcome.results["cluster"]
        counts = [result.n_clusters[r] for r in sorted(result.resolutions)]
        assert len(counts) == 5
        assert 4 <= counts[0] <= counts[-1]
        for r in result.resolutions:
            assert result.keys[r] in outcome.adata.obs

    def test_top_markers(self, analysis):
        """Test top-10 lists are bounded, sorted and led by program genes."""
        outcome, _ = analysis
        adata = outcome.adata
        markers = outcome.results["markers"]
        top10 = markers.top_n(10)
        truth = _true_groups(adata)

        for cluster, sub in top10.groupby("cluster"):
            assert len(sub) <= 10
            assert np.all(np.diff(sub["avg_log2FC"].to_numpy()) <= 0)
            group = truth[adata.obs["cluster"].astype(str) == cluster].mode().iloc[0]
            assert set(sub["gene"].head(3)) & set(GROUP_PROGRAMS[group])

    def test_module_scores(self, analysis):
        """Test each program score peaks in its own group."""
        outcome, _ = analysis
        obs = outcome.adata.obs.copy()
        obs["group"] = _true_groups(outcome.adata)
        means = obs.groupby("group")[["basal_score", "fibroblast_score", "melanocyte_score"]].mean()
        assert means["basal_score"].idxmax() == 0
        assert means["fibroblast_score"].idxmax() == 2
        assert means["melanocyte_score"].idxmax() == 3

    def test_enrichment(self, analysis):
        outcome, _ = analysis
        enrichment = outcome.results["enrichment"]
        assert not enrichment.is_partial
        assert enrichment.succeeded == enrichment.clusters
        assert (enrichment.highlights(5)["rank"] <= 5).all()

    def test_outputs_written(self, analysis):
        """Test tables, AnnData, resolved config and manifest are exported."""
        outcome, output_dir = analysis
        tables = output_dir / "tables"
        for name in [
            "qc_summary.csv",
            "qc_spots.csv",
            "resolution_summary.csv",
            "resolution_transitions.csv",
            "cluster_assignments.csv",
            "markers_all.csv",
            "markers_top5.csv",
            "markers_top10.csv",
            "module_scores.csv",
            "module_scores_by_cluster.csv",
            "enrichment_terms.csv",
            "enrichment_top5.csv",
            "enrichment_status.csv",
        ]:
            assert (tables / name).exists(), name
        assert (output_dir / "analysis.h5ad").exists()
        assert (output_dir / "config_resolved.yaml").exists()
        assert list((output_dir / "logs").glob("analysis_*.log"))
        assert (output_dir / "logs" / "runs.jsonl").exists()
        assert outcome.outputs["h5ad"] == str(output_dir / "analysis.h5ad")

        assignments = pd.read_csv(tables / "cluster_assignments.csv")
        assert len(assignments) == 300
        assert {"spot_id", "sample_id", "barcode", "cluster", "umap_1", "umap_2"} <= set(assignments.columns)

        qc = pd.read_csv(tables / "qc_summary.csv")
        assert len(qc) == 3

    def test_manifest(self, analysis):
        outcome, output_dir = analysis
        manifest = json.loads(outcome.manifest_path.read_text())
        assert manifest["status"] == "completed"
        assert manifest["completed_stages"] == [
            "load", "qc", "reduce", "correct", "cluster",
            "select", "markers", "scores", "enrichment", "export",
        ]
        assert manifest["results"]["load"]["n_spots"] == 300

    def test_saved_anndata(self, analysis):
        """Test the saved file reloads with clustering and provenance."""
        _, output_dir = analysis
        adata = read_h5ad(output_dir / "analysis.h5ad")
        assert adata.n_obs == 300
        assert "counts" in adata.layers
        assert "X_pca_harmony" in adata.obsm
        assert float(adata.uns["active_resolution"]) == 0.5
        assert list(adata.uns["stage_provenance"])[:3] == ["load", "qc", "reduce"]

    def test_resolved_config_reloads(self, analysis):
        _, output_dir = analysis
        config = AnalysisConfig.from_yaml(output_dir / "config_resolved.yaml")
        config.validate()
        assert config.clustering.resolutions == [0.1, 0.3, 0.5, 0.8, 1.0]

    def test_cli_resolutions(self, analysis):
        """Test the saved clusterings are listed with the active one marked."""
        _, output_dir = analysis
        result = CliRunner().invoke(cli, ["resolutions", "--input", str(output_dir / "analysis.h5ad")])
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert len(lines) == 6
        assert any(line.endswith("snn_res.0.5 *") for line in lines)


class TestFailureModes:
    """Scenario: invalid inputs and partial enrichment."""

    def test_enrichment_failure_isolated(self, dataset_root, tmp_path):
        """Test one cluster's enrichment failure keeps the run and other clusters."""
        backend = FakeEnrichmentBackend(fail_on=set(GROUP_PROGRAMS[2]))
        outcome = run_analysis(
            _config(dataset_root), tmp_path / "out", backend=backend, console=False
        )
        enrichment = outcome.results["enrichment"]
        assert len(enrichment.failed) >= 1
        assert enrichment.succeeded
        status = pd.read_csv(tmp_path / "out" / "tables" / "enrichment_status.csv", dtype=str)
        assert set(status.loc[status["status"] == "failed", "cluster"]) == set(enrichment.failed)

    def test_skip_enrichment(self, dataset_root, tmp_path):
        outcome = run_analysis(
            _config(dataset_root, enrichment={"enabled": False}), tmp_path / "out", console=False
        )
        assert "enrichment" not in outcome.results
        assert not (tmp_path / "out" / "tables" / "enrichment_terms.csv").exists()
        manifest = json.loads(outcome.manifest_path.read_text())
        assert manifest["skipped_stages"] == ["enrichment"]

    def test_invalid_resolution_before_loading(self, tmp_path):
        """Test parameters are checked before any file is read."""
        config = _config(tmp_path / "does_not_exist", active_resolution=0.45)
        with pytest.raises(ParameterError):
            run_analysis(config, tmp_path / "out", console=False)
        assert not (tmp_path / "out").exists()

    def test_missing_sample_aborts(self, dataset_root, tmp_path):
        """Test a missing sample stops the run and the manifest says so."""
        config = _config(
            dataset_root,
            sample_table=[
                {"sample_id": "S1", "tissue": "day14"},
                {"sample_id": "S9", "tissue": "day14"},
            ],
        )
        with pytest.raises(SampleLoadError, match="S9"):
            run_analysis(config, tmp_path / "out", backend=FakeEnrichmentBackend(), console=False)
        manifest = json.loads((tmp_path / "out" / "run_manifest.json").read_text())
        assert manifest["status"] == "failed"
        assert manifest["completed_stages"] == []


class TestCLI:
    """Tests for the command-line interface."""

    def _write_config(self, path, root):
        _config(root).to_yaml(path)
        return path

    def test_validate_ok(self, dataset_root, tmp_path):
        config_path = self._write_config(tmp_path / "analysis.yaml", dataset_root)
        result = CliRunner().invoke(cli, ["validate", "--config", str(config_path)])
        assert result.exit_code == 0, result.output
        assert "Configuration OK: 3 samples" in result.output

    def test_validate_missing_files(self, tmp_path):
        config_path = self._write_config(tmp_path / "analysis.yaml", tmp_path / "empty")
        result = CliRunner().invoke(cli, ["validate", "--config", str(config_path)])
        assert result.exit_code == 2

        result = CliRunner().invoke(
            cli, ["validate", "--config", str(config_path), "--no-check-files"]
        )
        assert result.exit_code == 0, result.output

    def test_run_invalid_resolution(self, tmp_path):
        """Test an active resolution off the ladder exits with code 2 before loading."""
        config_path = tmp_path / "analysis.yaml"
        _config(tmp_path / "empty", resolutions=[0.5], active_resolution=0.5).to_yaml(config_path)
        out = tmp_path / "out"
        result = CliRunner().invoke(
            cli, ["run", "-c", str(config_path), "-o", str(out), "--resolution", "0.55"]
        )
        assert result.exit_code == 2, result.output
        assert "Invalid configuration" in result.output
        assert "0.55" in result.output
        assert not out.exists()

    def test_panels(self):
        result = CliRunner().invoke(cli, ["panels"])
        assert result.exit_code == 0
        assert "skin_organoid" in result.output

        result = CliRunner().invoke(cli, ["panels", "--panel-set", "skin"])
        assert "fibroblast: COL1A1" in result.output

        result = CliRunner().invoke(cli, ["panels", "--panel-set", "liver"])
        assert result.exit_code == 2

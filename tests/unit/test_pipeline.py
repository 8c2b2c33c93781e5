"""Unit tests for pipeline orchestration module."""

from dataclasses import dataclass, field
from typing import Any, Dict

import pytest
import numpy as np
import pandas as pd

from organoid_spatial.errors import StageContractError
from organoid_spatial.pipeline import (
    InMemoryExecutor,
    PipelineLogger,
    StageSpec,
    has_key,
    parse_contract_key,
)


@dataclass
class Context:
    adata: Any = None
    results: Dict[str, Any] = field(default_factory=dict)


def _adata(n_obs=6, n_vars=4):
    import anndata as ad

    return ad.AnnData(
        X=np.ones((n_obs, n_vars), dtype=np.float32),
        obs=pd.DataFrame(index=[f"spot_{i}" for i in range(n_obs)]),
        var=pd.DataFrame(index=[f"gene_{i}" for i in range(n_vars)]),
    )


class TestContractKeys:
    """Tests for contract key parsing and lookup."""

    def test_parse(self):
        assert parse_contract_key("obsm:X_pca") == ("obsm", "X_pca")
        assert parse_contract_key("obs:snn_res.0.5") == ("obs", "snn_res.0.5")

    @pytest.mark.parametrize("key", ["X_pca", "obsx:X_pca", "obsm:", ":X_pca"])
    def test_parse_invalid(self, key):
        with pytest.raises(ValueError, match="Invalid contract key"):
            parse_contract_key(key)

    def test_has_key(self):
        """Test lookup in every slot kind."""
        adata = _adata()
        adata.obs["sample_id"] = "S1"
        adata.var["highly_variable"] = True
        adata.obsm["X_pca"] = np.zeros((6, 2))
        adata.layers["counts"] = adata.X.copy()
        adata.uns["pca"] = {}

        for key in ["obs:sample_id", "var:highly_variable", "obsm:X_pca", "layers:counts", "uns:pca"]:
            assert has_key(adata, key)
        assert not has_key(adata, "obsm:X_umap")
        assert not has_key(adata, "obs:cluster")
        assert not has_key(None, "layers:counts")


class TestStageSpec:
    """Tests for StageSpec dataclass."""

    def test_create_stage(self):
        """Test creating a basic stage."""
        stage = StageSpec(stage_id="qc", name="Quality control", func=lambda ctx: None)
        assert stage.depends_on == []
        assert stage.requires == []
        assert stage.provides == []

    def test_invalid_contract_rejected(self):
        with pytest.raises(ValueError):
            StageSpec("qc", "QC", lambda ctx: None, requires=["counts"])

    def test_validate_inputs(self):
        """Test missing required keys are reported."""
        stage = StageSpec(
            "reduce", "Reduce", lambda ctx: None,
            requires=["layers:counts", "obs:sample_id"],
        )
        adata = _adata()
        adata.layers["counts"] = adata.X.copy()
        ok, missing = stage.validate_inputs(adata)
        assert not ok
        assert missing == ["obs:sample_id"]

        adata.obs["sample_id"] = "S1"
        assert stage.validate_inputs(adata) == (True, [])

    def test_to_dict(self):
        stage = StageSpec(
            "correct", "Batch correction", lambda ctx: None,
            depends_on=["reduce"], requires=["obsm:X_pca"], provides=["obsm:X_pca_harmony"],
        )
        d = stage.to_dict()
        assert d["stage_id"] == "correct"
        assert d["depends_on"] == ["reduce"]
        assert d["provides"] == ["obsm:X_pca_harmony"]
        assert "func" not in d


class TestPipelineLogger:
    """Tests for PipelineLogger class."""

    def test_init(self, tmp_path):
        """Test logger initialization."""
        logger = PipelineLogger(str(tmp_path / "logs"), log_name="test_pipeline_init")
        assert logger.log_dir.exists()

    def test_setup_and_close(self, tmp_path):
        """Test handlers are attached and detached."""
        logger = PipelineLogger(str(tmp_path / "logs"), log_name="test_pipeline_setup")
        logger.setup()
        assert len(logger.logger.handlers) == 2
        logger.log_info("hello")
        logger.close()
        assert logger.logger.handlers == []
        assert "hello" in logger.log_file.read_text()

    def test_file_only(self, tmp_path):
        logger = PipelineLogger(str(tmp_path / "logs"), log_name="test_pipeline_file", console=False)
        logger.setup()
        assert len(logger.logger.handlers) == 1
        logger.close()

    def test_format_duration_seconds(self):
        """Test duration formatting for seconds."""
        assert PipelineLogger.format_duration(45.2) == "45.2s"

    def test_format_duration_minutes(self):
        """Test duration formatting for minutes."""
        assert PipelineLogger.format_duration(125) == "2m 5s"

    def test_format_duration_hours(self):
        """Test duration formatting for hours."""
        assert PipelineLogger.format_duration(7300) == "2h 1m"


class TestInMemoryExecutor:
    """Tests for InMemoryExecutor class."""

    def test_register_stage(self):
        """Test registering stages."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda ctx: "result_a")
        assert "A" in executor.stages
        assert executor.stages["A"].name == "A"

    def test_duplicate_register(self):
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda ctx: None)
        with pytest.raises(ValueError, match="already registered"):
            executor.register_stage("A", lambda ctx: None)

    def test_run_simple(self):
        """Test stage results are returned and visible to later stages."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda ctx: "a_result")
        executor.register_stage("B", lambda ctx: ctx.results["A"] + "_b", depends_on=["A"])

        context = Context()
        results = executor.run(context)
        assert results["A"] == "a_result"
        assert results["B"] == "a_result_b"
        assert context.results is results

    def test_execution_order(self):
        """Test execution order with dependencies."""
        executor = InMemoryExecutor()
        order = []

        executor.register_stage("C", lambda ctx: order.append("C"), depends_on=["B"])
        executor.register_stage("B", lambda ctx: order.append("B"), depends_on=["A"])
        executor.register_stage("A", lambda ctx: order.append("A"))

        executor.run(Context())
        assert order == ["A", "B", "C"]
        assert executor.completed_stages == ["A", "B", "C"]

    def test_independent_stages_keep_registration_order(self):
        executor = InMemoryExecutor()
        for sid in ["load", "qc", "reduce"]:
            executor.register_stage(sid, lambda ctx: None)
        assert executor.get_execution_order() == ["load", "qc", "reduce"]

    def test_circular_dependency(self):
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda ctx: None, depends_on=["B"])
        executor.register_stage("B", lambda ctx: None, depends_on=["A"])
        with pytest.raises(ValueError, match="Circular"):
            executor.get_execution_order()

    def test_unknown_dependency(self):
        executor = InMemoryExecutor()
        executor.register_stage("B", lambda ctx: None, depends_on=["A"])
        with pytest.raises(ValueError, match="unknown stages"):
            executor.run(Context())

    def test_missing_requires(self):
        """Test a stage does not run when its inputs are absent."""
        ran = []
        executor = InMemoryExecutor()
        executor.register_stage(
            "reduce", lambda ctx: ran.append("reduce"), requires=["layers:counts"]
        )
        with pytest.raises(StageContractError) as excinfo:
            executor.run(Context(adata=_adata()))
        assert excinfo.value.stage_id == "reduce"
        assert excinfo.value.missing == ["layers:counts"]
        assert excinfo.value.phase == "requires"
        assert ran == []

    def test_missing_provides(self):
        """Test a stage that does not write its declared keys fails."""
        executor = InMemoryExecutor()
        executor.register_stage("reduce", lambda ctx: None, provides=["obsm:X_pca"])
        with pytest.raises(StageContractError, match="did not produce"):
            executor.run(Context(adata=_adata()))

    def test_contracts_satisfied(self):
        """Test provenance records each completed stage in order."""

        def load(ctx):
            ctx.adata = _adata()
            ctx.adata.layers["counts"] = ctx.adata.X.copy()

        def reduce(ctx):
            ctx.adata.obsm["X_pca"] = np.zeros((ctx.adata.n_obs, 2))

        executor = InMemoryExecutor()
        executor.register_stage("load", load, provides=["layers:counts"])
        executor.register_stage(
            "reduce", reduce, depends_on=["load"],
            requires=["layers:counts"], provides=["obsm:X_pca"],
        )
        context = Context()
        executor.run(context)
        assert context.adata.uns["stage_provenance"] == ["load", "reduce"]
        assert set(executor.durations) == {"load", "reduce"}

    def test_skip(self):
        """Test skipped stages are not run."""
        ran = []
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda ctx: ran.append("A"))
        executor.register_stage("B", lambda ctx: ran.append("B"), depends_on=["A"])
        results = executor.run(Context(), skip=["B"])
        assert ran == ["A"]
        assert "B" not in results
        assert executor.completed_stages == ["A"]

    def test_stage_error_propagates(self, tmp_path):
        """Test stage exceptions reach the caller and are logged."""
        logger = PipelineLogger(str(tmp_path / "logs"), log_name="test_pipeline_error", console=False)
        logger.setup()

        def boom(ctx):
            raise RuntimeError("boom")

        executor = InMemoryExecutor(logger=logger)
        executor.register_stage("A", boom)
        try:
            with pytest.raises(RuntimeError, match="boom"):
                executor.run(Context())
        finally:
            logger.close()
        assert "Stage A failed: RuntimeError: boom" in logger.log_file.read_text()

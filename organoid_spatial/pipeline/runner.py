"""End-to-end analysis run.

Wires the analysis stages into an ``InMemoryExecutor`` with their data
contracts and exports every result under one output directory::

    <output_dir>/
        tables/          CSV tables and the marker workbook
        figures/         reserved for plots
        logs/            run log and run history (runs.jsonl)
        analysis.h5ad
        config_resolved.yaml
        run_manifest.json
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .. import __version__
from ..config.analysis import AnalysisConfig
from ..core.clustering import ClusteringEngine, MarkerRunner, resolution_key
from ..core.enrichment import EnrichmentAnalyzer, EnrichmentBackend
from ..core.preprocessing import (
    BatchCorrector,
    DatasetLoader,
    DimensionalityReducer,
    QCReporter,
)
from ..core.scoring import ModuleScorer
from ..io.logging import log_json, log_yaml, write_json
from ..io.tables import (
    ensure_output_dir,
    write_dataframe,
    write_h5ad,
    write_marker_workbook,
)
from .executor import InMemoryExecutor
from .logger import PipelineLogger
from .stage import StageSpec


@dataclass
class AnalysisContext:
    """Shared state of one analysis run.

    Attributes
    ----------
    config : AnalysisConfig
        Validated run configuration
    output_dir : Path, optional
        Export directory (None = no export)
    adata : AnnData, optional
        Unified dataset, set by the load stage
    results : Dict[str, Any]
        Map of stage_id to stage result
    backend : EnrichmentBackend, optional
        Enrichment backend override
    """

    config: AnalysisConfig
    output_dir: Optional[Path] = None
    adata: Any = None
    results: Dict[str, Any] = field(default_factory=dict)
    backend: Optional[EnrichmentBackend] = None


@dataclass
class AnalysisOutcome:
    """Result of ``run_analysis``.

    Attributes
    ----------
    adata : AnnData
        Final dataset
    results : Dict[str, Any]
        Map of stage_id to stage result
    outputs : Dict[str, str]
        Map of output name to written path
    manifest_path : Path, optional
        Path of the run manifest
    """

    adata: Any
    results: Dict[str, Any]
    outputs: Dict[str, str] = field(default_factory=dict)
    manifest_path: Optional[Path] = None


# =============================================================================
# Stage functions
# =============================================================================


def load_stage(ctx: AnalysisContext) -> Dict[str, Any]:
    ctx.adata = DatasetLoader(ctx.config.loader).load()
    counts = ctx.adata.obs["sample_id"].value_counts()
    return {
        "n_spots": int(ctx.adata.n_obs),
        "n_genes": int(ctx.adata.n_vars),
        "spots_per_sample": {str(k): int(v) for k, v in counts.items()},
    }


def qc_stage(ctx: AnalysisContext):
    return QCReporter(ctx.config.qc).compute(ctx.adata)


def reduce_stage(ctx: AnalysisContext):
    return DimensionalityReducer(ctx.config.reduction).run(ctx.adata)


def correct_stage(ctx: AnalysisContext):
    return BatchCorrector(ctx.config.batch_correction).correct(
        ctx.adata, output_key=ctx.config.clustering.embedding_key
    )


def cluster_stage(ctx: AnalysisContext):
    engine = ClusteringEngine(ctx.config.clustering)
    engine.compute_umap(ctx.adata)
    return engine.run_resolutions(ctx.adata)


def select_stage(ctx: AnalysisContext) -> Dict[str, Any]:
    cfg = ctx.config
    engine = ClusteringEngine(cfg.clustering)
    source = engine.select_resolution(
        ctx.adata,
        cfg.clustering.active_resolution,
        ctx.results.get("cluster"),
        cluster_key=cfg.markers.cluster_key,
    )
    sizes = ctx.adata.obs[cfg.markers.cluster_key].value_counts()
    return {
        "active_resolution": cfg.clustering.active_resolution,
        "source_key": source,
        "n_clusters": int(len(sizes)),
        "cluster_sizes": {str(k): int(v) for k, v in sizes.items()},
    }


def markers_stage(ctx: AnalysisContext):
    return MarkerRunner(ctx.config.markers).run(ctx.adata)


def scores_stage(ctx: AnalysisContext):
    return ModuleScorer(ctx.config.scoring).score(ctx.adata)


def enrichment_stage(ctx: AnalysisContext):
    analyzer = EnrichmentAnalyzer(ctx.config.enrichment, backend=ctx.backend)
    return analyzer.run_from_markers(ctx.results["markers"])


def export_stage(ctx: AnalysisContext) -> Dict[str, str]:
    if ctx.output_dir is None:
        return {}
    return export_results(ctx)


# =============================================================================
# Pipeline assembly
# =============================================================================


def build_analysis_pipeline(
    config: AnalysisConfig,
    logger: Optional[PipelineLogger] = None,
) -> InMemoryExecutor:
    """Register the analysis stages with their data contracts.

    Parameters
    ----------
    config : AnalysisConfig
        Run configuration; contracts use its key names
    logger : PipelineLogger, optional
        Logger for stage events

    Returns
    -------
    InMemoryExecutor
        Executor ready to run
    """
    clu = config.clustering
    embedding = f"obsm:{clu.embedding_key}"
    batch = f"obs:{config.batch_correction.batch_key}"
    cluster = f"obs:{config.markers.cluster_key}"
    resolution_keys = [f"obs:{resolution_key(r, clu.key_prefix)}" for r in clu.resolutions]
    score_keys = [
        f"obs:{name}{config.scoring.score_suffix}"
        for name in ModuleScorer(config.scoring).resolve_panels()
    ]

    executor = InMemoryExecutor(logger=logger)
    for stage in [
        StageSpec(
            "load", "Load samples", load_stage,
            provides=["layers:counts", "obs:sample_id", "obs:tissue", "obsm:spatial", "uns:spatial"],
        ),
        StageSpec(
            "qc", "Spot QC (descriptive)", qc_stage,
            depends_on=["load"],
            requires=["layers:counts"],
            provides=["obs:total_counts", "obs:n_genes_by_counts", "obs:pct_counts_mt"],
        ),
        StageSpec(
            "reduce", "Normalization and PCA", reduce_stage,
            depends_on=["qc"],
            requires=["layers:counts"],
            provides=["layers:lognorm", "var:highly_variable", "obsm:X_pca", "varm:PCs", "uns:pca"],
        ),
        StageSpec(
            "correct", "Harmony batch correction", correct_stage,
            depends_on=["reduce"],
            requires=["obsm:X_pca", batch],
            provides=[embedding],
        ),
        StageSpec(
            "cluster", "SNN + Louvain over resolutions", cluster_stage,
            depends_on=["correct"],
            requires=[embedding],
            provides=["obsp:snn", "obsm:X_umap"] + resolution_keys,
        ),
        StageSpec(
            "select", "Select active resolution", select_stage,
            depends_on=["cluster"],
            requires=[f"obs:{resolution_key(clu.active_resolution, clu.key_prefix)}"],
            provides=[cluster],
        ),
        StageSpec(
            "markers", "Cluster markers", markers_stage,
            depends_on=["select"],
            requires=[cluster, f"layers:{config.markers.layer}", f"layers:{config.markers.counts_layer}"],
        ),
        StageSpec(
            "scores", "Module scores", scores_stage,
            depends_on=["select"],
            requires=["layers:lognorm"],
            provides=score_keys,
        ),
        StageSpec(
            "enrichment", "Marker enrichment", enrichment_stage,
            depends_on=["markers"],
        ),
        StageSpec(
            "export", "Export results", export_stage,
            depends_on=["markers", "scores", "enrichment"],
            requires=[cluster],
        ),
    ]:
        executor.register(stage)
    return executor


# =============================================================================
# Export
# =============================================================================


def cluster_assignments(adata: Any, cluster_key: str = "cluster") -> pd.DataFrame:
    """Per-spot sample, barcode, active cluster and UMAP coordinates."""
    columns = [c for c in ("sample_id", "barcode", "tissue") if c in adata.obs]
    table = adata.obs[columns + [cluster_key]].copy()
    table[cluster_key] = table[cluster_key].astype(str)
    if "X_umap" in adata.obsm:
        table["umap_1"] = adata.obsm["X_umap"][:, 0]
        table["umap_2"] = adata.obsm["X_umap"][:, 1]
    table.index.name = "spot_id"
    return table


def export_results(ctx: AnalysisContext) -> Dict[str, str]:
    """Write every available result table and the AnnData file.

    Returns
    -------
    Dict[str, str]
        Map of output name to written path
    """
    cfg = ctx.config
    res = ctx.results
    out = Path(ctx.output_dir)
    tables = ensure_output_dir(out / "tables")
    outputs: Dict[str, Path] = {}

    if "qc" in res:
        outputs["qc_summary"] = write_dataframe(res["qc"].sample_summary, tables / "qc_summary.csv")
        outputs["qc_spots"] = write_dataframe(res["qc"].spot_metrics, tables / "qc_spots.csv", index=True)

    if "cluster" in res:
        outputs["resolution_summary"] = write_dataframe(
            ClusteringEngine.resolution_summary(res["cluster"]),
            tables / "resolution_summary.csv",
        )
        outputs["resolution_transitions"] = write_dataframe(
            ClusteringEngine.resolution_transitions(res["cluster"]),
            tables / "resolution_transitions.csv",
        )

    outputs["cluster_assignments"] = write_dataframe(
        cluster_assignments(ctx.adata, cfg.markers.cluster_key),
        tables / "cluster_assignments.csv",
        index=True,
    )

    if "markers" in res:
        markers = res["markers"]
        sheets = {"all": markers.markers}
        outputs["markers_all"] = write_dataframe(markers.markers, tables / "markers_all.csv")
        for n in cfg.markers.top_n_values:
            top = markers.top_n(int(n))
            sheets[f"top{n}"] = top
            outputs[f"markers_top{n}"] = write_dataframe(top, tables / f"markers_top{n}.csv")
        if cfg.export.write_xlsx:
            outputs["markers_xlsx"] = write_marker_workbook(sheets, tables / "markers.xlsx")

    if "scores" in res:
        scores = res["scores"]
        outputs["module_scores"] = write_dataframe(scores.scores, tables / "module_scores.csv", index=True)
        outputs["module_scores_by_cluster"] = write_dataframe(
            ModuleScorer.summarize_by_cluster(
                ctx.adata, list(scores.score_keys.values()), cfg.markers.cluster_key
            ),
            tables / "module_scores_by_cluster.csv",
        )

    if "enrichment" in res:
        enrichment = res["enrichment"]
        highlight_n = cfg.enrichment.highlight_n
        outputs["enrichment_terms"] = write_dataframe(enrichment.terms, tables / "enrichment_terms.csv")
        outputs[f"enrichment_top{highlight_n}"] = write_dataframe(
            enrichment.highlights(highlight_n), tables / f"enrichment_top{highlight_n}.csv"
        )
        status = pd.DataFrame(
            [
                {
                    "cluster": c,
                    "status": (
                        "failed" if c in enrichment.failed
                        else "empty" if c in enrichment.empty
                        else "ok"
                    ),
                    "error": enrichment.failed.get(c, ""),
                }
                for c in enrichment.clusters
            ],
            columns=["cluster", "status", "error"],
        )
        outputs["enrichment_status"] = write_dataframe(status, tables / "enrichment_status.csv")

    if cfg.export.write_h5ad:
        outputs["h5ad"] = write_h5ad(
            ctx.adata,
            out / "analysis.h5ad",
            keep_images=cfg.export.keep_images,
            compression=cfg.export.h5ad_compression,
        )

    return {name: str(path) for name, path in outputs.items()}


def _summarize(result: Any) -> Any:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


def _library_versions() -> Dict[str, str]:
    import anndata
    import scanpy

    return {
        "organoid_spatial": __version__,
        "scanpy": scanpy.__version__,
        "anndata": anndata.__version__,
        "pandas": pd.__version__,
    }


def run_analysis(
    config: AnalysisConfig,
    output_dir: Optional[Path] = None,
    *,
    backend: Optional[EnrichmentBackend] = None,
    skip_stages: Optional[List[str]] = None,
    log_level: str = "INFO",
    console: bool = True,
) -> AnalysisOutcome:
    """Run the full analysis.

    Parameters
    ----------
    config : AnalysisConfig
        Run configuration; validated before any data is read
    output_dir : Path, optional
        Export directory. If None, nothing is written.
    backend : EnrichmentBackend, optional
        Enrichment backend override (default: configured backend)
    skip_stages : List[str], optional
        Stage IDs to skip (e.g. ``["enrichment"]``)
    log_level : str
        Logging level for the run log
    console : bool
        Also log to stdout

    Returns
    -------
    AnalysisOutcome
        Final dataset, stage results and written outputs

    Raises
    ------
    ParameterError
        On invalid configuration (before loading)
    SampleLoadError
        If any sample fails to load
    """
    config.validate()
    skip = list(skip_stages or [])
    if not config.enrichment.enabled and "enrichment" not in skip:
        skip.append("enrichment")

    pipeline_logger = None
    if output_dir is not None:
        output_dir = ensure_output_dir(output_dir)
        ensure_output_dir(output_dir / "figures")
        pipeline_logger = PipelineLogger(
            str(output_dir / "logs"), log_level=log_level, console=console
        )
        pipeline_logger.setup()
        config.to_yaml(output_dir / "config_resolved.yaml")
        log_yaml(None, {"analysis": config.to_dict()}, logger=pipeline_logger.logger)

    ctx = AnalysisContext(config=config, output_dir=output_dir, backend=backend)
    executor = build_analysis_pipeline(config, logger=pipeline_logger)
    started = datetime.now().isoformat(timespec="seconds")
    manifest: Dict[str, Any] = {
        "started": started,
        "output_dir": str(output_dir) if output_dir is not None else None,
        "skipped_stages": skip,
        "stages": [s.to_dict() for s in executor.stages.values()],
    }
    manifest_path = None
    try:
        executor.run(ctx, skip=skip)
        manifest["status"] = "completed"
    except Exception as e:
        manifest["status"] = "failed"
        manifest["error"] = f"{type(e).__name__}: {e}"
        raise
    finally:
        manifest["finished"] = datetime.now().isoformat(timespec="seconds")
        manifest["completed_stages"] = list(executor.completed_stages)
        manifest["durations_seconds"] = {k: round(v, 3) for k, v in executor.durations.items()}
        manifest["results"] = {
            k: _summarize(v) for k, v in ctx.results.items() if k != "export"
        }
        manifest["versions"] = _library_versions()
        if output_dir is not None:
            manifest_path = write_json(output_dir / "run_manifest.json", manifest)
            log_json(
                output_dir / "logs" / "runs.jsonl",
                {
                    "started": manifest["started"],
                    "finished": manifest["finished"],
                    "status": manifest["status"],
                    "active_resolution": config.clustering.active_resolution,
                    "completed_stages": manifest["completed_stages"],
                },
            )
        if pipeline_logger is not None:
            pipeline_logger.close()

    return AnalysisOutcome(
        adata=ctx.adata,
        results=ctx.results,
        outputs=ctx.results.get("export", {}) or {},
        manifest_path=manifest_path,
    )

"""In-memory analysis pipeline.

Stages declare the AnnData keys they read and write; the executor runs
them in dependency order and checks those contracts around every stage.

Example Usage
-------------
>>> from organoid_spatial.config import AnalysisConfig
>>> from organoid_spatial.pipeline import run_analysis
>>>
>>> config = AnalysisConfig.from_yaml("configs/analysis.yaml")
>>> outcome = run_analysis(config, output_dir="results/")
>>> outcome.results["markers"].top_n(10)
"""

from .executor import InMemoryExecutor
from .logger import ColoredFormatter, PipelineLogger
from .runner import (
    AnalysisContext,
    AnalysisOutcome,
    build_analysis_pipeline,
    cluster_assignments,
    export_results,
    run_analysis,
)
from .stage import CONTRACT_SLOTS, StageSpec, has_key, parse_contract_key

__all__ = [
    # Contracts
    "CONTRACT_SLOTS",
    "StageSpec",
    "has_key",
    "parse_contract_key",
    # Execution
    "InMemoryExecutor",
    "ColoredFormatter",
    "PipelineLogger",
    # Analysis run
    "AnalysisContext",
    "AnalysisOutcome",
    "build_analysis_pipeline",
    "cluster_assignments",
    "export_results",
    "run_analysis",
]

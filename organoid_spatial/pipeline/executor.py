"""In-memory execution of contract-checked pipeline stages."""

from collections import deque
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import StageContractError
from .logger import PipelineLogger
from .stage import StageSpec


class InMemoryExecutor:
    """Run registered stages in dependency order on a shared context.

    The context is any object with an ``adata`` attribute (None before
    loading). Before each stage the executor checks its ``requires`` keys,
    after it the ``provides`` keys, and appends the stage ID to
    ``adata.uns["stage_provenance"]``.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register(StageSpec("load", "Load", load_func, provides=["layers:counts"]))
    >>> executor.register(StageSpec("qc", "QC", qc_func, depends_on=["load"]))
    >>> results = executor.run(context)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, StageSpec] = {}
        self.completed_stages: List[str] = []
        self.durations: Dict[str, float] = {}

    def register(self, stage: StageSpec) -> None:
        """Register a stage; IDs must be unique."""
        if stage.stage_id in self.stages:
            raise ValueError(f"Stage '{stage.stage_id}' already registered")
        self.stages[stage.stage_id] = stage

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        requires: Optional[List[str]] = None,
        provides: Optional[List[str]] = None,
    ) -> None:
        """Register a stage function without building a StageSpec first."""
        self.register(
            StageSpec(
                stage_id=stage_id,
                name=name or stage_id,
                func=func,
                depends_on=depends_on or [],
                requires=requires or [],
                provides=provides or [],
            )
        )

    def get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort.

        Stages without mutual dependencies keep their registration order.
        """
        for stage in self.stages.values():
            unknown = [d for d in stage.depends_on if d not in self.stages]
            if unknown:
                raise ValueError(f"Stage '{stage.stage_id}' depends on unknown stages {unknown}")

        in_degree = {sid: len(stage.depends_on) for sid, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def _record_provenance(self, adata: Any, stage_id: str) -> None:
        if adata is None:
            return
        provenance = list(adata.uns.get("stage_provenance", []))
        if not provenance or provenance[-1] != stage_id:
            provenance.append(stage_id)
        adata.uns["stage_provenance"] = provenance

    def run(self, context: Any, skip: Iterable[str] = ()) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Parameters
        ----------
        context : Any
            Run context passed to every stage function; must expose ``adata``.
            If it has a ``results`` dict, stage results are stored there so
            later stages can read them.
        skip : Iterable[str]
            Stage IDs to skip

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result

        Raises
        ------
        StageContractError
            If a stage's required keys are missing or it did not produce its
            declared keys
        """
        skip = set(skip)
        order = self.get_execution_order()
        results: Dict[str, Any] = getattr(context, "results", None)
        if results is None:
            results = {}
        if self.logger:
            self.logger.log_info("Pipeline execution plan: " + " -> ".join(order))

        for stage_id in order:
            stage = self.stages[stage_id]
            if stage_id in skip:
                if self.logger:
                    self.logger.log_stage_skipped(stage_id, "skipped by request")
                continue

            ok, missing = stage.validate_inputs(context.adata)
            if not ok:
                error = StageContractError(stage_id, missing, phase="requires")
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(error))
                raise error

            if self.logger:
                self.logger.log_stage_start(stage_id, stage.name)
            start_time = time.time()
            try:
                results[stage_id] = stage.func(context)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, f"{type(e).__name__}: {e}")
                raise

            ok, missing = stage.validate_outputs(context.adata)
            if not ok:
                error = StageContractError(stage_id, missing, phase="provides")
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(error))
                raise error

            self._record_provenance(context.adata, stage_id)
            self.completed_stages.append(stage_id)
            self.durations[stage_id] = time.time() - start_time
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.durations[stage_id])

        return results

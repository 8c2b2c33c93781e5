"""Module scores for curated gene panels.

A module score is the average expression of the panel genes minus the
average expression of randomly drawn control genes from matching
expression bins.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from ...config.panels import get_panel_set
from ...errors import ParameterError
from ..clustering.de import cluster_sort_key
from .config import ScoringConfig


@dataclass
class ScoringResult:
    """Result from module scoring.

    Attributes
    ----------
    scores : pd.DataFrame
        Spots x panels score table
    score_keys : Dict[str, str]
        Map of panel to obs column holding its score
    genes_used : Dict[str, List[str]]
        Panel genes present in the dataset
    genes_missing : Dict[str, List[str]]
        Panel genes absent from the dataset
    """

    scores: pd.DataFrame = field(default_factory=pd.DataFrame)
    score_keys: Dict[str, str] = field(default_factory=dict)
    genes_used: Dict[str, List[str]] = field(default_factory=dict)
    genes_missing: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "panels": list(self.score_keys),
            "genes_used": {k: len(v) for k, v in self.genes_used.items()},
            "genes_missing": {k: list(v) for k, v in self.genes_missing.items() if v},
        }


class ModuleScorer:
    """Seeded module scoring over named gene panels.

    Parameters
    ----------
    config : ScoringConfig, optional
        Scoring configuration
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.scoring import ModuleScorer
    >>> result = ModuleScorer().score(adata)
    >>> adata.obs["basal_score"]
    """

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ScoringConfig()
        self.logger = logger or logging.getLogger(__name__)

    def resolve_panels(self) -> Dict[str, List[str]]:
        """Panels to score: inline panels, or the configured panel set."""
        cfg = self.config
        if cfg.panels:
            panels = {name: list(genes) for name, genes in cfg.panels.items()}
            if cfg.panel_names is not None:
                unknown = [n for n in cfg.panel_names if n not in panels]
                if unknown:
                    raise ParameterError(f"Unknown panels requested: {unknown}")
                panels = {n: panels[n] for n in cfg.panel_names}
            return panels
        try:
            return get_panel_set(cfg.panel_set).select(cfg.panel_names)
        except ValueError as e:
            raise ParameterError(str(e)) from e

    def split_present(self, adata: Any, panels: Mapping[str, List[str]]) -> tuple:
        """Split each panel into genes present in and absent from the dataset.

        Raises
        ------
        ParameterError
            If a panel has no gene present in the dataset
        """
        var_names = set(adata.var_names)
        present: Dict[str, List[str]] = {}
        missing: Dict[str, List[str]] = {}
        for name, genes in panels.items():
            unique = list(dict.fromkeys(genes))
            present[name] = [g for g in unique if g in var_names]
            missing[name] = [g for g in unique if g not in var_names]
            if missing[name]:
                self.logger.warning(
                    "Panel '%s': %d/%d genes not found, dropped: %s",
                    name,
                    len(missing[name]),
                    len(unique),
                    ", ".join(missing[name]),
                )
            if not present[name]:
                raise ParameterError(f"Panel '{name}' has no genes present in the dataset")
        return present, missing

    def score(
        self,
        adata: Any,  # AnnData
        panels: Optional[Mapping[str, List[str]]] = None,
    ) -> ScoringResult:
        """Score every panel into ``obs["<panel><suffix>"]``.

        Scores are computed on AnnData.X (log-normalized expression).

        Parameters
        ----------
        adata : AnnData
            Dataset with log-normalized expression in X
        panels : Mapping[str, List[str]], optional
            Panels to score. Uses the configured panels if None.

        Returns
        -------
        ScoringResult
            Per-spot scores and gene bookkeeping
        """
        import scanpy as sc

        cfg = self.config
        panels = dict(panels) if panels is not None else self.resolve_panels()
        if not panels:
            raise ParameterError("No gene panels to score")

        present, missing = self.split_present(adata, panels)
        result = ScoringResult(genes_used=present, genes_missing=missing)

        for name, genes in present.items():
            key = f"{name}{cfg.score_suffix}"
            sc.tl.score_genes(
                adata,
                gene_list=genes,
                ctrl_size=cfg.ctrl_size,
                n_bins=cfg.n_bins,
                score_name=key,
                random_state=cfg.random_seed,
                use_raw=False,
            )
            result.score_keys[name] = key
            self.logger.info(
                "Scored panel '%s' (%d genes): mean=%.3f",
                name,
                len(genes),
                float(adata.obs[key].mean()),
            )

        result.scores = adata.obs[list(result.score_keys.values())].copy()
        result.scores.index.name = "spot_id"
        return result

    @staticmethod
    def summarize_by_cluster(
        adata: Any,  # AnnData
        score_keys: List[str],
        cluster_key: str = "cluster",
    ) -> pd.DataFrame:
        """Mean module score per cluster."""
        frame = adata.obs[[cluster_key] + list(score_keys)].copy()
        frame[cluster_key] = frame[cluster_key].astype(str)
        summary = frame.groupby(cluster_key).mean()
        summary = summary.loc[sorted(summary.index, key=cluster_sort_key)]
        summary.index.name = "cluster"
        return summary.reset_index()

"""Configuration for functional enrichment of cluster markers."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class EnrichmentConfig:
    """Configuration for per-cluster enrichment.

    Attributes
    ----------
    enabled : bool
        Run the enrichment stage
    backend : str
        Enrichment backend (enrichr)
    top_n : int
        Top-ranked markers per cluster sent to the backend
    ordered : bool
        Treat the gene list as ranked: every rank prefix is queried and
        each term keeps its best result
    min_query_size : int
        Smallest prefix queried in ordered mode
    organism : str
        Organism identifier understood by the backend
    gene_sets : List[str]
        Gene-set libraries to query
    significance_threshold : float, optional
        Drop terms with adjusted p-value above this (None = keep all)
    highlight_n : int
        Top terms per cluster reported as highlights
    max_retries : int
        Extra attempts per backend call after a failure
    n_workers : int
        Threads for per-cluster queries (1 = sequential)
    """

    enabled: bool = True
    backend: str = "enrichr"
    top_n: int = 10
    ordered: bool = True
    min_query_size: int = 1
    organism: str = "human"
    gene_sets: List[str] = field(default_factory=lambda: ["GO_Biological_Process_2023"])
    significance_threshold: Optional[float] = 0.05
    highlight_n: int = 5
    max_retries: int = 0
    n_workers: int = 1

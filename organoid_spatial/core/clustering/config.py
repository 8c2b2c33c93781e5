"""Configuration classes for clustering and marker detection.

All clustering parameters are configurable via YAML.
"""

from dataclasses import dataclass, field
from typing import List, Optional


# Resolution ladder scanned before the active resolution is chosen
DEFAULT_RESOLUTIONS = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]


@dataclass
class ClusteringConfig:
    """Configuration for SNN graph construction and Louvain clustering.

    Attributes
    ----------
    embedding_key : str
        obsm key of the (batch-corrected) embedding to cluster
    n_dims : int, optional
        Leading embedding components used for the neighbor graph
        (None = all components)
    neighbor_k : int
        Neighbors per spot in the k-NN graph (the spot itself included)
    prune_snn : float
        SNN edges with Jaccard overlap below this value are dropped
    resolutions : List[float]
        Louvain resolutions evaluated in one pass
    active_resolution : float, optional
        Resolution whose labels become the active clustering; must be one
        of ``resolutions``
    key_prefix : str
        obs column prefix for per-resolution labels
    umap_dims : int
        Leading embedding components used for the UMAP neighbor graph
    umap_neighbors : int
        k for the UMAP neighbor graph
    umap_min_dist : float
        UMAP min_dist
    random_seed : int
        Random seed for Louvain and UMAP
    """

    embedding_key: str = "X_pca_harmony"
    n_dims: Optional[int] = 30
    neighbor_k: int = 20
    prune_snn: float = 1.0 / 15.0
    resolutions: List[float] = field(default_factory=lambda: list(DEFAULT_RESOLUTIONS))
    active_resolution: Optional[float] = 0.5
    key_prefix: str = "snn_res."
    umap_dims: int = 30
    umap_neighbors: int = 30
    umap_min_dist: float = 0.3
    random_seed: int = 0


@dataclass
class MarkerConfig:
    """Configuration for one-vs-rest marker detection.

    Attributes
    ----------
    layer : str
        Layer with log-normalized expression for testing
    counts_layer : str
        Layer with raw counts for detection fractions
    cluster_key : str
        obs column with the active cluster labels
    min_pct : float
        Minimum in-cluster detection fraction (inclusive)
    min_logfc : float
        Minimum average log2 fold-change (inclusive)
    only_positive : bool
        Keep only genes up-regulated in the cluster
    top_n_values : List[int]
        Top-N slices exported per cluster
    tie_correct : bool
        Apply tie correction for the Wilcoxon test
    n_workers : int
        Threads for per-cluster statistics (1 = sequential)
    """

    layer: str = "lognorm"
    counts_layer: str = "counts"
    cluster_key: str = "cluster"
    min_pct: float = 0.25
    min_logfc: float = 0.25
    only_positive: bool = True
    top_n_values: List[int] = field(default_factory=lambda: [5, 10, 50])
    tie_correct: bool = True
    n_workers: int = 1

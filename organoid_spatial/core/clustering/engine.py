"""Clustering engine for spatial tissue domains.

Builds a shared-nearest-neighbor (SNN) graph on the batch-corrected
embedding, runs Louvain community detection over a ladder of
resolutions, and computes a UMAP embedding for display.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ParameterError
from .config import ClusteringConfig


def resolution_key(resolution: float, prefix: str = "snn_res.") -> str:
    """obs column name for the labels at one resolution."""
    return f"{prefix}{float(resolution):g}"


def validate_resolutions(
    resolutions: Sequence[float],
    active_resolution: Optional[float] = None,
) -> None:
    """Check a resolution ladder and the active resolution.

    Raises
    ------
    ParameterError
        If the ladder is empty, has non-positive or duplicate values, or the
        active resolution is not on the ladder
    """
    if not resolutions:
        raise ParameterError("Resolution list is empty")
    values = [float(r) for r in resolutions]
    bad = [r for r in values if not np.isfinite(r) or r <= 0]
    if bad:
        raise ParameterError(f"Resolutions must be positive, got {bad}")
    if len({f"{r:g}" for r in values}) != len(values):
        raise ParameterError(f"Duplicate resolutions in {values}")
    if active_resolution is not None and not np.isclose(values, float(active_resolution)).any():
        raise ParameterError(
            f"active_resolution={active_resolution} is not one of the resolutions {values}"
        )


@dataclass
class MultiResolutionResult:
    """Result from clustering at several resolutions.

    Attributes
    ----------
    resolutions : List[float]
        Resolutions in ladder order
    keys : Dict[float, str]
        Map of resolution to obs column with its labels
    labels : Dict[float, np.ndarray]
        Map of resolution to per-spot string labels
    n_clusters : Dict[float, int]
        Map of resolution to number of clusters
    cluster_sizes : Dict[float, Dict[str, int]]
        Map of resolution to cluster ID -> spot count
    """

    resolutions: List[float] = field(default_factory=list)
    keys: Dict[float, str] = field(default_factory=dict)
    labels: Dict[float, np.ndarray] = field(default_factory=dict)
    n_clusters: Dict[float, int] = field(default_factory=dict)
    cluster_sizes: Dict[float, Dict[str, int]] = field(default_factory=dict)

    def key_for(self, resolution: float) -> str:
        """Return the obs column for a resolution on the ladder."""
        for value in self.resolutions:
            if np.isclose(value, float(resolution)):
                return self.keys[value]
        raise ParameterError(
            f"Resolution {resolution} was not clustered (available: {self.resolutions})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "resolutions": list(self.resolutions),
            "n_clusters": {f"{r:g}": n for r, n in self.n_clusters.items()},
        }


class ClusteringEngine:
    """SNN + Louvain clustering over a resolution ladder.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.clustering import ClusteringEngine
    >>> engine = ClusteringEngine()
    >>> engine.compute_umap(adata)
    >>> result = engine.run_resolutions(adata)
    >>> engine.select_resolution(adata, 0.5, result)
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import networkx
            import sklearn
        except ImportError:
            raise RuntimeError(
                "Clustering requires networkx and scikit-learn. "
                "Install with: pip install networkx scikit-learn"
            )

    def get_embedding(self, adata: Any, n_dims: Optional[int] = None) -> np.ndarray:
        """Return the leading ``n_dims`` columns of the clustering embedding."""
        key = self.config.embedding_key
        if key not in adata.obsm:
            raise KeyError(f"Embedding '{key}' not found in adata.obsm")
        embedding = np.asarray(adata.obsm[key], dtype=np.float64)
        if n_dims is not None:
            if n_dims < 1:
                raise ParameterError(f"n_dims must be >= 1, got {n_dims}")
            if n_dims > embedding.shape[1]:
                self.logger.warning(
                    "Requested %d dims but %s has %d; using all",
                    n_dims,
                    key,
                    embedding.shape[1],
                )
            embedding = embedding[:, : min(n_dims, embedding.shape[1])]
        return embedding

    def build_snn_graph(
        self,
        embedding: np.ndarray,
        k: Optional[int] = None,
        prune: Optional[float] = None,
    ) -> sparse.csr_matrix:
        """Build a shared-nearest-neighbor graph.

        Each spot's neighborhood is itself plus its ``k - 1`` nearest spots.
        Edge weight is the Jaccard overlap ``s / (2k - s)`` of two
        neighborhoods sharing ``s`` spots; weights below ``prune`` are dropped.

        Parameters
        ----------
        embedding : np.ndarray
            Spots x components
        k : int, optional
            Neighborhood size. Uses config default if None.
        prune : float, optional
            Pruning cutoff. Uses config default if None.

        Returns
        -------
        sparse.csr_matrix
            Symmetric weighted adjacency with zero diagonal
        """
        from sklearn.neighbors import NearestNeighbors

        k = k if k is not None else self.config.neighbor_k
        prune = prune if prune is not None else self.config.prune_snn
        n_spots = embedding.shape[0]
        if k < 2:
            raise ParameterError(f"neighbor_k must be >= 2, got {k}")
        if n_spots < k:
            raise ParameterError(f"Dataset has {n_spots} spots; need at least neighbor_k={k}")

        nn = NearestNeighbors(n_neighbors=k - 1)
        nn.fit(embedding)
        neighbors = nn.kneighbors(return_distance=False)
        members = np.hstack([np.arange(n_spots)[:, None], neighbors])

        rows = np.repeat(np.arange(n_spots), k)
        membership = sparse.csr_matrix(
            (np.ones(rows.size, dtype=np.float64), (rows, members.ravel())),
            shape=(n_spots, n_spots),
        )
        shared = (membership @ membership.T).tocsr()
        shared.data = shared.data / (2.0 * k - shared.data)
        shared.data[shared.data < prune] = 0.0
        shared.setdiag(0.0)
        shared.eliminate_zeros()

        self.logger.info(
            "Built SNN graph: %d spots, k=%d, %d edges (prune < %.4f)",
            n_spots,
            k,
            shared.nnz // 2,
            prune,
        )
        return shared

    def louvain(
        self,
        graph: sparse.spmatrix,
        resolution: float,
        seed: Optional[int] = None,
    ) -> np.ndarray:
        """Run Louvain modularity optimization on a weighted graph.

        Communities are numbered by size (largest first); equal sizes are
        ordered by their smallest member index.

        Returns
        -------
        np.ndarray
            Per-spot string labels ("0", "1", ...)
        """
        import networkx as nx

        seed = seed if seed is not None else self.config.random_seed
        g = nx.from_scipy_sparse_array(sparse.csr_matrix(graph), edge_attribute="weight")
        communities = nx.community.louvain_communities(
            g, weight="weight", resolution=resolution, seed=seed
        )
        ordered = sorted(communities, key=lambda c: (-len(c), min(c)))

        labels = np.empty(graph.shape[0], dtype=object)
        for label, members in enumerate(ordered):
            labels[list(members)] = str(label)
        return labels

    def run_resolutions(
        self,
        adata: Any,  # AnnData
        resolutions: Optional[Sequence[float]] = None,
    ) -> MultiResolutionResult:
        """Cluster at every resolution of the ladder.

        Writes the SNN graph to ``obsp["snn"]`` and one label column per
        resolution to obs. Earlier keys are never modified.

        Parameters
        ----------
        adata : AnnData
            Dataset with the clustering embedding in obsm
        resolutions : Sequence[float], optional
            Resolutions to evaluate. Uses config default if None.

        Returns
        -------
        MultiResolutionResult
            Labels and cluster counts per resolution
        """
        cfg = self.config
        resolutions = [float(r) for r in (resolutions if resolutions is not None else cfg.resolutions)]
        validate_resolutions(resolutions)

        embedding = self.get_embedding(adata, cfg.n_dims)
        graph = self.build_snn_graph(embedding)
        adata.obsp["snn"] = graph

        result = MultiResolutionResult(resolutions=resolutions)
        for resolution in resolutions:
            labels = self.louvain(graph, resolution)
            key = resolution_key(resolution, cfg.key_prefix)
            categories = sorted(set(labels), key=int)
            adata.obs[key] = pd.Categorical(labels, categories=categories)

            sizes = pd.Series(labels).value_counts()
            result.keys[resolution] = key
            result.labels[resolution] = labels
            result.n_clusters[resolution] = len(categories)
            result.cluster_sizes[resolution] = {c: int(sizes[c]) for c in categories}
            self.logger.info(
                "Resolution %.2f: %d clusters (%s)",
                resolution,
                len(categories),
                key,
            )

        self.check_granularity(result)
        adata.uns["clustering"] = {
            "resolutions": resolutions,
            "keys": [result.keys[r] for r in resolutions],
            "neighbor_k": cfg.neighbor_k,
            "prune_snn": cfg.prune_snn,
            "embedding_key": cfg.embedding_key,
            "random_seed": cfg.random_seed,
        }
        return result

    def check_granularity(self, result: MultiResolutionResult) -> bool:
        """Warn when the cluster count drops as resolution increases."""
        ordered = sorted(result.resolutions)
        monotonic = True
        for low, high in zip(ordered, ordered[1:]):
            if result.n_clusters[high] < result.n_clusters[low]:
                monotonic = False
                self.logger.warning(
                    "Cluster count decreases from %d (res %.2f) to %d (res %.2f)",
                    result.n_clusters[low],
                    low,
                    result.n_clusters[high],
                    high,
                )
        return monotonic

    def select_resolution(
        self,
        adata: Any,  # AnnData
        resolution: float,
        result: Optional[MultiResolutionResult] = None,
        cluster_key: str = "cluster",
    ) -> str:
        """Make one resolution's labels the active clustering.

        Parameters
        ----------
        adata : AnnData
            Dataset clustered by ``run_resolutions``
        resolution : float
            Externally chosen resolution
        result : MultiResolutionResult, optional
            Multi-resolution result used to locate the label column
        cluster_key : str
            obs column receiving the active labels

        Returns
        -------
        str
            obs column the labels were copied from

        Raises
        ------
        ParameterError
            If the resolution was not clustered
        """
        if result is not None:
            source = result.key_for(resolution)
        else:
            source = resolution_key(resolution, self.config.key_prefix)
        if source not in adata.obs:
            raise ParameterError(f"Resolution {resolution} was not clustered ('{source}' missing)")

        adata.obs[cluster_key] = adata.obs[source].copy()
        adata.uns["active_resolution"] = float(resolution)
        self.logger.info(
            "Active clustering: resolution %.2f -> %d clusters in obs['%s']",
            resolution,
            adata.obs[cluster_key].nunique(),
            cluster_key,
        )
        return source

    def compute_umap(self, adata: Any) -> np.ndarray:
        """Compute a 2-D UMAP embedding for display into ``obsm["X_umap"]``.

        Uses its own neighbor graph over the leading ``umap_dims`` components;
        the clustering graph is not affected.
        """
        import scanpy as sc

        cfg = self.config
        key = cfg.embedding_key
        if key not in adata.obsm:
            raise KeyError(f"Embedding '{key}' not found in adata.obsm")
        n_dims = min(cfg.umap_dims, adata.obsm[key].shape[1])
        n_neighbors = min(cfg.umap_neighbors, adata.n_obs - 1)

        sc.pp.neighbors(
            adata,
            n_neighbors=n_neighbors,
            n_pcs=n_dims,
            use_rep=key,
            random_state=cfg.random_seed,
            key_added="umap_neighbors",
        )
        sc.tl.umap(
            adata,
            min_dist=cfg.umap_min_dist,
            random_state=cfg.random_seed,
            neighbors_key="umap_neighbors",
        )
        self.logger.info("Computed UMAP from %d dims of %s (k=%d)", n_dims, key, n_neighbors)
        return adata.obsm["X_umap"]

    @staticmethod
    def resolution_summary(result: MultiResolutionResult) -> pd.DataFrame:
        """Cluster counts and size range per resolution."""
        rows = []
        for resolution in result.resolutions:
            sizes = result.cluster_sizes[resolution]
            rows.append(
                {
                    "resolution": resolution,
                    "key": result.keys[resolution],
                    "n_clusters": result.n_clusters[resolution],
                    "largest_cluster": max(sizes.values()),
                    "smallest_cluster": min(sizes.values()),
                }
            )
        return pd.DataFrame(rows)

    @staticmethod
    def resolution_transitions(result: MultiResolutionResult) -> pd.DataFrame:
        """Spot flow between clusters of consecutive resolutions.

        Each row counts the spots moving from one cluster at the lower
        resolution to one cluster at the next resolution, as in a clustering
        tree diagnostic.
        """
        columns = [
            "from_resolution",
            "to_resolution",
            "from_cluster",
            "to_cluster",
            "n_spots",
            "fraction_of_source",
        ]
        ordered = sorted(result.resolutions)
        frames = []
        for low, high in zip(ordered, ordered[1:]):
            flow = (
                pd.DataFrame({"from_cluster": result.labels[low], "to_cluster": result.labels[high]})
                .groupby(["from_cluster", "to_cluster"])
                .size()
                .rename("n_spots")
                .reset_index()
            )
            totals = flow.groupby("from_cluster")["n_spots"].transform("sum")
            flow["fraction_of_source"] = flow["n_spots"] / totals
            flow.insert(0, "to_resolution", high)
            flow.insert(0, "from_resolution", low)
            flow = flow.sort_values(
                ["from_cluster", "to_cluster"],
                key=lambda s: s.astype(int),
            )
            frames.append(flow)
        if not frames:
            return pd.DataFrame(columns=columns)
        return pd.concat(frames, ignore_index=True)[columns]

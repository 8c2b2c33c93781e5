"""Marker gene detection for clusters.

One-vs-rest comparison of every cluster against all other spots:
Wilcoxon rank-sum p-values, average log2 fold-change and detection
fractions, filtered by inclusive thresholds and ranked by effect size.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ParameterError
from .config import MarkerConfig


MARKER_COLUMNS = ["gene", "cluster", "p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]

# Clusters smaller than this are not tested
MIN_SPOTS_PER_CLUSTER = 3


def cluster_sort_key(cluster: str) -> tuple:
    """Order cluster ids numerically when possible."""
    text = str(cluster)
    return (0, int(text), text) if text.isdigit() else (1, 0, text)


def filter_markers(
    table: pd.DataFrame,
    min_pct: float,
    min_logfc: float,
    only_positive: bool = True,
) -> pd.DataFrame:
    """Apply marker thresholds and rank the survivors.

    A gene is kept iff ``pct_1 >= min_pct`` and ``avg_log2FC >= min_logfc``
    (``|avg_log2FC| >= min_logfc`` when negative markers are allowed). Both
    bounds are inclusive. Within each cluster, genes are ranked by
    ``avg_log2FC`` descending with ties broken by gene name.

    Parameters
    ----------
    table : pd.DataFrame
        Marker statistics with ``MARKER_COLUMNS``
    min_pct : float
        Minimum in-cluster detection fraction
    min_logfc : float
        Minimum log2 fold-change
    only_positive : bool
        Drop genes down-regulated in the cluster

    Returns
    -------
    pd.DataFrame
        Filtered and ranked markers
    """
    logfc = table["avg_log2FC"]
    effect = logfc >= min_logfc if only_positive else logfc.abs() >= min_logfc
    kept = table[(table["pct_1"] >= min_pct) & effect].copy()

    order = {c: i for i, c in enumerate(sorted(kept["cluster"].unique(), key=cluster_sort_key))}
    kept["_order"] = kept["cluster"].map(order)
    kept = kept.sort_values(
        ["_order", "avg_log2FC", "gene"],
        ascending=[True, False, True],
        kind="mergesort",
    )
    return kept.drop(columns="_order").reset_index(drop=True)


@dataclass
class MarkerResult:
    """Result from marker detection.

    Attributes
    ----------
    markers : pd.DataFrame
        Filtered, ranked markers for all clusters (``MARKER_COLUMNS``)
    clusters : List[str]
        Clusters tested, in sorted order
    skipped_clusters : List[str]
        Clusters too small to test
    cluster_key : str
        obs column the clusters came from
    elapsed_seconds : float
        Time taken for marker detection
    """

    markers: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=MARKER_COLUMNS))
    clusters: List[str] = field(default_factory=list)
    skipped_clusters: List[str] = field(default_factory=list)
    cluster_key: str = "cluster"
    elapsed_seconds: float = 0.0

    def for_cluster(self, cluster: str) -> pd.DataFrame:
        """Ranked markers of one cluster."""
        return self.markers[self.markers["cluster"] == str(cluster)].reset_index(drop=True)

    def top_n(self, n: int) -> pd.DataFrame:
        """First ``n`` ranked markers of every cluster."""
        if n < 1:
            raise ParameterError(f"top-N must be >= 1, got {n}")
        return self.markers.groupby("cluster", sort=False).head(n).reset_index(drop=True)

    def top_genes(self, n: int) -> Dict[str, List[str]]:
        """Map of cluster to its top ``n`` marker genes in rank order."""
        return {
            cluster: self.for_cluster(cluster)["gene"].head(n).tolist()
            for cluster in self.clusters
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_markers": int(len(self.markers)),
            "clusters": list(self.clusters),
            "skipped_clusters": list(self.skipped_clusters),
            "markers_per_cluster": {
                c: int((self.markers["cluster"] == c).sum()) for c in self.clusters
            },
            "elapsed_seconds": self.elapsed_seconds,
        }


class MarkerRunner:
    """One-vs-rest marker detection per cluster.

    Parameters
    ----------
    config : MarkerConfig, optional
        Marker configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.clustering import MarkerRunner
    >>> result = MarkerRunner().run(adata)
    >>> result.top_n(10)
    """

    def __init__(
        self,
        config: Optional[MarkerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MarkerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy
        except ImportError:
            raise RuntimeError(
                "Marker detection requires scanpy. Install with: pip install scanpy"
            )

    def validate(self, adata: Any, cluster_key: str) -> None:
        """Fail fast on missing inputs or invalid thresholds."""
        cfg = self.config
        if cluster_key not in adata.obs:
            raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")
        for layer in (cfg.layer, cfg.counts_layer):
            if layer not in adata.layers:
                raise KeyError(f"Layer '{layer}' not found in adata.layers")
        if not 0.0 <= cfg.min_pct <= 1.0:
            raise ParameterError(f"min_pct must be within [0, 1], got {cfg.min_pct}")
        if any(int(n) < 1 for n in cfg.top_n_values):
            raise ParameterError(f"top_n_values must be >= 1, got {cfg.top_n_values}")

    def wilcoxon_pvalues(
        self,
        adata: Any,  # AnnData
        cluster_key: str,
        clusters: Sequence[str],
        key_added: str = "markers_wilcoxon",
    ) -> Dict[str, pd.DataFrame]:
        """Wilcoxon rank-sum p-values of every gene, each cluster vs rest.

        Returns
        -------
        Dict[str, pd.DataFrame]
            Map of cluster to a frame indexed by gene with ``p_val`` and
            Bonferroni-adjusted ``p_val_adj``
        """
        import scanpy as sc

        sc.tl.rank_genes_groups(
            adata,
            groupby=cluster_key,
            groups=list(clusters),
            reference="rest",
            method="wilcoxon",
            n_genes=adata.n_vars,
            layer=self.config.layer,
            use_raw=False,
            tie_correct=self.config.tie_correct,
            corr_method="bonferroni",
            key_added=key_added,
        )

        pvalues = {}
        for cluster in clusters:
            df = sc.get.rank_genes_groups_df(adata, group=cluster, key=key_added)
            df = df.dropna(subset=["names"]).drop_duplicates(subset="names")
            pvalues[cluster] = (
                df.set_index(df["names"].astype(str))[["pvals", "pvals_adj"]]
                .rename(columns={"pvals": "p_val", "pvals_adj": "p_val_adj"})
            )
        return pvalues

    def cluster_statistics(
        self,
        expm1_expr: sparse.csr_matrix,
        detected: sparse.csr_matrix,
        mask: np.ndarray,
    ) -> pd.DataFrame:
        """Fold-change and detection fractions of one cluster vs the rest.

        Parameters
        ----------
        expm1_expr : sparse.csr_matrix
            ``expm1`` of the log-normalized expression (spots x genes)
        detected : sparse.csr_matrix
            1 where the raw count is above zero
        mask : np.ndarray
            Boolean spot mask of the cluster

        Returns
        -------
        pd.DataFrame
            ``avg_log2FC``, ``pct_1`` and ``pct_2`` per gene
        """
        n_in = int(mask.sum())
        n_out = int(mask.size - n_in)

        sum_all = np.asarray(expm1_expr.sum(axis=0)).ravel()
        sum_in = np.asarray(expm1_expr[mask].sum(axis=0)).ravel()
        det_all = np.asarray(detected.sum(axis=0)).ravel()
        det_in = np.asarray(detected[mask].sum(axis=0)).ravel()

        mean_in = sum_in / n_in
        mean_out = (sum_all - sum_in) / n_out if n_out else np.zeros_like(sum_all)

        return pd.DataFrame(
            {
                "avg_log2FC": np.log2(mean_in + 1.0) - np.log2(mean_out + 1.0),
                "pct_1": det_in / n_in,
                "pct_2": (det_all - det_in) / n_out if n_out else np.zeros_like(det_all),
            }
        )

    def compute_statistics(self, adata: Any, cluster_key: Optional[str] = None) -> pd.DataFrame:
        """Unfiltered marker statistics for every tested cluster and gene."""
        cluster_key = cluster_key or self.config.cluster_key
        column = adata.obs[cluster_key]
        if not isinstance(column.dtype, pd.CategoricalDtype) or not all(
            isinstance(c, str) for c in column.cat.categories
        ):
            adata.obs[cluster_key] = adata.obs[cluster_key].astype(str).astype("category")
        labels = adata.obs[cluster_key].astype(str).to_numpy()
        clusters, skipped = self._testable_clusters(labels)
        if len(clusters) < 2 and not skipped:
            raise ParameterError(
                f"Marker detection needs at least 2 clusters in '{cluster_key}', "
                f"found {len(clusters)}"
            )
        if not clusters:
            raise ParameterError(f"No cluster in '{cluster_key}' has enough spots to test")

        pvalues = self.wilcoxon_pvalues(adata, cluster_key, clusters)

        expr = adata.layers[self.config.layer]
        expr = sparse.csr_matrix(expr, dtype=np.float64)
        expm1_expr = expr.expm1()
        detected = (sparse.csr_matrix(adata.layers[self.config.counts_layer]) > 0).astype(np.float64)
        genes = adata.var_names.astype(str)

        def _one(cluster: str) -> pd.DataFrame:
            stats = self.cluster_statistics(expm1_expr, detected, labels == cluster)
            stats.index = genes
            stats = stats.join(pvalues[cluster], how="left")
            stats.insert(0, "cluster", cluster)
            stats.insert(0, "gene", genes)
            return stats.reset_index(drop=True)[MARKER_COLUMNS]

        if self.config.n_workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.n_workers) as executor:
                frames = list(executor.map(_one, clusters))
        else:
            frames = [_one(cluster) for cluster in clusters]
        return pd.concat(frames, ignore_index=True)

    def _testable_clusters(self, labels: np.ndarray) -> tuple:
        counts = pd.Series(labels).value_counts()
        ordered = sorted(counts.index, key=cluster_sort_key)
        clusters = [c for c in ordered if counts[c] >= MIN_SPOTS_PER_CLUSTER]
        skipped = [c for c in ordered if counts[c] < MIN_SPOTS_PER_CLUSTER]
        for cluster in skipped:
            self.logger.warning(
                "Skipping cluster %s: %d spots (< %d)",
                cluster,
                counts[cluster],
                MIN_SPOTS_PER_CLUSTER,
            )
        return clusters, skipped

    def run(self, adata: Any, cluster_key: Optional[str] = None) -> MarkerResult:
        """Find ranked markers for every cluster.

        Parameters
        ----------
        adata : AnnData
            Dataset with active cluster labels, ``layers["lognorm"]`` and
            ``layers["counts"]``
        cluster_key : str, optional
            obs column with cluster labels. Uses config default if None.

        Returns
        -------
        MarkerResult
            Filtered, ranked markers
        """
        cfg = self.config
        cluster_key = cluster_key or cfg.cluster_key
        self.validate(adata, cluster_key)

        labels = adata.obs[cluster_key].astype(str).to_numpy()
        self.logger.info(
            "Finding markers for %d clusters (min_pct=%.3f, min_logfc=%.3f, workers=%d)",
            len(set(labels)),
            cfg.min_pct,
            cfg.min_logfc,
            cfg.n_workers,
        )

        start = time.time()
        stats = self.compute_statistics(adata, cluster_key)
        markers = filter_markers(stats, cfg.min_pct, cfg.min_logfc, cfg.only_positive)
        elapsed = time.time() - start

        tested = sorted(stats["cluster"].unique(), key=cluster_sort_key)
        skipped = sorted(set(labels) - set(tested), key=cluster_sort_key)
        result = MarkerResult(
            markers=markers,
            clusters=tested,
            skipped_clusters=skipped,
            cluster_key=cluster_key,
            elapsed_seconds=elapsed,
        )
        for cluster in tested:
            n_markers = int((markers["cluster"] == cluster).sum())
            if n_markers == 0:
                self.logger.warning("Cluster %s has no markers passing thresholds", cluster)
            else:
                self.logger.debug("Cluster %s: %d markers", cluster, n_markers)
        self.logger.info(
            "Marker detection completed in %.1f seconds: %d markers across %d clusters",
            elapsed,
            len(markers),
            len(tested),
        )
        return result

"""Per-cluster functional enrichment of top marker genes.

Each cluster is queried in its own failure scope: a backend error or an
empty response for one cluster is recorded and reported, and the other
clusters are unaffected.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ...errors import ParameterError
from ..clustering.de import cluster_sort_key
from .backend import BACKEND_COLUMNS, EnrichmentBackend, get_backend
from .config import EnrichmentConfig


TERM_COLUMNS = ["cluster", "rank"] + BACKEND_COLUMNS + ["query_size"]


def empty_terms() -> pd.DataFrame:
    return pd.DataFrame(columns=TERM_COLUMNS)


def rank_terms(terms: pd.DataFrame, cluster: str) -> pd.DataFrame:
    """Rank terms by adjusted p-value (ties by term name) and number them 1..n."""
    ranked = terms.sort_values(
        ["adjusted_p_value", "term_name"],
        ascending=[True, True],
        kind="mergesort",
    ).reset_index(drop=True)
    ranked["cluster"] = cluster
    ranked["rank"] = range(1, len(ranked) + 1)
    return ranked[TERM_COLUMNS]


def best_per_term(frames: Sequence[pd.DataFrame]) -> pd.DataFrame:
    """Merge prefix queries, keeping each term's best adjusted p-value.

    Ties keep the smallest query size reaching that value.
    """
    non_empty = [f for f in frames if not f.empty]
    if not non_empty:
        return pd.DataFrame(columns=BACKEND_COLUMNS + ["query_size"])
    merged = pd.concat(non_empty, ignore_index=True)
    merged = merged.sort_values(
        ["adjusted_p_value", "query_size"],
        ascending=[True, True],
        kind="mergesort",
    )
    return merged.drop_duplicates(subset=["source", "term_id"], keep="first").reset_index(drop=True)


@dataclass
class EnrichmentResult:
    """Result from per-cluster enrichment.

    Attributes
    ----------
    terms : pd.DataFrame
        Ranked terms for all clusters (``TERM_COLUMNS``)
    clusters : List[str]
        Clusters submitted, in sorted order
    succeeded : List[str]
        Clusters with at least one term
    failed : Dict[str, str]
        Map of cluster to error message for backend failures
    empty : List[str]
        Clusters with no genes to query or no term returned
    """

    terms: pd.DataFrame = field(default_factory=empty_terms)
    clusters: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    empty: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed or self.empty)

    def for_cluster(self, cluster: str) -> pd.DataFrame:
        """Ranked terms of one cluster."""
        return self.terms[self.terms["cluster"] == str(cluster)].reset_index(drop=True)

    def highlights(self, n: int = 5) -> pd.DataFrame:
        """Top ``n`` terms of every cluster."""
        return self.terms[self.terms["rank"] <= n].reset_index(drop=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "clusters": list(self.clusters),
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "empty": list(self.empty),
            "n_terms": int(len(self.terms)),
        }


class EnrichmentAnalyzer:
    """Query an enrichment backend for each cluster's top markers.

    Parameters
    ----------
    config : EnrichmentConfig, optional
        Enrichment configuration
    backend : EnrichmentBackend, optional
        Backend instance. If None, the configured backend is created.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.enrichment import EnrichmentAnalyzer
    >>> analyzer = EnrichmentAnalyzer()
    >>> result = analyzer.run(marker_result.top_genes(10))
    >>> result.highlights(5)
    """

    def __init__(
        self,
        config: Optional[EnrichmentConfig] = None,
        backend: Optional[EnrichmentBackend] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or EnrichmentConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.backend = backend or get_backend(self.config.backend, logger=self.logger)

    def validate(self) -> None:
        """Check enrichment parameters."""
        cfg = self.config
        if cfg.top_n < 1:
            raise ParameterError(f"enrichment top_n must be >= 1, got {cfg.top_n}")
        if cfg.min_query_size < 1:
            raise ParameterError(f"min_query_size must be >= 1, got {cfg.min_query_size}")
        if cfg.max_retries < 0:
            raise ParameterError(f"max_retries must be >= 0, got {cfg.max_retries}")
        if not cfg.gene_sets:
            raise ParameterError("No gene-set libraries configured for enrichment")

    def _query(self, genes: Sequence[str]) -> pd.DataFrame:
        """One backend call, retried up to ``max_retries`` times."""
        cfg = self.config
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.backend.query(list(genes), cfg.organism, list(cfg.gene_sets))
            except Exception as e:
                if attempt > cfg.max_retries:
                    raise
                self.logger.warning(
                    "Enrichment query failed (attempt %d/%d): %s; retrying",
                    attempt,
                    cfg.max_retries + 1,
                    e,
                )

    def query_cluster(self, cluster: str, genes: Sequence[str]) -> pd.DataFrame:
        """Enrichment terms for one cluster's ranked gene list.

        In ordered mode every prefix ``genes[:k]`` (k from ``min_query_size``
        to the full list) is queried and each term keeps its best adjusted
        p-value along with the prefix size that reached it.
        """
        cfg = self.config
        genes = list(genes)[: cfg.top_n]

        if cfg.ordered:
            frames = []
            for size in range(min(cfg.min_query_size, len(genes)), len(genes) + 1):
                frame = self._query(genes[:size]).copy()
                frame["query_size"] = size
                frames.append(frame)
            terms = best_per_term(frames)
        else:
            terms = self._query(genes).copy()
            terms["query_size"] = len(genes)

        if cfg.significance_threshold is not None and not terms.empty:
            terms = terms[terms["adjusted_p_value"] <= cfg.significance_threshold]
        return rank_terms(terms, cluster)

    def _run_one(self, cluster: str, genes: Sequence[str]) -> Tuple[str, Optional[pd.DataFrame], Optional[str]]:
        if not genes:
            return cluster, None, None
        try:
            return cluster, self.query_cluster(cluster, genes), None
        except Exception as e:
            return cluster, None, f"{type(e).__name__}: {e}"

    def run(self, cluster_genes: Mapping[str, Sequence[str]]) -> EnrichmentResult:
        """Run enrichment for every cluster.

        Parameters
        ----------
        cluster_genes : Mapping[str, Sequence[str]]
            Map of cluster to its ranked marker genes (best first)

        Returns
        -------
        EnrichmentResult
            Ranked terms plus the clusters that failed or came back empty
        """
        cfg = self.config
        self.validate()
        clusters = sorted((str(c) for c in cluster_genes), key=cluster_sort_key)
        genes = {str(c): list(g) for c, g in cluster_genes.items()}

        self.logger.info(
            "Running %s enrichment for %d clusters (top_n=%d, ordered=%s, organism=%s, sets=%s)",
            getattr(self.backend, "name", type(self.backend).__name__),
            len(clusters),
            cfg.top_n,
            cfg.ordered,
            cfg.organism,
            ",".join(cfg.gene_sets),
        )

        if cfg.n_workers > 1:
            with ThreadPoolExecutor(max_workers=cfg.n_workers) as executor:
                outcomes = list(executor.map(lambda c: self._run_one(c, genes[c]), clusters))
        else:
            outcomes = [self._run_one(c, genes[c]) for c in clusters]

        result = EnrichmentResult(clusters=clusters)
        frames = []
        for cluster, terms, error in outcomes:
            if error is not None:
                result.failed[cluster] = error
                self.logger.warning("Enrichment failed for cluster %s: %s", cluster, error)
            elif terms is None or terms.empty:
                result.empty.append(cluster)
                self.logger.warning("No enrichment terms for cluster %s", cluster)
            else:
                result.succeeded.append(cluster)
                frames.append(terms)
                self.logger.info(
                    "Cluster %s: %d terms, top: %s",
                    cluster,
                    len(terms),
                    terms["term_name"].iloc[0],
                )

        if frames:
            result.terms = pd.concat(frames, ignore_index=True)[TERM_COLUMNS]

        if result.is_partial:
            self.logger.warning(
                "Enrichment completed with partial results: %d succeeded, %d failed, %d empty",
                len(result.succeeded),
                len(result.failed),
                len(result.empty),
            )
        return result

    def run_from_markers(self, marker_result: Any) -> EnrichmentResult:
        """Run enrichment on the top ``top_n`` genes of a MarkerResult."""
        return self.run(marker_result.top_genes(self.config.top_n))

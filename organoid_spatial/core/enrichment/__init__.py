"""Functional enrichment of cluster marker genes.

Example Usage
-------------
>>> from organoid_spatial.core.enrichment import EnrichmentAnalyzer, EnrichmentConfig
>>> analyzer = EnrichmentAnalyzer(EnrichmentConfig(top_n=10, ordered=True))
>>> result = analyzer.run({"0": ["KRT5", "KRT14"], "1": ["COL1A1", "DCN"]})
>>> result.failed
{}
"""

from .config import EnrichmentConfig
from .backend import (
    BACKEND_COLUMNS,
    EnrichmentBackend,
    EnrichrBackend,
    get_backend,
    split_term,
)
from .engine import (
    TERM_COLUMNS,
    EnrichmentAnalyzer,
    EnrichmentResult,
    best_per_term,
    rank_terms,
)

__all__ = [
    "EnrichmentConfig",
    "BACKEND_COLUMNS",
    "EnrichmentBackend",
    "EnrichrBackend",
    "get_backend",
    "split_term",
    "TERM_COLUMNS",
    "EnrichmentAnalyzer",
    "EnrichmentResult",
    "best_per_term",
    "rank_terms",
]

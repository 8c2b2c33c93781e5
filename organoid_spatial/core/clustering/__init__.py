"""Clustering module for spatial tissue domains.

Provides SNN + Louvain clustering over a resolution ladder, explicit
selection of the active resolution, and one-vs-rest marker detection.

Example Usage
-------------
>>> from organoid_spatial.core.clustering import (
...     ClusteringEngine, ClusteringConfig, MarkerRunner, MarkerConfig,
... )
>>> engine = ClusteringEngine(ClusteringConfig(neighbor_k=20))
>>> result = engine.run_resolutions(adata)
>>> engine.select_resolution(adata, 0.5, result)
>>> markers = MarkerRunner(MarkerConfig()).run(adata)
"""

# Configuration classes
from .config import (
    ClusteringConfig,
    MarkerConfig,
    DEFAULT_RESOLUTIONS,
)

# Clustering engine
from .engine import (
    ClusteringEngine,
    MultiResolutionResult,
    resolution_key,
    validate_resolutions,
)

# Marker detection
from .de import (
    MarkerRunner,
    MarkerResult,
    MARKER_COLUMNS,
    filter_markers,
)

__all__ = [
    # Config
    "ClusteringConfig",
    "MarkerConfig",
    "DEFAULT_RESOLUTIONS",
    # Engine
    "ClusteringEngine",
    "MultiResolutionResult",
    "resolution_key",
    "validate_resolutions",
    # Markers
    "MarkerRunner",
    "MarkerResult",
    "MARKER_COLUMNS",
    "filter_markers",
]

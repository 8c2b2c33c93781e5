"""Module scoring of curated gene panels per spot.

Example Usage
-------------
>>> from organoid_spatial.core.scoring import ModuleScorer, ScoringConfig
>>> scorer = ModuleScorer(ScoringConfig(panel_set="skin_organoid"))
>>> result = scorer.score(adata)
"""

from .config import ScoringConfig
from .engine import ModuleScorer, ScoringResult

__all__ = [
    "ScoringConfig",
    "ModuleScorer",
    "ScoringResult",
]

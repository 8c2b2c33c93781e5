"""Configuration for gene-panel module scoring."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ScoringConfig:
    """Configuration for module scores.

    Attributes
    ----------
    panel_set : str
        Registered panel set used when ``panels`` is empty
    panels : Dict[str, List[str]]
        Inline panels (name -> genes); override ``panel_set``
    panel_names : List[str], optional
        Subset of panels to score (None = all)
    ctrl_size : int
        Control genes sampled per expression bin
    n_bins : int
        Expression bins for control gene matching
    random_seed : int
        Random seed for control gene sampling
    score_suffix : str
        Suffix of the obs column per panel
    """

    panel_set: str = "skin_organoid"
    panels: Dict[str, List[str]] = field(default_factory=dict)
    panel_names: Optional[List[str]] = None
    ctrl_size: int = 100
    n_bins: int = 24
    random_seed: int = 0
    score_suffix: str = "_score"

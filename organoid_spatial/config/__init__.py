"""Centralized configuration for organoid-spatial.

Provides the master analysis configuration and the registry of curated
gene panels used for module scoring.

Example
-------
>>> from organoid_spatial.config import AnalysisConfig, get_panel_set
>>> config = AnalysisConfig.from_yaml("configs/analysis.example.yaml")
>>> config.validate()
>>> get_panel_set("skin").panels["fibroblast"]
['COL1A1', 'COL1A2', 'DCN', 'LUM', 'PDGFRA']
"""

from .panels import (
    PanelSet,
    SKIN_ORGANOID_PANELS,
    get_panel_set,
    list_panel_sets,
    register_panel_set,
)
from .analysis import (
    AnalysisConfig,
    ExportConfig,
)

__all__ = [
    "PanelSet",
    "SKIN_ORGANOID_PANELS",
    "get_panel_set",
    "list_panel_sets",
    "register_panel_set",
    "AnalysisConfig",
    "ExportConfig",
]

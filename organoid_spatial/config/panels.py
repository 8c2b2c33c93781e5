"""Curated gene panels for module scoring.

A panel set maps panel names (e.g. ``basal``) to marker gene lists.
Panel sets are registered by name so a run config can refer to one
instead of listing genes inline.

Example
-------
>>> from organoid_spatial.config import get_panel_set
>>> panels = get_panel_set("skin_organoid")
>>> panels.panels["basal"]
['KRT5', 'KRT14', 'TP63', 'COL17A1']
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml


@dataclass
class PanelSet:
    """A named collection of gene panels.

    Attributes
    ----------
    name : str
        Canonical panel set name (lowercase, underscores)
    panels : Dict[str, List[str]]
        Map of panel name to gene symbols
    aliases : List[str]
        Alternative names for this panel set
    """

    name: str
    panels: Dict[str, List[str]] = field(default_factory=dict)
    aliases: List[str] = field(default_factory=list)

    def select(self, names: Optional[List[str]] = None) -> Dict[str, List[str]]:
        """Return a subset of panels, in the requested order.

        Raises
        ------
        ValueError
            If a requested panel is not part of the set
        """
        if names is None:
            return {k: list(v) for k, v in self.panels.items()}
        unknown = [n for n in names if n not in self.panels]
        if unknown:
            raise ValueError(
                f"Unknown panels {unknown} in panel set '{self.name}'. "
                f"Available: {list(self.panels)}"
            )
        return {n: list(self.panels[n]) for n in names}

    @classmethod
    def from_yaml(cls, path: Path) -> "PanelSet":
        """Load a panel set from YAML (keys: name, aliases, panels)."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            name=data.get("name", Path(path).stem),
            panels={str(k): [str(g) for g in v] for k, v in data.get("panels", {}).items()},
            aliases=data.get("aliases", []),
        )


# Skin organoid epidermis/dermis compartments
SKIN_ORGANOID_PANELS: Dict[str, List[str]] = {
    "basal": ["KRT5", "KRT14", "TP63", "COL17A1"],
    "suprabasal": ["KRT1", "KRT10"],
    "granular": ["FLG", "LOR", "IVL"],
    "fibroblast": ["COL1A1", "COL1A2", "DCN", "LUM", "PDGFRA"],
    "melanocyte": ["PMEL", "TYR", "MLANA", "DCT"],
    "proliferating": ["MKI67", "TOP2A"],
}


# =============================================================================
# Registry
# =============================================================================

PANEL_SET_REGISTRY: Dict[str, PanelSet] = {}
PANEL_SET_ALIASES: Dict[str, str] = {}


def _normalize(name: str) -> str:
    return name.lower().replace(" ", "_").replace("-", "_")


def register_panel_set(panel_set: PanelSet) -> None:
    """Register a panel set and its aliases."""
    name = _normalize(panel_set.name)
    PANEL_SET_REGISTRY[name] = panel_set
    for alias in panel_set.aliases:
        PANEL_SET_ALIASES[_normalize(alias)] = name


def get_panel_set(name: str = "skin_organoid") -> PanelSet:
    """Get a panel set by name or alias.

    Raises
    ------
    ValueError
        If the panel set is not registered
    """
    key = _normalize(name)
    key = PANEL_SET_ALIASES.get(key, key)
    if key not in PANEL_SET_REGISTRY:
        raise ValueError(
            f"Unknown panel set: '{name}'. Available: {sorted(PANEL_SET_REGISTRY)}"
        )
    return PANEL_SET_REGISTRY[key]


def list_panel_sets() -> List[str]:
    """List registered panel set names."""
    return sorted(PANEL_SET_REGISTRY)


register_panel_set(
    PanelSet(
        name="skin_organoid",
        panels=SKIN_ORGANOID_PANELS,
        aliases=["skin", "organoid"],
    )
)

"""Stage contracts for in-memory pipeline execution.

A stage declares the AnnData keys it reads (``requires``) and writes
(``provides``) as ``"<slot>:<key>"`` strings, e.g. ``"obsm:X_pca"`` or
``"layers:counts"``. Any implementation honoring the same contract can
replace a stage.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple


# Slots addressable in a contract key
CONTRACT_SLOTS = ("obs", "var", "obsm", "varm", "obsp", "layers", "uns")


def parse_contract_key(key: str) -> Tuple[str, str]:
    """Split ``"slot:name"`` into its slot and name.

    Raises
    ------
    ValueError
        If the slot is not one of ``CONTRACT_SLOTS``
    """
    slot, sep, name = key.partition(":")
    if not sep or slot not in CONTRACT_SLOTS or not name:
        raise ValueError(
            f"Invalid contract key '{key}'; expected '<slot>:<name>' with slot in {CONTRACT_SLOTS}"
        )
    return slot, name


def has_key(adata: Any, key: str) -> bool:
    """Whether an AnnData holds the contract key."""
    if adata is None:
        return False
    slot, name = parse_contract_key(key)
    if slot == "obs":
        return name in adata.obs.columns
    if slot == "var":
        return name in adata.var.columns
    return name in getattr(adata, slot).keys()


@dataclass
class StageSpec:
    """A pipeline stage with its data contract.

    Attributes
    ----------
    stage_id : str
        Short identifier (e.g., "load", "cluster")
    name : str
        Human-readable stage name
    func : Callable
        Stage function, called with the run context
    depends_on : List[str]
        Stage IDs this stage depends on
    requires : List[str]
        AnnData keys that must exist before the stage runs
    provides : List[str]
        AnnData keys the stage must produce

    Example
    -------
    >>> stage = StageSpec(
    ...     stage_id="correct",
    ...     name="Batch correction",
    ...     func=correct_batches,
    ...     depends_on=["reduce"],
    ...     requires=["obsm:X_pca", "obs:sample_id"],
    ...     provides=["obsm:X_pca_harmony"],
    ... )
    >>> ok, missing = stage.validate_inputs(adata)
    """

    stage_id: str
    name: str
    func: Callable
    depends_on: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)

    def __post_init__(self):
        for key in list(self.requires) + list(self.provides):
            parse_contract_key(key)

    @staticmethod
    def missing_keys(adata: Any, keys: List[str]) -> List[str]:
        return [key for key in keys if not has_key(adata, key)]

    def validate_inputs(self, adata: Any) -> Tuple[bool, List[str]]:
        """Check that every required key exists.

        Returns
        -------
        Tuple[bool, List[str]]
            (success, missing keys)
        """
        missing = self.missing_keys(adata, self.requires)
        return (len(missing) == 0, missing)

    def validate_outputs(self, adata: Any) -> Tuple[bool, List[str]]:
        """Check that every provided key exists after execution."""
        missing = self.missing_keys(adata, self.provides)
        return (len(missing) == 0, missing)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage contract to dictionary for serialization."""
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "depends_on": list(self.depends_on),
            "requires": list(self.requires),
            "provides": list(self.provides),
        }

"""Master configuration for one analysis run.

All stage parameters live in one YAML file, one section per stage:

.. code-block:: yaml

    analysis:
      loader:
        root_path: data/
        samples:
          - {sample_id: S1, tissue: organoid_day14}
      reduction: {pca_components: 30, variable_gene_count: 2000}
      clustering: {neighbor_k: 20, active_resolution: 0.5}
      markers: {min_pct: 0.25, min_logfc: 0.25, top_n_values: [5, 10, 50]}

The short option names (``root_path``, ``sample_table``,
``pca_components``, ``variable_gene_count``, ``neighbor_k``,
``resolutions``, ``active_resolution``, ``marker_min_pct``,
``marker_min_logfc``, ``top_n_values``) are also accepted at the top
level and mapped into their sections.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.clustering.config import ClusteringConfig, MarkerConfig
from ..core.enrichment.config import EnrichmentConfig
from ..core.preprocessing.config import (
    BatchCorrectionConfig,
    LoaderConfig,
    PreprocessingConfig,
    QCConfig,
    ReductionConfig,
)
from ..core.scoring.config import ScoringConfig
from ..errors import ParameterError


# Short option name -> (section, field)
OPTION_ALIASES: Dict[str, Tuple[str, str]] = {
    "root_path": ("loader", "root_path"),
    "pca_components": ("reduction", "pca_components"),
    "variable_gene_count": ("reduction", "variable_gene_count"),
    "neighbor_k": ("clustering", "neighbor_k"),
    "resolutions": ("clustering", "resolutions"),
    "active_resolution": ("clustering", "active_resolution"),
    "marker_min_pct": ("markers", "min_pct"),
    "marker_min_logfc": ("markers", "min_logfc"),
    "top_n_values": ("markers", "top_n_values"),
}

SECTIONS = (
    "loader",
    "qc",
    "reduction",
    "batch_correction",
    "clustering",
    "markers",
    "scoring",
    "enrichment",
    "export",
)


@dataclass
class ExportConfig:
    """Configuration for result export.

    Attributes
    ----------
    write_h5ad : bool
        Save the final AnnData as ``analysis.h5ad``
    keep_images : bool
        Keep decoded histology images in the saved AnnData
    write_xlsx : bool
        Write the marker workbook (one sheet per top-N)
    h5ad_compression : str, optional
        Compression for the h5ad file
    """

    write_h5ad: bool = True
    keep_images: bool = False
    write_xlsx: bool = True
    h5ad_compression: Optional[str] = "gzip"


def _section_dict(obj: Any) -> Dict[str, Any]:
    return {f.name: getattr(obj, f.name) for f in fields(obj)}


def _build(cls: type, section: str, data: Dict[str, Any]) -> Any:
    try:
        return cls(**data)
    except TypeError as e:
        raise ParameterError(f"Invalid options in '{section}' section: {e}") from e


@dataclass
class AnalysisConfig:
    """Master configuration for the full analysis.

    Attributes
    ----------
    loader : LoaderConfig
        Sample registry and loading options
    qc : QCConfig
        QC reporting options
    reduction : ReductionConfig
        Normalization and PCA options
    batch_correction : BatchCorrectionConfig
        Harmony options
    clustering : ClusteringConfig
        SNN, Louvain, resolution ladder and UMAP options
    markers : MarkerConfig
        Marker thresholds and top-N slices
    scoring : ScoringConfig
        Module score panels
    enrichment : EnrichmentConfig
        Enrichment backend and query options
    export : ExportConfig
        Output options
    """

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    batch_correction: BatchCorrectionConfig = field(default_factory=BatchCorrectionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @staticmethod
    def _apply_aliases(data: Dict[str, Any]) -> Dict[str, Any]:
        """Move short top-level option names into their sections."""
        data = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
        for option, (section, name) in OPTION_ALIASES.items():
            if option in data:
                data.setdefault(section, {})[name] = data.pop(option)
        if "sample_table" in data:
            table = data.pop("sample_table")
            loader = data.setdefault("loader", {})
            if isinstance(table, (str, Path)):
                loader["sample_table_path"] = str(table)
            else:
                loader["samples"] = table
        unknown = [k for k in data if k not in SECTIONS]
        if unknown:
            raise ParameterError(f"Unknown configuration sections: {unknown}")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Create configuration from a dictionary."""
        data = cls._apply_aliases(data or {})
        try:
            pre = PreprocessingConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ParameterError(f"Invalid preprocessing options: {e}") from e

        return cls(
            loader=pre.loader,
            qc=pre.qc,
            reduction=pre.reduction,
            batch_correction=pre.batch_correction,
            clustering=_build(ClusteringConfig, "clustering", data.get("clustering", {})),
            markers=_build(MarkerConfig, "markers", data.get("markers", {})),
            scoring=_build(ScoringConfig, "scoring", data.get("scoring", {})),
            enrichment=_build(EnrichmentConfig, "enrichment", data.get("enrichment", {})),
            export=_build(ExportConfig, "export", data.get("export", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "AnalysisConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested analysis section
        if "analysis" in data:
            data = data["analysis"] or {}

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        pre = PreprocessingConfig(
            loader=self.loader,
            qc=self.qc,
            reduction=self.reduction,
            batch_correction=self.batch_correction,
        ).to_dict()
        pre["loader"]["required_scalefactors"] = list(self.loader.required_scalefactors)
        return {
            **pre,
            "clustering": _section_dict(self.clustering),
            "markers": _section_dict(self.markers),
            "scoring": _section_dict(self.scoring),
            "enrichment": _section_dict(self.enrichment),
            "export": _section_dict(self.export),
        }

    def to_yaml(self, path: Path) -> None:
        """Write the configuration to YAML."""
        with open(path, "w") as f:
            yaml.safe_dump({"analysis": self.to_dict()}, f, sort_keys=False)

    def validate(self) -> None:
        """Check every parameter before any heavy computation.

        Raises
        ------
        ParameterError
            On the first invalid parameter
        """
        from ..core.clustering.engine import validate_resolutions
        from ..core.preprocessing.batch import CORRECTION_METHODS

        if not self.loader.samples and not self.loader.sample_table_path:
            raise ParameterError("No samples configured: set loader.samples or loader.sample_table_path")
        ids = [s.sample_id for s in self.loader.samples]
        if len(set(ids)) != len(ids):
            raise ParameterError(f"Duplicate sample identifiers: {ids}")

        red = self.reduction
        if red.pca_components < 1:
            raise ParameterError(f"pca_components must be >= 1, got {red.pca_components}")
        if red.variable_gene_count <= red.pca_components:
            raise ParameterError(
                f"variable_gene_count={red.variable_gene_count} must exceed "
                f"pca_components={red.pca_components}"
            )
        if red.target_sum <= 0:
            raise ParameterError(f"target_sum must be positive, got {red.target_sum}")

        if self.batch_correction.method not in CORRECTION_METHODS:
            raise ParameterError(
                f"Unknown batch correction method '{self.batch_correction.method}'"
            )
        if self.batch_correction.max_iter_harmony < 1:
            raise ParameterError("max_iter_harmony must be >= 1")

        clu = self.clustering
        if clu.neighbor_k < 2:
            raise ParameterError(f"neighbor_k must be >= 2, got {clu.neighbor_k}")
        if not 0.0 <= clu.prune_snn < 1.0:
            raise ParameterError(f"prune_snn must be within [0, 1), got {clu.prune_snn}")
        if clu.active_resolution is None:
            raise ParameterError("clustering.active_resolution is required")
        validate_resolutions(clu.resolutions, clu.active_resolution)

        mk = self.markers
        if not 0.0 <= mk.min_pct <= 1.0:
            raise ParameterError(f"marker min_pct must be within [0, 1], got {mk.min_pct}")
        if not mk.top_n_values or any(int(n) < 1 for n in mk.top_n_values):
            raise ParameterError(f"top_n_values must be positive, got {mk.top_n_values}")

        sco = self.scoring
        if sco.ctrl_size < 1 or sco.n_bins < 1:
            raise ParameterError("scoring ctrl_size and n_bins must be >= 1")

        enr = self.enrichment
        if enr.top_n < 1 or enr.highlight_n < 1:
            raise ParameterError("enrichment top_n and highlight_n must be >= 1")
        if enr.max_retries < 0:
            raise ParameterError(f"max_retries must be >= 0, got {enr.max_retries}")

        for name, workers in (
            ("loader", self.loader.n_workers),
            ("markers", mk.n_workers),
            ("enrichment", enr.n_workers),
        ):
            if workers < 1:
                raise ParameterError(f"{name}.n_workers must be >= 1, got {workers}")

"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML. Sample paths
default to the Space Ranger ``outs/`` layout under the root directory.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


# Space Ranger output layout, relative to <root_path>/<sample_id>
DEFAULT_MATRIX_FILE = "outs/filtered_feature_bc_matrix.h5"
DEFAULT_POSITIONS_FILE = "outs/spatial/tissue_positions_list.csv"
# Space Ranger 2.0 renamed the positions table and added a header
POSITIONS_FILE_V2 = "outs/spatial/tissue_positions.csv"
DEFAULT_SCALEFACTORS_FILE = "outs/spatial/scalefactors_json.json"
DEFAULT_IMAGE_FILE = "outs/spatial/tissue_hires_image.png"


@dataclass(frozen=True)
class SampleSpec:
    """One registered spatial capture area.

    Attributes
    ----------
    sample_id : str
        Unique sample identifier
    tissue : str
        Tissue or condition label
    matrix_path : str
        10x HDF5 feature-barcode matrix
    positions_path : str
        Spot coordinate table (tissue positions CSV)
    scalefactors_path : str
        Scale factors JSON
    image_path : str
        Histology image (hires PNG)
    """

    sample_id: str
    tissue: str
    matrix_path: str
    positions_path: str
    scalefactors_path: str
    image_path: str

    @classmethod
    def from_spaceranger(
        cls,
        root_path: Path,
        sample_id: str,
        tissue: str,
    ) -> "SampleSpec":
        """Build a sample spec using the default Space Ranger layout.

        The positions table is the v1 ``tissue_positions_list.csv`` unless
        only the v2 ``tissue_positions.csv`` exists.
        """
        base = Path(root_path) / sample_id
        positions = base / DEFAULT_POSITIONS_FILE
        if not positions.exists() and (base / POSITIONS_FILE_V2).exists():
            positions = base / POSITIONS_FILE_V2
        return cls(
            sample_id=sample_id,
            tissue=tissue,
            matrix_path=str(base / DEFAULT_MATRIX_FILE),
            positions_path=str(positions),
            scalefactors_path=str(base / DEFAULT_SCALEFACTORS_FILE),
            image_path=str(base / DEFAULT_IMAGE_FILE),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], root_path: Optional[Path] = None) -> "SampleSpec":
        """Create a sample spec from a mapping.

        Missing path fields fall back to the Space Ranger layout under
        ``root_path/<sample_id>``; relative paths resolve against ``root_path``.
        """
        if "sample_id" not in data:
            raise ValueError(f"Sample entry missing 'sample_id': {data}")
        sample_id = str(data["sample_id"])
        tissue = str(data.get("tissue", ""))
        root = Path(root_path) if root_path is not None else Path(".")
        defaults = cls.from_spaceranger(root, sample_id, tissue)

        def _resolve(key: str) -> str:
            value = data.get(key)
            if value is None or (isinstance(value, float) and value != value):
                return getattr(defaults, key)
            candidate = Path(str(value))
            if not candidate.is_absolute():
                candidate = root / candidate
            return str(candidate)

        return cls(
            sample_id=sample_id,
            tissue=tissue,
            matrix_path=_resolve("matrix_path"),
            positions_path=_resolve("positions_path"),
            scalefactors_path=_resolve("scalefactors_path"),
            image_path=_resolve("image_path"),
        )

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary with absolute paths."""
        return {
            "sample_id": self.sample_id,
            "tissue": self.tissue,
            "matrix_path": str(Path(self.matrix_path).resolve()),
            "positions_path": str(Path(self.positions_path).resolve()),
            "scalefactors_path": str(Path(self.scalefactors_path).resolve()),
            "image_path": str(Path(self.image_path).resolve()),
        }


@dataclass
class LoaderConfig:
    """Configuration for dataset loading.

    Attributes
    ----------
    root_path : str
        Root directory that relative sample paths resolve against
    samples : List[SampleSpec]
        Registered samples, in load order
    sample_table_path : str, optional
        CSV sample registry, used when ``samples`` is empty
    load_images : bool
        Decode and attach hires images for later visualization
    required_scalefactors : List[str]
        Keys that must be present in each scale-factors JSON
    n_workers : int
        Threads for per-sample loading (1 = sequential)
    """

    root_path: str = "."
    samples: List[SampleSpec] = field(default_factory=list)
    sample_table_path: Optional[str] = None
    load_images: bool = True
    required_scalefactors: List[str] = field(
        default_factory=lambda: [
            "tissue_hires_scalef",
            "tissue_lowres_scalef",
            "spot_diameter_fullres",
        ]
    )
    n_workers: int = 1


@dataclass
class QCConfig:
    """Configuration for descriptive quality control.

    Attributes
    ----------
    mito_prefix : str
        Gene name prefix flagging mitochondrial genes
    """

    mito_prefix: str = "MT-"


@dataclass
class ReductionConfig:
    """Configuration for normalization and dimensionality reduction.

    Attributes
    ----------
    target_sum : float
        Library size each spot is scaled to before log1p
    variable_gene_count : int
        Number of highly variable genes to keep
    hvg_flavor : str
        scanpy highly_variable_genes flavor
    scale_clip : float
        Value clipping after scaling
    pca_components : int
        Number of principal components
    random_seed : int
        Random seed for PCA
    """

    target_sum: float = 1e4
    variable_gene_count: int = 2000
    hvg_flavor: str = "seurat"
    scale_clip: float = 10.0
    pca_components: int = 50
    random_seed: int = 0


@dataclass
class BatchCorrectionConfig:
    """Configuration for batch-effect correction.

    Attributes
    ----------
    method : str
        Correction method (harmony or none)
    batch_key : str
        obs column holding the batch (sample) assignment
    max_iter_harmony : int
        Maximum Harmony iterations
    theta : float
        Harmony diversity penalty
    epsilon_harmony : float
        Relative objective change below which Harmony is converged
    random_seed : int
        Random seed for Harmony's soft k-means initialization
    """

    method: str = "harmony"
    batch_key: str = "sample_id"
    max_iter_harmony: int = 10
    theta: float = 2.0
    epsilon_harmony: float = 1e-4
    random_seed: int = 0


@dataclass
class PreprocessingConfig:
    """Master configuration for the preprocessing stages.

    Attributes
    ----------
    loader : LoaderConfig
        Dataset loading configuration
    qc : QCConfig
        QC reporting configuration
    reduction : ReductionConfig
        Normalization and PCA configuration
    batch_correction : BatchCorrectionConfig
        Batch correction configuration
    """

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    batch_correction: BatchCorrectionConfig = field(default_factory=BatchCorrectionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        """Create configuration from a dictionary."""
        loader_data = dict(data.get("loader", {}))
        root_path = loader_data.get("root_path", ".")
        samples = [
            s if isinstance(s, SampleSpec) else SampleSpec.from_dict(s, Path(root_path))
            for s in loader_data.pop("samples", []) or []
        ]
        return cls(
            loader=LoaderConfig(samples=samples, **loader_data),
            qc=QCConfig(**data.get("qc", {})),
            reduction=ReductionConfig(**data.get("reduction", {})),
            batch_correction=BatchCorrectionConfig(**data.get("batch_correction", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested preprocessing section
        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "loader": {
                "root_path": self.loader.root_path,
                "samples": [s.to_dict() for s in self.loader.samples],
                "sample_table_path": self.loader.sample_table_path,
                "load_images": self.loader.load_images,
                "n_workers": self.loader.n_workers,
            },
            "qc": {"mito_prefix": self.qc.mito_prefix},
            "reduction": {
                "target_sum": self.reduction.target_sum,
                "variable_gene_count": self.reduction.variable_gene_count,
                "hvg_flavor": self.reduction.hvg_flavor,
                "scale_clip": self.reduction.scale_clip,
                "pca_components": self.reduction.pca_components,
                "random_seed": self.reduction.random_seed,
            },
            "batch_correction": {
                "method": self.batch_correction.method,
                "batch_key": self.batch_correction.batch_key,
                "max_iter_harmony": self.batch_correction.max_iter_harmony,
                "theta": self.batch_correction.theta,
                "epsilon_harmony": self.batch_correction.epsilon_harmony,
                "random_seed": self.batch_correction.random_seed,
            },
        }

"""Dataset loader for the preprocessing pipeline.

Reads per-sample Space Ranger outputs (10x HDF5 matrix, tissue positions,
scale factors, hires image) and assembles one unified AnnData across all
samples with a zero-filled union gene vocabulary.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ParameterError, SampleLoadError
from .config import LoaderConfig, SampleSpec


# Space Ranger tissue positions columns (v1 files have no header row)
POSITION_COLUMNS = [
    "barcode",
    "in_tissue",
    "array_row",
    "array_col",
    "pxl_row_in_fullres",
    "pxl_col_in_fullres",
]

SAMPLE_TABLE_REQUIRED_COLUMNS = ["sample_id", "tissue"]


@dataclass
class SampleData:
    """Result from loading a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    tissue : str
        Tissue or condition label
    adata : AnnData
        Spots x genes raw counts with spot metadata
    scalefactors : Dict[str, float]
        Scale factors from the JSON file
    image : np.ndarray, optional
        Decoded hires image, if images were requested
    """

    sample_id: str
    tissue: str
    adata: Any = None  # AnnData
    scalefactors: Dict[str, float] = field(default_factory=dict)
    image: Optional[np.ndarray] = None

    @property
    def n_spots(self) -> int:
        return 0 if self.adata is None else int(self.adata.n_obs)

    @property
    def n_genes(self) -> int:
        return 0 if self.adata is None else int(self.adata.n_vars)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "sample_id": self.sample_id,
            "tissue": self.tissue,
            "n_spots": self.n_spots,
            "n_genes": self.n_genes,
            "has_image": self.image is not None,
        }


class DatasetLoader:
    """Loader for multi-sample Visium datasets.

    Parameters
    ----------
    config : LoaderConfig, optional
        Loader configuration
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.preprocessing import DatasetLoader, LoaderConfig
    >>> loader = DatasetLoader(LoaderConfig(root_path="data/"))
    >>> adata = loader.load(samples)
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LoaderConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy
            import anndata
        except ImportError:
            raise RuntimeError(
                "Dataset loading requires scanpy and anndata. "
                "Install with: pip install scanpy anndata"
            )

    def load_sample_table(self, path: Path) -> List[SampleSpec]:
        """Load a sample registry CSV.

        Parameters
        ----------
        path : Path
            CSV with ``sample_id`` and ``tissue`` columns, plus optional
            ``matrix_path``, ``positions_path``, ``scalefactors_path`` and
            ``image_path`` columns.

        Returns
        -------
        List[SampleSpec]
            Registered samples in table order
        """
        csv_path = Path(path)
        if not csv_path.exists():
            raise FileNotFoundError(f"Sample table not found: {csv_path}")
        df = pd.read_csv(csv_path, dtype=str)
        missing = [c for c in SAMPLE_TABLE_REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ParameterError(f"Sample table missing columns: {missing}")

        root = Path(self.config.root_path)
        records = df.where(df.notna(), None).to_dict("records")
        return [SampleSpec.from_dict(record, root) for record in records]

    def resolve_samples(self) -> List[SampleSpec]:
        """Return configured samples, falling back to the sample table CSV."""
        if self.config.samples:
            return list(self.config.samples)
        if self.config.sample_table_path:
            table = Path(self.config.sample_table_path)
            if not table.is_absolute():
                table = Path(self.config.root_path) / table
            return self.load_sample_table(table)
        raise ParameterError("No samples configured: set loader.samples or loader.sample_table_path")

    @staticmethod
    def validate_samples(samples: Sequence[SampleSpec]) -> None:
        """Check the sample list before any file is read.

        Raises
        ------
        ParameterError
            If the list is empty or sample identifiers are duplicated
        """
        if not samples:
            raise ParameterError("Sample list is empty")
        ids = [s.sample_id for s in samples]
        duplicated = sorted({sid for sid in ids if ids.count(sid) > 1})
        if duplicated:
            raise ParameterError(f"Duplicate sample identifiers: {duplicated}")

    def read_positions(self, path: Path, sample_id: str) -> pd.DataFrame:
        """Read a tissue positions CSV (Space Ranger v1 or v2 layout).

        Returns
        -------
        pd.DataFrame
            Positions indexed by barcode
        """
        path = Path(path)
        try:
            with open(path) as handle:
                first_line = handle.readline()
            header = 0 if first_line.lower().startswith("barcode") else None
            df = pd.read_csv(path, header=header)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise SampleLoadError(sample_id, f"unreadable coordinate file {path}: {e}") from e

        if df.shape[1] != len(POSITION_COLUMNS):
            raise SampleLoadError(
                sample_id,
                f"coordinate file {path} has {df.shape[1]} columns, "
                f"expected {len(POSITION_COLUMNS)}",
            )
        df.columns = POSITION_COLUMNS
        df["barcode"] = df["barcode"].astype(str)

        if df["barcode"].duplicated().any():
            raise SampleLoadError(sample_id, f"duplicate barcodes in coordinate file {path}")

        numeric = df[POSITION_COLUMNS[1:]].apply(pd.to_numeric, errors="coerce")
        if numeric.isna().any().any():
            raise SampleLoadError(sample_id, f"non-numeric coordinates in {path}")
        df[POSITION_COLUMNS[1:]] = numeric
        return df.set_index("barcode")

    def read_scalefactors(self, path: Path, sample_id: str) -> Dict[str, float]:
        """Read and validate a scale-factors JSON file."""
        path = Path(path)
        try:
            with open(path) as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            raise SampleLoadError(sample_id, f"unreadable scale factors {path}: {e}") from e

        if not isinstance(data, dict):
            raise SampleLoadError(sample_id, f"scale factors {path} is not a JSON object")

        missing = [k for k in self.config.required_scalefactors if k not in data]
        if missing:
            raise SampleLoadError(sample_id, f"scale factors {path} missing keys: {missing}")

        bad = [
            k for k in self.config.required_scalefactors
            if isinstance(data[k], bool) or not isinstance(data[k], (int, float))
        ]
        if bad:
            raise SampleLoadError(sample_id, f"non-numeric scale factors in {path}: {bad}")

        return {
            k: float(v)
            for k, v in data.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }

    def read_image(self, path: Path, sample_id: str) -> np.ndarray:
        """Decode a histology image."""
        from matplotlib.image import imread

        try:
            return imread(str(path))
        except (OSError, ValueError, SyntaxError) as e:
            raise SampleLoadError(sample_id, f"unreadable image {path}: {e}") from e

    def read_matrix(self, path: Path, sample_id: str) -> Any:
        """Read a 10x HDF5 feature-barcode matrix as spots x genes."""
        import scanpy as sc

        try:
            adata = sc.read_10x_h5(str(path))
        except Exception as e:
            raise SampleLoadError(sample_id, f"unreadable count matrix {path}: {e}") from e

        adata.var_names_make_unique()
        adata.obs_names = adata.obs_names.astype(str)
        return adata

    def check_files(self, spec: SampleSpec) -> None:
        """Fail if any input file of a sample is absent."""
        required = {
            "count matrix": spec.matrix_path,
            "coordinate file": spec.positions_path,
            "scale factors": spec.scalefactors_path,
        }
        if self.config.load_images:
            required["image"] = spec.image_path

        missing = [f"{label} ({path})" for label, path in required.items() if not Path(path).exists()]
        if missing:
            raise SampleLoadError(spec.sample_id, "missing " + ", ".join(missing))

    def load_sample(self, spec: SampleSpec) -> SampleData:
        """Load and validate a single sample.

        Parameters
        ----------
        spec : SampleSpec
            Sample descriptor

        Returns
        -------
        SampleData
            Loaded sample

        Raises
        ------
        SampleLoadError
            If a file is missing or malformed, or if the matrix and the
            coordinate table disagree on the spot set
        """
        self.check_files(spec)

        adata = self.read_matrix(Path(spec.matrix_path), spec.sample_id)
        positions = self.read_positions(Path(spec.positions_path), spec.sample_id)
        scalefactors = self.read_scalefactors(Path(spec.scalefactors_path), spec.sample_id)

        missing = adata.obs_names.difference(positions.index)
        if len(missing) > 0:
            raise SampleLoadError(
                spec.sample_id,
                f"{len(missing)} matrix spots have no coordinates",
            )

        n_in_tissue = int((positions["in_tissue"] == 1).sum())
        if n_in_tissue != adata.n_obs:
            raise SampleLoadError(
                spec.sample_id,
                f"coordinate/matrix spot count mismatch: {n_in_tissue} in-tissue "
                f"coordinates vs {adata.n_obs} matrix spots",
            )

        pos = positions.loc[adata.obs_names]
        off_tissue = pos.index[pos["in_tissue"] != 1]
        if len(off_tissue) > 0:
            raise SampleLoadError(
                spec.sample_id,
                f"{len(off_tissue)} matrix spots are marked off-tissue in the "
                f"coordinate file (first: {off_tissue[0]})",
            )

        adata.obs = pd.DataFrame(
            {
                "barcode": adata.obs_names.to_numpy(),
                "sample_id": spec.sample_id,
                "tissue": spec.tissue,
                "in_tissue": pos["in_tissue"].astype(int).to_numpy(),
                "array_row": pos["array_row"].astype(int).to_numpy(),
                "array_col": pos["array_col"].astype(int).to_numpy(),
            },
            index=pd.Index([f"{spec.sample_id}_{b}" for b in adata.obs_names]),
        )
        adata.obsm["spatial"] = pos[["pxl_col_in_fullres", "pxl_row_in_fullres"]].to_numpy(
            dtype=float
        )

        image = None
        if self.config.load_images:
            image = self.read_image(Path(spec.image_path), spec.sample_id)

        self.logger.info(
            "Loaded sample %s (%s): %d spots, %d genes",
            spec.sample_id,
            spec.tissue,
            adata.n_obs,
            adata.n_vars,
        )
        return SampleData(
            sample_id=spec.sample_id,
            tissue=spec.tissue,
            adata=adata,
            scalefactors=scalefactors,
            image=image,
        )

    def load(self, samples: Optional[Sequence[SampleSpec]] = None) -> Any:
        """Load all samples into one unified AnnData.

        The gene vocabulary is the union over samples; genes absent in a
        sample are zero-filled for all of its spots. Raw counts are kept in
        ``layers["counts"]``.

        Parameters
        ----------
        samples : Sequence[SampleSpec], optional
            Samples to load. Uses the configured samples if None.

        Returns
        -------
        AnnData
            Unified dataset (spots x genes)
        """
        import anndata as ad

        samples = list(samples) if samples is not None else self.resolve_samples()
        self.validate_samples(samples)

        self.logger.info("Loading %d samples (workers=%d)", len(samples), self.config.n_workers)
        if self.config.n_workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.n_workers) as executor:
                loaded = list(executor.map(self.load_sample, samples))
        else:
            loaded = [self.load_sample(spec) for spec in samples]

        adata = ad.concat(
            [item.adata for item in loaded],
            join="outer",
            fill_value=0,
            merge="first",
        )
        adata.X = sparse.csr_matrix(adata.X, dtype=np.float32)
        adata.layers["counts"] = adata.X.copy()

        sample_order = [s.sample_id for s in samples]
        tissue_order = list(dict.fromkeys(s.tissue for s in samples))
        adata.obs["sample_id"] = pd.Categorical(adata.obs["sample_id"], categories=sample_order)
        adata.obs["tissue"] = pd.Categorical(adata.obs["tissue"], categories=tissue_order)

        adata.uns["spatial"] = {
            item.sample_id: {
                "images": {"hires": item.image} if item.image is not None else {},
                "scalefactors": item.scalefactors,
                "metadata": {"tissue": item.tissue},
            }
            for item in loaded
        }
        adata.uns["stage_provenance"] = ["load"]

        self.logger.info(
            "Unified dataset: %d spots, %d genes (union over %d samples)",
            adata.n_obs,
            adata.n_vars,
            len(loaded),
        )
        return adata

"""Normalization and dimensionality reduction.

Depth normalization (LogNormalize), variance-based gene selection,
scaling of the selected genes, and principal component analysis.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

import numpy as np
from scipy import sparse

from ...errors import ParameterError
from .config import ReductionConfig


@dataclass
class ReductionResult:
    """Result from normalization and PCA.

    Attributes
    ----------
    n_spots : int
        Number of spots reduced
    n_variable_genes : int
        Number of highly variable genes used for PCA
    n_components : int
        Number of principal components computed
    variable_genes : List[str]
        Highly variable gene names
    variance_ratio : np.ndarray
        Explained variance ratio per component
    """

    n_spots: int = 0
    n_variable_genes: int = 0
    n_components: int = 0
    variable_genes: List[str] = field(default_factory=list)
    variance_ratio: Optional[np.ndarray] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_spots": self.n_spots,
            "n_variable_genes": self.n_variable_genes,
            "n_components": self.n_components,
            "variance_explained": (
                float(np.sum(self.variance_ratio)) if self.variance_ratio is not None else None
            ),
        }


class DimensionalityReducer:
    """Normalize counts and project spots onto principal components.

    Steps, in order: (a) scale each spot to ``target_sum`` counts and
    log1p; (b) select ``variable_gene_count`` highly variable genes;
    (c) center and scale the selected genes; (d) PCA.

    Parameters
    ----------
    config : ReductionConfig, optional
        Reduction configuration
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.preprocessing import DimensionalityReducer
    >>> reducer = DimensionalityReducer(ReductionConfig(pca_components=30))
    >>> result = reducer.run(adata)
    >>> adata.obsm["X_pca"].shape
    """

    def __init__(
        self,
        config: Optional[ReductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReductionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, adata: Any) -> None:
        """Fail fast when the dataset is too small for the requested reduction.

        Raises
        ------
        ParameterError
            If there are not more spots than components, fewer genes than the
            variable-gene count, or not more variable genes than components
        """
        cfg = self.config
        if cfg.pca_components < 1:
            raise ParameterError(f"pca_components must be >= 1, got {cfg.pca_components}")
        if adata.n_obs <= cfg.pca_components:
            raise ParameterError(
                f"Dataset has {adata.n_obs} spots; need more than "
                f"pca_components={cfg.pca_components}"
            )
        if adata.n_vars < cfg.variable_gene_count:
            raise ParameterError(
                f"Dataset has {adata.n_vars} genes; fewer than "
                f"variable_gene_count={cfg.variable_gene_count}"
            )
        if cfg.variable_gene_count <= cfg.pca_components:
            raise ParameterError(
                f"variable_gene_count={cfg.variable_gene_count} must exceed "
                f"pca_components={cfg.pca_components}"
            )

    def normalize(self, adata: Any) -> None:
        """Depth-normalize raw counts into ``layers["lognorm"]`` and X.

        Always starts from ``layers["counts"]``, so repeated calls give the
        same result.
        """
        import scanpy as sc

        if "counts" not in adata.layers:
            self.logger.warning("No 'counts' layer found; treating AnnData.X as raw counts")
            adata.layers["counts"] = adata.X.copy()

        counts = adata.layers["counts"]
        normalized = sc.pp.normalize_total(
            adata,
            target_sum=self.config.target_sum,
            layer="counts",
            inplace=False,
        )["X"]
        normalized = sparse.csr_matrix(normalized) if sparse.issparse(counts) else np.asarray(normalized)
        normalized = normalized.astype(np.float32)
        lognorm = normalized.log1p() if sparse.issparse(normalized) else np.log1p(normalized)

        adata.layers["lognorm"] = lognorm
        adata.X = lognorm.copy()
        adata.uns["log1p"] = {"base": None}
        self.logger.info(
            "Normalized %d spots to %.0f counts and applied log1p",
            adata.n_obs,
            self.config.target_sum,
        )

    def select_variable_genes(self, adata: Any) -> List[str]:
        """Flag the highly variable genes in ``var["highly_variable"]``."""
        import scanpy as sc

        sc.pp.highly_variable_genes(
            adata,
            n_top_genes=self.config.variable_gene_count,
            flavor=self.config.hvg_flavor,
            layer="lognorm",
        )
        genes = adata.var_names[adata.var["highly_variable"].to_numpy()].tolist()
        self.logger.info("Selected %d highly variable genes", len(genes))
        return genes

    def project(self, adata: Any, variable_genes: List[str]) -> np.ndarray:
        """Scale variable genes and compute PCA into ``obsm["X_pca"]``.

        Scaling happens on a copy of the variable-gene subset; the
        normalized expression in X is left untouched.
        """
        import scanpy as sc

        subset = adata[:, variable_genes].copy()
        subset.X = subset.layers["lognorm"]
        sc.pp.scale(subset, zero_center=True, max_value=self.config.scale_clip)
        sc.tl.pca(
            subset,
            n_comps=self.config.pca_components,
            svd_solver="arpack",
            random_state=self.config.random_seed,
        )

        adata.obsm["X_pca"] = np.asarray(subset.obsm["X_pca"], dtype=np.float32)

        loadings = np.zeros((adata.n_vars, self.config.pca_components), dtype=np.float32)
        gene_idx = adata.var_names.get_indexer(variable_genes)
        loadings[gene_idx, :] = subset.varm["PCs"]
        adata.varm["PCs"] = loadings
        adata.uns["pca"] = {
            "variance": np.asarray(subset.uns["pca"]["variance"]),
            "variance_ratio": np.asarray(subset.uns["pca"]["variance_ratio"]),
            "params": {
                "n_comps": self.config.pca_components,
                "scale_clip": self.config.scale_clip,
                "use_highly_variable": True,
            },
        }
        return adata.uns["pca"]["variance_ratio"]

    def run(self, adata: Any) -> ReductionResult:
        """Run the full reduction.

        Parameters
        ----------
        adata : AnnData
            Unified dataset with raw counts (modified in place by appending
            new layers and embeddings)

        Returns
        -------
        ReductionResult
            Reduction summary
        """
        self.validate(adata)
        self.logger.info(
            "Running reduction: target_sum=%.0f, n_hvg=%d, n_pcs=%d",
            self.config.target_sum,
            self.config.variable_gene_count,
            self.config.pca_components,
        )

        self.normalize(adata)
        genes = self.select_variable_genes(adata)
        variance_ratio = self.project(adata, genes)

        result = ReductionResult(
            n_spots=int(adata.n_obs),
            n_variable_genes=len(genes),
            n_components=self.config.pca_components,
            variable_genes=genes,
            variance_ratio=np.asarray(variance_ratio),
        )
        self.logger.info(
            "PCA complete: %d components explain %.1f%% of variance",
            result.n_components,
            100 * float(np.sum(variance_ratio)),
        )
        return result

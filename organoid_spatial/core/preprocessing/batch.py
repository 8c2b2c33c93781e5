"""Batch-effect correction of the PCA embedding.

Uses Harmony (iterative soft clustering with per-batch linear
corrections) to remove sample-of-origin effects from the principal
components while preserving biological structure.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ...errors import ParameterError
from .config import BatchCorrectionConfig


CORRECTION_METHODS = ("harmony", "none")


@dataclass
class BatchCorrectionResult:
    """Result from batch correction.

    Attributes
    ----------
    method : str
        Correction method applied
    input_key : str
        obsm key of the uncorrected embedding
    output_key : str
        obsm key of the corrected embedding
    n_batches : int
        Number of batches (samples)
    n_iterations : int
        Harmony iterations performed
    converged : bool, optional
        Whether Harmony converged within the iteration budget; None if the
        objective trace was unavailable
    objective : List[float]
        Harmony objective after initialization and each iteration
    """

    method: str = "harmony"
    input_key: str = "X_pca"
    output_key: str = "X_pca_harmony"
    n_batches: int = 0
    n_iterations: int = 0
    converged: Optional[bool] = None
    objective: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "method": self.method,
            "output_key": self.output_key,
            "n_batches": self.n_batches,
            "n_iterations": self.n_iterations,
            "converged": self.converged,
        }


class BatchCorrector:
    """Harmony batch correction over a PCA embedding.

    Parameters
    ----------
    config : BatchCorrectionConfig, optional
        Batch correction configuration
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.preprocessing import BatchCorrector
    >>> result = BatchCorrector().correct(adata)
    >>> adata.obsm["X_pca_harmony"].shape == adata.obsm["X_pca"].shape
    True
    """

    def __init__(
        self,
        config: Optional[BatchCorrectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or BatchCorrectionConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.method not in CORRECTION_METHODS:
            raise ParameterError(
                f"Unknown batch correction method '{self.config.method}' "
                f"(choose from {CORRECTION_METHODS})"
            )
        if self.config.method == "harmony":
            self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import harmonypy
        except ImportError:
            raise RuntimeError(
                "Batch correction requires harmonypy. "
                "Install with: pip install harmonypy"
            )

    @staticmethod
    def orient_embedding(corrected: Any, n_spots: int) -> np.ndarray:
        """Return the corrected embedding as spots x components.

        harmonypy returns components x spots; this accepts either layout.
        """
        corrected = np.asarray(corrected)
        if corrected.shape[0] == n_spots:
            return corrected
        if corrected.ndim == 2 and corrected.shape[1] == n_spots:
            return corrected.T
        raise ValueError(
            f"Corrected embedding shape {corrected.shape} does not match {n_spots} spots"
        )

    def check_convergence(self, objective: List[float]) -> Optional[bool]:
        """Apply Harmony's stopping rule to the last two objective values."""
        if len(objective) < 2:
            return None
        old, new = objective[-2], objective[-1]
        if old == 0:
            return new == old
        return (old - new) / abs(old) < self.config.epsilon_harmony

    def correct(
        self,
        adata: Any,  # AnnData
        input_key: str = "X_pca",
        output_key: str = "X_pca_harmony",
    ) -> BatchCorrectionResult:
        """Correct the embedding for sample-of-origin effects.

        Parameters
        ----------
        adata : AnnData
            Dataset with ``obsm[input_key]`` and the batch column in obs
        input_key : str
            obsm key of the PCA embedding
        output_key : str
            obsm key for the corrected embedding

        Returns
        -------
        BatchCorrectionResult
            Correction summary. Non-convergence is reported, not raised.
        """
        cfg = self.config
        if input_key not in adata.obsm:
            raise KeyError(f"Embedding '{input_key}' not found in adata.obsm")
        if cfg.batch_key not in adata.obs:
            raise KeyError(f"Batch column '{cfg.batch_key}' not found in adata.obs")

        embedding = np.asarray(adata.obsm[input_key], dtype=np.float64)
        batches = adata.obs[cfg.batch_key].astype(str)
        n_batches = int(batches.nunique())

        result = BatchCorrectionResult(
            method=cfg.method,
            input_key=input_key,
            output_key=output_key,
            n_batches=n_batches,
        )

        if cfg.method == "none" or n_batches < 2:
            if cfg.method != "none":
                self.logger.warning(
                    "Only %d batch in '%s'; skipping Harmony and copying the embedding",
                    n_batches,
                    cfg.batch_key,
                )
            result.method = "none"
            result.converged = True
            adata.obsm[output_key] = embedding.astype(np.float32)
            return result

        import harmonypy

        self.logger.info(
            "Running Harmony on %s: %d spots, %d components, %d batches "
            "(max_iter=%d, theta=%.2f)",
            input_key,
            embedding.shape[0],
            embedding.shape[1],
            n_batches,
            cfg.max_iter_harmony,
            cfg.theta,
        )

        meta = pd.DataFrame({cfg.batch_key: batches.to_numpy()}, index=adata.obs_names)
        ho = harmonypy.run_harmony(
            embedding,
            meta,
            [cfg.batch_key],
            theta=cfg.theta,
            max_iter_harmony=cfg.max_iter_harmony,
            epsilon_harmony=cfg.epsilon_harmony,
            random_state=cfg.random_seed,
            verbose=False,
        )

        corrected = self.orient_embedding(ho.Z_corr, adata.n_obs)
        adata.obsm[output_key] = corrected.astype(np.float32)

        result.objective = [float(v) for v in getattr(ho, "objective_harmony", [])]
        result.n_iterations = max(len(result.objective) - 1, 0)
        result.converged = self.check_convergence(result.objective)

        if result.converged is False:
            self.logger.warning(
                "Harmony did not converge within %d iterations; "
                "continuing with the last embedding",
                cfg.max_iter_harmony,
            )
        else:
            self.logger.info(
                "Harmony finished after %d iterations (converged=%s)",
                result.n_iterations,
                result.converged,
            )
        return result

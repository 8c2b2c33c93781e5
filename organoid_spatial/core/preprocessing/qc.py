"""Spot-level quality control reporting.

Computes per-spot library size and gene diversity for inspection.
QC here is descriptive: no spot is removed.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import QCConfig


# Per-spot metrics written to adata.obs
QC_METRIC_COLUMNS = [
    "total_counts",
    "n_genes_by_counts",
    "pct_counts_mt",
]


@dataclass
class QCResult:
    """Result from QC reporting.

    Attributes
    ----------
    n_spots : int
        Total spots inspected
    n_spots_removed : int
        Always 0; QC does not filter
    spot_metrics : pd.DataFrame
        Per-spot metrics with sample and tissue labels
    sample_summary : pd.DataFrame
        Per-sample summary statistics
    mito_genes : List[str]
        Genes counted as mitochondrial
    """

    n_spots: int = 0
    n_spots_removed: int = 0
    spot_metrics: Optional[pd.DataFrame] = None
    sample_summary: Optional[pd.DataFrame] = None
    mito_genes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_spots": self.n_spots,
            "n_spots_removed": self.n_spots_removed,
            "n_mito_genes": len(self.mito_genes),
        }


class QCReporter:
    """Descriptive spot-level QC.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from organoid_spatial.core.preprocessing import QCReporter
    >>> result = QCReporter().compute(adata)
    >>> result.sample_summary
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def compute(self, adata: Any, sample_key: str = "sample_id") -> QCResult:
        """Compute per-spot QC metrics on raw counts.

        Parameters
        ----------
        adata : AnnData
            Unified dataset with ``layers["counts"]``; obs gains the
            columns in ``QC_METRIC_COLUMNS``
        sample_key : str
            obs column with the sample assignment

        Returns
        -------
        QCResult
            Per-spot metrics and per-sample summary
        """
        import scanpy as sc

        layer = "counts" if "counts" in adata.layers else None
        if layer is None:
            self.logger.warning("No 'counts' layer found; computing QC on AnnData.X")

        adata.var["mt"] = adata.var_names.str.upper().str.startswith(
            self.config.mito_prefix.upper()
        )
        sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=["mt"],
            layer=layer,
            percent_top=None,
            log1p=False,
            inplace=True,
        )

        result = QCResult(n_spots=int(adata.n_obs))
        result.mito_genes = adata.var_names[adata.var["mt"].to_numpy()].tolist()

        label_cols = [c for c in (sample_key, "tissue") if c in adata.obs]
        metrics = adata.obs[label_cols + QC_METRIC_COLUMNS].copy()
        metrics.index.name = "spot_id"
        result.spot_metrics = metrics
        result.sample_summary = self.summarize(metrics, sample_key)

        for row in result.sample_summary.itertuples(index=False):
            self.logger.info(
                "QC %s: %d spots, median counts=%.0f, median genes=%.0f",
                row.sample_id,
                row.n_spots,
                row.median_total_counts,
                row.median_n_genes_by_counts,
            )
        self.logger.info("QC is descriptive only: all %d spots retained", result.n_spots)
        return result

    @staticmethod
    def summarize(metrics: pd.DataFrame, sample_key: str = "sample_id") -> pd.DataFrame:
        """Summarize per-spot metrics by sample.

        Parameters
        ----------
        metrics : pd.DataFrame
            Per-spot QC metrics
        sample_key : str
            Column with the sample assignment

        Returns
        -------
        pd.DataFrame
            One row per sample with spot count and mean/median/min/max of
            total counts and detected genes
        """
        records = []
        for sample_id, group in metrics.groupby(sample_key, observed=True, sort=False):
            record: Dict[str, Any] = {"sample_id": str(sample_id), "n_spots": int(len(group))}
            for column in ("total_counts", "n_genes_by_counts"):
                values = group[column].to_numpy(dtype=float)
                record[f"mean_{column}"] = float(np.mean(values))
                record[f"median_{column}"] = float(np.median(values))
                record[f"min_{column}"] = float(np.min(values))
                record[f"max_{column}"] = float(np.max(values))
            record["mean_pct_counts_mt"] = float(group["pct_counts_mt"].mean())
            records.append(record)
        return pd.DataFrame(records)

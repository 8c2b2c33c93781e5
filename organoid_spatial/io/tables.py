"""Result export: CSV tables, the marker workbook and the AnnData file."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Union

import pandas as pd

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def write_marker_workbook(sheets: Mapping[str, pd.DataFrame], path: PathLike) -> Path:
    """Write marker tables to one spreadsheet, one sheet per table.

    Sheet names are cut to Excel's 31-character limit.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=str(name)[:31], index=False)
    logger.info("Wrote marker workbook with %d sheets to %s", len(sheets), output_path)
    return output_path


def _drop_none(mapping: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively drop None values, which h5ad cannot store."""
    cleaned = {}
    for key, value in mapping.items():
        if value is None:
            continue
        cleaned[key] = _drop_none(value) if isinstance(value, dict) else value
    return cleaned


def write_h5ad(
    adata: Any,  # AnnData
    path: PathLike,
    *,
    keep_images: bool = False,
    compression: str | None = "gzip",
) -> Path:
    """Save the analysis AnnData.

    Histology images are removed from ``uns["spatial"]`` unless
    ``keep_images`` is set; the in-memory object is not modified.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    out = adata.copy()
    uns = _drop_none(copy.deepcopy(dict(out.uns)))
    if not keep_images and "spatial" in uns:
        for sample in uns["spatial"].values():
            sample["images"] = {}
    out.uns = uns
    out.write_h5ad(output_path, compression=compression)
    logger.info("Wrote %d spots x %d genes to %s", out.n_obs, out.n_vars, output_path)
    return output_path


def read_h5ad(path: PathLike) -> Any:
    """Load a saved analysis AnnData."""
    import anndata as ad

    input_path = Path(path)
    if not input_path.exists():
        raise FileNotFoundError(f"AnnData file not found: {input_path}")
    return ad.read_h5ad(input_path)

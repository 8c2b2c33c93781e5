"""I/O utilities for organoid-spatial.

Provides structured run records and result export.
"""

from .logging import log_json, log_yaml, write_json
from .tables import (
    ensure_output_dir,
    read_h5ad,
    write_dataframe,
    write_h5ad,
    write_marker_workbook,
)

__all__ = [
    # Run records
    "log_json",
    "log_yaml",
    "write_json",
    # Export
    "ensure_output_dir",
    "read_h5ad",
    "write_dataframe",
    "write_h5ad",
    "write_marker_workbook",
]

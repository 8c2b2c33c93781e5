"""Test fixtures for organoid-spatial.

Provides synthetic Visium sample writers and AnnData generators.
"""

from .mock_visium import (
    DEFAULT_SCALEFACTORS,
    GROUP_PROGRAMS,
    MITO_GENES,
    create_organoid_dataset,
    create_spot_adata,
    grid_positions,
    make_gene_names,
    simulate_counts,
    well_separated_blobs,
    write_10x_h5,
    write_visium_sample,
)

__all__ = [
    "DEFAULT_SCALEFACTORS",
    "GROUP_PROGRAMS",
    "MITO_GENES",
    "create_organoid_dataset",
    "create_spot_adata",
    "grid_positions",
    "make_gene_names",
    "simulate_counts",
    "well_separated_blobs",
    "write_10x_h5",
    "write_visium_sample",
]

"""Command-line interface for organoid-spatial.

Example Usage
-------------
    # From command line:
    organoid-spatial --help
    organoid-spatial validate --config analysis.yaml
    organoid-spatial run --config analysis.yaml --out results/
    organoid-spatial resolutions --input results/analysis.h5ad
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]

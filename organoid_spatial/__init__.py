"""organoid-spatial: Spatial transcriptomics analysis of skin organoids.

This package provides tools for:
- Loading multi-sample 10x Visium (Space Ranger) outputs into one AnnData
- Descriptive spot QC, LogNormalize + PCA, and Harmony batch correction
- SNN + Louvain clustering over a ladder of resolutions
- One-vs-rest marker genes, module scores, and functional enrichment

Every run is parameterized by one YAML configuration file.

Example usage:
    >>> from organoid_spatial.config import AnalysisConfig
    >>> from organoid_spatial.pipeline import run_analysis
    >>>
    >>> config = AnalysisConfig.from_yaml("analysis.yaml")
    >>> outcome = run_analysis(config, "results/")
"""

__version__ = "0.1.0"

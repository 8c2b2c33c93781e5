"""Core computational modules for organoid-spatial.

This package contains the main analysis engines:
- preprocessing: Sample loading, QC, normalization + PCA, Harmony correction
- clustering: SNN + Louvain over a resolution ladder, marker detection
- scoring: Module scores for curated gene panels
- enrichment: Functional enrichment of cluster markers
"""

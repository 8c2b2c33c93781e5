"""Preprocessing module for loading, QC and embedding of Visium samples.

Pipeline Stages
---------------
- Load: Space Ranger outputs into one unified AnnData
- QC: Descriptive spot-level metrics (no filtering)
- Reduce: LogNormalize, highly variable genes, scaling and PCA
- Correct: Harmony batch correction across samples

Example Usage
-------------
>>> from organoid_spatial.core.preprocessing import (
...     DatasetLoader, LoaderConfig,
...     QCReporter, DimensionalityReducer, BatchCorrector,
... )
>>> adata = DatasetLoader(LoaderConfig(root_path="data/")).load(samples)
>>> qc_result = QCReporter().compute(adata)
>>> DimensionalityReducer().run(adata)
>>> BatchCorrector().correct(adata)
"""

# Configuration classes
from .config import (
    SampleSpec,
    LoaderConfig,
    QCConfig,
    ReductionConfig,
    BatchCorrectionConfig,
    PreprocessingConfig,
)

# Load
from .loader import (
    DatasetLoader,
    SampleData,
    POSITION_COLUMNS,
)

# QC
from .qc import (
    QCReporter,
    QCResult,
    QC_METRIC_COLUMNS,
)

# Reduce
from .normalization import (
    DimensionalityReducer,
    ReductionResult,
)

# Correct
from .batch import (
    BatchCorrector,
    BatchCorrectionResult,
    CORRECTION_METHODS,
)

__all__ = [
    # Config
    "SampleSpec",
    "LoaderConfig",
    "QCConfig",
    "ReductionConfig",
    "BatchCorrectionConfig",
    "PreprocessingConfig",
    # Load
    "DatasetLoader",
    "SampleData",
    "POSITION_COLUMNS",
    # QC
    "QCReporter",
    "QCResult",
    "QC_METRIC_COLUMNS",
    # Reduce
    "DimensionalityReducer",
    "ReductionResult",
    # Correct
    "BatchCorrector",
    "BatchCorrectionResult",
    "CORRECTION_METHODS",
]

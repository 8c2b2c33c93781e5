"""Pytest configuration and shared fixtures for organoid-spatial tests."""

import sys
from pathlib import Path

import pytest
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from organoid_spatial.core.enrichment import EnrichmentBackend
from tests.fixtures import (
    create_spot_adata,
    well_separated_blobs,
)


# ============================================================================
# Fake enrichment backend
# ============================================================================


class FakeEnrichmentBackend(EnrichmentBackend):
    """Deterministic offline backend.

    Returns one term per query gene, named after the gene, with an
    adjusted p-value that shrinks as the query grows. Genes listed in
    ``fail_on`` make the query raise; genes in ``empty_on`` make it return
    no terms.
    """

    name = "fake"

    def __init__(self, fail_on=(), empty_on=(), failures_before_success=0):
        self.fail_on = set(fail_on)
        self.empty_on = set(empty_on)
        self.failures_before_success = failures_before_success
        self.calls = []

    def query(self, genes, organism, gene_sets):
        self.calls.append(list(genes))
        if self.fail_on.intersection(genes):
            raise ConnectionError(f"backend unavailable for {sorted(self.fail_on.intersection(genes))}")
        if self.failures_before_success > 0:
            self.failures_before_success -= 1
            raise TimeoutError("transient timeout")
        if self.empty_on.intersection(genes):
            return pd.DataFrame(columns=["term_id", "term_name", "source", "p_value",
                                         "adjusted_p_value", "overlap", "genes"])
        n = len(genes)
        return pd.DataFrame(
            {
                "term_id": [f"GO:{i:07d}" for i in range(n)],
                "term_name": [f"{g} process" for g in genes],
                "source": gene_sets[0],
                "p_value": [0.001 / n * (i + 1) for i in range(n)],
                "adjusted_p_value": [0.01 / n * (i + 1) for i in range(n)],
                "overlap": [f"1/{10 + i}" for i in range(n)],
                "genes": list(genes),
            }
        )


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture
def spot_adata():
    """Two samples x four groups of 20 spots, counts and lognorm layers."""
    return create_spot_adata(n_samples=2, spots_per_group=20)


@pytest.fixture
def counts_adata():
    """Like ``spot_adata`` but with raw counts only."""
    return create_spot_adata(n_samples=2, spots_per_group=20, lognorm=False)


@pytest.fixture
def blobs():
    """Four far-apart blobs of 20 points each in 10 dimensions."""
    return well_separated_blobs(n_blobs=4, blob_size=20, n_dims=10)


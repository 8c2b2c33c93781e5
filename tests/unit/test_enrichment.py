"""Unit tests for enrichment analysis."""

import pytest
import pandas as pd

from organoid_spatial.core.enrichment import (
    BACKEND_COLUMNS,
    TERM_COLUMNS,
    EnrichmentAnalyzer,
    EnrichmentConfig,
    EnrichrBackend,
    best_per_term,
    get_backend,
    split_term,
)
from organoid_spatial.core.clustering import MarkerResult, MARKER_COLUMNS
from organoid_spatial.errors import ParameterError
from tests.conftest import FakeEnrichmentBackend


CLUSTER_GENES = {
    "0": ["KRT5", "KRT14", "TP63"],
    "1": ["KRT1", "KRT10", "FLG"],
    "2": ["COL1A1", "DCN"],
}


def _analyzer(backend, **kwargs):
    return EnrichmentAnalyzer(EnrichmentConfig(**kwargs), backend=backend)


class TestSplitTerm:
    """Tests for Enrichr term label parsing."""

    def test_go_term(self):
        assert split_term("keratinization (GO:0031424)") == ("GO:0031424", "keratinization")

    def test_plain_term(self):
        assert split_term("Epidermis development") == (
            "Epidermis development",
            "Epidermis development",
        )


class TestEnrichrBackend:
    """Tests for Enrichr result normalization (no network)."""

    def test_normalize(self):
        raw = pd.DataFrame(
            {
                "Gene_set": ["GO_Biological_Process_2023"],
                "Term": ["keratinization (GO:0031424)"],
                "Overlap": ["3/80"],
                "P-value": [1e-6],
                "Adjusted P-value": [1e-4],
                "Genes": ["KRT5;KRT14;TP63"],
            }
        )
        table = EnrichrBackend.normalize(raw)
        assert list(table.columns) == BACKEND_COLUMNS
        row = table.iloc[0]
        assert row["term_id"] == "GO:0031424"
        assert row["term_name"] == "keratinization"
        assert row["source"] == "GO_Biological_Process_2023"
        assert row["adjusted_p_value"] == pytest.approx(1e-4)

    def test_normalize_empty(self):
        assert EnrichrBackend.normalize(pd.DataFrame()).empty

    def test_unknown_backend(self):
        with pytest.raises(ParameterError, match="Unknown enrichment backend"):
            get_backend("gprofiler")


class TestBestPerTerm:
    """Tests for merging ordered prefix queries."""

    def test_keeps_best_and_smallest_prefix(self):
        def frame(size, p):
            return pd.DataFrame(
                {
                    "term_id": ["GO:1"],
                    "term_name": ["t"],
                    "source": ["GO"],
                    "p_value": [p],
                    "adjusted_p_value": [p],
                    "overlap": ["1/2"],
                    "genes": ["A"],
                    "query_size": [size],
                }
            )

        merged = best_per_term([frame(1, 0.02), frame(2, 0.01), frame(3, 0.01)])
        assert len(merged) == 1
        assert merged.iloc[0]["adjusted_p_value"] == 0.01
        assert merged.iloc[0]["query_size"] == 2

    def test_all_empty(self):
        assert best_per_term([pd.DataFrame(columns=BACKEND_COLUMNS)]).empty


class TestEnrichmentAnalyzer:
    """Tests for EnrichmentAnalyzer class."""

    def test_default_config(self):
        config = EnrichmentConfig()
        assert config.top_n == 10
        assert config.ordered is True
        assert config.organism == "human"
        assert config.gene_sets == ["GO_Biological_Process_2023"]
        assert config.highlight_n == 5

    def test_unordered_single_query(self):
        backend = FakeEnrichmentBackend()
        result = _analyzer(backend, ordered=False).run(CLUSTER_GENES)
        assert len(backend.calls) == 3
        assert result.succeeded == ["0", "1", "2"]
        assert list(result.terms.columns) == TERM_COLUMNS
        assert (result.for_cluster("0")["query_size"] == 3).all()

    def test_ordered_queries_prefixes(self):
        """Test every rank prefix is queried in ordered mode."""
        backend = FakeEnrichmentBackend()
        _analyzer(backend, ordered=True).run({"0": ["A", "B", "C"]})
        assert backend.calls == [["A"], ["A", "B"], ["A", "B", "C"]]

    def test_ordered_keeps_best_prefix(self):
        """Test each term keeps its best adjusted p-value over prefixes."""
        backend = FakeEnrichmentBackend()
        terms = _analyzer(backend, ordered=True).run({"0": ["A", "B"]}).for_cluster("0")
        # GO:0000000 has adj p 0.01 with 1 gene and 0.005 with 2 genes
        best = terms.set_index("term_id").loc["GO:0000000"]
        assert best["adjusted_p_value"] == pytest.approx(0.005)
        assert best["query_size"] == 2

    def test_ranks(self):
        """Test terms ranked 1..n by adjusted p-value."""
        result = _analyzer(FakeEnrichmentBackend(), ordered=False).run(CLUSTER_GENES)
        terms = result.for_cluster("0")
        assert terms["rank"].tolist() == [1, 2, 3]
        assert terms["adjusted_p_value"].is_monotonic_increasing
        assert len(result.highlights(2)) == 2 * 3

    def test_top_n_limits_query(self):
        backend = FakeEnrichmentBackend()
        _analyzer(backend, ordered=False, top_n=2).run({"0": ["A", "B", "C", "D"]})
        assert backend.calls == [["A", "B"]]

    def test_failure_isolated(self, caplog):
        """Test one cluster's backend error leaves the others intact."""
        backend = FakeEnrichmentBackend(fail_on={"KRT1"})
        result = _analyzer(backend, ordered=False).run(CLUSTER_GENES)
        assert result.succeeded == ["0", "2"]
        assert list(result.failed) == ["1"]
        assert "ConnectionError" in result.failed["1"]
        assert result.is_partial
        assert not result.for_cluster("0").empty
        assert result.for_cluster("1").empty
        assert "Enrichment failed for cluster 1" in caplog.text

    def test_failure_isolated_parallel(self):
        backend = FakeEnrichmentBackend(fail_on={"DCN"})
        result = _analyzer(backend, ordered=False, n_workers=3).run(CLUSTER_GENES)
        assert result.succeeded == ["0", "1"]
        assert list(result.failed) == ["2"]

    def test_empty_response(self):
        backend = FakeEnrichmentBackend(empty_on={"TP63"})
        result = _analyzer(backend, ordered=False).run(CLUSTER_GENES)
        assert result.empty == ["0"]
        assert result.succeeded == ["1", "2"]

    def test_no_genes(self):
        backend = FakeEnrichmentBackend()
        result = _analyzer(backend).run({"0": [], "1": ["A"]})
        assert result.empty == ["0"]
        assert backend.calls == [["A"]]

    def test_retries(self):
        """Test a transient failure is retried up to max_retries."""
        backend = FakeEnrichmentBackend(failures_before_success=1)
        result = _analyzer(backend, ordered=False, max_retries=1).run({"0": ["A"]})
        assert result.succeeded == ["0"]
        assert len(backend.calls) == 2

    def test_no_retries_by_default(self):
        backend = FakeEnrichmentBackend(failures_before_success=1)
        result = _analyzer(backend, ordered=False).run({"0": ["A"]})
        assert "TimeoutError" in result.failed["0"]
        assert len(backend.calls) == 1

    def test_significance_threshold(self):
        backend = FakeEnrichmentBackend()
        result = _analyzer(backend, ordered=False, significance_threshold=0.005).run(
            {"0": ["A", "B", "C", "D"]}
        )
        # adj p: 0.0025, 0.005, 0.0075, 0.01
        assert len(result.for_cluster("0")) == 2

    def test_invalid_config(self):
        with pytest.raises(ParameterError):
            _analyzer(FakeEnrichmentBackend(), top_n=0).run(CLUSTER_GENES)

    def test_run_from_markers(self):
        rows = [(g, "0", 0.01, 2.0 - i * 0.1, 0.5, 0.1, 0.5) for i, g in enumerate("ABCDEF")]
        markers = MarkerResult(markers=pd.DataFrame(rows, columns=MARKER_COLUMNS), clusters=["0"])
        backend = FakeEnrichmentBackend()
        _analyzer(backend, ordered=False, top_n=4).run_from_markers(markers)
        assert backend.calls == [["A", "B", "C", "D"]]

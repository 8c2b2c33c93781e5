"""Enrichment backends.

A backend takes a gene list and returns term-level statistics in a
common table layout (``BACKEND_COLUMNS``).
"""

from abc import ABC, abstractmethod
import logging
import re
from typing import List, Optional, Sequence

import pandas as pd

from ...errors import ParameterError


BACKEND_COLUMNS = [
    "term_id",
    "term_name",
    "source",
    "p_value",
    "adjusted_p_value",
    "overlap",
    "genes",
]

_GO_ID = re.compile(r"\((GO:\d+)\)\s*$")


class EnrichmentBackend(ABC):
    """Abstract base class for enrichment services.

    All backends must implement:
    - name: Backend identifier
    - query(): Enrichment of one gene list
    """

    name: str = "base"

    @abstractmethod
    def query(
        self,
        genes: Sequence[str],
        organism: str,
        gene_sets: Sequence[str],
    ) -> pd.DataFrame:
        """Run enrichment for one gene list.

        Parameters
        ----------
        genes : Sequence[str]
            Query genes
        organism : str
            Organism identifier
        gene_sets : Sequence[str]
            Gene-set libraries to test

        Returns
        -------
        pd.DataFrame
            One row per term with ``BACKEND_COLUMNS``; empty if nothing matched
        """
        pass


def split_term(term: str) -> tuple:
    """Split an Enrichr GO term label into (term_id, term_name).

    >>> split_term("keratinization (GO:0031424)")
    ('GO:0031424', 'keratinization')
    """
    text = str(term).strip()
    match = _GO_ID.search(text)
    if match is None:
        return text, text
    return match.group(1), text[: match.start()].strip()


class EnrichrBackend(EnrichmentBackend):
    """Enrichr over-representation analysis via gseapy.

    Parameters
    ----------
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    name = "enrichr"

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import gseapy
        except ImportError:
            raise RuntimeError(
                "Enrichment requires gseapy. Install with: pip install gseapy"
            )

    @staticmethod
    def normalize(results: pd.DataFrame, default_source: str = "") -> pd.DataFrame:
        """Convert an Enrichr result table to ``BACKEND_COLUMNS``."""
        if results is None or results.empty:
            return pd.DataFrame(columns=BACKEND_COLUMNS)

        split = results["Term"].map(split_term)
        if "Gene_set" in results.columns:
            source = results["Gene_set"].astype(str)
        else:
            source = pd.Series(default_source, index=results.index)
        return pd.DataFrame(
            {
                "term_id": split.map(lambda t: t[0]),
                "term_name": split.map(lambda t: t[1]),
                "source": source,
                "p_value": results["P-value"].astype(float),
                "adjusted_p_value": results["Adjusted P-value"].astype(float),
                "overlap": results["Overlap"].astype(str),
                "genes": results["Genes"].astype(str),
            }
        ).reset_index(drop=True)

    def query(
        self,
        genes: Sequence[str],
        organism: str,
        gene_sets: Sequence[str],
    ) -> pd.DataFrame:
        import gseapy

        gene_list: List[str] = [str(g) for g in genes]
        self.logger.debug("Enrichr query: %d genes against %s", len(gene_list), list(gene_sets))
        enr = gseapy.enrichr(
            gene_list=gene_list,
            gene_sets=list(gene_sets),
            organism=organism,
            outdir=None,
            no_plot=True,
        )
        return self.normalize(enr.results, default_source=",".join(gene_sets))


BACKENDS = {
    "enrichr": EnrichrBackend,
}


def get_backend(name: str, logger: Optional[logging.Logger] = None) -> EnrichmentBackend:
    """Instantiate a registered backend by name."""
    if name not in BACKENDS:
        raise ParameterError(f"Unknown enrichment backend '{name}'. Available: {sorted(BACKENDS)}")
    return BACKENDS[name](logger=logger)

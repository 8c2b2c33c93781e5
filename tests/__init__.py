"""Test suite for organoid-spatial.

Test organization:
- fixtures/: Synthetic Visium sample writers and AnnData generators
- unit/: Unit tests for individual modules
- integration/: End-to-end analysis of a synthetic three-sample dataset

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""

"""
Test suite for the scoring models.

Tests:
- test_isolation_forest.py: path-length statistics, score range, isolation property
- test_hierarchical.py: merge bookkeeping, linkage, anomaly rules
- test_fusion.py: fusion rule, confidence, risk factors, end-to-end scenario
"""

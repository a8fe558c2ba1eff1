"""
Transaction Anomaly Engine
==========================

Real-time fraud-risk scoring of single transactions with a two-stage
unsupervised pipeline:
- Stage 1: Isolation Forest (density estimation)
- Stage 2: Agglomerative hierarchical clustering (confirmation)
- Score fusion, confidence and risk-factor explanation
"""

__version__ = "2.0.0"

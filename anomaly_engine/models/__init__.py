"""
Two-Stage Anomaly Scoring Models
================================

- isolation_forest: Stage 1, unsupervised density estimation
- hierarchical:     Stage 2, average-linkage clustering confirmation
- fusion:           Sequential pipeline, score fusion and risk explanation
- errors:           InvalidInputError / NotTrainedError

Import from the submodules directly.
"""

"""
cohortnet: cross-cohort correlation-weighted gene signatures.

Compares a uniform elastic-net tumor/normal classifier against one whose
per-gene penalty grows with the divergence of the gene's correlation
profile between two cancer cohorts.
"""

__version__ = "1.0.0"

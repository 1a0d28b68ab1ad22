"""This module provides cohort preprocessing components:
- Expression normalization (log2, variance filter, standardization)
- Cohort assembly from raw expression and clinical tables
- Alignment of two cohorts on a shared gene set
"""

from .normalization import (
    log_transform,
    variance_filter,
    standardize,
    normalize_expression,
)

from .assembler import (
    Cohort,
    CohortAssembler,
    AssemblyReport,
    align_cohorts,
    drop_constant_genes,
    load_reference_genes,
)

__all__ = [
    # Normalization
    "log_transform",
    "variance_filter",
    "standardize",
    "normalize_expression",
    # Assembly
    "Cohort",
    "CohortAssembler",
    "AssemblyReport",
    "align_cohorts",
    "drop_constant_genes",
    "load_reference_genes",
]

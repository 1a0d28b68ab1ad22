"""
cohortnet: Expression Normalization

This module prepares abundance matrices (samples x genes) for correlation
and modelling:
- log2 transform with a pseudocount
- Variance filtering (zero-variance genes have undefined correlation)
- Per-gene standardization (zero mean, unit variance)

Version: 1.0.0
Issued on: October 2026
"""

from typing import Union

import numpy as np
import pandas as pd

from ..core.errors import DataIntegrityError


ArrayLike = Union[np.ndarray, pd.DataFrame]


def log_transform(matrix: ArrayLike, pseudocount: float = 1.0) -> ArrayLike:
    """
    Apply log2(x + pseudocount) to a non-negative abundance matrix.

    Parameters
    ----------
    matrix : np.ndarray or pd.DataFrame
        Samples x genes abundance values.
    pseudocount : float
        Added before taking the logarithm.

    Returns
    -------
    Same type as input, log-transformed.
    """
    values = np.asarray(matrix, dtype=float)
    if np.isnan(values).any():
        raise DataIntegrityError("Expression matrix contains missing values")
    if (values < 0).any():
        raise DataIntegrityError("Expression matrix contains negative abundance values")

    logged = np.log2(values + pseudocount)
    if isinstance(matrix, pd.DataFrame):
        return pd.DataFrame(logged, index=matrix.index, columns=matrix.columns)
    return logged


def variance_filter(matrix: ArrayLike, min_variance: float = 0.0) -> np.ndarray:
    """
    Boolean mask of genes whose variance is strictly above min_variance.

    Parameters
    ----------
    matrix : np.ndarray or pd.DataFrame
        Samples x genes.
    min_variance : float
        Genes with variance <= this value are rejected.
    """
    values = np.asarray(matrix, dtype=float)
    if values.shape[0] < 2:
        raise DataIntegrityError("At least two samples are required to compute variance")
    return values.var(axis=0, ddof=1) > min_variance


def standardize(matrix: ArrayLike) -> ArrayLike:
    """
    Center each gene to zero mean and scale to unit variance (ddof=1).

    With this scaling, Z.T @ Z / (n - 1) is the Pearson correlation matrix.

    Raises
    ------
    DataIntegrityError
        If any gene has zero variance.
    """
    values = np.asarray(matrix, dtype=float)
    if values.shape[0] < 2:
        raise DataIntegrityError("At least two samples are required to standardize")

    centered = values - values.mean(axis=0)
    std = centered.std(axis=0, ddof=1)
    constant = std <= 0
    if constant.any():
        n_bad = int(constant.sum())
        raise DataIntegrityError(
            f"{n_bad} gene(s) have zero variance; filter them before standardizing"
        )

    scaled = centered / std
    if isinstance(matrix, pd.DataFrame):
        return pd.DataFrame(scaled, index=matrix.index, columns=matrix.columns)
    return scaled


def normalize_expression(frame: pd.DataFrame, pseudocount: float = 1.0) -> pd.DataFrame:
    """log2 transform followed by per-gene standardization."""
    return standardize(log_transform(frame, pseudocount=pseudocount))

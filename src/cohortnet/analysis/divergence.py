"""
Divergence Weighter for cohortnet.

Compares, gene by gene, the correlation profile of a gene in cohort A
(column i of corr_A) with its profile in cohort B (column i of corr_B):

    cosine_i = <corr_A[:, i], corr_B[:, i]> / (|corr_A[:, i]| |corr_B[:, i]|)
    raw_i    = arccos(cosine_i) / pi          (0 = identical, 1 = opposite)

Genes with raw_i >= threshold (cosine <= 0.25 by default) are excluded from
modelling. Retained scores are divided by their maximum so weights lie in
[0, 1] and serve as per-gene penalty multipliers for the classifier.

Scores can be computed from two stored CorrelationMatrix objects, or streamed
block by block from the standardized matrices so that neither full
correlation matrix is ever materialized.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

from ..core.config import DivergenceConfig
from ..core.errors import DataIntegrityError
from .correlation import CorrelationMatrix, block_bounds


logger = logging.getLogger(__name__)


def angular_distance(cosine: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """arccos(cosine) / pi, with cosine clipped to [-1, 1].

    Cosines within rounding error of 1 count as identical profiles.
    """
    cosine = np.clip(cosine, -1.0, 1.0)
    cosine = np.where(cosine >= 1.0 - 1e-10, 1.0, cosine)
    return np.arccos(cosine) / np.pi


def _column_cosine(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    numerator = np.einsum("ij,ij->j", a, b)
    denominator = np.linalg.norm(a, axis=0) * np.linalg.norm(b, axis=0)
    # Diagonal entries are 1, so norms are never zero
    return numerator / denominator


def streaming_divergence(
    z_a: Union[np.ndarray, pd.DataFrame],
    z_b: Union[np.ndarray, pd.DataFrame],
    block_size: int = 2000,
    n_jobs: int = 1,
    show_progress: bool = False,
) -> pd.Series:
    """
    Raw angular-distance score per gene, computed block by block.

    For every column block both cohorts' correlation columns are built,
    compared and discarded; peak memory is two (n_genes x block_size) arrays
    per worker.

    Args:
        z_a: Standardized samples x genes matrix of cohort A
        z_b: Standardized samples x genes matrix of cohort B (same gene order)
        block_size: Columns per block
        n_jobs: Number of threads (-1 for all CPUs)
        show_progress: Show a tqdm bar over blocks

    Returns:
        Series of raw scores in [0, 1] indexed by gene
    """
    if isinstance(z_a, pd.DataFrame) and isinstance(z_b, pd.DataFrame):
        if list(z_a.columns) != list(z_b.columns):
            raise DataIntegrityError("Cohorts must share the same gene ordering")
        genes = [str(c) for c in z_a.columns]
    else:
        genes = None

    a = np.asarray(z_a, dtype=float)
    b = np.asarray(z_b, dtype=float)
    if a.shape[1] != b.shape[1]:
        raise DataIntegrityError(
            f"Gene count mismatch between cohorts: {a.shape[1]} vs {b.shape[1]}"
        )
    n_genes = a.shape[1]
    if genes is None:
        genes = [f"gene_{j}" for j in range(n_genes)]

    bounds = block_bounds(n_genes, block_size)
    scores = np.empty(n_genes, dtype=float)

    def _score_block(bound):
        # Full rows against this block of columns, for both cohorts
        corr_a = _columns(a, bound)
        corr_b = _columns(b, bound)
        scores[bound[0]:bound[1]] = angular_distance(_column_cosine(corr_a, corr_b))

    n_workers = n_jobs if n_jobs > 0 else (os.cpu_count() or 1)
    progress = tqdm(total=len(bounds), desc="divergence blocks", disable=not show_progress)
    try:
        if n_workers == 1:
            for bound in bounds:
                _score_block(bound)
                progress.update(1)
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                for _ in executor.map(_score_block, bounds):
                    progress.update(1)
    finally:
        progress.close()

    return pd.Series(scores, index=genes, name="angular_distance")


def _columns(z: np.ndarray, bound) -> np.ndarray:
    """Correlation columns bound[0]:bound[1] against all genes."""
    n_samples = z.shape[0]
    block = z.T @ z[:, bound[0]:bound[1]] / (n_samples - 1)
    block = np.clip(block, -1.0, 1.0)
    idx = np.arange(bound[0], bound[1])
    block[idx, idx - bound[0]] = 1.0
    return block


def divergence_from_matrices(
    corr_a: CorrelationMatrix,
    corr_b: CorrelationMatrix,
) -> pd.Series:
    """Raw angular-distance score per gene from two stored correlation matrices."""
    if corr_a.genes != corr_b.genes:
        raise DataIntegrityError("Correlation matrices must share the same gene ordering")
    if corr_a.block_size != corr_b.block_size:
        raise DataIntegrityError("Correlation matrices must use the same block size")

    scores = np.empty(len(corr_a.genes), dtype=float)
    for (start, stop, block_a), (_, _, block_b) in zip(corr_a.iter_blocks(), corr_b.iter_blocks()):
        scores[start:stop] = angular_distance(
            _column_cosine(np.asarray(block_a, dtype=float), np.asarray(block_b, dtype=float))
        )
    return pd.Series(scores, index=corr_a.genes, name="angular_distance")


def filter_by_threshold(scores: pd.Series, threshold: float) -> pd.Series:
    """Keep genes whose raw score is strictly below threshold."""
    return scores[scores < threshold]


def normalize_scores(scores: pd.Series) -> pd.Series:
    """Divide by the maximum so the most divergent retained gene has weight 1."""
    if scores.empty:
        return scores.rename("weight")
    peak = float(scores.max())
    if peak <= 0.0:
        return pd.Series(0.0, index=scores.index, name="weight")
    weights = (scores / peak).clip(0.0, 1.0)
    weights[scores == peak] = 1.0
    return weights.rename("weight")


@dataclass
class DivergenceResult:
    """Per-gene divergence scores and penalty weights."""
    raw_scores: pd.Series
    weights: pd.Series
    threshold: float
    excluded_genes: List[str] = field(default_factory=list)

    @property
    def retained_genes(self) -> List[str]:
        return list(self.weights.index)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({"angular_distance": self.raw_scores})
        frame["retained"] = frame.index.isin(self.weights.index)
        frame["weight"] = self.weights.reindex(frame.index)
        return frame

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "n_genes": int(len(self.raw_scores)),
            "n_retained": int(len(self.weights)),
            "n_excluded": int(len(self.excluded_genes)),
            "max_raw_retained": float(self.raw_scores[self.weights.index].max())
            if len(self.weights) else None,
        }


class DivergenceWeighter:
    """
    Derives per-gene penalty weights from two cohorts' correlation structure.

    Example:
        >>> weighter = DivergenceWeighter(DivergenceConfig(min_cosine_similarity=0.25))
        >>> result = weighter.fit(z_brca, z_prad, block_size=2000)
        >>> result.weights.max()
        1.0
    """

    def __init__(self, config: Optional[DivergenceConfig] = None):
        self.config = config or DivergenceConfig()

    @property
    def threshold(self) -> float:
        return self.config.max_angular_distance

    def fit(
        self,
        z_a: Union[np.ndarray, pd.DataFrame],
        z_b: Union[np.ndarray, pd.DataFrame],
        block_size: int = 2000,
        n_jobs: int = 1,
        show_progress: bool = False,
    ) -> DivergenceResult:
        """Stream correlation + divergence from standardized matrices."""
        scores = streaming_divergence(z_a, z_b, block_size, n_jobs, show_progress)
        return self.from_scores(scores)

    def fit_matrices(self, corr_a: CorrelationMatrix, corr_b: CorrelationMatrix) -> DivergenceResult:
        """Use two precomputed correlation matrices."""
        return self.from_scores(divergence_from_matrices(corr_a, corr_b))

    def from_scores(self, scores: pd.Series) -> DivergenceResult:
        retained = filter_by_threshold(scores, self.threshold)
        kept = set(retained.index)
        excluded = [g for g in scores.index if g not in kept]
        weights = normalize_scores(retained)

        logger.info(
            f"Divergence: {len(retained)}/{len(scores)} genes retained "
            f"(angular distance < {self.threshold:.4f}), {len(excluded)} excluded"
        )
        if retained.empty:
            logger.warning("Divergence filter excluded every gene")

        return DivergenceResult(
            raw_scores=scores,
            weights=weights,
            threshold=self.threshold,
            excluded_genes=excluded,
        )

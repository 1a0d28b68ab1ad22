"""
Correlation Engine for cohortnet.

Computes the full gene x gene Pearson correlation matrix of a standardized
samples x genes matrix in column blocks, so that tens of thousands of genes
can be handled without holding intermediate dense products in memory.

The matrix is tiled into (row block, column block) pairs. Each tile with
row block <= column block is computed once and written to both column
blocks (the second time transposed), so corr(i, j) == corr(j, i) holds
exactly. Blocks live either in memory or as .npy files opened with memory
mapping, and a single column can be queried without loading other blocks.

Version: 1.0.0
Issued on: October 2026
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

from ..core.errors import DataIntegrityError


logger = logging.getLogger(__name__)


def block_bounds(n_columns: int, block_size: int) -> List[Tuple[int, int]]:
    """Half-open (start, stop) column ranges covering n_columns."""
    return [(start, min(start + block_size, n_columns)) for start in range(0, n_columns, block_size)]


class CorrelationMatrix:
    """
    Column-queryable, block-stored correlation matrix.

    Example:
        >>> corr = compute_correlation(z_frame, block_size=2000, storage_dir="corr_brca")
        >>> profile = corr.column(corr.index_of("ENSG00000141510"))
        >>> corr.n_blocks
        11
    """

    def __init__(
        self,
        genes: Sequence[str],
        block_size: int,
        blocks: Sequence[Union[np.ndarray, str]],
    ):
        self.genes = list(genes)
        self.block_size = block_size
        self.bounds = block_bounds(len(self.genes), block_size)
        if len(blocks) != len(self.bounds):
            raise ValueError(
                f"Expected {len(self.bounds)} blocks for {len(self.genes)} genes, got {len(blocks)}"
            )
        self._blocks = list(blocks)
        self._positions = {g: i for i, g in enumerate(self.genes)}

    @property
    def shape(self) -> Tuple[int, int]:
        n = len(self.genes)
        return (n, n)

    @property
    def n_blocks(self) -> int:
        return len(self.bounds)

    @property
    def on_disk(self) -> bool:
        return any(isinstance(b, str) for b in self._blocks)

    def index_of(self, gene: str) -> int:
        return self._positions[gene]

    def block(self, k: int) -> np.ndarray:
        """Columns of block k as a (n_genes x block width) array."""
        stored = self._blocks[k]
        if isinstance(stored, str):
            return np.load(stored, mmap_mode="r")
        return stored

    def iter_blocks(self) -> Iterator[Tuple[int, int, np.ndarray]]:
        """Yield (start, stop, block) one block at a time."""
        for k, (start, stop) in enumerate(self.bounds):
            yield start, stop, self.block(k)

    def column(self, i: int) -> np.ndarray:
        """Correlation profile of gene i (column i)."""
        if not 0 <= i < len(self.genes):
            raise IndexError(f"Gene index {i} out of range for {len(self.genes)} genes")
        k = i // self.block_size
        start = self.bounds[k][0]
        return np.array(self.block(k)[:, i - start])

    def to_array(self) -> np.ndarray:
        """Materialize the full matrix. Only for gene counts that fit in memory."""
        return np.hstack([np.asarray(block) for _, _, block in self.iter_blocks()])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.to_array(), index=self.genes, columns=self.genes)


def _as_matrix(z: Union[np.ndarray, pd.DataFrame]) -> Tuple[np.ndarray, List[str]]:
    if isinstance(z, pd.DataFrame):
        return z.to_numpy(dtype=float), [str(c) for c in z.columns]
    values = np.asarray(z, dtype=float)
    return values, [f"gene_{j}" for j in range(values.shape[1])]


def correlation_tile(
    z: np.ndarray,
    rows: Tuple[int, int],
    cols: Tuple[int, int],
) -> np.ndarray:
    """
    Correlation between gene blocks of a standardized matrix.

    Args:
        z: Samples x genes, zero-mean / unit-variance (ddof=1) columns
        rows: (start, stop) of the row gene block
        cols: (start, stop) of the column gene block

    Returns:
        Array of shape (rows width, cols width), clipped to [-1, 1]
    """
    n_samples = z.shape[0]
    tile = z[:, rows[0]:rows[1]].T @ z[:, cols[0]:cols[1]] / (n_samples - 1)
    if rows == cols:
        tile = (tile + tile.T) / 2.0
        np.fill_diagonal(tile, 1.0)
    return np.clip(tile, -1.0, 1.0)


def compute_correlation(
    z: Union[np.ndarray, pd.DataFrame],
    block_size: int = 2000,
    storage_dir: Optional[str] = None,
    dtype: str = "float64",
    n_jobs: int = 1,
    show_progress: bool = False,
) -> CorrelationMatrix:
    """
    Blocked Pearson correlation of a standardized samples x genes matrix.

    Args:
        z: Standardized expression (see preprocessing.normalization.standardize)
        block_size: Number of gene columns per block
        storage_dir: Directory for per-block .npy files; None keeps blocks in memory
        dtype: Storage dtype of the blocks
        n_jobs: Number of threads used for tiles (-1 for all CPUs)
        show_progress: Show a tqdm bar over tiles

    Returns:
        CorrelationMatrix
    """
    values, genes = _as_matrix(z)
    if values.ndim != 2 or values.shape[0] < 2:
        raise DataIntegrityError(f"Need a 2-D matrix with >= 2 samples, got shape {values.shape}")
    if not np.isfinite(values).all():
        raise DataIntegrityError("Standardized matrix contains non-finite values")

    n_genes = values.shape[1]
    bounds = block_bounds(n_genes, block_size)

    if storage_dir is not None:
        out_dir = Path(storage_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = [str(out_dir / f"corr_block_{k:04d}.npy") for k in range(len(bounds))]
        blocks = [
            np.lib.format.open_memmap(path, mode="w+", dtype=dtype, shape=(n_genes, stop - start))
            for path, (start, stop) in zip(paths, bounds)
        ]
    else:
        paths = None
        blocks = [np.empty((n_genes, stop - start), dtype=dtype) for start, stop in bounds]

    tiles = [(bi, bj) for bj in range(len(bounds)) for bi in range(bj + 1)]
    logger.info(
        f"Correlation: {n_genes} genes, {len(bounds)} blocks, {len(tiles)} tiles"
        + (f", stored in {storage_dir}" if storage_dir else "")
    )

    def _fill(tile_idx: Tuple[int, int]) -> None:
        # Tiles write disjoint regions, so threads need no locking
        bi, bj = tile_idx
        rows, cols = bounds[bi], bounds[bj]
        tile = correlation_tile(values, rows, cols)
        blocks[bj][rows[0]:rows[1], :] = tile
        if bi != bj:
            blocks[bi][cols[0]:cols[1], :] = tile.T

    n_workers = n_jobs if n_jobs > 0 else (os.cpu_count() or 1)
    progress = tqdm(total=len(tiles), desc="correlation tiles", disable=not show_progress)
    try:
        if n_workers == 1:
            for tile_idx in tiles:
                _fill(tile_idx)
                progress.update(1)
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                for _ in executor.map(_fill, tiles):
                    progress.update(1)
    finally:
        progress.close()

    if paths is not None:
        for block in blocks:
            block.flush()
        del blocks
        return CorrelationMatrix(genes, block_size, paths)

    return CorrelationMatrix(genes, block_size, blocks)

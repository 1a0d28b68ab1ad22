"""Tests for the blocked correlation engine."""

import numpy as np
import pandas as pd
import pytest

from cohortnet.analysis.correlation import block_bounds, compute_correlation, correlation_tile
from cohortnet.core.errors import DataIntegrityError
from cohortnet.preprocessing.normalization import standardize


@pytest.fixture
def z_frame():
    rng = np.random.default_rng(5)
    x = rng.normal(size=(30, 23))
    x[:, 1] += 0.8 * x[:, 0]
    return standardize(pd.DataFrame(x, columns=[f"g{j}" for j in range(23)]))


def test_block_bounds_cover_all_columns():
    assert block_bounds(23, 5) == [(0, 5), (5, 10), (10, 15), (15, 20), (20, 23)]
    assert block_bounds(4, 10) == [(0, 4)]


@pytest.mark.parametrize("block_size", [1, 5, 7, 23, 100])
def test_blocked_matrix_matches_dense(z_frame, block_size):
    corr = compute_correlation(z_frame, block_size=block_size)
    dense = corr.to_array()
    assert corr.shape == (23, 23)
    np.testing.assert_array_equal(dense, dense.T)
    np.testing.assert_array_equal(np.diag(dense), np.ones(23))
    assert dense.min() >= -1.0 and dense.max() <= 1.0
    np.testing.assert_allclose(dense, np.corrcoef(z_frame.to_numpy(), rowvar=False), atol=1e-10)


def test_threaded_fill_matches_sequential(z_frame):
    sequential = compute_correlation(z_frame, block_size=4).to_array()
    threaded = compute_correlation(z_frame, block_size=4, n_jobs=3).to_array()
    np.testing.assert_array_equal(sequential, threaded)


def test_disk_storage_matches_memory(z_frame, tmp_path):
    in_memory = compute_correlation(z_frame, block_size=6)
    on_disk = compute_correlation(z_frame, block_size=6, storage_dir=str(tmp_path / "corr"))

    assert on_disk.on_disk and not in_memory.on_disk
    assert len(list((tmp_path / "corr").glob("*.npy"))) == on_disk.n_blocks
    np.testing.assert_array_equal(on_disk.to_array(), in_memory.to_array())

    i = on_disk.index_of("g13")
    np.testing.assert_array_equal(on_disk.column(i), in_memory.to_array()[:, i])


def test_column_query_out_of_range(z_frame):
    corr = compute_correlation(z_frame, block_size=10)
    with pytest.raises(IndexError):
        corr.column(23)


def test_diagonal_tile_is_symmetric(z_frame):
    tile = correlation_tile(z_frame.to_numpy(), (0, 5), (0, 5))
    np.testing.assert_array_equal(tile, tile.T)
    np.testing.assert_array_equal(np.diag(tile), np.ones(5))


def test_non_finite_input_rejected():
    z = np.ones((4, 3))
    z[0, 0] = np.nan
    with pytest.raises(DataIntegrityError):
        compute_correlation(z)

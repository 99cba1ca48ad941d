from __future__ import annotations

import os
import sys

import numpy as np
import pytest
from scipy import ndimage

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from min_filter import min_filter_3d
from progress import ProgressSink
from voxel_grid import DimensionMismatchError, VoxelGrid


def _masked_min_reference(arr: np.ndarray, mask: np.ndarray) -> np.ndarray:
    ni, nj, nk = arr.shape
    out = arr.astype(np.float64).copy()
    for i in range(ni):
        for j in range(nj):
            for k in range(nk):
                if not mask[i, j, k]:
                    continue
                m = arr[i, j, k]
                for ii in range(max(i - 1, 0), min(i + 2, ni)):
                    for jj in range(max(j - 1, 0), min(j + 2, nj)):
                        for kk in range(max(k - 1, 0), min(k + 2, nk)):
                            if mask[ii, jj, kk] and arr[ii, jj, kk] < m:
                                m = arr[ii, jj, kk]
                out[i, j, k] = m
    return out


def test_matches_truncated_reference():
    rng = np.random.default_rng(0)
    arr = rng.integers(0, 50, size=(9, 7, 6)).astype(np.float32)
    out = min_filter_3d(arr, workers=1).to_array()
    # edge replication never introduces a value outside the truncated window
    ref = ndimage.minimum_filter(arr.astype(np.float64), size=3, mode="nearest")
    assert np.array_equal(out, ref)


def test_monotone_and_decreasing_when_reapplied():
    rng = np.random.default_rng(1)
    arr = rng.normal(size=(8, 8, 8))
    once = min_filter_3d(arr)
    twice = min_filter_3d(once)
    assert (once.to_array() <= arr).all()
    assert (twice.data <= once.data).all()


def test_masked_filter():
    rng = np.random.default_rng(2)
    arr = rng.integers(0, 20, size=(6, 5, 4)).astype(np.float64)
    mask = rng.random(arr.shape) > 0.3
    out = min_filter_3d(arr, mask=mask, workers=2).to_array()
    assert np.array_equal(out, _masked_min_reference(arr, mask))


def test_all_true_mask_equals_unmasked():
    rng = np.random.default_rng(3)
    arr = rng.random((5, 6, 7))
    a = min_filter_3d(arr, mask=np.ones(arr.shape, dtype=bool))
    b = min_filter_3d(arr)
    assert np.array_equal(a.data, b.data)


@pytest.mark.parametrize("workers", [1, 2, 3, 16])
def test_independent_of_worker_count(workers):
    rng = np.random.default_rng(4)
    arr = rng.random((10, 9, 11))
    ref = min_filter_3d(arr, workers=1)
    out = min_filter_3d(arr, workers=workers)
    assert out.data.tobytes() == ref.data.tobytes()


def test_output_is_fresh_grid():
    g = VoxelGrid.from_array(np.arange(27, dtype=np.float64).reshape(3, 3, 3))
    before = g.data.copy()
    out = min_filter_3d(g)
    assert out.data is not g.data
    assert np.array_equal(g.data, before)
    assert out.dims() == g.dims()


def test_mask_dims_must_match():
    with pytest.raises(DimensionMismatchError):
        min_filter_3d(np.zeros((3, 3, 3)), mask=np.ones((3, 3, 2), dtype=bool))


def test_progress_reported_per_slab():
    class Log(ProgressSink):
        def __init__(self):
            self.progress = []

        def report_progress(self, current, total):
            self.progress.append((current, total))

    log = Log()
    min_filter_3d(np.zeros((4, 4, 6)), workers=3, progress=log)
    assert len(log.progress) == 3
    assert log.progress[-1] == (6, 6)

from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from parallel import run_slabs, slab_ranges, split_axis
from progress import PrintProgress, ProgressSink
from voxel_grid import (
    DimensionMismatchError,
    MissingMaskError,
    VoxelGrid,
    as_grid,
    as_mask,
    check_same_dims,
    neighbor_offsets,
    require_mask,
)


def test_flat_layout_x_fastest():
    arr = np.arange(2 * 3 * 4).reshape(2, 3, 4)  # [x, y, z]
    g = VoxelGrid.from_array(arr)
    assert g.dims() == (2, 3, 4)
    W, H, _ = g.dims()
    for x in range(2):
        for y in range(3):
            for z in range(4):
                assert g.data[x + W * (y + H * z)] == arr[x, y, z]
                assert g.get(x, y, z) == arr[x, y, z]
    assert np.array_equal(g.to_array(), arr)


def test_two_dimensional_input_is_one_slice():
    g = VoxelGrid.from_array(np.ones((5, 4)))
    assert g.dims() == (5, 4, 1)


def test_set_and_bounds():
    g = VoxelGrid.zeros((3, 3, 2))
    g.set(2, 1, 1, 7.5)
    assert g.get(2, 1, 1) == 7.5
    assert g.to_array()[2, 1, 1] == 7.5
    for bad in [(-1, 0, 0), (3, 0, 0), (0, 3, 0), (0, 0, 2)]:
        with pytest.raises(IndexError):
            g.get(*bad)
        with pytest.raises(IndexError):
            g.set(*bad, 1.0)


def test_from_array_copies_input():
    arr = np.zeros((2, 2, 2))
    g = VoxelGrid.from_array(arr)
    g.set(0, 0, 0, 1.0)
    assert arr[0, 0, 0] == 0.0


def test_invalid_construction():
    with pytest.raises(ValueError):
        VoxelGrid(np.zeros(5), (2, 2, 2))
    with pytest.raises(ValueError):
        VoxelGrid.from_array(np.zeros(4))


def test_dimension_checks():
    a = as_grid(np.zeros((2, 3, 4)))
    b = as_grid(np.zeros((2, 3, 5)))
    assert check_same_dims(a=a, b=None, c=a) == (2, 3, 4)
    with pytest.raises(DimensionMismatchError):
        check_same_dims(a=a, b=b)
    with pytest.raises(DimensionMismatchError):
        as_mask(np.ones((2, 3, 5), dtype=bool), a.dims())
    assert as_mask(None, a.dims()) is None
    with pytest.raises(MissingMaskError):
        require_mask(None, "masked filter")


def test_neighbor_offsets_split_26_neighborhood():
    full = neighbor_offsets("full")
    back = neighbor_offsets("backward")
    fwd = neighbor_offsets("forward")
    assert full.shape == (26, 3)
    assert back.shape == (13, 3) and fwd.shape == (13, 3)
    # forward half is the mirror image of the backward half
    assert {tuple(o) for o in fwd} == {tuple(-o) for o in back}
    W, H = 5, 7
    flat = back[:, 0] + W * (back[:, 1] + H * back[:, 2])
    assert (flat < 0).all()
    full_flat = full[:, 0] + W * (full[:, 1] + H * full[:, 2])
    assert np.all(np.diff(full_flat) > 0)
    with pytest.raises(ValueError):
        neighbor_offsets("sideways")


def test_slab_ranges_cover_axis():
    assert split_axis(10, 3, 0) == (0, 4)
    assert split_axis(10, 3, 2) == (7, 10)
    ranges = slab_ranges(10, 3)
    assert ranges == [(0, 4), (4, 7), (7, 10)]
    # never more slabs than slices
    assert slab_ranges(2, 8) == [(0, 1), (1, 2)]
    with pytest.raises(ValueError):
        slab_ranges(4, 0)


def test_run_slabs_keeps_slab_order():
    out = run_slabs(lambda z0, z1: (z0, z1), 9, workers=4)
    assert out == slab_ranges(9, 4)


class _ProgressLog(ProgressSink):
    def __init__(self):
        self.progress = []

    def report_progress(self, current, total):
        self.progress.append((current, total))


@pytest.mark.parametrize("workers", [1, 3, 9])
def test_run_slabs_reports_finished_slices(workers):
    log = _ProgressLog()
    run_slabs(lambda z0, z1: None, 9, workers=workers, progress=log)
    assert len(log.progress) == len(slab_ranges(9, workers))
    done = [c for c, _t in log.progress]
    assert done == sorted(done) and done[-1] == 9
    assert all(t == 9 for _c, t in log.progress)


def test_null_sink_accepts_everything():
    s = ProgressSink()
    s.report_status("anything")
    s.report_progress(3, 0)


def test_print_progress(capsys):
    p = PrintProgress(prefix="ws ")
    p.report_status("Sorting voxels by value...")
    p.report_progress(0, 4)
    p.report_progress(1, 4)
    p.report_progress(4, 4)
    p.report_progress(1, 0)
    out = capsys.readouterr().out
    assert "Sorting voxels by value..." in out
    assert "100%" in out

from __future__ import annotations

import numpy as np
from numba import njit

from parallel import run_slabs
from progress import sink
from voxel_grid import VoxelGrid, as_grid, as_mask, mask_arg


@njit(nogil=True, cache=True)
def _min_filter_slab(data, mask, use_mask, W, H, D, z0, z1, out):
    """3x3x3 minimum over slices [z0, z1), truncated at the grid border.

    Reads slices z0-1 and z1 of `data` when they exist; writes only to
    slices [z0, z1) of `out`.
    """
    for z in range(z0, z1):
        for y in range(H):
            for x in range(W):
                c = x + W * (y + H * z)
                m = data[c]
                if use_mask and not mask[c]:
                    out[c] = m
                    continue
                for zz in range(max(z - 1, 0), min(z + 2, D)):
                    for yy in range(max(y - 1, 0), min(y + 2, H)):
                        base = W * (yy + H * zz)
                        for xx in range(max(x - 1, 0), min(x + 2, W)):
                            n = xx + base
                            if use_mask and not mask[n]:
                                continue
                            if data[n] < m:
                                m = data[n]
                out[c] = m


def min_filter_3d(grid, mask=None, workers=None, progress=None) -> VoxelGrid:
    """26-neighborhood (+self) minimum filter, optionally restricted to a mask.

    With a mask, a neighbor contributes only if the mask holds at both the
    center and the neighbor. Returns a new float64 grid.
    """
    g = as_grid(grid)
    W, H, D = g.shape
    mflat, use_mask = mask_arg(as_mask(mask, g.shape))
    data = np.ascontiguousarray(g.data, dtype=np.float64)
    out = np.empty_like(data)

    rep = sink(progress)
    rep.report_status("Minimum filter 3x3x3...")

    def kernel(z0, z1):
        _min_filter_slab(data, mflat, use_mask, W, H, D, z0, z1, out)

    run_slabs(kernel, D, workers, progress=rep)
    return VoxelGrid(out, g.shape)

from __future__ import annotations

import numpy as np
from numba import njit

from min_filter import min_filter_3d
from parallel import run_slabs
from progress import sink
from voxel_grid import VoxelGrid, as_grid, as_mask, check_same_dims, mask_arg


@njit(nogil=True, cache=True)
def _seed_slab(data, fmin, mask, use_mask, W, H, z0, z1, seeds, out):
    """Flag voxels that are positive, in the mask and not a local minimum.

    Also initializes `out` to 1 in-domain, 0 outside the mask.
    """
    for c in range(W * H * z0, W * H * z1):
        inside = (not use_mask) or mask[c]
        out[c] = 1 if inside else 0
        v = data[c]
        seeds[c] = inside and v > 0 and v != fmin[c]


@njit(nogil=True, cache=True)
def _clear_plateaus(data, mask, use_mask, W, H, D, seeds, out):
    """Breadth-first clearing of every equal-valued plateau touching a seed.

    Returns the number of cleared voxels.
    """
    n = W * H * D
    visited = np.zeros(n, dtype=np.bool_)
    queue = np.empty(n, dtype=np.int64)
    cleared = 0
    for s in range(n):
        if not seeds[s] or visited[s]:
            continue
        value = data[s]
        visited[s] = True
        out[s] = 0
        cleared += 1
        head = 0
        tail = 0
        queue[tail] = s
        tail += 1
        while head < tail:
            c = queue[head]
            head += 1
            z = c // (W * H)
            r = c - z * W * H
            y = r // W
            x = r - y * W
            for zz in range(max(z - 1, 0), min(z + 2, D)):
                for yy in range(max(y - 1, 0), min(y + 2, H)):
                    base = W * (yy + H * zz)
                    for xx in range(max(x - 1, 0), min(x + 2, W)):
                        nb = xx + base
                        if visited[nb] or data[nb] != value:
                            continue
                        if use_mask and not mask[nb]:
                            continue
                        visited[nb] = True
                        out[nb] = 0
                        cleared += 1
                        queue[tail] = nb
                        tail += 1
    return cleared


def detect_regional_minima(grid, mask=None, filtered=None, workers=None, progress=None) -> VoxelGrid:
    """Mark the voxels of every regional minimum with 1 (uint8 grid).

    A plateau of equal values survives only if none of its voxels has a
    strictly lower neighbor. Zero-valued voxels are never cleared, so they
    are always reported as minima. Voxels outside the mask are 0.
    """
    g = as_grid(grid)
    W, H, D = g.shape
    rep = sink(progress)
    mflat = as_mask(mask, g.shape)
    if filtered is None:
        f = min_filter_3d(g, mask=mask, workers=workers, progress=progress)
    else:
        f = as_grid(filtered)
        check_same_dims(grid=g, filtered=f)
    mflat, use_mask = mask_arg(mflat)

    data = np.ascontiguousarray(g.data, dtype=np.float64)
    fmin = np.ascontiguousarray(f.data, dtype=np.float64)
    seeds = np.empty(data.size, dtype=np.bool_)
    out = np.empty(data.size, dtype=np.uint8)

    rep.report_status("Finding regional minima...")

    def kernel(z0, z1):
        _seed_slab(data, fmin, mflat, use_mask, W, H, z0, z1, seeds, out)

    run_slabs(kernel, D, workers, progress=rep)
    cleared = _clear_plateaus(data, mflat, use_mask, W, H, D, seeds, out)
    rep.report_status(f"Regional minima: {int(out.sum(dtype=np.int64))} voxels kept, {cleared} cleared")
    return VoxelGrid(out, g.shape)

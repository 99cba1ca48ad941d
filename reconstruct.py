"""
reconstruct.py

Grayscale geodesic reconstruction by dilation of a marker under a mask.

Two methods produce the same fixpoint:

- "hybrid": one forward and one backward raster pass followed by FIFO
  propagation (Vincent, "Morphological grayscale reconstruction", CVPR 1992).
- "queue": clamp the marker under the mask, enqueue every voxel and
  propagate (Najman & Talbot, "Mathematical morphology").

The marker is expected to lie below the mask everywhere. This is not
checked; voxels where it does not hold are clamped down to the mask.
"""

from __future__ import annotations

import numpy as np
from numba import njit

from progress import sink
from voxel_grid import (
    ConvergenceError,
    VoxelGrid,
    as_grid,
    check_same_dims,
    neighbor_offsets,
)


@njit(cache=True)
def _forward_pass(out, g, W, H, D, offs):
    for z in range(D):
        for y in range(H):
            for x in range(W):
                c = x + W * (y + H * z)
                m = out[c]
                for t in range(offs.shape[0]):
                    xx = x + offs[t, 0]
                    yy = y + offs[t, 1]
                    zz = z + offs[t, 2]
                    if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
                        continue
                    v = out[xx + W * (yy + H * zz)]
                    if v > m:
                        m = v
                out[c] = min(m, g[c])


@njit(cache=True)
def _backward_pass(out, g, W, H, D, offs, queue, inq):
    """Backward raster update; enqueue voxels that can still raise a forward neighbor.

    Returns the queue tail.
    """
    tail = 0
    for z in range(D - 1, -1, -1):
        for y in range(H - 1, -1, -1):
            for x in range(W - 1, -1, -1):
                c = x + W * (y + H * z)
                m = out[c]
                for t in range(offs.shape[0]):
                    xx = x + offs[t, 0]
                    yy = y + offs[t, 1]
                    zz = z + offs[t, 2]
                    if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
                        continue
                    v = out[xx + W * (yy + H * zz)]
                    if v > m:
                        m = v
                m = min(m, g[c])
                out[c] = m
                for t in range(offs.shape[0]):
                    xx = x + offs[t, 0]
                    yy = y + offs[t, 1]
                    zz = z + offs[t, 2]
                    if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
                        continue
                    n = xx + W * (yy + H * zz)
                    if out[n] < m and out[n] < g[n]:
                        queue[tail] = c
                        inq[c] = True
                        tail += 1
                        break
    return tail


@njit(cache=True)
def _propagate(out, g, W, H, D, offs, queue, inq, count, max_pops):
    """FIFO propagation over a ring buffer holding each voxel at most once.

    Returns the number of pops, or -1 when max_pops is exceeded.
    """
    n = queue.shape[0]
    head = 0
    tail = count % n
    pops = 0
    while count > 0:
        if pops >= max_pops:
            return -1
        c = queue[head]
        head = (head + 1) % n
        count -= 1
        inq[c] = False
        pops += 1

        z = c // (W * H)
        r = c - z * W * H
        y = r // W
        x = r - y * W
        oc = out[c]
        for t in range(offs.shape[0]):
            xx = x + offs[t, 0]
            yy = y + offs[t, 1]
            zz = z + offs[t, 2]
            if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
                continue
            nb = xx + W * (yy + H * zz)
            on = out[nb]
            gn = g[nb]
            if on < oc and on != gn:
                out[nb] = min(oc, gn)
                if not inq[nb]:
                    inq[nb] = True
                    queue[tail] = nb
                    tail = (tail + 1) % n
                    count += 1
    return pops


def _iteration_bound(marker: np.ndarray, mask: np.ndarray) -> int:
    # every raise lands on an existing marker or mask value
    distinct = np.unique(np.concatenate([marker, mask])).size
    return marker.size * (distinct + 1)


def reconstruct_by_dilation(marker, mask, method: str = "hybrid", max_iterations=None,
                            progress=None) -> VoxelGrid:
    """Geodesic reconstruction by dilation of `marker` under `mask` (26-connectivity).

    Returns a new float64 grid. Raises DimensionMismatchError if the grids
    differ in dims, ValueError on non-finite input or an unknown method and
    ConvergenceError if propagation exceeds `max_iterations` queue pops
    (default: voxels * (distinct values + 1), which a finite input never
    reaches).
    """
    if method not in ("hybrid", "queue"):
        raise ValueError("method must be 'hybrid' or 'queue'")
    m = as_grid(marker)
    gg = as_grid(mask)
    W, H, D = check_same_dims(marker=m, mask=gg)

    g = np.ascontiguousarray(gg.data, dtype=np.float64)
    out = np.array(m.data, dtype=np.float64)
    if not (np.isfinite(out).all() and np.isfinite(g).all()):
        raise ValueError("marker and mask must be finite")

    if max_iterations is None:
        max_iterations = _iteration_bound(out, g)

    rep = sink(progress)
    n = out.size
    queue = np.empty(n, dtype=np.int64)
    inq = np.zeros(n, dtype=np.bool_)

    if method == "hybrid":
        rep.report_status("Forward pass...")
        _forward_pass(out, g, W, H, D, neighbor_offsets("backward"))
        rep.report_status("Backward pass...")
        count = _backward_pass(out, g, W, H, D, neighbor_offsets("forward"), queue, inq)
    else:
        np.minimum(out, g, out=out)
        queue[:] = np.arange(n, dtype=np.int64)
        inq[:] = True
        count = n

    rep.report_status(f"Propagating from {count} queued voxels...")
    pops = _propagate(out, g, W, H, D, neighbor_offsets("full"), queue, inq, count, int(max_iterations))
    if pops < 0:
        raise ConvergenceError(
            f"geodesic reconstruction did not converge within {max_iterations} queue pops"
        )
    rep.report_progress(pops, pops)
    return VoxelGrid(out, (W, H, D))

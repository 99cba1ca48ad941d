"""
watershed.py

Seeded watershed flooding on a 3-D intensity volume (26-connectivity).

A voxel joins a basin when one of its neighbors already carries a label and
has an intensity lower than or equal to its own. When several labeled
neighbors qualify, the one with the lowest intensity wins, and among equal
intensities the one with the lowest flat index. Voxels that cannot be reached
from any seed along a path of non-decreasing intensity keep label 0.

Two flooding strategies produce identical labels:

- "sweep": repeated passes over the sorted pending list, labeling in place,
  until a pass resolves nothing. Its cost grows with the number of passes.
- "priority": a min-heap keyed by (sweep, sort rank) that visits each voxel
  once, at the point where the sweeps would have labeled it. O(n log n).
"""

from __future__ import annotations

import heapq

import numpy as np
from numba import njit

from parallel import run_slabs
from progress import sink
from voxel_grid import (
    VOXEL_RECORD_DTYPE,
    ConvergenceError,
    VoxelGrid,
    as_grid,
    as_mask,
    check_same_dims,
    mask_arg,
    neighbor_offsets,
)


@njit(nogil=True, cache=True)
def _extract_slab(mask, use_mask, W, H, z0, z1):
    """Flat indices of the in-domain voxels of slices [z0, z1), in scan order."""
    start = W * H * z0
    stop = W * H * z1
    k = stop - start
    if use_mask:
        k = 0
        for c in range(start, stop):
            if mask[c]:
                k += 1
    idx = np.empty(k, dtype=np.int64)
    k = 0
    for c in range(start, stop):
        if (not use_mask) or mask[c]:
            idx[k] = c
            k += 1
    return idx


def _sorted_domain(data, mflat, use_mask, W, H, D, workers):
    """In-domain flat indices sorted by intensity, ties in scan order."""
    parts = run_slabs(lambda z0, z1: _extract_slab(mflat, use_mask, W, H, z0, z1), D, workers)
    idx = np.concatenate(parts) if len(parts) > 1 else parts[0]
    order = np.argsort(data[idx], kind="stable")
    return idx[order]


def sorted_voxel_records(intensity, mask=None, workers=None) -> np.ndarray:
    """Return the in-domain voxels as (x, y, z, value) records sorted by value.

    Ties keep scan order (z outermost, x fastest).
    """
    g = as_grid(intensity)
    W, H, D = g.shape
    mflat, use_mask = mask_arg(as_mask(mask, g.shape))
    data = np.ascontiguousarray(g.data, dtype=np.float64)
    idx = _sorted_domain(data, mflat, use_mask, W, H, D, workers)
    rec = np.empty(idx.size, dtype=VOXEL_RECORD_DTYPE)
    z, r = np.divmod(idx, W * H)
    y, x = np.divmod(r, W)
    rec["x"] = x
    rec["y"] = y
    rec["z"] = z
    rec["value"] = data[idx]
    return rec


@njit(inline='always')
def _best_neighbor(c, data, labels, W, H, D, offs):
    """Labeled neighbor of c with the lowest intensity <= data[c], or -1."""
    z = c // (W * H)
    r = c - z * W * H
    y = r // W
    x = r - y * W
    v = data[c]
    best = -1
    best_v = v
    for t in range(offs.shape[0]):
        xx = x + offs[t, 0]
        yy = y + offs[t, 1]
        zz = z + offs[t, 2]
        if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
            continue
        nb = xx + W * (yy + H * zz)
        if labels[nb] == 0:
            continue
        nv = data[nb]
        # offsets ascend in flat index, so strict < keeps the lowest index on ties
        if nv <= v and (best < 0 or nv < best_v):
            best = nb
            best_v = nv
    return best


@njit(cache=True)
def _pending_voxels(order, labels):
    """Unlabeled in-domain voxels in sort order."""
    count = 0
    for i in range(order.shape[0]):
        if labels[order[i]] == 0:
            count += 1
    pending = np.empty(count, dtype=np.int64)
    count = 0
    for i in range(order.shape[0]):
        if labels[order[i]] == 0:
            pending[count] = order[i]
            count += 1
    return pending


@njit(nogil=True, cache=True)
def _sweep_once(pending, count, data, labels, W, H, D, offs):
    """One pass over pending[:count] with in-place labeling.

    Still unlabeled voxels are packed to the front; returns their number.
    """
    keep = 0
    for i in range(count):
        c = pending[i]
        b = _best_neighbor(c, data, labels, W, H, D, offs)
        if b >= 0:
            labels[c] = labels[b]
        else:
            pending[keep] = c
            keep += 1
    return keep


@njit(inline='always')
def _push_eligible(heap, best, c, k, r, n, rank, data, labels, W, H, D, offs):
    """Queue the neighbors that c, labeled at (sweep k, rank r), makes eligible."""
    z = c // (W * H)
    rr = c - z * W * H
    y = rr // W
    x = rr - y * W
    for t in range(offs.shape[0]):
        xx = x + offs[t, 0]
        yy = y + offs[t, 1]
        zz = z + offs[t, 2]
        if xx < 0 or yy < 0 or zz < 0 or xx >= W or yy >= H or zz >= D:
            continue
        nb = xx + W * (yy + H * zz)
        if rank[nb] < 0 or labels[nb] != 0 or data[nb] < data[c]:
            continue
        # later in the sort order: same sweep; earlier: next sweep
        kk = k if rank[nb] > r else k + 1
        key = kk * n + rank[nb]
        if best[nb] < 0 or key < best[nb]:
            best[nb] = key
            heapq.heappush(heap, key)


@njit(cache=True)
def _flood_priority(order, rank, data, labels, W, H, D, offs):
    """Replay the sweep flooding with a min-heap keyed by (sweep, rank).

    A voxel is popped at the first sweep in which it has a qualifying
    labeled neighbor, and pops follow the sweep visiting order, so the
    labels equal those of the sweep method. Seeds count as labeled before
    sweep 1. Returns (labeled voxels, sweeps).
    """
    n = order.shape[0]
    best = np.full(labels.shape[0], -1, dtype=np.int64)
    heap = [np.int64(0)]
    heap.pop()

    for i in range(n):
        c = order[i]
        if labels[c] != 0:
            _push_eligible(heap, best, c, 0, n, n, rank, data, labels, W, H, D, offs)

    flooded = 0
    sweeps = 0
    while len(heap) > 0:
        key = heapq.heappop(heap)
        k = key // n
        r = key - k * n
        c = order[r]
        if labels[c] != 0:
            continue
        b = _best_neighbor(c, data, labels, W, H, D, offs)
        labels[c] = labels[b]
        flooded += 1
        sweeps = k
        _push_eligible(heap, best, c, k, r, n, rank, data, labels, W, H, D, offs)
    return flooded, sweeps


def watershed(intensity, seeds, mask=None, method: str = "priority", workers=None,
              max_sweeps=None, progress=None) -> VoxelGrid:
    """Flood `intensity` from the labeled voxels of `seeds`.

    - seeds: nonnegative integer grid, nonzero = pre-labeled basin.
    - mask: optional domain; voxels outside it stay 0 and block flooding.
    - method: "priority" or "sweep".
    - max_sweeps: sweep-method guard (default: pending voxels + 1).

    Returns an int32 label grid.
    """
    if method not in ("priority", "sweep"):
        raise ValueError("method must be 'priority' or 'sweep'")
    g = as_grid(intensity)
    s = as_grid(seeds)
    W, H, D = check_same_dims(intensity=g, seeds=s)
    mflat, use_mask = mask_arg(as_mask(mask, g.shape))

    seed_vals = np.asarray(s.data)
    if seed_vals.size and seed_vals.min() < 0:
        raise ValueError("seed labels must be nonnegative")
    data = np.ascontiguousarray(g.data, dtype=np.float64)

    rep = sink(progress)
    rep.report_status("Extracting voxel values...")
    order = _sorted_domain(data, mflat, use_mask, W, H, D, workers)
    if not np.isfinite(data[order]).all():
        raise ValueError("intensity must be finite inside the domain")

    labels = np.zeros(data.size, dtype=np.int32)
    labels[order] = seed_vals[order].astype(np.int32)
    offs = neighbor_offsets("full")

    if method == "sweep":
        pending = _pending_voxels(order, labels)
        count = total = pending.shape[0]
        if max_sweeps is None:
            max_sweeps = count + 1
        rep.report_status(f"Flooding {order.size} voxels by sweeps...")
        sweeps = 0
        while count > 0:
            if sweeps >= max_sweeps:
                raise ConvergenceError(f"watershed flooding did not converge within {max_sweeps} sweeps")
            sweeps += 1
            keep = _sweep_once(pending, count, data, labels, W, H, D, offs)
            rep.report_progress(total - keep, total)
            if keep == count:
                break
            count = keep
        rep.report_status(f"Flooding took {sweeps} sweeps")
    else:
        rank = np.full(data.size, -1, dtype=np.int64)
        rank[order] = np.arange(order.size, dtype=np.int64)
        rep.report_status(f"Flooding {order.size} voxels by priority...")
        flooded, sweeps = _flood_priority(order, rank, data, labels, W, H, D, offs)
        rep.report_progress(order.size, order.size)
        rep.report_status(f"Flooded {flooded} voxels in {sweeps} sweeps")
    return VoxelGrid(labels, (W, H, D))

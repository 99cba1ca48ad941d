from __future__ import annotations

from typing import Tuple

import numpy as np
from numba import njit

from parallel import run_slabs, slab_ranges
from progress import sink
from voxel_grid import VoxelGrid, as_grid, neighbor_offsets


@njit(inline='always')
def uf_find(parent, x):
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@njit(inline='always')
def uf_union(parent, a, b):
    """Link the larger root beneath the smaller one and return the survivor."""
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra < rb:
        parent[rb] = ra
        return ra
    if rb < ra:
        parent[ra] = rb
        return rb
    return ra


@njit(nogil=True, cache=True)
def resolve_table(parent, count):
    """Turn an equivalence forest over labels 1..count-1 into a dense lookup table.

    Roots are numbered 1..K in ascending order; every other label maps to the
    number of its root. Relies on parent[v] <= v. Returns K.
    """
    k = 0
    parent[0] = 0
    for v in range(1, count):
        if parent[v] == v:
            k += 1
            parent[v] = k
        else:
            # parent[v] < v has already been rewritten to its final id
            parent[v] = parent[parent[v]]
    return k


def _neighbor_offsets(connectivity: int) -> np.ndarray:
    """Backward half-neighborhood (dx, dy, dz) for 6, 18 or 26 connectivity.

    6 keeps the face neighbors, 18 adds the edge neighbors, 26 also the corners.
    """
    if connectivity not in (6, 18, 26):
        raise ValueError("connectivity must be 6, 18, or 26")
    offs = neighbor_offsets("backward")
    dist = np.abs(offs).sum(axis=1)
    return np.ascontiguousarray(offs[dist <= {6: 1, 18: 2, 26: 3}[connectivity]])


@njit(nogil=True, cache=True)
def _ccl_slab(fg, W, H, z0, z1, neigh, labels):
    """Two-pass union-find CCL of slices [z0, z1), ignoring everything below z0.

    Writes labels compacted to 1..K in first-appearance order and returns K.
    """
    n_slab = W * H * (z1 - z0)
    parent = np.arange(n_slab + 1, dtype=np.int64)
    next_label = 1

    # First pass: assign and union
    for z in range(z0, z1):
        for y in range(H):
            for x in range(W):
                c = x + W * (y + H * z)
                if not fg[c]:
                    continue
                # smallest root among the labeled predecessors
                lbl = 0
                for t in range(neigh.shape[0]):
                    xx = x + neigh[t, 0]
                    yy = y + neigh[t, 1]
                    zz = z + neigh[t, 2]
                    if xx < 0 or yy < 0 or zz < z0 or xx >= W or yy >= H:
                        continue
                    nb = labels[xx + W * (yy + H * zz)]
                    if nb != 0:
                        r = uf_find(parent, np.int64(nb))
                        if lbl == 0 or r < lbl:
                            lbl = r
                if lbl == 0:
                    lbl = next_label
                    next_label += 1
                else:
                    for t in range(neigh.shape[0]):
                        xx = x + neigh[t, 0]
                        yy = y + neigh[t, 1]
                        zz = z + neigh[t, 2]
                        if xx < 0 or yy < 0 or zz < z0 or xx >= W or yy >= H:
                            continue
                        nb = labels[xx + W * (yy + H * zz)]
                        if nb != 0 and nb != lbl:
                            uf_union(parent, lbl, np.int64(nb))
                labels[c] = lbl

    k = resolve_table(parent, next_label)

    # Second pass: rewrite through the compacted table
    for c in range(W * H * z0, W * H * z1):
        l = labels[c]
        if l != 0:
            labels[c] = parent[l]
    return k


@njit(nogil=True, cache=True)
def _offset_slab(labels, start, stop, base):
    for c in range(start, stop):
        if labels[c] != 0:
            labels[c] += base


@njit(cache=True)
def _merge_slab_faces(labels, W, H, faces, neigh, parent):
    """Union labels that touch across the z-plane pairs (z-1, z) for z in faces."""
    for f in range(faces.shape[0]):
        z = faces[f]
        for y in range(H):
            for x in range(W):
                a = labels[x + W * (y + H * z)]
                if a == 0:
                    continue
                for t in range(neigh.shape[0]):
                    if neigh[t, 2] != -1:
                        continue
                    xx = x + neigh[t, 0]
                    yy = y + neigh[t, 1]
                    if xx < 0 or yy < 0 or xx >= W or yy >= H:
                        continue
                    b = labels[xx + W * (yy + H * (z - 1))]
                    if b != 0 and b != a:
                        uf_union(parent, np.int64(a), np.int64(b))


@njit(nogil=True, cache=True)
def _relabel_slab(labels, start, stop, lut):
    for c in range(start, stop):
        l = labels[c]
        if l != 0:
            labels[c] = lut[l]


def label_connected_components(grid, connectivity: int = 26, workers=None,
                               progress=None) -> Tuple[VoxelGrid, int]:
    """Label the nonzero voxels of a 3-D volume.

    - grid: VoxelGrid or [x, y, z] array; nonzero voxels are foreground.
    - connectivity: 6, 18, or 26.
    - workers: number of z-slabs labeled concurrently (default: CPU count).

    Returns (labels, N): a uint32 grid with background 0 and components
    numbered 1..N in order of their first voxel in raster order (z
    outermost, x fastest). The numbering does not depend on `workers`.
    """
    neigh = _neighbor_offsets(connectivity)
    g = as_grid(grid)
    W, H, D = g.shape
    plane = W * H
    fg = np.ascontiguousarray(g.data != 0)
    labels = np.zeros(fg.size, dtype=np.uint32)

    rep = sink(progress)
    rep.report_status("Calculating connected components...")

    # Pass 1: per-slab labeling with local compaction
    ranges = slab_ranges(D, workers)
    counts = run_slabs(lambda z0, z1: _ccl_slab(fg, W, H, z0, z1, neigh, labels), D, workers,
                       progress=rep)
    bases = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
    total_labels = int(bases[-1])
    if total_labels == 0:
        return VoxelGrid(labels, g.shape), 0

    if len(ranges) > 1:
        base_of = {z0: int(b) for (z0, _z1), b in zip(ranges, bases[:-1])}
        run_slabs(lambda z0, z1: _offset_slab(labels, plane * z0, plane * z1,
                                              np.uint32(base_of[z0])), D, workers)

        # Global merge across slab faces using a DSU of size total_labels+1
        parent = np.arange(total_labels + 1, dtype=np.int64)
        faces = np.asarray([z0 for (z0, _z1) in ranges[1:]], dtype=np.int64)
        _merge_slab_faces(labels, W, H, faces, neigh, parent)
        total_labels = resolve_table(parent, total_labels + 1)
        lut = parent.astype(np.uint32)
        run_slabs(lambda z0, z1: _relabel_slab(labels, plane * z0, plane * z1, lut), D, workers)

    rep.report_status(f"Connected components: {total_labels} labels")
    return VoxelGrid(labels, g.shape), total_labels

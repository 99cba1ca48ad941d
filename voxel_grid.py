"""
voxel_grid.py

Dense 3-D grid stored as a single flat arena.

- Dimensions are (W, H, D) for x, y, z.
- The flat index of (x, y, z) is x + W*(y + H*z): x fastest, z outermost,
  which is also the raster order every scan in this package uses.
- Arrays handed in by callers are indexed arr[x, y, z]. 2-D arrays are
  treated as a single slice (D = 1).
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np


Dims3D = Tuple[int, int, int]


class DimensionMismatchError(ValueError):
    pass


class MissingMaskError(ValueError):
    pass


class ConvergenceError(RuntimeError):
    pass


# (x, y, z, value) records, ordered by value when sorted
VOXEL_RECORD_DTYPE = np.dtype([
    ("x", np.int32),
    ("y", np.int32),
    ("z", np.int32),
    ("value", np.float64),
])


class VoxelGrid:
    __slots__ = ("data", "shape")

    def __init__(self, data: np.ndarray, shape: Dims3D):
        W, H, D = (int(s) for s in shape)
        if W <= 0 or H <= 0 or D <= 0:
            raise ValueError(f"grid dimensions must be positive, got {(W, H, D)}")
        data = np.asarray(data)
        if data.ndim != 1 or data.size != W * H * D:
            raise ValueError(f"flat data of size {W * H * D} expected, got shape {data.shape}")
        self.data = data
        self.shape: Dims3D = (W, H, D)

    @classmethod
    def zeros(cls, shape: Dims3D, dtype=np.float64) -> "VoxelGrid":
        W, H, D = shape
        return cls(np.zeros(W * H * D, dtype=dtype), shape)

    @classmethod
    def from_array(cls, arr: np.ndarray, dtype=None) -> "VoxelGrid":
        a = np.asarray(arr)
        if a.ndim == 2:
            a = a[:, :, None]
        if a.ndim != 3:
            raise ValueError(f"expected a 2-D or 3-D array, got ndim={a.ndim}")
        # [x, y, z] -> C-ordered [z, y, x] so that x is fastest in memory
        flat = np.ascontiguousarray(a.transpose(2, 1, 0), dtype=dtype).ravel()
        return cls(flat, a.shape)

    def to_array(self) -> np.ndarray:
        """Return an [x, y, z]-indexed view of the arena."""
        W, H, D = self.shape
        return self.data.reshape(D, H, W).transpose(2, 1, 0)

    def dims(self) -> Dims3D:
        return self.shape

    @property
    def size(self) -> int:
        return self.data.size

    @property
    def dtype(self):
        return self.data.dtype

    def index(self, x: int, y: int, z: int) -> int:
        W, H, D = self.shape
        if not (0 <= x < W and 0 <= y < H and 0 <= z < D):
            raise IndexError(f"voxel {(x, y, z)} outside grid of dims {self.shape}")
        return x + W * (y + H * z)

    def get(self, x: int, y: int, z: int):
        return self.data[self.index(x, y, z)].item()

    def set(self, x: int, y: int, z: int, value) -> None:
        self.data[self.index(x, y, z)] = value

    def copy(self) -> "VoxelGrid":
        return VoxelGrid(self.data.copy(), self.shape)

    def astype(self, dtype) -> "VoxelGrid":
        return VoxelGrid(self.data.astype(dtype), self.shape)

    def __repr__(self) -> str:
        return f"VoxelGrid(dims={self.shape}, dtype={self.data.dtype})"


def as_grid(obj, dtype=None) -> VoxelGrid:
    """Coerce a VoxelGrid or an [x, y, z] array into a VoxelGrid.

    A VoxelGrid is returned as is unless a dtype conversion is requested;
    callers never write into the result.
    """
    if isinstance(obj, VoxelGrid):
        if dtype is not None and obj.data.dtype != np.dtype(dtype):
            return obj.astype(dtype)
        return obj
    return VoxelGrid.from_array(obj, dtype=dtype)


def check_same_dims(**grids: Optional[VoxelGrid]) -> Dims3D:
    """Fail fast unless every non-None grid shares the same dims."""
    dims = None
    first = None
    for name, g in grids.items():
        if g is None:
            continue
        if dims is None:
            dims, first = g.shape, name
        elif g.shape != dims:
            raise DimensionMismatchError(
                f"'{name}' has dims {g.shape} but '{first}' has dims {dims}"
            )
    if dims is None:
        raise ValueError("no grid given")
    return dims


def as_mask(mask, dims: Dims3D) -> Optional[np.ndarray]:
    """Return the flat boolean mask arena, or None when no mask is given."""
    if mask is None:
        return None
    m = as_grid(mask)
    if m.shape != dims:
        raise DimensionMismatchError(f"mask has dims {m.shape} but grid has dims {dims}")
    return np.ascontiguousarray(m.data != 0)


def require_mask(mask, what: str):
    if mask is None:
        raise MissingMaskError(f"{what} requires a mask but none was given")
    return mask


def mask_arg(mask_flat: Optional[np.ndarray]) -> Tuple[np.ndarray, bool]:
    """Kernel arguments for an optional mask: (array, use_mask)."""
    if mask_flat is None:
        return np.ones(1, dtype=np.bool_), False
    return mask_flat, True


def neighbor_offsets(half: str = "full") -> np.ndarray:
    """Return (dx, dy, dz) offsets of the 26-neighborhood, shaped (M, 3).

    half="full" gives all 26 neighbors, "backward" the 13 that precede the
    center in raster order and "forward" the 13 that follow it. Offsets are
    listed in ascending flat-index order.
    """
    if half not in ("full", "backward", "forward"):
        raise ValueError("half must be 'full', 'backward' or 'forward'")
    offs = []
    for dz in (-1, 0, 1):
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0 and dz == 0:
                    continue
                # sign of the flat displacement dx + W*(dy + H*dz) for W, H > 1
                if dz != 0:
                    before = dz < 0
                elif dy != 0:
                    before = dy < 0
                else:
                    before = dx < 0
                if half == "full" or (half == "backward") == before:
                    offs.append((dx, dy, dz))
    return np.asarray(offs, dtype=np.int64)

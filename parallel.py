from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


def split_axis(n: int, p: int, coord: int) -> Tuple[int, int]:
    base = n // p
    rem = n % p
    start = coord * base + min(coord, rem)
    length = base + (1 if coord < rem else 0)
    return start, start + length


def slab_ranges(depth: int, workers: Optional[int] = None) -> List[Tuple[int, int]]:
    """Split [0, depth) into at most `workers` contiguous, non-empty z-ranges."""
    if workers is None:
        workers = default_workers()
    workers = int(workers)
    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")
    p = min(workers, depth)
    return [split_axis(depth, p, c) for c in range(p)]


def run_slabs(kernel: Callable, depth: int, workers: Optional[int] = None,
              progress=None) -> list:
    """Run kernel(z0, z1) over every slab and return results in slab order.

    Returns only after every slab has finished, so consecutive calls are
    barrier separated. Kernels are expected to release the GIL (numba
    nogil) and to write only inside their own slab. If `progress` is given,
    it receives report_progress(finished slices, depth) as slabs complete.
    """
    ranges = slab_ranges(depth, workers)
    if len(ranges) == 1:
        z0, z1 = ranges[0]
        result = kernel(z0, z1)
        if progress is not None:
            progress.report_progress(depth, depth)
        return [result]
    with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
        futures = {pool.submit(kernel, z0, z1): (z0, z1) for (z0, z1) in ranges}
        done = 0
        for f in as_completed(futures):
            f.result()
            z0, z1 = futures[f]
            done += z1 - z0
            if progress is not None:
                progress.report_progress(done, depth)
        return [f.result() for f in futures]

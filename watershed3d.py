from __future__ import annotations

import argparse
import json
import os
import subprocess
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

import numpy as np
import yaml

from local_label import label_connected_components
from min_filter import min_filter_3d
from parallel import default_workers
from progress import PrintProgress, sink
from reconstruct import reconstruct_by_dilation
from regional_minima import detect_regional_minima
from voxel_grid import VoxelGrid, as_grid, check_same_dims, require_mask
from watershed import watershed


@dataclass
class RunConfig:
    """Configuration for a command line run.

    - operation: "watershed" (minima-seeded segmentation) or "reconstruct"
      (geodesic reconstruction of marker_path under mask_path).
    - input_path: .npy/.npz volume indexed [x, y, z] (watershed intensity).
    - mask_path: optional boolean domain (watershed) or reconstruction mask.
    - use_mask: require mask_path for the watershed operation.
    - seed_image_path: volume the regional minima are detected on
      (default: the input itself).
    - marker_path: marker volume for the reconstruct operation.
    - connectivity: labeling connectivity of the minima (6, 18 or 26).
    - flooding: "priority" or "sweep".
    - reconstruction_method: "hybrid" or "queue".
    - workers: slab worker count (None: CPU count).
    """

    input_path: Optional[str] = None
    operation: str = "watershed"
    mask_path: Optional[str] = None
    use_mask: bool = False
    seed_image_path: Optional[str] = None
    marker_path: Optional[str] = None
    connectivity: int = 26
    flooding: str = "priority"
    reconstruction_method: str = "hybrid"
    workers: Optional[int] = None
    max_sweeps: Optional[int] = None
    max_iterations: Optional[int] = None
    output_dir: str = "./watershed_out"
    verbose: bool = True
    extra: Dict = field(default_factory=dict)

    def validate(self) -> None:
        if self.operation not in ("watershed", "reconstruct"):
            raise ValueError("operation must be 'watershed' or 'reconstruct'")
        if self.operation == "watershed" and not self.input_path:
            raise ValueError("input_path is required for the watershed operation")
        if self.operation == "reconstruct":
            if not self.marker_path:
                raise ValueError("marker_path is required for the reconstruct operation")
            require_mask(self.mask_path, "geodesic reconstruction")
        if self.use_mask:
            require_mask(self.mask_path, "use_mask")
        if self.connectivity not in (6, 18, 26):
            raise ValueError("connectivity must be 6, 18, or 26")
        if self.flooding not in ("priority", "sweep"):
            raise ValueError("flooding must be 'priority' or 'sweep'")
        if self.reconstruction_method not in ("hybrid", "queue"):
            raise ValueError("reconstruction_method must be 'hybrid' or 'queue'")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be >= 1")


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def build_config(cfg: dict) -> RunConfig:
    known = {k for k in RunConfig.__dataclass_fields__ if k != "extra"}
    kwargs = {k: v for k, v in cfg.items() if k in known}
    extra = {k: v for k, v in cfg.items() if k not in known}
    if extra:
        print(f"WARNING: ignoring unknown config keys: {sorted(extra)}")
    for key in ("connectivity", "workers", "max_sweeps", "max_iterations"):
        if kwargs.get(key) is not None:
            kwargs[key] = int(kwargs[key])
    for key in ("use_mask", "verbose"):
        if key in kwargs:
            kwargs[key] = bool(kwargs[key])
    rc = RunConfig(extra=extra, **kwargs)
    rc.validate()
    return rc


def load_volume(path: str, key: Optional[str] = None) -> np.ndarray:
    """Load an [x, y, z] volume from .npy or from one array of an .npz."""
    if path.endswith(".npz"):
        with np.load(path) as d:
            name = key if key is not None else d.files[0]
            return d[name]
    return np.load(path)


@dataclass
class SegmentationResult:
    labels: VoxelGrid
    minima: VoxelGrid
    seeds: VoxelGrid
    num_seeds: int
    times: Dict[str, float]


def segment(intensity, mask=None, seed_image=None, connectivity: int = 26,
            flooding: str = "priority", workers=None, max_sweeps=None,
            progress=None) -> SegmentationResult:
    """Minima-seeded watershed: min filter, regional minima, labeling, flooding.

    Regional minima are detected on `seed_image` when given (e.g. a smoothed
    copy of the gradient), otherwise on `intensity`. Both share the mask.
    """
    g = as_grid(intensity)
    src = g if seed_image is None else as_grid(seed_image)
    m = None if mask is None else as_grid(mask)
    check_same_dims(intensity=g, seed_image=src, mask=m)
    rep = sink(progress)

    t0 = time.time()
    rep.report_status("-> Running minimum filter...")
    filtered = min_filter_3d(src, mask=m, workers=workers, progress=progress)
    t_filter = time.time()

    rep.report_status("-> Running regional minima filter...")
    minima = detect_regional_minima(src, mask=m, filtered=filtered, workers=workers, progress=progress)
    t_minima = time.time()

    rep.report_status("-> Running connected components...")
    seeds, n_seeds = label_connected_components(minima, connectivity=connectivity,
                                                workers=workers, progress=progress)
    t_label = time.time()

    rep.report_status("-> Running watershed...")
    labels = watershed(g, seeds, mask=m, method=flooding, workers=workers,
                       max_sweeps=max_sweeps, progress=progress)
    t_done = time.time()

    times = {
        "filter": t_filter - t0,
        "minima": t_minima - t_filter,
        "label": t_label - t_minima,
        "watershed": t_done - t_label,
    }
    return SegmentationResult(labels=labels, minima=minima, seeds=seeds,
                              num_seeds=n_seeds, times=times)


def reconstruct(marker, mask, method: str = "hybrid", max_iterations=None,
                progress=None) -> VoxelGrid:
    require_mask(mask, "geodesic reconstruction")
    return reconstruct_by_dilation(marker, mask, method=method,
                                   max_iterations=max_iterations, progress=progress)


def _git_rev() -> str:
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"],
                                       stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def run(rc: RunConfig) -> str:
    """Execute one configured run and return the path of the written .npz."""
    progress = PrintProgress() if rc.verbose else None
    os.makedirs(rc.output_dir, exist_ok=True)

    t0 = time.time()
    mask = load_volume(rc.mask_path) if rc.mask_path else None

    if rc.operation == "reconstruct":
        marker = load_volume(rc.marker_path)
        t_load = time.time()
        out = reconstruct(marker, mask, method=rc.reconstruction_method,
                          max_iterations=rc.max_iterations, progress=progress)
        t_done = time.time()
        payload = {"reconstruction": out.to_array()}
        times = {"load": t_load - t0, "reconstruct": t_done - t_load}
        K = None
    else:
        intensity = load_volume(rc.input_path)
        seed_image = load_volume(rc.seed_image_path) if rc.seed_image_path else None
        t_load = time.time()
        res = segment(intensity, mask=mask, seed_image=seed_image,
                      connectivity=rc.connectivity, flooding=rc.flooding,
                      workers=rc.workers, max_sweeps=rc.max_sweeps, progress=progress)
        K = int(res.num_seeds)
        payload = {
            "labels": res.labels.to_array(),
            "minima": res.minima.to_array(),
            "seeds": res.seeds.to_array(),
            "num_labels": np.int64(K),
        }
        times = {"load": t_load - t0, **res.times}

    out_path = os.path.join(rc.output_dir, f"{rc.operation}.npz")
    np.savez(out_path, **payload)

    meta = {
        "operation": rc.operation,
        "num_labels": K,
        "workers": int(rc.workers) if rc.workers is not None else default_workers(),
        "times": {k: float(v) for k, v in times.items()},
        "git_rev": _git_rev(),
        "config": {k: v for k, v in asdict(rc).items() if k != "extra"},
        "output_npz": os.path.basename(out_path),
    }
    with open(os.path.join(rc.output_dir, f"{rc.operation}.meta.json"), "w") as f:
        json.dump(meta, f, indent=2)

    if rc.verbose:
        summary = " ".join(f"{k}={v:.2f}s" for k, v in times.items())
        print(f"{rc.operation} times: {summary}" + (f" K={K}" if K is not None else ""))
    return out_path


def main(argv=None):
    ap = argparse.ArgumentParser(description="3-D seeded watershed segmentation")
    ap.add_argument("--config", required=True)
    ap.add_argument("--workers", type=int, default=None,
                    help="Override the number of slab workers.")
    ap.add_argument("--flooding", choices=("priority", "sweep"), default=None,
                    help="Override the flooding strategy.")
    ap.add_argument("--quiet", action="store_true", help="Suppress status output.")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    if args.workers is not None:
        cfg["workers"] = args.workers
    if args.flooding is not None:
        cfg["flooding"] = args.flooding
    if args.quiet:
        cfg["verbose"] = False
    run(build_config(cfg))


if __name__ == "__main__":
    main()

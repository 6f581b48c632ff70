#!/usr/bin/env python3
"""
Offline replay of recorded point clouds into a saliency map.

Each input is a .npy file holding an (N, 3) world-frame cloud, or an .npz
file with 'points' and optional 'origin' arrays. Clouds are fused in the
given order and the per-voxel saliency log of occupied voxels is written at
the end.
"""
import argparse
import logging
import sys

import numpy as np

from saliency_mapping.core.mapping_3d import SaliencyMapping3D
from saliency_mapping.utils.config import load_config


def _load_cloud(path, default_origin):
    data = np.load(path)
    if isinstance(data, np.lib.npyio.NpzFile):
        origin = data['origin'] if 'origin' in data.files else default_origin
        return np.asarray(origin, dtype=np.float64), data['points']
    return default_origin, data


def main() -> int:
    ap = argparse.ArgumentParser(
        description="Fuse recorded point clouds into a saliency map and export the saliency log."
    )
    ap.add_argument("clouds", nargs="+", help=".npy / .npz point cloud files")
    ap.add_argument("--config", default=None, help="Parameter YAML (ros__parameters layout)")
    ap.add_argument(
        "--origin",
        type=float,
        nargs=3,
        default=[0.0, 0.0, 0.0],
        help="Sensor origin for .npy clouds (default: 0 0 0)",
    )
    ap.add_argument("--output", default="saliency_log.txt", help="Saliency log output path")
    ap.add_argument("--prune", action="store_true", help="Prune the octree before exporting")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    mapper = SaliencyMapping3D(load_config(args.config))
    default_origin = np.asarray(args.origin, dtype=np.float64)
    try:
        for path in args.clouds:
            origin, points = _load_cloud(path, default_origin)
            counts = mapper.ingest_sensor_cloud(origin, points)
            print(f"{path}: {counts['free']} free / {counts['occupied']} occupied keys")

        if args.prune:
            mapper.prune()

        stats = mapper.exploration_stats(0.0)
        print(f"Mapped voxels: {mapper.get_voxel_count()}")
        print(f"Explored fraction: {stats['fraction']:.4f}")
        mapper.write_saliency_log(args.output)
    finally:
        mapper.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Saliency-aware 3D Occupancy Mapping

This module fuses world-frame point clouds into a probabilistic octree using
log-odds Bayesian updates, and projects saliency images into the map to mark
visually interesting voxels for exploration.

Update paths:
    1. Point clouds -> batched ray casting -> occupancy (no saliency effect)
    2. Saliency images -> per-pixel ray casting -> saliency sampling
       -> inhibition-of-return decay (advances the frame counter)

All mutations hold the map's write lock; queries hold its read lock.

References:
- Log-odds Bayesian update for occupancy grid mapping (OctoMap)
- Visual saliency-aware exploration with inhibition of return
"""

import dataclasses
import logging
import time

import numpy as np

from saliency_mapping.core.exploration import ExplorationMetricsTracker
from saliency_mapping.core.octree import SaliencyOctree
from saliency_mapping.core.queries import EPSILON, SpatialQueryEngine, check_box
from saliency_mapping.core.ray_casting import RayCastEngine
from saliency_mapping.core.saliency import SaliencyStateMachine
from saliency_mapping.core.types import PreconditionError, SaliencyConfig
from saliency_mapping.utils.config import load_config, merge_config
from saliency_mapping.utils.io import (
    CodeTimer,
    ReadWriteLock,
    format_saliency_line,
    pack_snapshot,
    unpack_snapshot,
    write_saliency_log,
)
from saliency_mapping.utils.profiler import MappingProfiler
from saliency_mapping.utils.transforms import PinholeCamera, pose_to_transform, transform_points

# Marker OpenCV uses for invalid disparities
MISSING_Z = 10000.0


class SaliencyMapping3D:
    """
    Probabilistic 3D occupancy map with per-voxel visual saliency

    Single entry point for sensor updates and queries. Owns the frame counter
    and the default SaliencyConfig.

    Example:
        >>> mapper = SaliencyMapping3D({'resolution': 0.1})
        >>> mapper.ingest_sensor_cloud([0, 0, 1], cloud)
        >>> mapper.ingest_saliency_frame(pose, saliency_image, {'fx': 300, 'fy': 300})
        >>> mapper.voxel_gain([2.0, 0.5, 1.2])
    """

    def __init__(self, config=None, ros_logger=None):
        """
        Initialize with mapping parameters

        Args:
            config: Dictionary of parameters merged over DEFAULT_CONFIG
            ros_logger: Optional ROS logger used instead of Python logging
        """
        # Logger (supports both ROS and Python logging)
        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('SaliencyMapping3D')

        self.config = load_config(overrides=config)
        self.lock = ReadWriteLock()
        self.exploration = None

        self.octree = SaliencyOctree(
            resolution=self.config['resolution'],
            tree_depth=self.config['tree_depth'],
        )
        self._bind_octree(self.octree)
        self._apply_parameters(self.config)

        # Frame counter (saliency frames only)
        self.frame_count = 0
        self.cloud_count = 0

        # Performance profiling
        self.enable_profiling = self.config['enable_profiling']
        self.performance_stats = {
            'frame_times': [],
            'cloud_times': [],
            'points_per_cloud': [],
            'samples_per_frame': [],
        }
        self.profiler = None
        if self.enable_profiling:
            self.profiler = MappingProfiler(
                csv_path=self.config['profiling_csv_path'],
                sample_interval=self.config['frame_interval']
            )
            self.profiler.start()

        self.logger.info(
            f"Saliency map initialized (resolution: {self.octree.resolution}m, "
            f"depth={self.octree.tree_depth}, sensor_max_range={self.sensor_max_range}, "
            f"alpha={self.saliency_config.alpha}, beta={self.saliency_config.beta}, "
            f"threshold={self.saliency_config.threshold})"
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def _bind_octree(self, octree):
        self.octree = octree
        self.ray_caster = RayCastEngine(octree)
        self.queries = SpatialQueryEngine(octree, self.ray_caster)
        self.saliency = SaliencyStateMachine(octree, self.ray_caster, logger=self.logger)

    def _apply_parameters(self, config):
        self.octree.set_sensor_model(
            config['probability_hit'], config['probability_miss'],
            config['threshold_min'], config['threshold_max'],
            config['threshold_occupancy'])
        self.octree.enable_change_detection(config['change_detection_enabled'])

        self.sensor_max_range = float(config['sensor_max_range'])
        self.max_free_space = float(config['max_free_space'])
        self.min_height_free_space = float(config['min_height_free_space'])
        self.robot_size = np.asarray(config['robot_size'], dtype=np.float64)

        self.queries.treat_unknown_as_occupied = config['treat_unknown_as_occupied']
        self.queries.filter_speckles = config['filter_speckles']
        self.saliency_config = SaliencyConfig.from_dict(config['saliency'])

        # Keep the tracker (and its timing history) unless the region moved
        bbx_min = np.asarray(config['exploration_bbx_min'], dtype=np.float64)
        bbx_max = np.asarray(config['exploration_bbx_max'], dtype=np.float64)
        if (self.exploration is None
                or not np.array_equal(self.exploration.bbx_min, bbx_min)
                or not np.array_equal(self.exploration.bbx_max, bbx_max)):
            self.exploration = ExplorationMetricsTracker(bbx_min, bbx_max)

    def set_parameters(self, config):
        """
        Apply new parameters

        A resolution change resets the whole map.

        Args:
            config: Parameter overrides
        """
        new_config = load_config(overrides=merge_config(self.config, config))
        with self.lock.write_locked():
            if (new_config['resolution'] != self.octree.resolution
                    or new_config['tree_depth'] != self.octree.tree_depth):
                self.logger.warning("Octomap resolution has changed! Resetting tree!")
                self._bind_octree(SaliencyOctree(
                    resolution=new_config['resolution'],
                    tree_depth=new_config['tree_depth']))
            self.config = new_config
            self._apply_parameters(new_config)
            self.exploration.refresh(self.octree)

    # ------------------------------------------------------------------
    # Occupancy updates
    # ------------------------------------------------------------------
    def ingest_sensor_cloud(self, origin, points, max_range=None,
                            max_free_space=None, min_height_free_space=None):
        """
        Fuse a world-frame point cloud observed from origin

        Occupancy only: saliency and the frame counter are untouched.

        Args:
            origin: [x, y, z] sensor position
            points: (N, 3) world-frame points (NaN/Inf rows are dropped)
            max_range: Override of sensor_max_range (negative: unlimited)
            max_free_space: Override of max_free_space
            min_height_free_space: Override of min_height_free_space

        Returns:
            Dictionary with the number of free and occupied keys applied
        """
        max_range = self.sensor_max_range if max_range is None else max_range
        max_free_space = self.max_free_space if max_free_space is None else max_free_space
        if min_height_free_space is None:
            min_height_free_space = self.min_height_free_space

        t_start = time.perf_counter()
        with self.lock.write_locked():
            free_cells, occupied_cells = self.ray_caster.batch_fuse(
                origin, points, max_range, max_free_space, min_height_free_space)
            self.exploration.refresh(self.octree)
            self.cloud_count += 1
        elapsed = time.perf_counter() - t_start

        num_points = int(np.asarray(points).size // 3)
        if self.enable_profiling:
            self.performance_stats['cloud_times'].append(elapsed)
            self.performance_stats['points_per_cloud'].append(num_points)
        if self.profiler is not None:
            self.profiler.record_frame(
                frame_id=self.cloud_count,
                timestamp=time.time(),
                kind='cloud',
                total_ms=elapsed * 1000.0,
                num_points=num_points,
                num_free=len(free_cells),
                num_occupied=len(occupied_cells),
                map_voxels=self.octree.size,
            )

        return {'free': len(free_cells), 'occupied': len(occupied_cells)}

    def ingest_point_cloud(self, pose, points):
        """
        Fuse a sensor-frame point cloud

        Args:
            pose: Sensor pose in the world frame (see pose_to_transform)
            points: (N, 3) points in the sensor frame
        """
        T = pose_to_transform(pose)
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return self.ingest_sensor_cloud(T[:3, 3], transform_points(T, points))

    def ingest_projected_disparity(self, pose, projected_points):
        """
        Fuse a reprojected disparity image (H x W x 3, sensor frame)

        Points marked invalid (z == 10000 or infinite) or behind the camera
        are skipped.
        """
        T = pose_to_transform(pose)
        points = np.asarray(projected_points, dtype=np.float64).reshape(-1, 3)
        z = points[:, 2]
        valid = (z != MISSING_Z) & ~np.isinf(z) & (z >= 0)
        return self.ingest_sensor_cloud(T[:3, 3], transform_points(T, points[valid]))

    # ------------------------------------------------------------------
    # Saliency updates
    # ------------------------------------------------------------------
    def ingest_saliency_frame(self, pose, intensity_grid, camera_intrinsics=None,
                              projection_limit=None, config=None, ground_z=None,
                              ray_fn=None):
        """
        Project a saliency image into the map

        Advances the frame counter, samples every pixel_stride-th pixel whose
        intensity reaches the threshold into the occupied voxel its ray hits,
        then runs one inhibition-of-return decay tick if beta < 0.

        Args:
            pose: Camera pose in the world frame (optical frame, z forward)
            intensity_grid: 2D uint8 saliency image
            camera_intrinsics: Dict with fx, fy (optional cx, cy)
            projection_limit: Override of config.projection_limit
            config: SaliencyConfig (defaults to the mapper's)
            ground_z: Override of config.ground_z
            ray_fn: Optional callable (u, v) -> (N, 3) world-frame directions,
                replacing the pinhole model

        Returns:
            (M, 3) array of sampled voxel centers
        """
        grid = np.asarray(intensity_grid)
        if grid.ndim != 2:
            raise PreconditionError(f"Expected a 2D intensity grid, got shape {grid.shape}")
        if camera_intrinsics is None and ray_fn is None:
            raise PreconditionError("camera_intrinsics or ray_fn is required")

        sal_config = config if config is not None else self.saliency_config
        if projection_limit is not None:
            sal_config = dataclasses.replace(sal_config, projection_limit=projection_limit)
        if ground_z is not None:
            sal_config = dataclasses.replace(sal_config, ground_z=ground_z)

        T = pose_to_transform(pose)
        origin = T[:3, 3]

        # Subsampled pixels, columns outer / rows inner
        height, width = grid.shape
        stride = max(int(sal_config.pixel_stride), 1)
        us, vs = np.meshgrid(np.arange(0, width, stride), np.arange(0, height, stride), indexing='ij')
        us = us.ravel()
        vs = vs.ravel()
        intensities = grid[vs, us]
        keep = intensities >= sal_config.threshold
        us, vs, intensities = us[keep], vs[keep], intensities[keep]

        if ray_fn is not None:
            directions = np.asarray(ray_fn(us, vs), dtype=np.float64).reshape(-1, 3)
        else:
            camera = PinholeCamera.from_intrinsics(camera_intrinsics)
            directions = camera.project_pixels_to_rays(us, vs, width, height) @ T[:3, :3].T
        if len(directions) != len(intensities):
            raise PreconditionError(
                f"{len(directions)} ray directions for {len(intensities)} pixels")

        t_start = time.perf_counter()
        with self.lock.write_locked():
            self.frame_count += 1
            with CodeTimer(f"[{self.frame_count}] Projected {len(intensities)} points",
                           log_func=self.logger.debug) as projection_timer:
                hits = self.saliency.integrate_frame(
                    origin, directions, intensities, self.frame_count, sal_config)

            decay_stats = None
            with CodeTimer(f"[{self.frame_count}] IOR", log_func=self.logger.debug) as ior_timer:
                if sal_config.decay_enabled:
                    decay_stats = self.saliency.decay_tick(self.frame_count, sal_config)
        elapsed = time.perf_counter() - t_start

        if self.enable_profiling:
            self.performance_stats['frame_times'].append(elapsed)
            self.performance_stats['samples_per_frame'].append(len(hits))
        if decay_stats is not None and decay_stats['retired']:
            self.logger.info(f"Frame {self.frame_count}: {decay_stats['retired']} voxels retired")
        if self.profiler is not None:
            self.profiler.record_frame(
                frame_id=self.frame_count,
                timestamp=time.time(),
                kind='saliency',
                total_ms=elapsed * 1000.0,
                saliency_ms=projection_timer.took * 1000.0,
                ior_ms=ior_timer.took * 1000.0,
                num_points=len(intensities),
                num_sampled=len(hits),
                map_voxels=self.octree.size,
            )
        return hits

    def evaluate_voxel(self, origin, point, depth_z, camera_intrinsics):
        """
        Register a viewpoint that sees an occupied voxel

        Returns:
            True if the voxel was visible from origin and was updated
        """
        camera = PinholeCamera.from_intrinsics(camera_intrinsics)
        with self.lock.write_locked():
            return self.saliency.evaluate_voxel(
                self.queries, origin, point, depth_z, camera.fx, camera.fy)

    # ------------------------------------------------------------------
    # Forced updates
    # ------------------------------------------------------------------
    def clear_region(self, center, bounding_box_size):
        """Force every mapped voxel in a box to the minimum log-odds"""
        center, size = check_box(center, bounding_box_size)
        half = size / 2.0
        with self.lock.write_locked():
            key_min, key_max = self.octree.key_box(center - half, center + half)
            if key_min is None:
                return 0
            keys = [key for key, _ in self.octree.iterate_keys(key_min, key_max)]
            for key in keys:
                self.octree.set_log_odds(key, self.octree.clamp_min)
            self.octree.update_inner_occupancy()
        return len(keys)

    def _set_log_odds_bounding_box(self, position, bounding_box_size, log_odds_value, offset):
        position, size = check_box(
            np.asarray(position, dtype=np.float64) + np.asarray(offset, dtype=np.float64),
            bounding_box_size)
        half = size / 2.0
        bbx_min = position - half - EPSILON
        bbx_max = position + half + EPSILON

        # Sample the box every resolution step from its lower corner
        res = self.octree.resolution
        steps = np.floor((bbx_max - bbx_min) / res).astype(int) + 1
        keys = set()
        for i in range(steps[0]):
            for j in range(steps[1]):
                for k in range(steps[2]):
                    key = self.octree.coord_to_key_checked(bbx_min + np.array([i, j, k]) * res)
                    if key is not None:
                        keys.add(key)

        for key in keys:
            self.octree.set_log_odds(key, log_odds_value)
        self.octree.update_inner_occupancy()
        return len(keys)

    def set_free(self, position, bounding_box_size, offset=(0.0, 0.0, 0.0)):
        """Mark every voxel of a box free, creating unknown voxels"""
        with self.lock.write_locked():
            return self._set_log_odds_bounding_box(
                position, bounding_box_size, self.octree.clamp_min, offset)

    def set_occupied(self, position, bounding_box_size, offset=(0.0, 0.0, 0.0)):
        """Mark every voxel of a box occupied, creating unknown voxels"""
        with self.lock.write_locked():
            return self._set_log_odds_bounding_box(
                position, bounding_box_size, self.octree.clamp_max, offset)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def point_status(self, point):
        with self.lock.read_locked():
            return self.queries.point_status(point)

    def point_probability(self, point):
        with self.lock.read_locked():
            return self.queries.point_probability(point)

    def line_status(self, start, end):
        with self.lock.read_locked():
            return self.queries.line_status(start, end)

    def visibility(self, view_point, voxel_to_test, stop_at_unknown=False):
        with self.lock.read_locked():
            return self.queries.visibility(view_point, voxel_to_test, stop_at_unknown)

    def bbox_status(self, center, size, treat_unknown_as_occupied=None, filter_speckles=None):
        with self.lock.read_locked():
            return self.queries.bbox_status(center, size, treat_unknown_as_occupied, filter_speckles)

    def line_status_bounding_box(self, start, end, bounding_box_size):
        with self.lock.read_locked():
            return self.queries.line_status_bounding_box(start, end, bounding_box_size)

    def collision_check(self, position, footprint=None, treat_unknown_as_occupied=None):
        footprint = self.robot_size if footprint is None else footprint
        with self.lock.read_locked():
            return self.queries.collision_check(position, footprint, treat_unknown_as_occupied)

    def path_collision(self, positions, footprint=None):
        footprint = self.robot_size if footprint is None else footprint
        with self.lock.read_locked():
            return self.queries.path_collision(positions, footprint)

    def voxel_gain(self, point):
        with self.lock.read_locked():
            return self.queries.voxel_gain(point)

    def exploration_stats(self, timestamp):
        """Explored fraction, its rate and accumulated time (caller-supplied clock)"""
        with self.lock.write_locked():
            return self.exploration.exploration_stats(timestamp)

    def volume_percentage(self, volume):
        return self.exploration.volume_percentage(volume, self.octree.resolution)

    def get_changed_voxels(self):
        """
        Voxels created or flipped since the previous call

        Returns:
            List of (center, occupied) tuples; empty unless change detection
            is enabled
        """
        with self.lock.write_locked():
            changed = []
            for key, _ in self.octree.changed_keys():
                record = self.octree.get(key)
                occupied = record is not None and self.octree.is_occupied(record)
                changed.append((self.octree.key_to_coord(key), occupied))
            self.octree.reset_change_detection()
        return changed

    def get_point_cloud(self, include_free=False):
        """
        Get occupied (and optionally free) voxel centers

        Returns:
            Dictionary with 'points', 'probabilities', counts and frame_count
        """
        with self.lock.read_locked():
            occupied, occupied_probs, free = [], [], []
            for key, record in self.octree.iter_leaves():
                if self.octree.is_occupied(record):
                    occupied.append(self.octree.key_to_coord(key))
                    occupied_probs.append(self.octree.probability(record))
                elif include_free:
                    free.append(self.octree.key_to_coord(key))

            result = {
                'points': np.array(occupied).reshape(-1, 3),
                'probabilities': np.array(occupied_probs),
                'num_voxels': self.octree.size,
                'num_occupied': len(occupied),
                'frame_count': self.frame_count
            }
            if include_free:
                result['free'] = np.array(free).reshape(-1, 3)
                result['num_free'] = len(free)
            return result

    def get_voxel_count(self):
        return self.octree.size

    # ------------------------------------------------------------------
    # Export and state
    # ------------------------------------------------------------------
    def export_diagnostics(self):
        """
        One line per occupied voxel: x,y,z,phase,value,viewpoint_count,density
        """
        with self.lock.read_locked():
            return [format_saliency_line(self.octree.key_to_coord(key), record.saliency)
                    for key, record in self.octree.iter_leaves()
                    if self.octree.is_occupied(record)]

    def write_saliency_log(self, path):
        return write_saliency_log(self.export_diagnostics(), path)

    def snapshot(self):
        """Opaque full-state snapshot (see restore)"""
        with self.lock.read_locked():
            state = pack_snapshot(self.octree)
            state['frame_count'] = self.frame_count
            return state

    def restore(self, snapshot):
        """
        Replace the map with a snapshot

        A snapshot taken at another resolution resets the map to that
        resolution (logged as a warning). A snapshot that cannot be loaded
        raises PreconditionError and leaves the current map untouched.
        """
        records = list(unpack_snapshot(snapshot))
        resolution = float(snapshot['resolution'])
        tree_depth = int(snapshot.get('tree_depth', self.octree.tree_depth))

        # Load into a detached tree, bound only once every record fits
        config = self.config
        octree = SaliencyOctree(
            resolution=resolution,
            tree_depth=tree_depth,
            probability_hit=config['probability_hit'],
            probability_miss=config['probability_miss'],
            threshold_min=config['threshold_min'],
            threshold_max=config['threshold_max'],
            threshold_occupancy=config['threshold_occupancy'],
        )
        for key, record in records:
            octree.insert_record(key, record)
        octree.update_inner_occupancy()

        with self.lock.write_locked():
            if resolution != self.octree.resolution or tree_depth != self.octree.tree_depth:
                self.logger.warning(
                    f"Snapshot resolution {resolution} (depth {tree_depth}) differs from "
                    f"map resolution {self.octree.resolution} (depth {self.octree.tree_depth}), "
                    f"resetting map")
                self.config = dict(self.config, resolution=resolution, tree_depth=tree_depth)
            self._bind_octree(octree)
            self._apply_parameters(self.config)
            self.frame_count = int(snapshot.get('frame_count', self.frame_count))
            self.exploration.refresh(self.octree)

    def prune(self):
        with self.lock.write_locked():
            merged = self.octree.prune()
            self.octree.update_inner_occupancy()
        self.logger.debug(f"Pruned {merged} octants")
        return merged

    def reset_map(self):
        """Reset the probabilistic map"""
        with self.lock.write_locked():
            self.octree.clear()
            self.exploration.reset()
            self.frame_count = 0

        # Reset performance stats
        for key in self.performance_stats:
            self.performance_stats[key] = []

    def get_performance_summary(self):
        """
        Get performance statistics summary

        Returns:
            Dictionary with performance metrics
        """
        frame_times = self.performance_stats['frame_times']
        cloud_times = self.performance_stats['cloud_times']
        if not frame_times and not cloud_times:
            return {'profiling_enabled': self.enable_profiling, 'total_frames': 0, 'total_clouds': 0}

        stats = {
            'profiling_enabled': self.enable_profiling,
            'total_frames': len(frame_times),
            'total_clouds': len(cloud_times),
            'avg_frame_time': np.mean(frame_times) if frame_times else 0,
            'avg_cloud_time': np.mean(cloud_times) if cloud_times else 0,
            'avg_points_per_cloud': np.mean(self.performance_stats['points_per_cloud']) if cloud_times else 0,
            'avg_samples_per_frame': np.mean(self.performance_stats['samples_per_frame']) if frame_times else 0,
        }

        # Add percentiles for frame times
        if frame_times:
            stats['frame_time_p50'] = np.percentile(frame_times, 50)
            stats['frame_time_p90'] = np.percentile(frame_times, 90)
            stats['frame_time_p99'] = np.percentile(frame_times, 99)

        return stats

    def close(self):
        if self.profiler is not None:
            self.profiler.close()

    def __del__(self):
        """Cleanup resources on destruction"""
        if getattr(self, 'profiler', None) is not None:
            self.profiler.close()

"""
Ray casting against the saliency octree.

Turns sensor observations into free/occupied voxel key sets using an
Amanatides-Woo grid traversal, and applies them to the octree as one batch.
"""
import logging

import numpy as np

from saliency_mapping.core.types import PreconditionError

logger = logging.getLogger(__name__)


class RayCastEngine:
    """Free/occupied evidence from sensor rays"""

    def __init__(self, octree):
        """
        Args:
            octree: SaliencyOctree the keys are computed for and applied to
        """
        self.octree = octree

    def _traversal_init(self, origin, direction, start_key):
        res = self.octree.resolution
        step = [0, 0, 0]
        t_max = [np.inf, np.inf, np.inf]
        t_delta = [np.inf, np.inf, np.inf]
        for i in range(3):
            if direction[i] > 0.0:
                step[i] = 1
            elif direction[i] < 0.0:
                step[i] = -1
            if step[i] != 0:
                # Distance to the first voxel border along this axis
                voxel_border = (start_key[i] + 0.5) * res + step[i] * res * 0.5
                t_max[i] = (voxel_border - origin[i]) / direction[i]
                t_delta[i] = res / abs(direction[i])
        return step, t_max, t_delta

    @staticmethod
    def _next_axis(t_max):
        # Ties go to the higher axis
        if t_max[0] < t_max[1]:
            return 0 if t_max[0] < t_max[2] else 2
        return 1 if t_max[1] < t_max[2] else 2

    def compute_ray_keys(self, origin, end):
        """
        Keys traversed by the segment origin -> end

        The origin voxel is included, the end voxel is not.

        Args:
            origin: [x, y, z] segment start
            end: [x, y, z] segment end

        Returns:
            List of keys in traversal order (empty if both ends share a voxel),
            or None if either end lies outside the map
        """
        origin = np.asarray(origin, dtype=np.float64)
        end = np.asarray(end, dtype=np.float64)
        key_origin = self.octree.coord_to_key_checked(origin)
        key_end = self.octree.coord_to_key_checked(end)
        if key_origin is None or key_end is None:
            return None
        if key_origin == key_end:
            return []

        ray = [key_origin]
        direction = end - origin
        length = float(np.linalg.norm(direction))
        direction = direction / length

        current = list(key_origin)
        step, t_max, t_delta = self._traversal_init(origin, direction, key_origin)

        while True:
            dim = self._next_axis(t_max)
            current[dim] += step[dim]
            t_max[dim] += t_delta[dim]

            key = (current[0], current[1], current[2])
            if key == key_end:
                break
            # Past the end point: only reachable through rounding error
            if min(t_max) > length:
                break
            ray.append(key)
        return ray

    def cast_ray(self, origin, target, sensor_max_range=-1.0,
                 max_free_space=0.0, min_height_free_space=0.0):
        """
        Free and occupied keys produced by one observation

        Rays longer than sensor_max_range (when >= 0) are clipped to that
        length and produce free space only.

        Args:
            origin: [x, y, z] sensor position
            target: [x, y, z] observed point
            sensor_max_range: Max trusted range, negative for unlimited
            max_free_space: Free-space cutoff distance, 0 disables the cutoff
            min_height_free_space: Voxels higher than origin.z minus this value
                stay free past the cutoff

        Returns:
            (free_keys set, occupied key or None)
        """
        origin = np.asarray(origin, dtype=np.float64)
        target = np.asarray(target, dtype=np.float64)
        free_keys = set()
        occupied_key = None

        offset = target - origin
        distance = float(np.linalg.norm(offset))
        if sensor_max_range < 0.0 or distance <= sensor_max_range:
            end = target
            occupied_key = self.octree.coord_to_key_checked(target)
        else:
            end = origin + offset / distance * sensor_max_range

        key_ray = self.compute_ray_keys(origin, end)
        if key_ray:
            if max_free_space == 0.0:
                free_keys.update(key_ray)
            else:
                for key in key_ray:
                    center = self.octree.key_to_coord(key)
                    if (np.linalg.norm(center - origin) < max_free_space
                            or center[2] > origin[2] - min_height_free_space):
                        free_keys.add(key)

        return free_keys, occupied_key

    def batch_fuse(self, origin, points, sensor_max_range=-1.0,
                   max_free_space=0.0, min_height_free_space=0.0):
        """
        Insert a world-frame point cloud observed from origin

        Occupied evidence wins: a key that is both traversed and hit within
        the batch is only updated as occupied.

        Args:
            origin: [x, y, z] sensor position
            points: (N, 3) array-like of world-frame points

        Returns:
            (free_keys, occupied_keys) sets that were applied
        """
        origin = np.asarray(origin, dtype=np.float64)
        if origin.shape != (3,) or not np.all(np.isfinite(origin)):
            raise PreconditionError(f"sensor origin must be a finite 3-vector, got {origin}")

        points = np.asarray(points, dtype=np.float64)
        if points.size == 0:
            return set(), set()
        points = points.reshape(-1, 3)
        valid = np.all(np.isfinite(points), axis=1)
        if not np.all(valid):
            logger.debug(f"Dropping {int(np.count_nonzero(~valid))} non-finite points")
            points = points[valid]

        free_cells = set()
        occupied_cells = set()
        for point in points:
            # Endpoints are far fewer than traversed cells: skip repeated hits
            if self.octree.coord_to_key(point) in occupied_cells:
                continue
            free_keys, occupied_key = self.cast_ray(
                origin, point, sensor_max_range, max_free_space, min_height_free_space)
            free_cells |= free_keys
            if occupied_key is not None:
                occupied_cells.add(occupied_key)

        self.apply_occupancy(free_cells, occupied_cells)
        return free_cells, occupied_cells

    def apply_occupancy(self, free_cells, occupied_cells):
        """
        Apply key sets to the octree: occupied first, then free

        Keys present in both sets are removed from free_cells in place.
        """
        if free_cells is None or occupied_cells is None:
            raise PreconditionError("free_cells and occupied_cells are required")

        for key in occupied_cells:
            self.octree.fuse(key, True)
        free_cells -= occupied_cells
        for key in free_cells:
            self.octree.fuse(key, False)
        self.octree.update_inner_occupancy()

    def cast_ray_until_hit(self, origin, direction, max_range=-1.0, ignore_unknown=False):
        """
        March from origin along direction until an occupied voxel is found

        Args:
            origin: [x, y, z] ray start
            direction: [dx, dy, dz] ray direction (need not be normalized)
            max_range: Stop after this distance (<= 0: until the map border)
            ignore_unknown: Keep going through unknown voxels instead of
                stopping at the first one

        Returns:
            (hit, end): hit is True if an occupied voxel was reached; end is
            the center of the voxel where the march stopped
        """
        origin = np.asarray(origin, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        norm = float(np.linalg.norm(direction))
        if norm == 0.0 or not np.isfinite(norm):
            return False, origin
        direction = direction / norm

        octree = self.octree
        start = octree.coord_to_key_checked(origin)
        if start is None:
            return False, origin

        record = octree.get(start)
        if record is not None:
            if octree.is_occupied(record):
                return True, octree.key_to_coord(start)
        elif not ignore_unknown:
            return False, octree.key_to_coord(start)

        current = list(start)
        step, t_max, t_delta = self._traversal_init(origin, direction, start)
        max_range_sq = max_range * max_range if max_range > 0.0 else None

        while True:
            dim = self._next_axis(t_max)
            current[dim] += step[dim]
            t_max[dim] += t_delta[dim]

            key = (current[0], current[1], current[2])
            if not octree.key_in_range(key):
                return False, octree.key_to_coord(key)

            end = octree.key_to_coord(key)
            if max_range_sq is not None and float(np.sum((end - origin) ** 2)) > max_range_sq:
                return False, end

            record = octree.get(key)
            if record is None:
                if not ignore_unknown:
                    return False, end
            elif octree.is_occupied(record):
                return True, end

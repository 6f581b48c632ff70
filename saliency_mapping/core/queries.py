"""
Read-only spatial queries over the saliency octree.

Classification of points, lines and boxes as free / occupied / unknown,
visibility and footprint collision checks used by planners.
"""
import numpy as np

from saliency_mapping.core.types import CellStatus, PreconditionError, SaliencyPhase

# Small offset to avoid landing exactly on voxel borders
EPSILON = 0.001


def check_box(center, size):
    """
    Box center and edge lengths as float arrays

    Raises:
        PreconditionError: a component is not finite or a size is negative
    """
    center = np.asarray(center, dtype=np.float64)
    size = np.asarray(size, dtype=np.float64)
    if not (np.all(np.isfinite(center)) and np.all(np.isfinite(size))):
        raise PreconditionError(f"box center and size must be finite, got {center} and {size}")
    if np.any(size < 0.0):
        raise PreconditionError(f"box size must be non-negative, got {size}")
    return center, size


class SpatialQueryEngine:
    """Point, line, box and collision queries"""

    def __init__(self, octree, ray_caster, treat_unknown_as_occupied=True, filter_speckles=True):
        self.octree = octree
        self.ray_caster = ray_caster
        self.treat_unknown_as_occupied = treat_unknown_as_occupied
        self.filter_speckles = filter_speckles

    def _status(self, record):
        if record is None:
            return CellStatus.UNKNOWN
        if self.octree.is_occupied(record):
            return CellStatus.OCCUPIED
        return CellStatus.FREE

    def point_status(self, point):
        key = self.octree.coord_to_key_checked(np.asarray(point, dtype=np.float64))
        if key is None:
            return CellStatus.UNKNOWN
        return self._status(self.octree.get(key))

    def point_probability(self, point):
        """
        Status and occupancy probability of the voxel containing point

        Returns:
            (CellStatus, probability); probability is -1.0 for unknown voxels
        """
        key = self.octree.coord_to_key_checked(np.asarray(point, dtype=np.float64))
        record = self.octree.get(key) if key is not None else None
        if record is None:
            return CellStatus.UNKNOWN, -1.0
        return self._status(record), self.octree.probability(record)

    def line_status(self, start, end):
        """
        First non-free voxel status along start -> end, else FREE

        The end voxel itself is not checked. A segment leaving the map is
        UNKNOWN.
        """
        key_ray = self.ray_caster.compute_ray_keys(start, end)
        if key_ray is None:
            return CellStatus.UNKNOWN
        for key in key_ray:
            record = self.octree.get(key)
            if record is None:
                return CellStatus.UNKNOWN
            if self.octree.is_occupied(record):
                return CellStatus.OCCUPIED
        return CellStatus.FREE

    def visibility(self, view_point, voxel_to_test, stop_at_unknown=False):
        """
        Whether voxel_to_test can be seen from view_point

        The target voxel never occludes itself. Unknown voxels are passable
        unless stop_at_unknown is set.

        Returns:
            OCCUPIED if something blocks the line of sight, UNKNOWN if an
            unknown voxel was met with stop_at_unknown, else FREE
        """
        key_ray = self.ray_caster.compute_ray_keys(view_point, voxel_to_test)
        if key_ray is None:
            return CellStatus.UNKNOWN
        target_key = self.octree.coord_to_key(voxel_to_test)

        for key in key_ray:
            if key == target_key:
                continue
            record = self.octree.get(key)
            if record is None:
                if stop_at_unknown:
                    return CellStatus.UNKNOWN
            elif self.octree.is_occupied(record):
                return CellStatus.OCCUPIED
        return CellStatus.FREE

    def is_speckle(self, key):
        """
        An occupied voxel without any occupied voxel in its 26-neighbourhood

        Args:
            key: (ix, iy, iz) voxel key

        Returns:
            True if no neighbor is occupied
        """
        for dz in (-1, 0, 1):
            for dy in (-1, 0, 1):
                for dx in (-1, 0, 1):
                    if dx == 0 and dy == 0 and dz == 0:
                        continue
                    neighbor = self.octree.get((key[0] + dx, key[1] + dy, key[2] + dz))
                    if neighbor is not None and self.octree.is_occupied(neighbor):
                        return False
        return True

    def bbox_status(self, center, size, treat_unknown_as_occupied=None, filter_speckles=None):
        """
        Status of an axis-aligned box

        Args:
            center: [x, y, z] box center
            size: [sx, sy, sz] box edge lengths
            treat_unknown_as_occupied: Override of the engine default
            filter_speckles: Override of the engine default

        Returns:
            OCCUPIED if any (non-speckle) voxel in the box is occupied,
            else UNKNOWN if any voxel in the box is unmapped, else FREE
        """
        if treat_unknown_as_occupied is None:
            treat_unknown_as_occupied = self.treat_unknown_as_occupied
        if filter_speckles is None:
            filter_speckles = self.filter_speckles

        center, size = check_box(center, size)

        # Center unknown or occupied: nothing else to check
        center_status = self.point_status(center)
        if center_status != CellStatus.FREE and treat_unknown_as_occupied:
            return center_status

        if self.octree.coord_to_key_checked(center) is None:
            if treat_unknown_as_occupied:
                return CellStatus.UNKNOWN
            return CellStatus.OCCUPIED

        key_min, key_max = self.octree.key_box(center - size / 2.0, center + size / 2.0)
        for key, record in self.octree.iterate_keys(key_min, key_max):
            if self.octree.is_occupied(record):
                if filter_speckles and self.is_speckle(key):
                    continue
                return CellStatus.OCCUPIED

        volume = 1
        for i in range(3):
            volume *= key_max[i] - key_min[i] + 1
        if self.octree.count_known(key_min, key_max) < volume:
            return CellStatus.UNKNOWN
        return CellStatus.FREE

    def _axis_offsets(self, size):
        # Steps finer than the resolution so no voxel along the sweep is missed
        if size <= 0.0:
            return [0.0]
        steps = int(np.ceil((size + EPSILON) / self.octree.resolution))
        steps = max(steps, 1)
        half = size * 0.5
        disc = size / steps
        return [-half + i * disc for i in range(steps + 1)]

    def line_status_bounding_box(self, start, end, bounding_box_size):
        """
        Status of a box sweeping from start to end

        Runs line_status for a grid of offsets covering the box
        (x outer, y middle, z inner) and returns the first non-free result.
        """
        start, bounding_box_size = check_box(start, bounding_box_size)
        end = np.asarray(end, dtype=np.float64)

        for x in self._axis_offsets(bounding_box_size[0]):
            for y in self._axis_offsets(bounding_box_size[1]):
                for z in self._axis_offsets(bounding_box_size[2]):
                    offset = np.array([x, y, z])
                    status = self.line_status(start + offset, end + offset)
                    if status != CellStatus.FREE:
                        return status
        return CellStatus.FREE

    def collision_check(self, position, footprint, treat_unknown_as_occupied=None):
        """True if a robot of size footprint at position collides"""
        if treat_unknown_as_occupied is None:
            treat_unknown_as_occupied = self.treat_unknown_as_occupied
        status = self.bbox_status(position, footprint, treat_unknown_as_occupied)
        if treat_unknown_as_occupied:
            return status != CellStatus.FREE
        return status == CellStatus.OCCUPIED

    def path_collision(self, positions, footprint):
        """
        Index of the earliest colliding pose along a path

        Returns:
            int index, or None if the path is collision free
        """
        for index, position in enumerate(positions):
            if self.collision_check(position, footprint):
                return index
        return None

    def voxel_gain(self, point):
        """Saliency value of an occupied SALIENT voxel, 0 otherwise"""
        key = self.octree.coord_to_key_checked(np.asarray(point, dtype=np.float64))
        record = self.octree.get(key) if key is not None else None
        if record is None or not self.octree.is_occupied(record):
            return 0
        if record.saliency.phase == SaliencyPhase.SALIENT:
            return record.saliency.value
        return 0

    def occupied_points(self):
        """(N, 3) centers of all occupied voxels"""
        points = [self.octree.key_to_coord(key)
                  for key, record in self.octree.iter_leaves()
                  if self.octree.is_occupied(record)]
        if not points:
            return np.empty((0, 3))
        return np.array(points)

    def occupied_points_in_box(self, center, bounding_box_size):
        """(N, 3) centers of occupied voxels inside a box snapped to the voxel grid"""
        res = self.octree.resolution
        center = np.asarray(center, dtype=np.float64)
        half = np.asarray(bounding_box_size, dtype=np.float64) / 2.0
        corrected = res * np.floor(center / res) + res / 2.0

        key_min, key_max = self.octree.key_box(corrected - half - EPSILON, corrected + half + EPSILON)
        if key_min is None:
            return np.empty((0, 3))
        points = [self.octree.key_to_coord(key)
                  for key, record in self.octree.iterate_keys(key_min, key_max)
                  if self.octree.is_occupied(record)]
        if not points:
            return np.empty((0, 3))
        return np.array(points)

    def all_boxes(self, occupied=True):
        """
        Leaf cubes of one occupancy class

        Args:
            occupied: True for occupied cubes, False for free cubes

        Returns:
            List of (center array, edge length) tuples
        """
        res = self.octree.resolution
        boxes = []
        for origin, edge, record in self.octree.iter_leaf_nodes():
            if self.octree.is_occupied(record) != occupied:
                continue
            center = (np.array(origin, dtype=np.float64) + edge / 2.0) * res
            boxes.append((center, edge * res))
        return boxes

    def map_bounds(self):
        return self.octree.metric_bounds()

    def map_center(self):
        lo, hi = self.octree.metric_bounds()
        return lo + (hi - lo) / 2.0

    def map_size(self):
        lo, hi = self.octree.metric_bounds()
        return hi - lo

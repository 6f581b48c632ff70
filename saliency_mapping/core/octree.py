"""
Hierarchical octree storing occupancy log-odds and saliency per voxel.

Keys are signed integer voxel coordinates. The tree covers
[-2^(depth-1), 2^(depth-1)) keys per axis; coordinates outside that extent have
no valid key. Leaves at full depth are single voxels; prune() may replace 8
identical sibling leaves by one coarse leaf covering the whole octant.
"""
import numpy as np

from saliency_mapping.core.types import (
    InvalidConfigurationError,
    PreconditionError,
    VoxelRecord,
    probability_to_log_odds,
    log_odds_to_probability,
)


class OctNode:
    """
    Single node in hierarchical octree (internal or leaf)

    Uses lazy initialization: children only created when needed.
    A leaf carries a VoxelRecord; an internal node carries aggregates of its
    subtree (max log-odds, number of mapped voxels).
    """

    def __init__(self, record=None):
        self.children = None  # 8 children (lazy init)
        self.record = record
        self.log_odds = record.log_odds if record is not None else 0.0
        self.known_count = 0

    def is_leaf(self):
        """Check if this is a leaf node (no children created yet)"""
        return self.children is None

    def subdivide(self):
        """
        Expand a coarse leaf into 8 children

        Each child gets its own copy of the parent's record.
        """
        self.children = [OctNode(self.record.copy()) for _ in range(8)]
        for child in self.children:
            child.known_count = self.known_count // 8
        self.record = None


class SaliencyOctree:
    """
    Sparse probabilistic voxel store with per-voxel saliency state

    O(depth) update/query, bounding-box iteration only descends into octants
    that intersect the box.
    """

    def __init__(self, resolution=0.15, tree_depth=16,
                 probability_hit=0.65, probability_miss=0.4,
                 threshold_min=0.12, threshold_max=0.97,
                 threshold_occupancy=0.5):
        """
        Initialize octree

        Args:
            resolution: Voxel edge length in meters (leaf size)
            tree_depth: Number of levels below the root (16 -> 65536 keys/axis)
            probability_hit: Sensor model probability for a hit
            probability_miss: Sensor model probability for a miss
            threshold_min: Lower clamping probability
            threshold_max: Upper clamping probability
            threshold_occupancy: Probability at/above which a voxel is occupied
        """
        if tree_depth < 1:
            raise InvalidConfigurationError(f"tree_depth must be >= 1, got {tree_depth}")
        self.tree_depth = int(tree_depth)
        self.key_offset = 1 << (self.tree_depth - 1)
        self.root = OctNode()

        self.change_detection_enabled = False
        self._changed = {}

        self.set_resolution(resolution)
        self.set_sensor_model(probability_hit, probability_miss,
                              threshold_min, threshold_max, threshold_occupancy)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------
    def set_resolution(self, resolution):
        resolution = float(resolution)
        if not np.isfinite(resolution) or resolution <= 0.0:
            raise InvalidConfigurationError(f"resolution must be positive, got {resolution}")
        self.resolution = resolution

    def set_sensor_model(self, probability_hit, probability_miss,
                         threshold_min, threshold_max, threshold_occupancy):
        """Convert the probabilistic sensor model to log-odds increments/bounds"""
        for name, p in (('probability_hit', probability_hit),
                        ('probability_miss', probability_miss),
                        ('threshold_min', threshold_min),
                        ('threshold_max', threshold_max),
                        ('threshold_occupancy', threshold_occupancy)):
            if not 0.0 < p < 1.0:
                raise InvalidConfigurationError(f"{name} must be in (0, 1), got {p}")
        if threshold_min > threshold_max:
            raise InvalidConfigurationError(
                f"threshold_min ({threshold_min}) exceeds threshold_max ({threshold_max})")

        self.log_odds_hit = probability_to_log_odds(probability_hit)
        self.log_odds_miss = probability_to_log_odds(probability_miss)
        self.clamp_min = probability_to_log_odds(threshold_min)
        self.clamp_max = probability_to_log_odds(threshold_max)
        self.occupancy_threshold = probability_to_log_odds(threshold_occupancy)

    def enable_change_detection(self, enabled=True):
        self.change_detection_enabled = bool(enabled)
        if not enabled:
            self._changed = {}

    # ------------------------------------------------------------------
    # Key conversion
    # ------------------------------------------------------------------
    def coord_to_key(self, point):
        """Voxel key of a metric point (not range checked)"""
        return (int(np.floor(point[0] / self.resolution)),
                int(np.floor(point[1] / self.resolution)),
                int(np.floor(point[2] / self.resolution)))

    def coord_to_key_checked(self, point):
        """
        Voxel key of a metric point, or None if it falls outside the tree

        Args:
            point: [x, y, z] position

        Returns:
            (ix, iy, iz) tuple or None
        """
        if not np.all(np.isfinite(point[:3])):
            return None
        key = self.coord_to_key(point)
        if self.key_in_range(key):
            return key
        return None

    def key_in_range(self, key):
        lo, hi = -self.key_offset, self.key_offset
        return lo <= key[0] < hi and lo <= key[1] < hi and lo <= key[2] < hi

    def key_to_coord(self, key):
        """Metric center of a voxel"""
        return np.array([(key[0] + 0.5) * self.resolution,
                         (key[1] + 0.5) * self.resolution,
                         (key[2] + 0.5) * self.resolution])

    def _child_index(self, tkey, depth):
        # Bit 0: X, bit 1: Y, bit 2: Z
        bit = self.tree_depth - 1 - depth
        return (((tkey[0] >> bit) & 1)
                | (((tkey[1] >> bit) & 1) << 1)
                | (((tkey[2] >> bit) & 1) << 2))

    def _tree_key(self, key):
        return (key[0] + self.key_offset, key[1] + self.key_offset, key[2] + self.key_offset)

    # ------------------------------------------------------------------
    # Occupancy
    # ------------------------------------------------------------------
    def is_occupied(self, record):
        return record.log_odds >= self.occupancy_threshold

    def probability(self, record):
        return log_odds_to_probability(record.log_odds)

    def get(self, key):
        """
        Look up the record stored for a key (never creates one)

        Records of pruned regions are shared by every voxel of the region and
        must not be mutated through this method; use record_for_update().

        Args:
            key: (ix, iy, iz) voxel key

        Returns:
            VoxelRecord or None if the voxel is unknown
        """
        if not self.key_in_range(key):
            return None
        tkey = self._tree_key(key)
        node = self.root
        for depth in range(self.tree_depth):
            if node.children is None:
                return node.record
            node = node.children[self._child_index(tkey, depth)]
            if node is None:
                return None
        return node.record

    def record_for_update(self, key):
        """Mutable record of an existing voxel (expands pruned regions), or None"""
        if self.get(key) is None:
            return None
        return self._leaf(tuple(key), create=False).record

    def _leaf(self, key, create=True):
        """
        Descend to the full-depth leaf of a key

        Coarse leaves on the path are expanded. Missing nodes are created when
        `create` is set, otherwise None is returned.

        Returns:
            Leaf OctNode (record may be freshly created) or None
        """
        tkey = self._tree_key(key)
        node = self.root
        path = [node]
        for depth in range(self.tree_depth):
            if node.children is None:
                if node.record is not None:
                    node.subdivide()
                elif create:
                    node.children = [None] * 8
                else:
                    return None
            index = self._child_index(tkey, depth)
            child = node.children[index]
            if child is None:
                if not create:
                    return None
                child = OctNode()
                node.children[index] = child
            node = child
            path.append(node)

        if node.record is None:
            node.record = VoxelRecord()
            for n in path:
                n.known_count += 1
        return node

    def fuse(self, key, occupied):
        """
        Bayesian log-odds update of a single voxel

        Args:
            key: (ix, iy, iz) voxel key
            occupied: True for a hit, False for a miss

        Returns:
            The updated VoxelRecord
        """
        delta = self.log_odds_hit if occupied else self.log_odds_miss
        return self._write(key, lambda l: l + delta)

    def set_log_odds(self, key, value):
        """Override the log-odds of a voxel (clamped), creating it if needed"""
        return self._write(key, lambda l: value)

    def insert_record(self, key, record):
        """Store a complete record for a key (snapshot restore)"""
        if not self.key_in_range(key):
            raise PreconditionError(f"key {key} is outside the tree extent")
        leaf = self._leaf(tuple(key), create=True)
        record.log_odds = float(np.clip(record.log_odds, self.clamp_min, self.clamp_max))
        leaf.record = record
        leaf.log_odds = record.log_odds
        return record

    def _write(self, key, update):
        if not self.key_in_range(key):
            raise PreconditionError(f"key {key} is outside the tree extent")
        key = tuple(key)
        existed = self.get(key) is not None
        leaf = self._leaf(key, create=True)
        record = leaf.record
        was_occupied = self.is_occupied(record)

        record.log_odds = float(np.clip(update(record.log_odds), self.clamp_min, self.clamp_max))
        leaf.log_odds = record.log_odds

        if self.change_detection_enabled:
            now_occupied = self.is_occupied(record)
            if not existed or now_occupied != was_occupied:
                self._changed[tuple(key)] = now_occupied
        return record

    def update_inner_occupancy(self):
        """Recompute max-log-odds and mapped-voxel aggregates of inner nodes"""
        self._update_inner_recursive(self.root, 0)

    def _update_inner_recursive(self, node, depth):
        if node.children is None:
            if node.record is None:
                node.known_count = 0
                return
            node.log_odds = node.record.log_odds
            node.known_count = 8 ** (self.tree_depth - depth)
            return

        max_log_odds = None
        known = 0
        for child in node.children:
            if child is None:
                continue
            self._update_inner_recursive(child, depth + 1)
            known += child.known_count
            if child.known_count and (max_log_odds is None or child.log_odds > max_log_odds):
                max_log_odds = child.log_odds
        node.known_count = known
        node.log_odds = max_log_odds if max_log_odds is not None else 0.0

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    def iter_leaf_nodes(self, key_min=None, key_max=None):
        """
        Visit mapped leaf nodes intersecting an inclusive key box

        A pruned region is visited once. Cost is linear in the number of
        visited nodes, not in the size of the whole tree.

        Args:
            key_min: Lower key corner (default: whole tree)
            key_max: Upper key corner, inclusive (default: whole tree)

        Yields:
            (key_origin, edge, record): lowest key of the leaf, edge length
            in voxels (1 for a full-depth voxel), and its record
        """
        lo = self._tree_key(key_min) if key_min is not None else (0, 0, 0)
        if key_max is not None:
            hi = self._tree_key(key_max)
        else:
            full = (1 << self.tree_depth) - 1
            hi = (full, full, full)
        if any(lo[i] > hi[i] for i in range(3)):
            return
        yield from self._iter_recursive(self.root, 0, (0, 0, 0), lo, hi)

    def _iter_recursive(self, node, depth, origin, lo, hi):
        edge = 1 << (self.tree_depth - depth)
        for i in range(3):
            if origin[i] > hi[i] or origin[i] + edge - 1 < lo[i]:
                return

        if node.children is None:
            if node.record is not None:
                key = (origin[0] - self.key_offset,
                       origin[1] - self.key_offset,
                       origin[2] - self.key_offset)
                yield key, edge, node.record
            return

        half = edge >> 1
        for index, child in enumerate(node.children):
            if child is None:
                continue
            child_origin = (origin[0] + (half if index & 1 else 0),
                            origin[1] + (half if index & 2 else 0),
                            origin[2] + (half if index & 4 else 0))
            yield from self._iter_recursive(child, depth + 1, child_origin, lo, hi)

    def iter_leaves(self):
        """Full traversal: (key, record) for every mapped voxel"""
        return self.iterate_keys(None, None)

    def iterate_keys(self, key_min, key_max):
        """(key, record) for every mapped voxel inside an inclusive key box"""
        for origin, edge, record in self.iter_leaf_nodes(key_min, key_max):
            if edge == 1:
                yield origin, record
                continue
            ranges = []
            for i in range(3):
                start = origin[i] if key_min is None else max(origin[i], key_min[i])
                stop = origin[i] + edge - 1 if key_max is None else min(origin[i] + edge - 1, key_max[i])
                ranges.append(range(start, stop + 1))
            for ix in ranges[0]:
                for iy in ranges[1]:
                    for iz in ranges[2]:
                        yield (ix, iy, iz), record

    def iterate(self, bbx_min, bbx_max):
        """
        Lazy sequence of (key, record) for voxels intersecting a metric box

        Args:
            bbx_min: [x, y, z] lower corner
            bbx_max: [x, y, z] upper corner

        Returns:
            Generator; call again to restart
        """
        key_min, key_max = self.key_box(bbx_min, bbx_max)
        if key_min is None:
            return iter(())
        return self.iterate_keys(key_min, key_max)

    def key_box(self, bbx_min, bbx_max):
        """Inclusive key box covering a metric box, clipped to the tree extent"""
        lo = self.coord_to_key(bbx_min)
        hi = self.coord_to_key(bbx_max)
        lo = tuple(max(v, -self.key_offset) for v in lo)
        hi = tuple(min(v, self.key_offset - 1) for v in hi)
        if any(lo[i] > hi[i] for i in range(3)):
            return None, None
        return lo, hi

    def count_known(self, key_min, key_max):
        """Number of mapped voxels inside an inclusive key box"""
        lo = self._tree_key(key_min)
        hi = self._tree_key(key_max)
        return self._count_recursive(self.root, 0, (0, 0, 0), lo, hi)

    def _count_recursive(self, node, depth, origin, lo, hi):
        if node.known_count == 0 and node.record is None:
            return 0
        edge = 1 << (self.tree_depth - depth)
        overlap = 1
        for i in range(3):
            start = max(origin[i], lo[i])
            stop = min(origin[i] + edge - 1, hi[i])
            if start > stop:
                return 0
            overlap *= stop - start + 1

        if node.children is None:
            return overlap if node.record is not None else 0
        if overlap == edge ** 3:
            return node.known_count

        half = edge >> 1
        total = 0
        for index, child in enumerate(node.children):
            if child is None:
                continue
            child_origin = (origin[0] + (half if index & 1 else 0),
                            origin[1] + (half if index & 2 else 0),
                            origin[2] + (half if index & 4 else 0))
            total += self._count_recursive(child, depth + 1, child_origin, lo, hi)
        return total

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def prune(self):
        """
        Merge octants whose 8 children are identical leaves into one leaf

        Returns:
            Number of merged inner nodes
        """
        return self._prune_recursive(self.root, 0)

    def _prune_recursive(self, node, depth):
        if node.children is None:
            return 0
        merged = 0
        for child in node.children:
            if child is not None:
                merged += self._prune_recursive(child, depth + 1)

        if depth == 0:
            return merged
        first = node.children[0]
        if first is None or first.children is not None or first.record is None:
            return merged
        for child in node.children[1:]:
            if child is None or child.children is not None or child.record != first.record:
                return merged

        node.record = first.record
        node.log_odds = first.record.log_odds
        node.children = None
        return merged + 1

    def clear(self):
        """Clear all data (recreate root)"""
        self.root = OctNode()
        self._changed = {}

    def reset(self, resolution):
        """
        Clear all state and change the grid pitch

        Raises:
            InvalidConfigurationError: resolution is not positive
        """
        self.set_resolution(resolution)
        self.clear()

    @property
    def size(self):
        """Number of mapped voxels"""
        return self.root.known_count

    def changed_keys(self):
        """Keys created or flipped since the last reset_change_detection()"""
        return list(self._changed.items())

    def reset_change_detection(self):
        self._changed = {}

    def metric_bounds(self):
        """
        Axis-aligned metric bounds of all mapped voxels

        Returns:
            (min_xyz, max_xyz) numpy arrays, both zero for an empty map
        """
        lo = np.array([np.inf] * 3)
        hi = np.array([-np.inf] * 3)
        for origin, edge, _ in self.iter_leaf_nodes():
            corner = np.array(origin, dtype=np.float64) * self.resolution
            lo = np.minimum(lo, corner)
            hi = np.maximum(hi, corner + edge * self.resolution)
        if not np.all(np.isfinite(lo)):
            return np.zeros(3), np.zeros(3)
        return lo, hi

"""Explored-volume fraction and its rate over a fixed region."""
import numpy as np

from saliency_mapping.core.types import InvalidConfigurationError


class ExplorationMetricsTracker:
    """
    Tracks how much of a bounding region has been mapped

    Attributes:
        bbx_min, bbx_max: Metric corners of the tracked region
        fraction: Mapped fraction after the last refresh()
        num_free, num_occupied: Voxel counts after the last refresh()
        elapsed_time: Seconds accumulated over exploration_stats() calls
    """

    def __init__(self, bbx_min, bbx_max):
        self.bbx_min = np.asarray(bbx_min, dtype=np.float64)
        self.bbx_max = np.asarray(bbx_max, dtype=np.float64)
        if self.bbx_min.shape != (3,) or self.bbx_max.shape != (3,):
            raise InvalidConfigurationError("exploration bounds must be 3-vectors")
        if np.any(self.bbx_max < self.bbx_min):
            raise InvalidConfigurationError(
                f"exploration bbx_max {self.bbx_max} is below bbx_min {self.bbx_min}")

        self.num_free = 0
        self.num_occupied = 0
        self.fraction = 0.0
        self.previous_fraction = 0.0
        self.rate = 0.0
        self.elapsed_time = 0.0
        self.last_timestamp = None

    def total_voxels(self, resolution):
        if not resolution:
            return 0.0
        volume = float(np.prod(self.bbx_max - self.bbx_min))
        return volume / (resolution ** 3)

    def refresh(self, octree):
        """
        Recount free and occupied voxels whose centers lie in the region

        Linear in the number of mapped voxels inside the region.

        Returns:
            Updated explored fraction
        """
        free = 0
        occupied = 0
        for key, record in octree.iterate(self.bbx_min, self.bbx_max):
            center = octree.key_to_coord(key)
            if np.any(center < self.bbx_min) or np.any(center > self.bbx_max):
                continue
            if octree.is_occupied(record):
                occupied += 1
            else:
                free += 1

        self.num_free = free
        self.num_occupied = occupied
        total = self.total_voxels(octree.resolution)
        self.fraction = (free + occupied) / total if total else 0.0
        return self.fraction

    def exploration_stats(self, timestamp):
        """
        Explored fraction, its rate of change and the accumulated time

        Args:
            timestamp: Current time in seconds (supplied by the caller)

        Returns:
            Dictionary with 'fraction', 'rate' and 'elapsed_time'
        """
        if self.last_timestamp is None:
            self.last_timestamp = timestamp

        time_step = timestamp - self.last_timestamp
        if time_step > 0:
            self.rate = (self.fraction - self.previous_fraction) / time_step
        else:
            self.rate = 0.0
        self.elapsed_time += time_step

        self.previous_fraction = self.fraction
        self.last_timestamp = timestamp
        return {
            'fraction': self.fraction,
            'rate': self.rate,
            'elapsed_time': self.elapsed_time,
        }

    def volume_percentage(self, volume, resolution):
        """Share of the region covered by `volume` voxels, -1 if undefined"""
        total = self.total_voxels(resolution)
        if not total:
            return -1.0
        return volume / total

    def reset(self):
        self.num_free = 0
        self.num_occupied = 0
        self.fraction = 0.0
        self.previous_fraction = 0.0
        self.rate = 0.0

"""
Per-voxel visual saliency state machine.

A NORMAL voxel accumulates image intensities sampled into it during a frame.
Once its value crosses the threshold it becomes SALIENT and stops sampling.
While decay is enabled, SALIENT voxels lose value every frame they are not
re-observed (inhibition of return) and end up RETIRED for good.
"""
import logging

import numpy as np

from saliency_mapping.core.types import CellStatus, PreconditionError, SaliencyPhase
from saliency_mapping.utils.fusion import clamp_uint8, running_mean, taylor_decay_factor


class SaliencyStateMachine:
    """Saliency sampling, decay and viewpoint bookkeeping on the octree"""

    def __init__(self, octree, ray_caster, logger=None):
        """
        Args:
            octree: SaliencyOctree holding the voxel records
            ray_caster: RayCastEngine used to project pixel rays
            logger: Optional logger (defaults to the module logger)
        """
        self.octree = octree
        self.ray_caster = ray_caster
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def on_sample(self, record, intensity, tick, config):
        """
        Fuse one intensity sample into a voxel

        Only NORMAL voxels are sampled. The first sample of a new tick restarts
        the per-tick running mean from the current value.

        Args:
            record: VoxelRecord to update (mutated in place)
            intensity: Pixel intensity (0-255)
            tick: Current frame counter
            config: SaliencyConfig

        Returns:
            True if the record was sampled
        """
        saliency = record.saliency
        if saliency.phase != SaliencyPhase.NORMAL:
            return False

        if saliency.last_touched_tick != tick:
            # First hit in this tick
            saliency.sample_count = 0
            saliency.last_touched_tick = tick
            saliency.value_buffer = float(saliency.value)

        saliency.sample_count += 1
        previous_mean = saliency.value_buffer
        mean = running_mean(previous_mean, saliency.sample_count, float(intensity))
        saliency.value = clamp_uint8(saliency.value + config.alpha * (mean - previous_mean))
        saliency.value_buffer = mean

        if saliency.value > config.threshold:
            saliency.phase = SaliencyPhase.SALIENT
            saliency.sample_count = 0  # restart the clock for inhibition of return
        return True

    def decay_tick(self, tick, config):
        """
        Inhibition-of-return decay over the whole map

        Occupied SALIENT voxels not sampled in this tick decay by
        exp(k * beta) (second-order approximation) where k counts the ticks
        since promotion. Free voxels lose their saliency value.

        Args:
            tick: Current frame counter
            config: SaliencyConfig (no-op unless beta < 0)

        Returns:
            Dictionary with 'decayed', 'retired' and 'cleared' counts
        """
        stats = {'decayed': 0, 'retired': 0, 'cleared': 0}
        if not config.decay_enabled:
            return stats

        for _, _, record in self.octree.iter_leaf_nodes():
            saliency = record.saliency
            if self.octree.is_occupied(record):
                if saliency.phase == SaliencyPhase.SALIENT and saliency.last_touched_tick != tick:
                    saliency.sample_count += 1
                    factor = taylor_decay_factor(saliency.sample_count, config.beta)
                    saliency.value = clamp_uint8(saliency.value * factor)
                    stats['decayed'] += 1
                    if saliency.value <= config.threshold:
                        saliency.phase = SaliencyPhase.RETIRED
                        stats['retired'] += 1
                    saliency.last_touched_tick = tick
            else:
                saliency.value = 0
                stats['cleared'] += 1
        return stats

    def integrate_frame(self, origin, directions, intensities, tick, config):
        """
        Project pixel rays into the map and sample the voxels they hit

        Args:
            origin: [x, y, z] camera position in the world frame
            directions: (N, 3) world-frame ray directions
            intensities: (N,) pixel intensities
            tick: Current frame counter
            config: SaliencyConfig

        Returns:
            (M, 3) array of the voxel centers that were sampled
        """
        directions = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
        intensities = np.asarray(intensities).reshape(-1)
        if len(directions) != len(intensities):
            raise PreconditionError(
                f"{len(directions)} ray directions for {len(intensities)} intensities")

        ignore_unknown = not config.stop_at_unknown
        hits = []
        for direction, intensity in zip(directions, intensities):
            hit, end = self.ray_caster.cast_ray_until_hit(
                origin, direction, config.projection_limit, ignore_unknown)
            if not hit or end[2] <= config.ground_z:
                continue
            record = self.octree.record_for_update(self.octree.coord_to_key(end))
            if record is None or not self.octree.is_occupied(record):
                continue
            self.on_sample(record, intensity, tick, config)
            hits.append(end)

        self.logger.debug(f"Tick {tick}: {len(hits)}/{len(directions)} rays hit occupied voxels")
        if not hits:
            return np.empty((0, 3))
        return np.array(hits)

    def evaluate_voxel(self, queries, origin, point, depth_z, fx, fy):
        """
        Count a viewpoint that sees an occupied voxel

        The voxel's viewpoint counter is incremented and its density grows by
        the number of pixels the voxel covers at depth_z (fx * fy / z^2).

        Args:
            queries: SpatialQueryEngine used for the visibility test
            origin: [x, y, z] viewpoint
            point: [x, y, z] voxel to evaluate
            depth_z: Depth of the voxel in the camera frame
            fx, fy: Focal lengths in pixels

        Returns:
            True if the voxel was visible and updated
        """
        if depth_z is None or depth_z <= 0.0:
            raise PreconditionError(f"depth_z must be positive, got {depth_z}")

        key = self.octree.coord_to_key_checked(point)
        if key is None:
            return False
        record = self.octree.get(key)
        if record is None or not self.octree.is_occupied(record):
            return False
        if queries.visibility(origin, point, stop_at_unknown=False) != CellStatus.FREE:
            return False

        saliency = self.octree.record_for_update(key).saliency
        saliency.viewpoint_count += 1
        saliency.density += int(fx * fy / (depth_z * depth_z))
        return True

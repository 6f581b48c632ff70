"""
Map Controller Tests

Tests for:
- Point cloud ingestion and the frame counter
- Saliency frame projection and inhibition of return
- Forced updates (clear / set free / set occupied)
- Change log, diagnostic export and snapshots
- Profiling output
"""

import logging

import numpy as np
import pytest

from saliency_mapping.core.mapping_3d import SaliencyMapping3D
from saliency_mapping.core.types import (
    CellStatus,
    InvalidConfigurationError,
    PreconditionError,
    SaliencyConfig,
    SaliencyPhase,
)
from saliency_mapping.utils.profiler import MappingProfiler

from conftest import center


def pose_at(position):
    T = np.eye(4)
    T[:3, 3] = position
    return T


def along_x(u, v):
    return np.tile([1.0, 0.0, 0.0], (len(u), 1))


@pytest.fixture
def wall_mapper(mapper):
    """Mapper with one occupied voxel at key (3, 0, 1)."""
    mapper.set_occupied(center(3, 0, 1), [0.0, 0.0, 0.0])
    return mapper


# =============================================================================
# Occupancy ingestion
# =============================================================================


class TestIngestion:

    def test_scenario_single_ray(self, mapper):
        mapper.ingest_sensor_cloud([0.0, 0.0, 0.0], [[5.0, 0.0, 0.0]], max_range=10.0)
        for i in range(5):
            assert mapper.point_status(center(i, 0, 0)) == CellStatus.FREE
        assert mapper.point_status(center(5, 0, 0)) == CellStatus.OCCUPIED
        assert mapper.point_status([7.0, 0.0, 0.0]) == CellStatus.UNKNOWN

    def test_cloud_does_not_advance_frame(self, mapper):
        mapper.ingest_sensor_cloud([0.0, 0.0, 0.0], [[5.0, 0.0, 0.0], [0.0, 3.0, 0.0]])
        assert mapper.frame_count == 0
        assert mapper.cloud_count == 1

    def test_default_max_range_clips(self, unit_config):
        mapper = SaliencyMapping3D(dict(unit_config, sensor_max_range=3.0))
        counts = mapper.ingest_sensor_cloud([0.0, 0.0, 0.0], [[5.0, 0.0, 0.0]])
        assert counts == {'free': 3, 'occupied': 0}

    def test_sensor_frame_cloud(self, mapper):
        pose = {
            'position': {'x': 0.0, 'y': 0.0, 'z': 0.0},
            # 90 degrees about z
            'orientation': {'x': 0.0, 'y': 0.0, 'z': np.sqrt(0.5), 'w': np.sqrt(0.5)},
        }
        mapper.ingest_point_cloud(pose, [[3.5, 0.5, 0.5]])
        assert mapper.point_status([-0.5, 3.5, 0.5]) == CellStatus.OCCUPIED

    def test_projected_disparity_drops_invalid(self, mapper):
        projected = np.array([[
            [0.5, 0.5, 3.5],
            [0.5, 0.5, 10000.0],
            [0.5, 0.5, np.inf],
            [0.5, 0.5, -2.0],
        ]])
        counts = mapper.ingest_projected_disparity(np.eye(4), projected)
        assert counts['occupied'] == 1
        assert mapper.point_status([0.5, 0.5, 3.5]) == CellStatus.OCCUPIED

    def test_exploration_stats(self, mapper):
        mapper.ingest_sensor_cloud(center(0, 0, 0), [center(3, 0, 0)])
        stats = mapper.exploration_stats(1.0)
        assert stats['fraction'] == pytest.approx(4.0 / 64.0)
        assert stats['rate'] == 0.0


# =============================================================================
# Saliency frames
# =============================================================================


class TestSaliencyFrames:

    def test_frame_counter(self, wall_mapper):
        grid = np.full((1, 1), 200, dtype=np.uint8)
        for expected in (1, 2, 3):
            wall_mapper.ingest_saliency_frame(pose_at(center(0, 0, 1)), grid, ray_fn=along_x)
            assert wall_mapper.frame_count == expected

    def test_promotion_and_inhibition_of_return(self, wall_mapper):
        grid = np.full((1, 1), 255, dtype=np.uint8)
        pose = pose_at(center(0, 0, 1))

        hits = wall_mapper.ingest_saliency_frame(pose, grid, ray_fn=along_x)
        np.testing.assert_allclose(hits, [center(3, 0, 1)])
        assert wall_mapper.voxel_gain(center(3, 0, 1)) == 0

        wall_mapper.ingest_saliency_frame(pose, grid, ray_fn=along_x)
        assert wall_mapper.voxel_gain(center(3, 0, 1)) == 191

        gains = []
        for _ in range(4):
            wall_mapper.ingest_saliency_frame(pose, grid, ray_fn=along_x)
            gains.append(wall_mapper.voxel_gain(center(3, 0, 1)))
        assert gains == [181, 163, 140, 0]
        record = wall_mapper.octree.get((3, 0, 1))
        assert record.saliency.phase == SaliencyPhase.RETIRED

    def test_dim_pixels_skipped(self, wall_mapper):
        grid = np.full((1, 1), 100, dtype=np.uint8)
        hits = wall_mapper.ingest_saliency_frame(pose_at(center(0, 0, 1)), grid, ray_fn=along_x)
        assert len(hits) == 0
        assert wall_mapper.frame_count == 1

    def test_pinhole_projection(self, mapper):
        mapper.set_occupied(center(0, 0, 3), [0.0, 0.0, 0.0])
        grid = np.zeros((3, 3), dtype=np.uint8)
        grid[1, 1] = 200
        hits = mapper.ingest_saliency_frame(
            pose_at(center(0, 0, 0)), grid, {'fx': 2.0, 'fy': 2.0},
            config=SaliencyConfig(pixel_stride=1))
        np.testing.assert_allclose(hits, [center(0, 0, 3)])
        assert mapper.octree.get((0, 0, 3)).saliency.value == 100

    def test_projection_limit_override(self, wall_mapper):
        grid = np.full((1, 1), 200, dtype=np.uint8)
        hits = wall_mapper.ingest_saliency_frame(
            pose_at(center(0, 0, 1)), grid, ray_fn=along_x, projection_limit=2.0)
        assert len(hits) == 0

    def test_requires_camera_model(self, mapper):
        with pytest.raises(PreconditionError):
            mapper.ingest_saliency_frame(np.eye(4), np.zeros((2, 2), dtype=np.uint8))

    def test_rejects_non_image(self, mapper):
        with pytest.raises(PreconditionError):
            mapper.ingest_saliency_frame(np.eye(4), np.zeros(4), ray_fn=along_x)

    def test_ray_count_mismatch_keeps_frame_counter(self, wall_mapper):
        grid = np.full((1, 1), 200, dtype=np.uint8)
        with pytest.raises(PreconditionError):
            wall_mapper.ingest_saliency_frame(
                pose_at(center(0, 0, 1)), grid, ray_fn=lambda u, v: np.empty((0, 3)))
        assert wall_mapper.frame_count == 0

    def test_evaluate_voxel(self, wall_mapper):
        assert wall_mapper.evaluate_voxel(center(0, 0, 1), center(3, 0, 1), 3.0, {'fx': 300, 'fy': 300})
        saliency = wall_mapper.octree.get((3, 0, 1)).saliency
        assert saliency.viewpoint_count == 1
        assert saliency.density == 10000


# =============================================================================
# Forced updates
# =============================================================================


class TestForcedUpdates:

    def test_clear_region(self, mapper):
        mapper.ingest_sensor_cloud([0.0, 0.0, 0.0], [[5.0, 0.0, 0.0]], max_range=10.0)
        assert mapper.clear_region(center(5, 0, 0), [0.5, 0.5, 0.5]) == 1
        assert mapper.point_status(center(5, 0, 0)) == CellStatus.FREE

    def test_clear_region_never_creates(self, mapper):
        assert mapper.clear_region(center(20, 0, 0), [2.0, 2.0, 2.0]) == 0
        assert mapper.get_voxel_count() == 0

    def test_set_free_creates_voxels(self, mapper):
        assert mapper.set_free(center(20, 0, 0), [1.0, 1.0, 1.0]) == 8
        assert mapper.point_status(center(20, 0, 0)) == CellStatus.FREE
        assert mapper.get_voxel_count() == 8

    def test_set_free_offset(self, mapper):
        mapper.set_free(center(0, 0, 0), [0.0, 0.0, 0.0], offset=[10.0, 0.0, 0.0])
        assert mapper.point_status(center(10, 0, 0)) == CellStatus.FREE
        assert mapper.point_status(center(0, 0, 0)) == CellStatus.UNKNOWN

    def test_set_occupied(self, mapper):
        mapper.set_occupied(center(2, 2, 2), [0.0, 0.0, 0.0])
        _, probability = mapper.point_probability(center(2, 2, 2))
        assert probability == pytest.approx(0.97)

    @pytest.mark.parametrize("position, size", [
        ([np.nan, 0.0, 0.0], [1.0, 1.0, 1.0]),
        ([0.0, 0.0, 0.0], [1.0, np.inf, 1.0]),
    ])
    def test_non_finite_box(self, mapper, position, size):
        for update in (mapper.clear_region, mapper.set_free, mapper.set_occupied):
            with pytest.raises(PreconditionError):
                update(position, size)
        assert mapper.get_voxel_count() == 0

    def test_collision_default_footprint(self, mapper):
        mapper.set_free(center(2, 2, 2), [3.0, 3.0, 3.0])
        assert not mapper.collision_check(center(2, 2, 2))
        assert mapper.path_collision([center(2, 2, 2), center(30, 0, 0)]) == 1


# =============================================================================
# Change log, export and snapshots
# =============================================================================


class TestStateExchange:

    def test_changed_voxels(self, unit_config):
        mapper = SaliencyMapping3D(dict(unit_config, change_detection_enabled=True))
        mapper.ingest_sensor_cloud(center(0, 0, 0), [center(2, 0, 0)])
        changed = mapper.get_changed_voxels()
        assert len(changed) == 3
        occupied = [tuple(p) for p, occ in changed if occ]
        np.testing.assert_allclose(occupied, [center(2, 0, 0)])
        assert mapper.get_changed_voxels() == []

    def test_export_diagnostics(self, wall_mapper, tmp_path):
        record = wall_mapper.octree.get((3, 0, 1))
        record.saliency.value = 191
        record.saliency.phase = SaliencyPhase.SALIENT
        record.saliency.viewpoint_count = 2
        wall_mapper.set_free(center(0, 0, 0), [0.0, 0.0, 0.0])

        assert wall_mapper.export_diagnostics() == ["3.5,0.5,1.5,1,191,2,0"]
        path = wall_mapper.write_saliency_log(tmp_path / "saliency.txt")
        assert path.read_text() == "3.5,0.5,1.5,1,191,2,0\n"

    def test_write_log_requires_path(self, wall_mapper):
        with pytest.raises(PreconditionError):
            wall_mapper.write_saliency_log(None)

    def test_snapshot_round_trip(self, wall_mapper):
        grid = np.full((1, 1), 255, dtype=np.uint8)
        wall_mapper.ingest_saliency_frame(pose_at(center(0, 0, 1)), grid, ray_fn=along_x)
        wall_mapper.set_free(center(0, 0, 1), [0.0, 0.0, 0.0])
        state = wall_mapper.snapshot()

        restored = SaliencyMapping3D({'resolution': 1.0})
        restored.restore(state)
        assert restored.frame_count == 1
        assert restored.get_voxel_count() == 2
        assert restored.point_status(center(0, 0, 1)) == CellStatus.FREE
        assert restored.octree.get((3, 0, 1)) == wall_mapper.octree.get((3, 0, 1))

    def test_snapshot_resolution_mismatch(self, wall_mapper, caplog):
        state = wall_mapper.snapshot()
        restored = SaliencyMapping3D({'resolution': 0.5})
        with caplog.at_level(logging.WARNING, logger='SaliencyMapping3D'):
            restored.restore(state)
        assert "differs from map resolution" in caplog.text
        assert restored.octree.resolution == 1.0
        assert restored.point_status(center(3, 0, 1)) == CellStatus.OCCUPIED

    def test_restore_rejects_malformed(self, mapper):
        with pytest.raises(PreconditionError):
            mapper.restore({'resolution': 1.0})

    @pytest.mark.parametrize("resolution", [1.0, 0.5])
    def test_restore_out_of_range_key_keeps_map(self, wall_mapper, resolution):
        state = wall_mapper.snapshot()
        state['resolution'] = resolution
        state['keys'] = np.vstack([state['keys'], [[10 ** 7, 0, 0]]])
        state['log_odds'] = np.append(state['log_odds'], 0.0)
        state['saliency'] = np.vstack([state['saliency'], np.zeros((1, 7))])

        with pytest.raises(PreconditionError):
            wall_mapper.restore(state)
        assert wall_mapper.octree.resolution == 1.0
        assert wall_mapper.get_voxel_count() == 1
        assert wall_mapper.point_status(center(3, 0, 1)) == CellStatus.OCCUPIED

    def test_point_cloud(self, wall_mapper):
        wall_mapper.set_free(center(0, 0, 0), [0.0, 0.0, 0.0])
        cloud = wall_mapper.get_point_cloud(include_free=True)
        np.testing.assert_allclose(cloud['points'], [center(3, 0, 1)])
        assert cloud['num_free'] == 1
        assert cloud['num_voxels'] == 2


# =============================================================================
# Parameters and maintenance
# =============================================================================


class TestParameters:

    def test_invalid_resolution(self):
        with pytest.raises(InvalidConfigurationError):
            SaliencyMapping3D({'resolution': 0.0})

    def test_resolution_change_resets(self, wall_mapper, caplog):
        with caplog.at_level(logging.WARNING, logger='SaliencyMapping3D'):
            wall_mapper.set_parameters({'resolution': 0.5})
        assert "resolution has changed" in caplog.text
        assert wall_mapper.get_voxel_count() == 0
        assert wall_mapper.octree.resolution == 0.5

    def test_nested_saliency_update(self, mapper):
        mapper.set_parameters({'saliency': {'alpha': 0.25}})
        assert mapper.saliency_config.alpha == 0.25
        assert mapper.saliency_config.threshold == 128.0

    def test_update_keeps_exploration_history(self, mapper):
        mapper.ingest_sensor_cloud(center(0, 0, 0), [center(3, 0, 0)])
        mapper.exploration_stats(0.0)
        mapper.exploration_stats(10.0)
        mapper.set_parameters({'filter_speckles': False})
        stats = mapper.exploration_stats(15.0)
        assert stats['elapsed_time'] == pytest.approx(15.0)
        assert stats['fraction'] == pytest.approx(4.0 / 64.0)

    def test_new_exploration_region_restarts_history(self, mapper):
        mapper.exploration_stats(0.0)
        mapper.exploration_stats(10.0)
        mapper.set_parameters({'exploration_bbx_max': [8.0, 8.0, 8.0]})
        assert mapper.exploration_stats(15.0)['elapsed_time'] == 0.0

    def test_reset_map(self, wall_mapper):
        grid = np.full((1, 1), 200, dtype=np.uint8)
        wall_mapper.ingest_saliency_frame(pose_at(center(0, 0, 1)), grid, ray_fn=along_x)
        wall_mapper.reset_map()
        assert wall_mapper.frame_count == 0
        assert wall_mapper.get_voxel_count() == 0

    def test_prune(self, mapper):
        mapper.set_occupied([1.0, 1.0, 1.0], [1.0, 1.0, 1.0])
        assert mapper.get_voxel_count() == 8
        assert mapper.prune() == 1
        assert mapper.point_status(center(1, 1, 1)) == CellStatus.OCCUPIED

    def test_profiling_csv(self, unit_config, tmp_path):
        csv_path = tmp_path / "profile.csv"
        mapper = SaliencyMapping3D(dict(
            unit_config, enable_profiling=True, profiling_csv_path=str(csv_path), frame_interval=1))
        mapper.ingest_sensor_cloud(center(0, 0, 0), [center(3, 0, 0)])
        mapper.close()

        lines = csv_path.read_text().splitlines()
        assert lines[0] == ",".join(MappingProfiler.FIELDS)
        assert lines[0].startswith("frame_id,timestamp_sec,kind")
        assert len(lines) == 2
        assert ",cloud," in lines[1]
        assert len(lines[1].split(",")) == len(MappingProfiler.FIELDS)
        summary = mapper.get_performance_summary()
        assert summary['total_clouds'] == 1
        assert summary['total_frames'] == 0

    def test_no_stats_without_profiling(self, wall_mapper):
        grid = np.full((1, 1), 200, dtype=np.uint8)
        for _ in range(50):
            wall_mapper.ingest_sensor_cloud(center(0, 0, 0), [center(3, 0, 0)])
            wall_mapper.ingest_saliency_frame(pose_at(center(0, 0, 1)), grid, ray_fn=along_x)
        assert all(len(values) == 0 for values in wall_mapper.performance_stats.values())
        assert wall_mapper.get_performance_summary()['total_clouds'] == 0

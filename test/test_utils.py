"""Tests for configuration loading, pose helpers and I/O utilities."""

import threading

import numpy as np
import pytest

from saliency_mapping.core.types import (
    InvalidConfigurationError,
    PreconditionError,
    SaliencyConfig,
)
from saliency_mapping.utils.config import DEFAULT_CONFIG, load_config, merge_config
from saliency_mapping.utils.io import CodeTimer, ReadWriteLock
from saliency_mapping.utils.transforms import PinholeCamera, pose_to_transform, transform_points


# =============================================================================
# Configuration
# =============================================================================


class TestConfig:

    def test_shipped_file_matches_defaults(self, config_path):
        config = load_config(config_path)
        for key, value in DEFAULT_CONFIG.items():
            assert config[key] == value, key

    def test_ros_parameters_wrapper(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text(
            "saliency_mapper:\n"
            "  ros__parameters:\n"
            "    resolution: 0.25\n"
            "    saliency:\n"
            "      beta: 0.0\n"
        )
        config = load_config(path)
        assert config['resolution'] == 0.25
        assert config['saliency']['beta'] == 0.0
        assert config['saliency']['alpha'] == 0.5

    def test_plain_yaml(self, tmp_path):
        path = tmp_path / "plain.yaml"
        path.write_text("filter_speckles: false\n")
        assert load_config(path)['filter_speckles'] is False

    def test_overrides_win(self, config_path):
        config = load_config(config_path, overrides={'tree_depth': 12})
        assert config['tree_depth'] == 12

    def test_merge_does_not_mutate_base(self):
        merged = merge_config(DEFAULT_CONFIG, {'saliency': {'alpha': 0.1}})
        assert merged['saliency']['alpha'] == 0.1
        assert DEFAULT_CONFIG['saliency']['alpha'] == 0.5

    @pytest.mark.parametrize("overrides", [
        {'resolution': -1.0},
        {'probability_hit': 1.0},
        {'threshold_min': 0.9, 'threshold_max': 0.5},
        {'exploration_bbx_max': [10.0, 10.0]},
        {'exploration_bbx_min': [0.0, 0.0, 5.0], 'exploration_bbx_max': [1.0, 1.0, 1.0]},
        {'saliency': {'pixel_stride': 0}},
    ])
    def test_invalid_parameters(self, overrides):
        with pytest.raises(InvalidConfigurationError):
            load_config(overrides=overrides)

    def test_saliency_config_from_dict(self):
        config = SaliencyConfig.from_dict({'alpha': 0.3, 'unrelated': 1})
        assert config.alpha == 0.3
        assert config.decay_enabled
        assert not SaliencyConfig(beta=0.0).decay_enabled


# =============================================================================
# Transforms
# =============================================================================


class TestTransforms:

    def test_matrix_pose(self):
        T = np.eye(4)
        T[:3, 3] = [1.0, 2.0, 3.0]
        np.testing.assert_allclose(pose_to_transform(T), T)

    def test_dict_pose(self):
        pose = {
            'position': {'x': 1.0, 'y': 0.0, 'z': 0.0},
            'orientation': {'x': 0.0, 'y': 0.0, 'z': np.sqrt(0.5), 'w': np.sqrt(0.5)},
        }
        T = pose_to_transform(pose)
        np.testing.assert_allclose(transform_points(T, [[1.0, 0.0, 0.0]]), [[1.0, 1.0, 0.0]], atol=1e-12)

    def test_invalid_pose(self):
        with pytest.raises(PreconditionError):
            pose_to_transform(None)
        with pytest.raises(PreconditionError):
            pose_to_transform(np.eye(3))

    def test_pinhole_rays(self):
        camera = PinholeCamera.from_intrinsics({'fx': 2.0, 'fy': 2.0})
        rays = camera.project_pixels_to_rays(np.array([1, 3]), np.array([1, 1]), 3, 3)
        np.testing.assert_allclose(rays[0], [0.0, 0.0, 1.0])
        np.testing.assert_allclose(np.linalg.norm(rays, axis=1), [1.0, 1.0])
        assert rays[1][0] > 0.0

    def test_invalid_focal_length(self):
        with pytest.raises(PreconditionError):
            PinholeCamera(0.0, 1.0)


# =============================================================================
# I/O utilities
# =============================================================================


class TestReadWriteLock:

    def test_readers_share(self):
        lock = ReadWriteLock()
        with lock.read_locked():
            with lock.read_locked():
                assert lock._readers == 2
        assert lock._readers == 0

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []

        def reader():
            with lock.read_locked():
                events.append('read')

        with lock.write_locked():
            thread = threading.Thread(target=reader)
            thread.start()
            thread.join(timeout=0.1)
            assert events == []
            events.append('write')
        thread.join(timeout=2.0)
        assert events == ['write', 'read']


class TestCodeTimer:

    def test_measures_and_logs(self):
        messages = []
        with CodeTimer("block", log_func=messages.append) as timer:
            sum(range(1000))
        assert timer.took >= 0.0
        assert messages and messages[0].startswith("block : ")

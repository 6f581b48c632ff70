import os
import sys

import numpy as np
import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)

from saliency_mapping.core.octree import SaliencyOctree  # noqa: E402
from saliency_mapping.core.queries import SpatialQueryEngine  # noqa: E402
from saliency_mapping.core.ray_casting import RayCastEngine  # noqa: E402
from saliency_mapping.core.saliency import SaliencyStateMachine  # noqa: E402
from saliency_mapping.core.mapping_3d import SaliencyMapping3D  # noqa: E402


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def config_path():
    """Path of the shipped parameter file."""
    return os.path.join(_PKG_ROOT, "config", "saliency_mapping.yaml")


@pytest.fixture
def unit_config():
    """
    Parameters for a 1 m grid.

    Whole-meter coordinates fall on voxel borders, so tests address voxels
    through their centers (k + 0.5).
    """
    return {
        'resolution': 1.0,
        'sensor_max_range': 10.0,
        'exploration_bbx_min': [0.0, 0.0, 0.0],
        'exploration_bbx_max': [4.0, 4.0, 4.0],
    }


# =============================================================================
# Map Fixtures
# =============================================================================


@pytest.fixture
def octree():
    """Empty octree with 1 m voxels."""
    return SaliencyOctree(resolution=1.0)


@pytest.fixture
def ray_caster(octree):
    return RayCastEngine(octree)


@pytest.fixture
def queries(octree, ray_caster):
    return SpatialQueryEngine(octree, ray_caster)


@pytest.fixture
def state_machine(octree, ray_caster):
    return SaliencyStateMachine(octree, ray_caster)


@pytest.fixture
def mapper(unit_config):
    m = SaliencyMapping3D(unit_config)
    yield m
    m.close()


def center(ix, iy, iz):
    """Metric center of a 1 m voxel."""
    return np.array([ix + 0.5, iy + 0.5, iz + 0.5])


def fill_box(octree, lo, hi, log_odds):
    """Write log_odds into every key of an inclusive key box."""
    for ix in range(lo[0], hi[0] + 1):
        for iy in range(lo[1], hi[1] + 1):
            for iz in range(lo[2], hi[2] + 1):
                octree.set_log_odds((ix, iy, iz), log_odds)
    octree.update_inner_occupancy()

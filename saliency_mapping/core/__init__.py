from .octree import SaliencyOctree, OctNode
from .ray_casting import RayCastEngine
from .saliency import SaliencyStateMachine
from .queries import SpatialQueryEngine
from .exploration import ExplorationMetricsTracker
from .mapping_3d import SaliencyMapping3D
from .types import (
    CellStatus,
    SaliencyPhase,
    SaliencyState,
    VoxelRecord,
    SaliencyConfig,
    SaliencyMappingError,
    InvalidConfigurationError,
    PreconditionError,
)

__all__ = [
    'SaliencyOctree',
    'OctNode',
    'RayCastEngine',
    'SaliencyStateMachine',
    'SpatialQueryEngine',
    'ExplorationMetricsTracker',
    'SaliencyMapping3D',
    'CellStatus',
    'SaliencyPhase',
    'SaliencyState',
    'VoxelRecord',
    'SaliencyConfig',
    'SaliencyMappingError',
    'InvalidConfigurationError',
    'PreconditionError',
]
